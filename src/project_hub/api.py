"""
FastAPI Backend for the Project Hub service

Provides REST endpoints for projects, tasks, users, calendar events,
notifications, the activity log, search and reports. Every endpoint answers
with the ``{"success", "data" | "error"}`` envelope and integrates with the
ProjectDatabase layer for persistent storage.
"""

import logging
import math
import os
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .activity import (
    build_entry, compute_changes, creation_entry, deletion_entry,
    format_activity_description, session_entry, update_entry,
)
from .database import ProjectDatabase
from .models import (
    ProjectCreate, ProjectUpdate, MemberAdd, TaskCreate, TaskUpdate, CommentCreate,
    UserCreate, RegisterRequest, UserUpdate, SessionEvent, CalendarEventCreate,
    RsvpRequest, ActivityCreate, NotificationMarkRead, ProjectStatus, Priority,
    TaskStatus, UserRole, EventType, NotificationType,
    create_success_response, create_error_response,
)
from .monitoring import performance_monitor, background_tasks
from .reports import build_progress_report
from .scheduling import resolve_date_range, resolve_open_range
from .security import hash_password

# Configure logging for API operations
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Database path configuration from environment variable
DB_PATH = os.getenv("DATABASE_PATH", "project_hub.db")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

SEARCH_MIN_LENGTH = 2
SEARCH_RESULTS_PER_TYPE = 5
SEARCH_SUBTITLE_LENGTH = 50

# Global database instance for dependency injection
db_instance: Optional[ProjectDatabase] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    timestamp: str


class MetricsResponse(BaseModel):
    """Response model for performance metrics endpoint."""
    entities: Dict[str, int]
    performance: Dict[str, Any]
    system: Dict[str, Any]


# Database dependency for FastAPI dependency injection
def get_database() -> ProjectDatabase:
    """
    FastAPI dependency to provide database instance.

    Returns:
        ProjectDatabase instance for database operations

    Raises:
        HTTPException: If database is not available
    """
    global db_instance
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: ProjectDatabase = Depends(get_database)
) -> Optional[Dict[str, Any]]:
    """
    Resolve the caller forwarded by the identity provider.

    The provider sets ``X-User-Id``; an absent, malformed or unknown id
    means an anonymous caller.
    """
    if not x_user_id:
        return None
    try:
        user_id = int(x_user_id.strip())
    except ValueError:
        return None
    return db.get_user(user_id)


def require_user(user: Optional[Dict[str, Any]] = Depends(get_current_user)) -> Dict[str, Any]:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def get_client_info(request: Request) -> Dict[str, Optional[str]]:
    """Client IP (first X-Forwarded-For hop when proxied) and user agent."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return {"ip_address": ip_address, "user_agent": request.headers.get("user-agent")}


def record_activity(db: ProjectDatabase, entry: Optional[Dict[str, Any]]) -> Optional[int]:
    """Write an audit entry; a failure here never fails the request."""
    if entry is None:
        return None
    try:
        return db.add_activity(entry)
    except Exception as e:
        logger.error(f"Failed to record activity '{entry.get('action')}' "
                     f"for {entry.get('entity_type')} {entry.get('entity_id')}: {e}")
        return None


def notify(db: ProjectDatabase, user_id: Optional[int], notification_type: NotificationType,
           title: str, content: Optional[str] = None, link: Optional[str] = None) -> Optional[int]:
    """Create an inbox entry for ``user_id``; failures are logged only."""
    if user_id is None:
        return None
    try:
        return db.create_notification(user_id, notification_type.value, title, content, link)
    except Exception as e:
        logger.error(f"Failed to notify user {user_id} ({notification_type.value}): {e}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup/shutdown operations.

    Handles database initialization and background task management.
    """
    global db_instance

    try:
        db_instance = ProjectDatabase(DB_PATH)
        logger.info(f"Database initialized: {DB_PATH}")

        # Start the due-date reminder worker
        await background_tasks.start_background_tasks(db_instance)

        logger.info("Project Hub API starting up...")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    try:
        await background_tasks.stop_background_tasks()
    except Exception as e:
        logger.error(f"Error stopping background tasks: {e}")

    if db_instance:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


# FastAPI application with lifespan management
app = FastAPI(
    title="Project Hub API",
    description="REST API for projects, tasks, calendar events and team activity",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Service endpoints

@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: ProjectDatabase = Depends(get_database)):
    """
    Health check endpoint for service monitoring.

    Reports ``degraded`` when the database stops answering queries.
    """
    database_connected = True
    try:
        db.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )


@app.get("/api/metrics", response_model=MetricsResponse)
async def get_performance_metrics(db: ProjectDatabase = Depends(get_database)):
    """
    Get system performance metrics.

    Returns entity counts, query timings, reminder sweep statistics and
    process resource usage.
    """
    try:
        system_metrics = performance_monitor.get_system_metrics(db)
        return MetricsResponse(
            entities=system_metrics.entity_counts,
            performance={
                "avg_query_time_ms": system_metrics.avg_query_time_ms,
                "slowest_query": system_metrics.slowest_query,
                "slow_queries_today": system_metrics.slow_queries_today,
                "reminders_sent_today": system_metrics.reminders_sent_today,
            },
            system={
                "memory_usage_mb": system_metrics.memory_usage_mb,
                "cpu_usage_percent": system_metrics.cpu_usage_percent,
                "last_reminder_sweep": system_metrics.last_reminder_sweep,
                "uptime_seconds": performance_monitor.uptime_seconds(),
            }
        )
    except Exception as e:
        logger.error(f"Failed to get performance metrics: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Project endpoints

@app.get("/api/projects")
async def list_projects(
    status: Optional[ProjectStatus] = None,
    priority: Optional[Priority] = None,
    owner_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: ProjectDatabase = Depends(get_database)
):
    """List projects with owner names and task counts, newest first."""
    try:
        projects = db.list_projects(
            status=status.value if status else None,
            priority=priority.value if priority else None,
            owner_id=owner_id,
            search=search.strip() if search else None,
            limit=limit,
        )
        logger.info(f"REST API: Retrieved {len(projects)} projects")
        return create_success_response(projects)
    except Exception as e:
        logger.error(f"Failed to list projects: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/projects", status_code=201)
async def create_project(
    project: ProjectCreate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Create a project.

    The owner (when given) becomes a member with the ``owner`` role.
    """
    try:
        data = project.model_dump(mode="json")
        if data["owner_id"] is not None and db.get_user(data["owner_id"]) is None:
            raise HTTPException(status_code=400, detail=f"Owner {data['owner_id']} does not exist")

        project_id = db.create_project(data)
        created = db.get_project(project_id)
        record_activity(db, creation_entry(
            "project", created, created["name"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Created project {project_id} '{created['name']}'")
        return create_success_response({"id": project_id}, message="Project created successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to create project: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/projects/{project_id}")
async def get_project(project_id: int, db: ProjectDatabase = Depends(get_database)):
    try:
        project = db.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return create_success_response(project)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/projects/{project_id}")
async def update_project(
    project_id: int,
    update: ProjectUpdate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Partially update a project; only fields present in the body change.

    Writes an ``update`` audit record carrying the field diff.
    """
    try:
        before = db.get_project(project_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Project not found")

        fields = update.model_dump(mode="json", exclude_unset=True)
        start_date = fields.get("start_date", before["start_date"])
        end_date = fields.get("end_date", before["end_date"])
        if start_date and end_date and end_date < start_date:
            raise HTTPException(status_code=400, detail="end_date must not be before start_date")
        if fields.get("owner_id") is not None and db.get_user(fields["owner_id"]) is None:
            raise HTTPException(status_code=400, detail=f"Owner {fields['owner_id']} does not exist")

        db.update_project(project_id, fields)
        after = db.get_project(project_id)
        record_activity(db, update_entry(
            "project", before, after, after["name"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Updated project {project_id} fields {sorted(fields)}")
        return create_success_response(after, message="Project updated successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to update project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/projects/{project_id}")
async def delete_project(
    project_id: int,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Delete a project and all associated tasks and memberships.

    Returns:
        Envelope with cascade deletion counts
    """
    try:
        before = db.get_project(project_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Project not found")

        result = db.delete_project(project_id)
        if not result["success"]:
            raise HTTPException(status_code=404, detail=result["error"])

        record_activity(db, deletion_entry(
            "project", before, before["name"],
            actor=current_user, client=get_client_info(request),
            metadata={"cascaded_tasks": result["cascaded_tasks"],
                      "cascaded_members": result["cascaded_members"]}
        ))
        logger.info(f"REST API: {result['message']}")
        return create_success_response(
            {
                "project_id": project_id,
                "cascaded_tasks": result["cascaded_tasks"],
                "cascaded_members": result["cascaded_members"],
            },
            message=result["message"]
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/projects/{project_id}/progress")
async def get_project_progress(project_id: int, db: ProjectDatabase = Depends(get_database)):
    """Completion, timeline and hours summary for one project."""
    try:
        project = db.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        stats = db.get_project_task_stats(project_id)
        return create_success_response(build_progress_report(project, stats))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to compute progress for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/projects/{project_id}/members")
async def list_project_members(project_id: int, db: ProjectDatabase = Depends(get_database)):
    try:
        if db.get_project(project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        members = db.list_project_members(project_id)
        logger.info(f"REST API: Retrieved {len(members)} members for project {project_id}")
        return create_success_response(members)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list members for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/projects/{project_id}/members")
async def add_project_member(
    project_id: int,
    member: MemberAdd,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Add a member (or change a member's role); new members get a project invite."""
    try:
        project = db.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        user = db.get_user(member.user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")

        added = db.add_project_member(project_id, member.user_id, member.role.value)
        if added:
            notify(db, member.user_id, NotificationType.PROJECT_INVITE,
                   "Added to project",
                   f"You were added to project '{project['name']}'",
                   f"/projects/{project_id}")
        record_activity(db, build_entry(
            "add_member" if added else "update_member", "project", project_id,
            f"{'Added' if added else 'Updated'} {user['name']} as {member.role.value} "
            f"in project '{project['name']}'",
            actor=current_user, client=get_client_info(request),
            metadata={"user_id": member.user_id, "role": member.role.value}
        ))
        return create_success_response(
            {"project_id": project_id, "user_id": member.user_id, "role": member.role.value},
            message="Member added successfully" if added else "Member role updated"
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to add member to project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/projects/{project_id}/members/{user_id}")
async def remove_project_member(
    project_id: int,
    user_id: int,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        project = db.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        if not db.remove_project_member(project_id, user_id):
            raise HTTPException(status_code=404, detail="User is not a member of this project")

        record_activity(db, build_entry(
            "remove_member", "project", project_id,
            f"Removed user {user_id} from project '{project['name']}'",
            actor=current_user, client=get_client_info(request),
            metadata={"user_id": user_id}
        ))
        return create_success_response(message="Member removed successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to remove member {user_id} from project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Task endpoints

@app.get("/api/tasks")
async def list_tasks(
    project_id: Optional[int] = None,
    status: Optional[TaskStatus] = None,
    priority: Optional[Priority] = None,
    assignee_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: ProjectDatabase = Depends(get_database)
):
    """List tasks ordered by due date (undated last), then priority."""
    try:
        tasks = db.list_tasks(
            project_id=project_id,
            status=status.value if status else None,
            priority=priority.value if priority else None,
            assignee_id=assignee_id,
            search=search.strip() if search else None,
            limit=limit,
        )
        logger.info(f"REST API: Retrieved {len(tasks)} tasks")
        return create_success_response(tasks)
    except Exception as e:
        logger.error(f"Failed to list tasks: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/tasks", status_code=201)
async def create_task(
    task: TaskCreate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Create a task in an existing project.

    Assigning it to someone other than the caller sends them a
    ``task_assigned`` notification.
    """
    try:
        if db.get_project(task.project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        if task.assignee_id is not None and db.get_user(task.assignee_id) is None:
            raise HTTPException(status_code=400, detail=f"Assignee {task.assignee_id} does not exist")

        task_id = db.create_task(task.model_dump(mode="json"))
        created = db.get_task(task_id)

        caller_id = current_user["id"] if current_user else None
        if task.assignee_id is not None and task.assignee_id != caller_id:
            notify(db, task.assignee_id, NotificationType.TASK_ASSIGNED,
                   "New task assigned",
                   f"You were assigned '{created['title']}' in {created['project_name']}",
                   f"/tasks/{task_id}")

        record_activity(db, creation_entry(
            "task", created, created["title"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Created task {task_id} in project {task.project_id}")
        return create_success_response({"id": task_id}, message="Task created successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to create task: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: int, db: ProjectDatabase = Depends(get_database)):
    try:
        task = db.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return create_success_response(task)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/tasks/{task_id}")
async def update_task(
    task_id: int,
    update: TaskUpdate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Partially update a task; a new assignee is notified."""
    try:
        before = db.get_task(task_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Task not found")

        fields = update.model_dump(mode="json", exclude_unset=True)
        if "project_id" in fields:
            if fields["project_id"] is None:
                raise HTTPException(status_code=400, detail="project_id cannot be null")
            if db.get_project(fields["project_id"]) is None:
                raise HTTPException(status_code=404, detail="Project not found")
        if fields.get("assignee_id") is not None and db.get_user(fields["assignee_id"]) is None:
            raise HTTPException(status_code=400, detail=f"Assignee {fields['assignee_id']} does not exist")

        db.update_task(task_id, fields)
        after = db.get_task(task_id)

        caller_id = current_user["id"] if current_user else None
        new_assignee = after["assignee_id"]
        if new_assignee is not None and new_assignee != before["assignee_id"] and new_assignee != caller_id:
            notify(db, new_assignee, NotificationType.TASK_ASSIGNED,
                   "Task assigned to you",
                   f"You were assigned '{after['title']}' in {after['project_name']}",
                   f"/tasks/{task_id}")

        record_activity(db, update_entry(
            "task", before, after, after["title"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Updated task {task_id} fields {sorted(fields)}")
        return create_success_response(after, message="Task updated successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to update task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/tasks/{task_id}")
async def delete_task(
    task_id: int,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        before = db.get_task(task_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Task not found")

        result = db.delete_task(task_id)
        if not result["success"]:
            raise HTTPException(status_code=404, detail=result["error"])

        record_activity(db, deletion_entry(
            "task", before, before["title"],
            actor=current_user, client=get_client_info(request),
            metadata={"cascaded_comments": result["cascaded_comments"]}
        ))
        logger.info(f"REST API: {result['message']}")
        return create_success_response(
            {"task_id": task_id, "cascaded_comments": result["cascaded_comments"]},
            message=result["message"]
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/tasks/{task_id}/comments")
async def list_task_comments(task_id: int, db: ProjectDatabase = Depends(get_database)):
    try:
        if db.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        comments = db.list_comments(task_id)
        logger.info(f"REST API: Retrieved {len(comments)} comments for task {task_id}")
        return create_success_response(comments)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list comments for task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/tasks/{task_id}/comments", status_code=201)
async def create_task_comment(
    task_id: int,
    comment: CommentCreate,
    request: Request,
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Comment on a task as the caller.

    The assignee is notified unless they wrote the comment themselves.
    """
    try:
        task = db.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")

        comment_id = db.create_comment(task_id, current_user["id"], comment.content)

        record_activity(db, build_entry(
            "comment", "task", task_id,
            f"Commented on task '{task['title']}'",
            actor=current_user, client=get_client_info(request),
            metadata={"comment_id": comment_id}
        ))
        if task["assignee_id"] is not None and task["assignee_id"] != current_user["id"]:
            notify(db, task["assignee_id"], NotificationType.TASK_COMMENT,
                   "New comment on your task",
                   f"{current_user['name']} commented on '{task['title']}'",
                   f"/tasks/{task_id}")

        logger.info(f"REST API: User {current_user['id']} commented on task {task_id}")
        return create_success_response(
            {"id": comment_id, "task_id": task_id, "user_id": current_user["id"],
             "content": comment.content},
            message="Comment added successfully"
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to add comment to task {task_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# User endpoints

def _create_user_account(db: ProjectDatabase, name: str, email: str, password: str,
                         role: str, avatar: Optional[str] = None,
                         department: Optional[str] = None) -> Dict[str, Any]:
    if db.email_exists(email):
        raise HTTPException(status_code=400, detail="Email already exists")
    try:
        user_id = db.create_user(name, email, hash_password(password), role, avatar, department)
    except sqlite3.IntegrityError:
        # Lost a race with a concurrent registration
        raise HTTPException(status_code=400, detail="Email already exists")
    return db.get_user(user_id)


@app.get("/api/users")
async def list_users(
    role: Optional[UserRole] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        users = db.list_users(
            role=role.value if role else None,
            search=search.strip() if search else None,
            limit=limit,
        )
        logger.info(f"REST API: Retrieved {len(users)} users")
        return create_success_response(users)
    except Exception as e:
        logger.error(f"Failed to list users: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/users", status_code=201)
async def create_user(
    user: UserCreate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        created = _create_user_account(db, user.name, user.email, user.password,
                                       user.role.value, user.avatar, user.department)
        record_activity(db, creation_entry(
            "user", created, created["name"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Created user {created['id']} ({created['role']})")
        return create_success_response(created, message="User created successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to create user: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/auth/register", status_code=201)
async def register(
    registration: RegisterRequest,
    request: Request,
    db: ProjectDatabase = Depends(get_database)
):
    """Self-service sign-up; new accounts are always plain members."""
    try:
        created = _create_user_account(db, registration.name, registration.email,
                                       registration.password, UserRole.MEMBER.value)
        record_activity(db, build_entry(
            "register", "user", created["id"],
            f"User '{created['name']}' registered",
            actor=created, client=get_client_info(request), new_values=created
        ))
        logger.info(f"REST API: Registered user {created['id']}")
        return create_success_response(created, message="Registration successful")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to register user: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/auth/events")
async def record_session_event(
    event: SessionEvent,
    request: Request,
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Audit a login/logout reported by the identity provider."""
    try:
        activity_id = db.add_activity(
            session_entry(event.event.value, current_user, get_client_info(request))
        )
        logger.info(f"REST API: Recorded {event.event.value} for user {current_user['id']}")
        return create_success_response({"id": activity_id}, message=f"{event.event.value} recorded")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to record session event: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/users/{user_id}")
async def get_user(user_id: int, db: ProjectDatabase = Depends(get_database)):
    try:
        user = db.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return create_success_response(user)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/users/{user_id}")
async def update_user(
    user_id: int,
    update: UserUpdate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Partially update a user; a supplied password is re-hashed."""
    try:
        before = db.get_user(user_id)
        if before is None:
            raise HTTPException(status_code=404, detail="User not found")

        fields = update.model_dump(mode="json", exclude_unset=True)
        if "email" in fields and db.email_exists(fields["email"], exclude_user_id=user_id):
            raise HTTPException(status_code=400, detail="Email already exists")
        password_changed = "password" in fields
        if password_changed:
            fields["password_hash"] = hash_password(fields.pop("password"))

        db.update_user(user_id, fields)
        after = db.get_user(user_id)

        client = get_client_info(request)
        entry = update_entry("user", before, after, after["name"], actor=current_user, client=client)
        if entry is None and password_changed:
            entry = build_entry(
                "update", "user", user_id, f"Updated user '{after['name']}': password",
                actor=current_user, client=client
            )
        if entry is not None and password_changed:
            entry["metadata"]["password_changed"] = True
        record_activity(db, entry)

        logger.info(f"REST API: Updated user {user_id} fields {sorted(fields)}")
        return create_success_response(after, message="User updated successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to update user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/users/{user_id}")
async def delete_user(
    user_id: int,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        before = db.get_user(user_id)
        if before is None or not db.delete_user(user_id):
            raise HTTPException(status_code=404, detail="User not found")

        record_activity(db, deletion_entry(
            "user", before, before["name"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Deleted user {user_id}")
        return create_success_response(message="User deleted successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Calendar endpoints

def _check_event_references(db: ProjectDatabase, event: CalendarEventCreate) -> None:
    if event.project_id is not None and db.get_project(event.project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")
    if event.participants:
        missing = db.find_missing_users(event.participants)
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Unknown participant user ids: {', '.join(map(str, missing))}"
            )


def _invite_participants(db: ProjectDatabase, event: Dict[str, Any], user_ids: List[int],
                         inviter_id: Optional[int]) -> None:
    for user_id in user_ids:
        if user_id == inviter_id:
            continue
        notify(db, user_id, NotificationType.EVENT_INVITE,
               "Event invitation",
               f"You were invited to '{event['title']}' on {event['start_time']}",
               f"/calendar/{event['id']}")


@app.get("/api/calendar")
async def list_calendar_events(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    project_id: Optional[int] = None,
    user_id: Optional[int] = None,
    event_type: Optional[EventType] = None,
    exclude_types: Optional[str] = None,
    db: ProjectDatabase = Depends(get_database)
):
    """
    List events overlapping the requested range.

    An event matches when ``start_time <= end_date`` and
    ``end_time >= start_date``; a date-only ``end_date`` covers the whole day.
    """
    try:
        if not start_date or not end_date:
            raise HTTPException(status_code=400, detail="start_date and end_date are required")
        try:
            range_start, range_end = resolve_date_range(start_date, end_date)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        excluded = [t.strip() for t in exclude_types.split(",") if t.strip()] if exclude_types else None
        events = db.list_events(
            range_start, range_end,
            project_id=project_id,
            user_id=user_id,
            event_type=event_type.value if event_type else None,
            exclude_types=excluded,
        )
        logger.info(f"REST API: Retrieved {len(events)} events between {range_start} and {range_end}")
        return create_success_response(events)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list calendar events: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/calendar", status_code=201)
async def create_calendar_event(
    event: CalendarEventCreate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Create an event; participants start as ``pending`` and receive an invite."""
    try:
        _check_event_references(db, event)
        caller_id = current_user["id"] if current_user else None

        event_id = db.create_event(
            event.model_dump(mode="json", exclude={"participants"}),
            participant_ids=event.participants or [],
            created_by=caller_id,
        )
        created = db.get_event(event_id)
        _invite_participants(db, created, event.participants or [], caller_id)
        record_activity(db, creation_entry(
            "event", created, created["title"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Created event {event_id} with {len(created['participants'])} participants")
        return create_success_response(created, message="Event created successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to create calendar event: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/calendar/{event_id}")
async def get_calendar_event(event_id: str, db: ProjectDatabase = Depends(get_database)):
    try:
        event = db.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event not found")
        return create_success_response(event)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get calendar event {event_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/calendar/{event_id}")
async def update_calendar_event(
    event_id: str,
    event: CalendarEventCreate,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Replace an event's fields.

    When ``participants`` is supplied the participant set is reconciled;
    people who stay keep their RSVP.
    """
    try:
        before = db.get_event(event_id)
        if before is None:
            raise HTTPException(status_code=404, detail="Event not found")
        _check_event_references(db, event)

        delta = db.update_event(
            event_id,
            event.model_dump(mode="json", exclude={"participants"}),
            participant_ids=event.participants,
        )
        if delta is None:
            raise HTTPException(status_code=404, detail="Event not found")

        after = db.get_event(event_id)
        _invite_participants(db, after, delta["added"], current_user["id"] if current_user else None)
        record_activity(db, update_entry(
            "event", before, after, after["title"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Updated event {event_id} "
                    f"(+{len(delta['added'])}/-{len(delta['removed'])} participants)")
        return create_success_response(after, message="Event updated successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to update calendar event {event_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/calendar/{event_id}")
async def delete_calendar_event(
    event_id: str,
    request: Request,
    current_user: Optional[Dict[str, Any]] = Depends(get_current_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        before = db.get_event(event_id)
        if before is None or not db.delete_event(event_id):
            raise HTTPException(status_code=404, detail="Event not found")

        record_activity(db, deletion_entry(
            "event", before, before["title"],
            actor=current_user, client=get_client_info(request)
        ))
        logger.info(f"REST API: Deleted event {event_id}")
        return create_success_response(message="Event deleted successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete calendar event {event_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/calendar/{event_id}/participants/{user_id}")
async def respond_to_calendar_event(
    event_id: str,
    user_id: int,
    rsvp: RsvpRequest,
    request: Request,
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    """
    Record a participant's RSVP.

    Callers answer for themselves; admins may answer for anyone.
    """
    try:
        if current_user["id"] != user_id and current_user["role"] != UserRole.ADMIN.value:
            raise HTTPException(status_code=403, detail="Cannot respond on behalf of another user")
        event = db.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event not found")
        if not db.respond_to_event(event_id, user_id, rsvp.status.value, rsvp.response_note):
            raise HTTPException(status_code=404, detail="User is not a participant of this event")

        record_activity(db, build_entry(
            "respond", "event", event_id,
            f"Responded '{rsvp.status.value}' to event '{event['title']}'",
            actor=current_user, client=get_client_info(request),
            metadata={"participant_id": user_id, "status": rsvp.status.value}
        ))
        logger.info(f"REST API: User {user_id} responded {rsvp.status.value} to event {event_id}")
        return create_success_response(db.get_event(event_id), message="Response recorded")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to record RSVP for event {event_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Activity log endpoints

@app.get("/api/activity")
async def list_activity(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    db: ProjectDatabase = Depends(get_database)
):
    """Page through the audit trail, newest first."""
    try:
        try:
            start_date, end_date = resolve_open_range(start_date, end_date)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        entries, total = db.list_activity(
            entity_type=entity_type, entity_id=entity_id, user_id=user_id,
            action=action, start_date=start_date, end_date=end_date,
            search=search.strip() if search else None,
            page=page, limit=limit,
        )
        total_pages = math.ceil(total / limit) if total else 0
        logger.info(f"REST API: Retrieved {len(entries)} of {total} activity entries")
        return create_success_response(
            entries,
            pagination={
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            }
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list activity: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/activity", status_code=201)
async def create_activity(
    activity: ActivityCreate,
    request: Request,
    db: ProjectDatabase = Depends(get_database)
):
    """Record an audit entry; IP and user agent default to the request's."""
    try:
        client = get_client_info(request)
        entry = build_entry(
            activity.action, activity.entity_type, activity.entity_id, activity.description,
            actor={"id": activity.user_id, "name": activity.user_name},
            client={
                "ip_address": activity.ip_address or client["ip_address"],
                "user_agent": activity.user_agent or client["user_agent"],
            },
            old_values=activity.old_values,
            new_values=activity.new_values,
            metadata=activity.metadata,
        )
        activity_id = db.add_activity(entry)
        logger.info(f"REST API: Recorded activity {activity_id} ({activity.action} {activity.entity_type})")
        return create_success_response({"id": activity_id}, message="Activity logged successfully")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to record activity: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/activity/{activity_id}")
async def get_activity(activity_id: int, db: ProjectDatabase = Depends(get_database)):
    """Single audit entry with its computed field diff and display line."""
    try:
        entry = db.get_activity(activity_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Activity not found")
        entry["changes"] = compute_changes(entry["old_values"], entry["new_values"])
        entry["display"] = format_activity_description(entry)
        return create_success_response(entry)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get activity {activity_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Notification endpoints

@app.get("/api/notifications")
async def list_notifications(
    unread: bool = False,
    limit: int = Query(50, ge=1, le=200),
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        notifications = db.list_notifications(current_user["id"], unread_only=unread, limit=limit)
        unread_count = db.count_unread_notifications(current_user["id"])
        logger.info(f"REST API: Retrieved {len(notifications)} notifications for user {current_user['id']}")
        return create_success_response(notifications, unread_count=unread_count)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to list notifications: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.put("/api/notifications")
async def mark_notifications_read(
    body: NotificationMarkRead,
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    """Mark one notification (``id``) or all of them (``mark_all``) as read."""
    try:
        if body.mark_all:
            updated = db.mark_all_notifications_read(current_user["id"])
        else:
            updated = db.mark_notification_read(current_user["id"], body.id)
        return create_success_response({"updated": updated}, message="Notifications marked as read")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to mark notifications read: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(
    notification_id: int,
    current_user: Dict[str, Any] = Depends(require_user),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        if not db.delete_notification(current_user["id"], notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return create_success_response(message="Notification deleted")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to delete notification {notification_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Search & reports

@app.get("/api/search")
async def search(q: str = "", db: ProjectDatabase = Depends(get_database)):
    """Quick search over projects, tasks and users."""
    try:
        term = q.strip()
        if len(term) < SEARCH_MIN_LENGTH:
            return create_success_response([])
        results = db.search(term, per_type=SEARCH_RESULTS_PER_TYPE)
        for result in results:
            if result["subtitle"]:
                result["subtitle"] = result["subtitle"][:SEARCH_SUBTITLE_LENGTH]
        logger.info(f"REST API: Search '{term}' returned {len(results)} results")
        return create_success_response(results)
    except Exception as e:
        logger.error(f"Search failed: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/api/reports")
async def get_reports(
    days: int = Query(7, ge=1, le=365),
    db: ProjectDatabase = Depends(get_database)
):
    try:
        return create_success_response(db.get_report(days))
    except Exception as e:
        logger.error(f"Failed to build report: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


# Error handlers mapping everything onto the envelope

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail)),
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """Report the first validation problem as a 400."""
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        text = str(first.get("msg", "Invalid value"))
        if text.startswith("Value error, "):
            message = text[len("Value error, "):]
        else:
            location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
            message = f"{location}: {text}" if location else text
    return JSONResponse(status_code=400, content=create_error_response(message))


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content=create_error_response("Internal server error")
    )
