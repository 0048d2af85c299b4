"""
YAML Importer with UPSERT Logic

Loads users, projects (with members) and tasks from a YAML document in one
transaction. Users are matched by e-mail, projects by name and tasks by
(project, title); matched rows are updated only for the fields the YAML
specifies.

Example document::

    users:
      - name: Ada Lovelace
        email: ada@example.com
        role: manager
        password: secret123
    projects:
      - name: Website Relaunch
        status: in_progress
        owner: ada@example.com
        members:
          - email: bob@example.com
            role: member
        tasks:
          - title: Draft sitemap
            assignee: bob@example.com
            due_date: 2024-05-01
"""

import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Dict, Any, Optional

import yaml

from .database import ProjectDatabase
from .models import ProjectStatus, Priority, TaskStatus, UserRole, MemberRole
from .security import hash_password, verify_password

logger = logging.getLogger(__name__)


def _enum_value(vocabulary, value: Optional[str], field: str) -> Optional[str]:
    if value is None:
        return None
    try:
        return vocabulary(str(value).strip().lower()).value
    except ValueError:
        allowed = ", ".join(member.value for member in vocabulary)
        raise ValueError(f"Invalid {field} '{value}' (expected one of: {allowed})")


def _date_value(value: Any, field: str) -> Optional[str]:
    # YAML parses bare 2024-05-01 into a date object
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise ValueError(f"Invalid {field} '{value}', expected YYYY-MM-DD")


def _user_id_by_email(cursor: sqlite3.Cursor, email: Optional[str], field: str) -> Optional[int]:
    if not email:
        return None
    cursor.execute("SELECT id FROM users WHERE email = ?", (str(email).strip().lower(),))
    row = cursor.fetchone()
    if not row:
        raise ValueError(f"Unknown {field} '{email}'")
    return row[0]


def _apply_update(cursor: sqlite3.Cursor, table: str, row_id: int,
                  fields: Dict[str, Any], current_time_str: str) -> None:
    """Update only the columns the YAML actually specified."""
    update_parts = ["updated_at = ?"]
    update_values = [current_time_str]
    for column, value in fields.items():
        if value is not None:
            update_parts.append(f"{column} = ?")
            update_values.append(value)
    update_values.append(row_id)
    cursor.execute(f"UPDATE {table} SET {', '.join(update_parts)} WHERE id = ?", update_values)


def import_data(db: ProjectDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import users, projects and tasks with UPSERT semantics.

    Individual item failures are collected in ``errors`` and do not abort the
    import; structural problems (sections that are not lists) roll everything
    back.

    Args:
        db: ProjectDatabase instance
        yaml_data: Parsed YAML document

    Returns:
        Dict with created/updated counters and the list of item errors

    Raises:
        ValueError: For malformed YAML structure
        RuntimeError: For database failures during the transaction
    """
    current_time_str = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    stats = {
        "users_created": 0,
        "users_updated": 0,
        "projects_created": 0,
        "projects_updated": 0,
        "members_added": 0,
        "tasks_created": 0,
        "tasks_updated": 0,
        "errors": [],
    }

    users = yaml_data.get("users") or []
    projects = yaml_data.get("projects") or []
    if not isinstance(users, list):
        raise ValueError("YAML 'users' must be a list")
    if not isinstance(projects, list):
        raise ValueError("YAML 'projects' must be a list")

    with db._connection_lock:
        cursor = db._connection.cursor()
        try:
            cursor.execute("BEGIN")

            # Users first so owners, members and assignees resolve
            for user_data in users:
                try:
                    created = _import_user(db, cursor, user_data, current_time_str)
                    stats["users_created" if created else "users_updated"] += 1
                except (ValueError, sqlite3.Error) as e:
                    email = user_data.get("email", "unnamed") if isinstance(user_data, dict) else "invalid"
                    stats["errors"].append(f"Failed to import user '{email}': {e}")

            for project_data in projects:
                try:
                    project_id, created = _import_project(cursor, project_data, current_time_str)
                    stats["projects_created" if created else "projects_updated"] += 1
                except (ValueError, sqlite3.Error) as e:
                    name = project_data.get("name", "unnamed") if isinstance(project_data, dict) else "invalid"
                    stats["errors"].append(f"Failed to import project '{name}': {e}")
                    continue

                for member_data in project_data.get("members") or []:
                    try:
                        if _import_member(cursor, member_data, project_id, current_time_str):
                            stats["members_added"] += 1
                    except (ValueError, sqlite3.Error) as e:
                        email = member_data.get("email", "unnamed") if isinstance(member_data, dict) else "invalid"
                        stats["errors"].append(
                            f"Failed to add member '{email}' to '{project_data['name']}': {e}")

                for task_data in project_data.get("tasks") or []:
                    try:
                        created = _import_task(cursor, task_data, project_id, current_time_str)
                        stats["tasks_created" if created else "tasks_updated"] += 1
                    except (ValueError, sqlite3.Error) as e:
                        title = task_data.get("title", "unnamed") if isinstance(task_data, dict) else "invalid"
                        stats["errors"].append(f"Failed to import task '{title}': {e}")

            cursor.execute("COMMIT")
        except Exception as e:
            cursor.execute("ROLLBACK")
            logger.error(f"Import transaction failed: {e}")
            raise RuntimeError(f"Import transaction failed: {e}")

    logger.info(
        f"Import finished: {stats['users_created']}+{stats['users_updated']} users, "
        f"{stats['projects_created']}+{stats['projects_updated']} projects, "
        f"{stats['tasks_created']}+{stats['tasks_updated']} tasks, {len(stats['errors'])} errors"
    )
    return stats


def _import_user(db: ProjectDatabase, cursor: sqlite3.Cursor, user_data: Dict[str, Any],
                 current_time_str: str) -> bool:
    """Upsert one user by e-mail; returns True when created."""
    if not isinstance(user_data, dict):
        raise ValueError("User data must be a dictionary")
    email = user_data.get("email")
    name = user_data.get("name")
    if not email:
        raise ValueError("User must have 'email' field")
    email = str(email).strip().lower()
    role = _enum_value(UserRole, user_data.get("role"), "role")
    password = user_data.get("password")

    # Same connection, so rows written earlier in this import are visible
    existing = db.get_user_by_email(email, include_password_hash=True)
    if not existing:
        if not name:
            raise ValueError("User must have 'name' field")
        cursor.execute("""
            INSERT INTO users (name, email, password_hash, role, avatar, department, created_at, updated_at)
            VALUES (?, ?, ?, COALESCE(?, 'member'), ?, ?, ?, ?)
        """, (name, email, hash_password(str(password)) if password else None, role,
              user_data.get("avatar"), user_data.get("department"),
              current_time_str, current_time_str))
        return True

    user_id, password_hash = existing["id"], existing["password_hash"]
    fields = {
        "name": name,
        "role": role,
        "avatar": user_data.get("avatar"),
        "department": user_data.get("department"),
    }
    # Re-hash only when the password actually changed
    if password and not verify_password(str(password), password_hash):
        fields["password_hash"] = hash_password(str(password))
    _apply_update(cursor, "users", user_id, fields, current_time_str)
    return False


def _import_project(cursor: sqlite3.Cursor, project_data: Dict[str, Any],
                    current_time_str: str) -> tuple:
    """Upsert one project by name; returns (project_id, created)."""
    if not isinstance(project_data, dict):
        raise ValueError("Project data must be a dictionary")
    name = project_data.get("name")
    if not name:
        raise ValueError("Project must have 'name' field")

    fields = {
        "description": project_data.get("description"),
        "status": _enum_value(ProjectStatus, project_data.get("status"), "status"),
        "priority": _enum_value(Priority, project_data.get("priority"), "priority"),
        "start_date": _date_value(project_data.get("start_date"), "start_date"),
        "end_date": _date_value(project_data.get("end_date"), "end_date"),
        "budget": project_data.get("budget"),
        "owner_id": _user_id_by_email(cursor, project_data.get("owner"), "owner"),
    }

    cursor.execute("SELECT id FROM projects WHERE name = ? ORDER BY id LIMIT 1", (name,))
    existing = cursor.fetchone()
    if existing:
        _apply_update(cursor, "projects", existing[0], fields, current_time_str)
        project_id, created = existing[0], False
    else:
        cursor.execute("""
            INSERT INTO projects (name, description, status, priority, start_date, end_date,
                                  budget, owner_id, created_at, updated_at)
            VALUES (?, ?, COALESCE(?, 'planning'), COALESCE(?, 'medium'), ?, ?, ?, ?, ?, ?)
        """, (name, fields["description"], fields["status"], fields["priority"],
              fields["start_date"], fields["end_date"], fields["budget"], fields["owner_id"],
              current_time_str, current_time_str))
        project_id, created = cursor.lastrowid, True

    if fields["owner_id"] is not None:
        cursor.execute("""
            INSERT INTO project_members (project_id, user_id, role, joined_at)
            VALUES (?, ?, 'owner', ?)
            ON CONFLICT (project_id, user_id) DO UPDATE SET role = 'owner'
        """, (project_id, fields["owner_id"], current_time_str))
    return project_id, created


def _import_member(cursor: sqlite3.Cursor, member_data: Dict[str, Any], project_id: int,
                   current_time_str: str) -> bool:
    """Add a member if missing; existing memberships keep their role."""
    if not isinstance(member_data, dict):
        raise ValueError("Member data must be a dictionary")
    user_id = _user_id_by_email(cursor, member_data.get("email"), "member")
    if user_id is None:
        raise ValueError("Member must have 'email' field")
    role = _enum_value(MemberRole, member_data.get("role"), "role") or "member"
    cursor.execute("""
        INSERT OR IGNORE INTO project_members (project_id, user_id, role, joined_at)
        VALUES (?, ?, ?, ?)
    """, (project_id, user_id, role, current_time_str))
    return cursor.rowcount > 0


def _import_task(cursor: sqlite3.Cursor, task_data: Dict[str, Any], project_id: int,
                 current_time_str: str) -> bool:
    """Upsert one task by (project, title); returns True when created."""
    if not isinstance(task_data, dict):
        raise ValueError("Task data must be a dictionary")
    title = task_data.get("title")
    if not title:
        raise ValueError("Task must have 'title' field")

    fields = {
        "description": task_data.get("description"),
        "status": _enum_value(TaskStatus, task_data.get("status"), "status"),
        "priority": _enum_value(Priority, task_data.get("priority"), "priority"),
        "assignee_id": _user_id_by_email(cursor, task_data.get("assignee"), "assignee"),
        "due_date": _date_value(task_data.get("due_date"), "due_date"),
        "estimated_hours": task_data.get("estimated_hours"),
        "actual_hours": task_data.get("actual_hours"),
    }

    cursor.execute("SELECT id FROM tasks WHERE project_id = ? AND title = ? ORDER BY id LIMIT 1",
                   (project_id, title))
    existing = cursor.fetchone()
    if existing:
        _apply_update(cursor, "tasks", existing[0], fields, current_time_str)
        return False

    cursor.execute("""
        INSERT INTO tasks (project_id, title, description, status, priority, assignee_id,
                           due_date, estimated_hours, actual_hours, created_at, updated_at)
        VALUES (?, ?, ?, COALESCE(?, 'todo'), COALESCE(?, 'medium'), ?, ?, ?, ?, ?, ?)
    """, (project_id, title, fields["description"], fields["status"], fields["priority"],
          fields["assignee_id"], fields["due_date"], fields["estimated_hours"],
          fields["actual_hours"], current_time_str, current_time_str))
    return True


def import_from_file(db: ProjectDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """
    Import from a YAML file with error handling.

    Args:
        db: ProjectDatabase instance
        yaml_file_path: Path to YAML file

    Returns:
        Dict with import results
    """
    try:
        with open(yaml_file_path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_data(db, yaml_data)
