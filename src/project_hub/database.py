"""
Project Hub Database Layer

Provides SQLite-based storage for projects, tasks, users, calendar events,
notifications and the activity log. Uses WAL mode with a single shared
connection guarded by a re-entrant lock, explicit transactions for
multi-statement writes, and parameterized SQL throughout.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, date, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Tuple, Type

from .models import (
    ProjectStatus, Priority, TaskStatus, UserRole, MemberRole,
    NotificationType, EventType, EventEntityType, ParticipantStatus,
)
from .monitoring import timed_query
from .scheduling import reconcile_participants

logger = logging.getLogger(__name__)

# Columns writable through the generic update helper
PROJECT_COLUMNS = (
    "name", "description", "status", "priority", "start_date", "end_date",
    "budget", "owner_id",
)
TASK_COLUMNS = (
    "project_id", "title", "description", "status", "priority", "assignee_id",
    "due_date", "estimated_hours", "actual_hours",
)
USER_COLUMNS = ("name", "email", "password_hash", "role", "avatar", "department")
EVENT_COLUMNS = (
    "title", "description", "start_time", "end_time", "all_day", "event_type",
    "entity_type", "entity_id", "project_id", "location", "color", "recurrence_rule",
)
USER_PUBLIC_FIELDS = "id, name, email, role, avatar, department, created_at, updated_at"

PRIORITY_ORDER_SQL = """
    CASE {col} WHEN 'urgent' THEN 0 WHEN 'high' THEN 1
               WHEN 'medium' THEN 2 WHEN 'low' THEN 3 ELSE 4 END
"""


def _check_in(column: str, vocabulary: Type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in vocabulary)
    return f"CHECK ({column} IN ({values}))"


def _parse_json(text: Optional[str]) -> Any:
    if text is None or text == "":
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return {"_raw": text, "_parse_error": True}


def _dump_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


class ProjectDatabase:
    """
    SQLite database for the project management service.

    Features:
    - WAL mode for concurrent read/write access
    - Foreign keys with CASCADE / SET NULL for hierarchical cleanup
    - Thread-safe operations through a single connection and RLock
    - Explicit BEGIN/COMMIT transactions for multi-row writes
    """

    def __init__(self, db_path: str):
        """
        Initialize ProjectDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        # Ensure database directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure PRAGMAs and create the schema.

        Args:
            drop_existing: If True, drops all existing tables for clean slate initialization
        """
        try:
            # Autocommit mode; multi-statement writes use _transaction()
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False
            )

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create database schema with indexes for the list/filter queries."""
        cursor = self._connection.cursor()

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                password_hash TEXT,
                role TEXT NOT NULL DEFAULT 'member' {_check_in('role', UserRole)},
                avatar TEXT,
                department TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'planning' {_check_in('status', ProjectStatus)},
                priority TEXT NOT NULL DEFAULT 'medium' {_check_in('priority', Priority)},
                start_date TEXT,
                end_date TEXT,
                budget REAL CHECK (budget IS NULL OR budget >= 0),
                owner_id INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (owner_id) REFERENCES users (id) ON DELETE SET NULL
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS project_members (
                project_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                role TEXT NOT NULL DEFAULT 'member' {_check_in('role', MemberRole)},
                joined_at TEXT NOT NULL,
                PRIMARY KEY (project_id, user_id),
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'todo' {_check_in('status', TaskStatus)},
                priority TEXT NOT NULL DEFAULT 'medium' {_check_in('priority', Priority)},
                assignee_id INTEGER,
                due_date TEXT,
                estimated_hours REAL CHECK (estimated_hours IS NULL OR estimated_hours >= 0),
                actual_hours REAL CHECK (actual_hours IS NULL OR actual_hours >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                FOREIGN KEY (assignee_id) REFERENCES users (id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS comments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL {_check_in('type', NotificationType)},
                title TEXT NOT NULL,
                content TEXT,
                link TEXT,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS calendar_events (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                all_day INTEGER NOT NULL DEFAULT 0,
                event_type TEXT NOT NULL DEFAULT 'custom' {_check_in('event_type', EventType)},
                entity_type TEXT NOT NULL DEFAULT 'none' {_check_in('entity_type', EventEntityType)},
                entity_id TEXT,
                project_id INTEGER,
                location TEXT,
                color TEXT,
                recurrence_rule TEXT,
                created_by INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE SET NULL,
                FOREIGN KEY (created_by) REFERENCES users (id) ON DELETE SET NULL,
                CONSTRAINT event_interval CHECK (end_time >= start_time)
            )
        """)

        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS event_participants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending' {_check_in('status', ParticipantStatus)},
                response_note TEXT,
                responded_at TEXT,
                UNIQUE (event_id, user_id),
                FOREIGN KEY (event_id) REFERENCES calendar_events (id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
            )
        """)

        # Audit rows outlive the entities they describe, so no foreign keys here
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS activity_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                description TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                user_id TEXT,
                user_name TEXT,
                ip_address TEXT,
                user_agent TEXT,
                old_values TEXT,
                new_values TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                CONSTRAINT json_old_values CHECK (old_values IS NULL OR json_valid(old_values)),
                CONSTRAINT json_new_values CHECK (new_values IS NULL OR json_valid(new_values)),
                CONSTRAINT json_metadata CHECK (metadata IS NULL OR json_valid(metadata))
            )
        """)

        for statement in (
            "CREATE INDEX IF NOT EXISTS idx_projects_status_priority ON projects (status, priority)",
            "CREATE INDEX IF NOT EXISTS idx_projects_owner ON projects (owner_id)",
            "CREATE INDEX IF NOT EXISTS idx_members_user ON project_members (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks (project_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks (assignee_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (due_date) WHERE due_date IS NOT NULL",
            "CREATE INDEX IF NOT EXISTS idx_comments_task ON comments (task_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_notifications_user_read ON notifications (user_id, is_read, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_events_range ON calendar_events (start_time, end_time)",
            "CREATE INDEX IF NOT EXISTS idx_events_project ON calendar_events (project_id)",
            "CREATE INDEX IF NOT EXISTS idx_participants_user ON event_participants (user_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_entity ON activity_logs (entity_type, entity_id)",
            "CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_logs (created_at DESC)",
        ):
            cursor.execute(statement)

    def _drop_existing_tables(self) -> None:
        """Drop all tables in dependency order."""
        cursor = self._connection.cursor()
        for table in (
            "activity_logs", "event_participants", "calendar_events", "notifications",
            "comments", "tasks", "project_members", "projects", "users",
        ):
            cursor.execute(f"DROP TABLE IF EXISTS {table}")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        cursor = self._connection.cursor()
        try:
            cursor.execute("BEGIN")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def _get_current_time_str(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    @staticmethod
    def _rows_to_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_dict(cursor: sqlite3.Cursor) -> Optional[Dict[str, Any]]:
        row = cursor.fetchone()
        if row is None:
            return None
        return dict(zip([col[0] for col in cursor.description], row))

    def _update_row(self, table: str, row_id: Any, fields: Dict[str, Any],
                    allowed: Iterable[str]) -> bool:
        """
        Apply a partial update to one row.

        Unknown keys are ignored; ``updated_at`` is always refreshed.

        Returns:
            True if the row exists, False otherwise
        """
        allowed = set(allowed)
        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            if column in allowed:
                assignments.append(f"{column} = ?")
                params.append(value.value if isinstance(value, Enum) else value)
        assignments.append("updated_at = ?")
        params.append(self._get_current_time_str())
        params.append(row_id)

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
                params
            )
            return cursor.rowcount > 0

    # User Methods

    def create_user(self, name: str, email: str, password_hash: Optional[str] = None,
                    role: str = "member", avatar: Optional[str] = None,
                    department: Optional[str] = None) -> int:
        """Create a user and return its ID.
        Raises sqlite3.IntegrityError if the email is already registered."""
        now = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO users (name, email, password_hash, role, avatar, department,
                                   created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (name, email, password_hash, role, avatar, department, now, now),
            )
            return cursor.lastrowid

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Return a user without credential columns, or None."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT {USER_PUBLIC_FIELDS} FROM users WHERE id = ?", (user_id,))
            return self._row_to_dict(cursor)

    def get_user_by_email(self, email: str, include_password_hash: bool = False) -> Optional[Dict[str, Any]]:
        fields = USER_PUBLIC_FIELDS + (", password_hash" if include_password_hash else "")
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT {fields} FROM users WHERE email = ?", (email,))
            return self._row_to_dict(cursor)

    def email_exists(self, email: str, exclude_user_id: Optional[int] = None) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            if exclude_user_id is None:
                cursor.execute("SELECT 1 FROM users WHERE email = ?", (email,))
            else:
                cursor.execute("SELECT 1 FROM users WHERE email = ? AND id != ?",
                               (email, exclude_user_id))
            return cursor.fetchone() is not None

    def find_missing_users(self, user_ids: Iterable[int]) -> List[int]:
        """Return the subset of ``user_ids`` with no matching user."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT id FROM users WHERE id IN ({placeholders})", ids)
            found = {row[0] for row in cursor.fetchall()}
        return [uid for uid in ids if uid not in found]

    def list_users(self, role: Optional[str] = None, search: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List users with membership and assignment counts.

        Args:
            role: Optional role filter
            search: Optional substring matched against name and email
            limit: Optional limit on number of results returned

        Returns:
            List of user dictionaries including project_count and task_count
        """
        query = f"""
            SELECT {', '.join('u.' + f.strip() for f in USER_PUBLIC_FIELDS.split(','))},
                   (SELECT COUNT(*) FROM project_members pm WHERE pm.user_id = u.id) AS project_count,
                   (SELECT COUNT(*) FROM tasks t WHERE t.assignee_id = u.id) AS task_count
            FROM users u
            WHERE 1=1
        """
        params: List[Any] = []
        if role:
            query += " AND u.role = ?"
            params.append(role)
        if search:
            query += " AND (u.name LIKE ? OR u.email LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])
        query += " ORDER BY u.created_at DESC, u.id DESC"
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return self._rows_to_dicts(cursor)

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> bool:
        return self._update_row("users", user_id, fields, USER_COLUMNS)

    def delete_user(self, user_id: int) -> bool:
        """Delete a user; owned projects and assigned tasks are detached, not removed."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    # Project Methods

    _PROJECT_SELECT = """
        SELECT p.*,
               u.name AS owner_name,
               (SELECT COUNT(*) FROM tasks WHERE project_id = p.id) AS task_count,
               (SELECT COUNT(*) FROM tasks WHERE project_id = p.id AND status = 'done') AS completed_tasks
        FROM projects p
        LEFT JOIN users u ON p.owner_id = u.id
    """

    def create_project(self, data: Dict[str, Any]) -> int:
        """
        Create a project and return its ID.

        The owner, when given, is enrolled as a member with the ``owner`` role
        in the same transaction.
        """
        now = self._get_current_time_str()
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO projects (name, description, status, priority, start_date,
                                          end_date, budget, owner_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        data["name"], data.get("description"),
                        data.get("status") or "planning", data.get("priority") or "medium",
                        data.get("start_date"), data.get("end_date"), data.get("budget"),
                        data.get("owner_id"), now, now,
                    ),
                )
                project_id = cursor.lastrowid
                if data.get("owner_id") is not None:
                    cursor.execute(
                        """
                        INSERT INTO project_members (project_id, user_id, role, joined_at)
                        VALUES (?, ?, 'owner', ?)
                        """,
                        (project_id, data["owner_id"], now),
                    )
                return project_id

    def get_project(self, project_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(self._PROJECT_SELECT + " WHERE p.id = ?", (project_id,))
            return self._row_to_dict(cursor)

    @timed_query("list_projects")
    def list_projects(self, status: Optional[str] = None, priority: Optional[str] = None,
                      owner_id: Optional[int] = None, search: Optional[str] = None,
                      limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List projects with optional filters, newest first.

        Args:
            status: Optional status filter
            priority: Optional priority filter
            owner_id: Optional owner filter
            search: Optional substring matched against name and description
            limit: Optional limit on number of results returned

        Returns:
            List of project dictionaries with owner_name, task_count, completed_tasks
        """
        query = self._PROJECT_SELECT + " WHERE 1=1"
        params: List[Any] = []
        if status:
            query += " AND p.status = ?"
            params.append(status)
        if priority:
            query += " AND p.priority = ?"
            params.append(priority)
        if owner_id is not None:
            query += " AND p.owner_id = ?"
            params.append(owner_id)
        if search:
            query += " AND (p.name LIKE ? OR p.description LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])
        query += " ORDER BY p.created_at DESC, p.id DESC"
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return self._rows_to_dicts(cursor)

    def update_project(self, project_id: int, fields: Dict[str, Any]) -> bool:
        return self._update_row("projects", project_id, fields, PROJECT_COLUMNS)

    def delete_project(self, project_id: int) -> Dict[str, Any]:
        """
        Delete a project and its tasks and memberships via CASCADE DELETE.

        Args:
            project_id: ID of the project to delete

        Returns:
            Dict with success status and deletion statistics
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT name FROM projects WHERE id = ?", (project_id,))
            row = cursor.fetchone()
            if not row:
                return {"success": False, "error": f"Project {project_id} not found"}
            project_name = row[0]

            cursor.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM tasks WHERE project_id = ?),
                    (SELECT COUNT(*) FROM project_members WHERE project_id = ?)
                """,
                (project_id, project_id),
            )
            task_count, member_count = cursor.fetchone()

            cursor.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            if cursor.rowcount == 0:
                return {"success": False, "error": f"Project {project_id} not found or already deleted"}

            return {
                "success": True,
                "project_id": project_id,
                "project_name": project_name,
                "cascaded_tasks": task_count,
                "cascaded_members": member_count,
                "message": f"Deleted project '{project_name}' and {task_count} tasks",
            }

    def get_project_task_stats(self, project_id: int, today: Optional[date] = None) -> Dict[str, Any]:
        """Task totals, completion, overdue count and hour sums for one project."""
        today_str = (today or date.today()).isoformat()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END), 0) AS completed,
                       COALESCE(SUM(CASE WHEN status != 'done' AND due_date IS NOT NULL
                                          AND due_date < ? THEN 1 ELSE 0 END), 0) AS overdue,
                       COALESCE(SUM(estimated_hours), 0) AS estimated_hours,
                       COALESCE(SUM(actual_hours), 0) AS actual_hours
                FROM tasks WHERE project_id = ?
                """,
                (today_str, project_id),
            )
            return self._row_to_dict(cursor)

    def list_project_members(self, project_id: int) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT pm.project_id, pm.user_id, pm.role, pm.joined_at,
                       u.name AS user_name, u.email AS user_email
                FROM project_members pm
                JOIN users u ON pm.user_id = u.id
                WHERE pm.project_id = ?
                ORDER BY pm.joined_at ASC, pm.user_id ASC
                """,
                (project_id,),
            )
            return self._rows_to_dicts(cursor)

    def add_project_member(self, project_id: int, user_id: int, role: str = "member") -> bool:
        """
        Add a member or change an existing member's role.

        Returns:
            True when the user was newly added, False when only the role changed
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            )
            existed = cursor.fetchone() is not None
            cursor.execute(
                """
                INSERT INTO project_members (project_id, user_id, role, joined_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (project_id, user_id) DO UPDATE SET role = excluded.role
                """,
                (project_id, user_id, role, self._get_current_time_str()),
            )
            return not existed

    def remove_project_member(self, project_id: int, user_id: int) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            )
            return cursor.rowcount > 0

    # Task Methods

    _TASK_SELECT = """
        SELECT t.*, p.name AS project_name, u.name AS assignee_name
        FROM tasks t
        LEFT JOIN projects p ON t.project_id = p.id
        LEFT JOIN users u ON t.assignee_id = u.id
    """

    def create_task(self, data: Dict[str, Any]) -> int:
        """Create a task and return its ID.
        Raises sqlite3.IntegrityError if the project or assignee does not exist."""
        now = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO tasks (project_id, title, description, status, priority, assignee_id,
                                   due_date, estimated_hours, actual_hours, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["project_id"], data["title"], data.get("description"),
                    data.get("status") or "todo", data.get("priority") or "medium",
                    data.get("assignee_id"), data.get("due_date"),
                    data.get("estimated_hours"), data.get("actual_hours"), now, now,
                ),
            )
            return cursor.lastrowid

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(self._TASK_SELECT + " WHERE t.id = ?", (task_id,))
            return self._row_to_dict(cursor)

    @timed_query("list_tasks")
    def list_tasks(self, project_id: Optional[int] = None, status: Optional[str] = None,
                   priority: Optional[str] = None, assignee_id: Optional[int] = None,
                   search: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        List tasks with filtering, ordered by due date then priority.

        Undated tasks sort after dated ones; within a due date urgent comes first.
        """
        query = self._TASK_SELECT + " WHERE 1=1"
        params: List[Any] = []
        if project_id is not None:
            query += " AND t.project_id = ?"
            params.append(project_id)
        if status:
            query += " AND t.status = ?"
            params.append(status)
        if priority:
            query += " AND t.priority = ?"
            params.append(priority)
        if assignee_id is not None:
            query += " AND t.assignee_id = ?"
            params.append(assignee_id)
        if search:
            query += " AND (t.title LIKE ? OR t.description LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])
        query += (
            " ORDER BY t.due_date IS NULL, t.due_date ASC, "
            + PRIORITY_ORDER_SQL.format(col="t.priority")
            + ", t.id ASC"
        )
        if limit and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            return self._rows_to_dicts(cursor)

    def update_task(self, task_id: int, fields: Dict[str, Any]) -> bool:
        return self._update_row("tasks", task_id, fields, TASK_COLUMNS)

    def delete_task(self, task_id: int) -> Dict[str, Any]:
        """
        Delete a task and its comments.

        Returns:
            Dict with success status and deletion statistics
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT t.title, p.name FROM tasks t
                LEFT JOIN projects p ON t.project_id = p.id
                WHERE t.id = ?
                """,
                (task_id,),
            )
            row = cursor.fetchone()
            if not row:
                return {"success": False, "error": f"Task {task_id} not found"}
            task_title, project_name = row

            cursor.execute("SELECT COUNT(*) FROM comments WHERE task_id = ?", (task_id,))
            comment_count = cursor.fetchone()[0] or 0

            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            if cursor.rowcount == 0:
                return {"success": False, "error": f"Task {task_id} not found or already deleted"}

            return {
                "success": True,
                "task_id": task_id,
                "task_title": task_title,
                "project_name": project_name or "Unknown",
                "cascaded_comments": comment_count,
                "message": f"Deleted task '{task_title}' and {comment_count} comments",
            }

    # Comment Methods

    def list_comments(self, task_id: int) -> List[Dict[str, Any]]:
        """Comments for a task, newest first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT c.*, u.name AS user_name, u.avatar AS user_avatar
                FROM comments c
                LEFT JOIN users u ON c.user_id = u.id
                WHERE c.task_id = ?
                ORDER BY c.created_at DESC, c.id DESC
                """,
                (task_id,),
            )
            return self._rows_to_dicts(cursor)

    def create_comment(self, task_id: int, user_id: int, content: str) -> int:
        now = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO comments (task_id, user_id, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (task_id, user_id, content, now, now),
            )
            return cursor.lastrowid

    # Notification Methods

    def create_notification(self, user_id: int, notification_type: str, title: str,
                            content: Optional[str] = None, link: Optional[str] = None) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO notifications (user_id, type, title, content, link, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (user_id, notification_type, title, content, link, self._get_current_time_str()),
            )
            return cursor.lastrowid

    def list_notifications(self, user_id: int, unread_only: bool = False,
                           limit: int = 50) -> List[Dict[str, Any]]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        params: List[Any] = [user_id]
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            rows = self._rows_to_dicts(cursor)
        for row in rows:
            row["is_read"] = bool(row["is_read"])
        return rows

    def count_unread_notifications(self, user_id: int) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
            )
            return cursor.fetchone()[0]

    def mark_notification_read(self, user_id: int, notification_id: int) -> int:
        """Mark one of the user's notifications read; returns rows updated."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ? AND is_read = 0",
                (notification_id, user_id),
            )
            return cursor.rowcount

    def mark_all_notifications_read(self, user_id: int) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
                (user_id,),
            )
            return cursor.rowcount

    def delete_notification(self, user_id: int, notification_id: int) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM notifications WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            return cursor.rowcount > 0

    def create_due_notifications(self, window_days: int = 1,
                                 today: Optional[date] = None) -> List[int]:
        """
        Notify assignees of open tasks due on or before ``today + window_days``.

        Each (task, due date) pair is notified at most once; moving the due
        date produces a fresh reminder.

        Returns:
            IDs of the notifications created
        """
        horizon = ((today or date.today()) + timedelta(days=window_days)).isoformat()
        now = self._get_current_time_str()
        created: List[int] = []

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    SELECT t.id, t.title, t.due_date, t.assignee_id
                    FROM tasks t
                    WHERE t.status != 'done'
                      AND t.assignee_id IS NOT NULL
                      AND t.due_date IS NOT NULL
                      AND t.due_date <= ?
                      AND NOT EXISTS (
                          SELECT 1 FROM notifications n
                          WHERE n.user_id = t.assignee_id
                            AND n.type = 'task_due'
                            AND n.link = '/tasks/' || t.id
                            AND n.title = 'Task due ' || t.due_date
                      )
                    ORDER BY t.due_date ASC, t.id ASC
                    """,
                    (horizon,),
                )
                due_tasks = cursor.fetchall()
                for task_id, title, due_date, assignee_id in due_tasks:
                    cursor.execute(
                        """
                        INSERT INTO notifications (user_id, type, title, content, link, is_read, created_at)
                        VALUES (?, 'task_due', ?, ?, ?, 0, ?)
                        """,
                        (assignee_id, f"Task due {due_date}",
                         f"Task '{title}' is due on {due_date}", f"/tasks/{task_id}", now),
                    )
                    created.append(cursor.lastrowid)
        return created

    # Calendar Methods

    def _format_event(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row["all_day"] = bool(row.get("all_day"))
        return row

    def _participants_for(self, cursor: sqlite3.Cursor, event_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {event_id: [] for event_id in event_ids}
        if not event_ids:
            return grouped
        placeholders = ",".join("?" * len(event_ids))
        cursor.execute(
            f"""
            SELECT ep.id, ep.event_id, ep.user_id, u.name AS user_name, u.email AS user_email,
                   ep.status, ep.response_note, ep.responded_at
            FROM event_participants ep
            LEFT JOIN users u ON ep.user_id = u.id
            WHERE ep.event_id IN ({placeholders})
            ORDER BY ep.id ASC
            """,
            event_ids,
        )
        for participant in self._rows_to_dicts(cursor):
            grouped[participant["event_id"]].append(participant)
        return grouped

    _EVENT_SELECT = """
        SELECT ce.*, p.name AS project_name, u.name AS created_by_name
        FROM calendar_events ce
        LEFT JOIN projects p ON ce.project_id = p.id
        LEFT JOIN users u ON ce.created_by = u.id
    """

    def create_event(self, data: Dict[str, Any], participant_ids: Optional[List[int]] = None,
                     created_by: Optional[int] = None) -> str:
        """
        Insert an event and its participants atomically.

        Returns:
            Generated UUID of the new event
        """
        event_id = str(uuid.uuid4())
        now = self._get_current_time_str()
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO calendar_events (
                        id, title, description, start_time, end_time, all_day, event_type,
                        entity_type, entity_id, project_id, location, color, recurrence_rule,
                        created_by, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id, data["title"], data.get("description"),
                        data["start_time"], data["end_time"], 1 if data.get("all_day") else 0,
                        data["event_type"], data.get("entity_type") or "none",
                        data.get("entity_id"), data.get("project_id"), data.get("location"),
                        data.get("color"), data.get("recurrence_rule"), created_by, now, now,
                    ),
                )
                for user_id in participant_ids or []:
                    cursor.execute(
                        "INSERT INTO event_participants (event_id, user_id, status) VALUES (?, ?, 'pending')",
                        (event_id, user_id),
                    )
        return event_id

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        """Return one event with project/creator names and its participants."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(self._EVENT_SELECT + " WHERE ce.id = ?", (event_id,))
            event = self._row_to_dict(cursor)
            if event is None:
                return None
            event["participants"] = self._participants_for(cursor, [event_id])[event_id]
            return self._format_event(event)

    @timed_query("list_events")
    def list_events(self, range_start: str, range_end: str, project_id: Optional[int] = None,
                    user_id: Optional[int] = None, event_type: Optional[str] = None,
                    exclude_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        List events whose interval intersects ``[range_start, range_end]``.

        Args:
            range_start: Normalized inclusive lower bound
            range_end: Normalized inclusive upper bound
            project_id: Optional project filter
            user_id: Optional filter keeping events created by or involving the user
            event_type: Optional single event type
            exclude_types: Event types to leave out

        Returns:
            Events ordered by start time, each with its participants
        """
        query = self._EVENT_SELECT + " WHERE ce.start_time <= ? AND ce.end_time >= ?"
        params: List[Any] = [range_end, range_start]
        if project_id is not None:
            query += " AND ce.project_id = ?"
            params.append(project_id)
        if user_id is not None:
            query += """
                AND (ce.created_by = ? OR EXISTS (
                    SELECT 1 FROM event_participants ep
                    WHERE ep.event_id = ce.id AND ep.user_id = ?))
            """
            params.extend([user_id, user_id])
        if event_type:
            query += " AND ce.event_type = ?"
            params.append(event_type)
        if exclude_types:
            query += f" AND ce.event_type NOT IN ({','.join('?' * len(exclude_types))})"
            params.extend(exclude_types)
        query += " ORDER BY ce.start_time ASC, ce.end_time ASC"

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            events = self._rows_to_dicts(cursor)
            participants = self._participants_for(cursor, [e["id"] for e in events])
        for event in events:
            event["participants"] = participants[event["id"]]
            self._format_event(event)
        return events

    def update_event(self, event_id: str, data: Dict[str, Any],
                     participant_ids: Optional[List[int]] = None) -> Optional[Dict[str, List[int]]]:
        """
        Replace an event's fields and optionally reconcile its participants.

        Participants kept across the update retain their RSVP state.

        Returns:
            ``{"added": [...], "removed": [...]}`` or None if the event is missing
        """
        fields = {column: data.get(column) for column in EVENT_COLUMNS}
        fields["all_day"] = 1 if data.get("all_day") else 0
        fields["entity_type"] = fields.get("entity_type") or "none"
        fields["updated_at"] = self._get_current_time_str()
        assignments = ", ".join(f"{column} = ?" for column in fields)

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    f"UPDATE calendar_events SET {assignments} WHERE id = ?",
                    list(fields.values()) + [event_id],
                )
                if cursor.rowcount == 0:
                    return None
                added: List[int] = []
                removed: List[int] = []
                if participant_ids is not None:
                    cursor.execute(
                        "SELECT user_id FROM event_participants WHERE event_id = ?", (event_id,)
                    )
                    current = [row[0] for row in cursor.fetchall()]
                    added, removed = reconcile_participants(current, participant_ids)
                    for user_id in added:
                        cursor.execute(
                            "INSERT INTO event_participants (event_id, user_id, status) VALUES (?, ?, 'pending')",
                            (event_id, user_id),
                        )
                    for user_id in removed:
                        cursor.execute(
                            "DELETE FROM event_participants WHERE event_id = ? AND user_id = ?",
                            (event_id, user_id),
                        )
                return {"added": added, "removed": removed}

    def delete_event(self, event_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM calendar_events WHERE id = ?", (event_id,))
            return cursor.rowcount > 0

    def respond_to_event(self, event_id: str, user_id: int, status: str,
                         response_note: Optional[str] = None) -> bool:
        """Record a participant's RSVP; False if the user is not invited."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE event_participants
                SET status = ?, response_note = ?, responded_at = ?
                WHERE event_id = ? AND user_id = ?
                """,
                (status, response_note, self._get_current_time_str(), event_id, user_id),
            )
            return cursor.rowcount > 0

    # Activity Log Methods

    def _format_activity(self, row: Dict[str, Any]) -> Dict[str, Any]:
        for column in ("old_values", "new_values", "metadata"):
            row[column] = _parse_json(row.get(column))
        return row

    def add_activity(self, entry: Dict[str, Any]) -> int:
        """
        Insert an activity-log entry.

        Args:
            entry: Dict with the activity_logs columns; JSON columns as Python objects

        Returns:
            ID of the new entry
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO activity_logs (
                    action, description, entity_type, entity_id, user_id, user_name,
                    ip_address, user_agent, old_values, new_values, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry["action"], entry["description"], entry["entity_type"],
                    str(entry["entity_id"]),
                    None if entry.get("user_id") is None else str(entry["user_id"]),
                    entry.get("user_name"), entry.get("ip_address"), entry.get("user_agent"),
                    _dump_json(entry.get("old_values")), _dump_json(entry.get("new_values")),
                    _dump_json(entry.get("metadata")), self._get_current_time_str(),
                ),
            )
            return cursor.lastrowid

    def get_activity(self, activity_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM activity_logs WHERE id = ?", (activity_id,))
            row = self._row_to_dict(cursor)
        return self._format_activity(row) if row else None

    @timed_query("list_activity")
    def list_activity(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                      user_id: Optional[str] = None, action: Optional[str] = None,
                      start_date: Optional[str] = None, end_date: Optional[str] = None,
                      search: Optional[str] = None, page: int = 1,
                      limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """
        Page through the activity log, newest first.

        A date-only ``end_date`` includes the whole day.

        Returns:
            Tuple of (entries for the requested page, total matching entries)
        """
        conditions: List[str] = []
        params: List[Any] = []
        if entity_type:
            conditions.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            conditions.append("entity_id = ?")
            params.append(str(entity_id))
        if user_id:
            conditions.append("user_id = ?")
            params.append(str(user_id))
        if action:
            conditions.append("action = ?")
            params.append(action)
        if start_date:
            conditions.append("created_at >= ?")
            params.append(start_date)
        if end_date:
            conditions.append("created_at <= ?")
            params.append(end_date + "T23:59:59Z" if len(end_date) == 10 else end_date)
        if search:
            conditions.append("(description LIKE ? OR user_name LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM activity_logs {where_clause}", params)
            total = cursor.fetchone()[0]
            cursor.execute(
                f"""
                SELECT * FROM activity_logs {where_clause}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit],
            )
            rows = self._rows_to_dicts(cursor)
        return [self._format_activity(row) for row in rows], total

    # Search & Reporting

    @timed_query("search")
    def search(self, term: str, per_type: int = 5) -> List[Dict[str, Any]]:
        """
        Substring search across projects, tasks and users.

        Returns:
            Result dicts with type, id, title and subtitle
        """
        pattern = f"%{term}%"
        results: List[Dict[str, Any]] = []
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT id, name, description FROM projects
                WHERE name LIKE ? OR description LIKE ?
                ORDER BY id ASC LIMIT ?
                """,
                (pattern, pattern, per_type),
            )
            for project_id, name, description in cursor.fetchall():
                results.append({"type": "project", "id": project_id, "title": name,
                                "subtitle": description})

            cursor.execute(
                """
                SELECT t.id, t.title, p.name FROM tasks t
                LEFT JOIN projects p ON t.project_id = p.id
                WHERE t.title LIKE ? OR t.description LIKE ?
                ORDER BY t.id ASC LIMIT ?
                """,
                (pattern, pattern, per_type),
            )
            for task_id, title, project_name in cursor.fetchall():
                results.append({"type": "task", "id": task_id, "title": title,
                                "subtitle": project_name})

            cursor.execute(
                """
                SELECT id, name, email FROM users
                WHERE name LIKE ? OR email LIKE ?
                ORDER BY id ASC LIMIT ?
                """,
                (pattern, pattern, per_type),
            )
            for user_id, name, email in cursor.fetchall():
                results.append({"type": "user", "id": user_id, "title": name,
                                "subtitle": email})
        return results

    @timed_query("report")
    def get_report(self, days: int = 7) -> Dict[str, Any]:
        """Aggregate statistics for the reports dashboard."""
        since = (datetime.now(timezone.utc) - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._connection_lock:
            cursor = self._connection.cursor()

            def grouped(sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
                cursor.execute(sql, params)
                return self._rows_to_dicts(cursor)

            def scalar(sql: str) -> int:
                cursor.execute(sql)
                return cursor.fetchone()[0]

            return {
                "project_stats": {
                    "total": scalar("SELECT COUNT(*) FROM projects"),
                    "by_status": grouped(
                        "SELECT status, COUNT(*) AS count FROM projects GROUP BY status ORDER BY status"),
                },
                "task_stats": {
                    "total": scalar("SELECT COUNT(*) FROM tasks"),
                    "by_status": grouped(
                        "SELECT status, COUNT(*) AS count FROM tasks GROUP BY status ORDER BY status"),
                    "by_priority": grouped(
                        "SELECT priority, COUNT(*) AS count FROM tasks GROUP BY priority ORDER BY "
                        + PRIORITY_ORDER_SQL.format(col="priority")),
                },
                "user_stats": {
                    "total": scalar("SELECT COUNT(*) FROM users"),
                    "by_role": grouped(
                        "SELECT role, COUNT(*) AS count FROM users GROUP BY role ORDER BY role"),
                },
                "daily_tasks": grouped(
                    """
                    SELECT date(created_at) AS date,
                           COUNT(*) AS created,
                           SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END) AS completed
                    FROM tasks
                    WHERE created_at >= ?
                    GROUP BY date(created_at)
                    ORDER BY date
                    """,
                    (since,),
                ),
                "top_users": grouped(
                    """
                    SELECT u.id, u.name, COUNT(t.id) AS completed_tasks
                    FROM users u
                    LEFT JOIN tasks t ON u.id = t.assignee_id AND t.status = 'done'
                    GROUP BY u.id, u.name
                    ORDER BY completed_tasks DESC, u.name ASC
                    LIMIT 5
                    """
                ),
            }

    def count_entities(self) -> Dict[str, int]:
        """Row counts per table for the metrics endpoint."""
        counts = {}
        with self._connection_lock:
            cursor = self._connection.cursor()
            for table in ("users", "projects", "tasks", "comments", "calendar_events",
                          "notifications", "activity_logs"):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                counts[table] = cursor.fetchone()[0]
        return counts

    def ping(self) -> bool:
        with self._connection_lock:
            self._connection.execute("SELECT 1").fetchone()
        return True

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """
        Initialize database with clean slate - drops all existing tables first.

        Useful for fresh installations and tests requiring clean state.
        """
        if self._connection:
            self.close()
        self._initialize_database(drop_existing=True)
