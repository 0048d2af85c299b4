"""
Pydantic models for Project Hub API request validation.

Provides the status/priority/role vocabularies shared by the database and
HTTP layers, request bodies for every resource, and helpers that build the
standard JSON envelope returned by all endpoints.
"""

import re
from datetime import date
from enum import Enum
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .scheduling import normalize_event_time, normalize_recurrence_rule


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_REGISTER_PASSWORD_LENGTH = 6


class ProjectStatus(str, Enum):
    """Lifecycle states of a project."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    """Priority vocabulary shared by projects and tasks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(str, Enum):
    """Board columns a task moves through."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"


class MemberRole(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    MEMBER = "member"


class NotificationType(str, Enum):
    """Kinds of inbox entries produced by other actions."""

    TASK_ASSIGNED = "task_assigned"
    TASK_COMMENT = "task_comment"
    TASK_DUE = "task_due"
    PROJECT_INVITE = "project_invite"
    EVENT_INVITE = "event_invite"
    MENTION = "mention"


class EventType(str, Enum):
    MEETING = "meeting"
    TASK = "task"
    MILESTONE = "milestone"
    REMINDER = "reminder"
    HOLIDAY = "holiday"
    CUSTOM = "custom"


class EventEntityType(str, Enum):
    """What a calendar event is attached to, if anything."""

    PROJECT = "project"
    TASK = "task"
    USER = "user"
    NONE = "none"


class ParticipantStatus(str, Enum):
    """RSVP state of an event participant."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"


class SessionEventKind(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"


def _validate_calendar_date(value: Optional[str]) -> Optional[str]:
    """Accept YYYY-MM-DD (or an ISO timestamp, truncated to its date)."""
    if value is None or value == "":
        return None
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD")


def _validate_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email address")
    return value


def _reject_null(value, field_name: str):
    # Partial updates may omit a NOT NULL column but never clear it
    if value is None:
        raise ValueError(f"{field_name} cannot be null")
    return value


def _strip_required(value: str, field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{field_name} cannot be empty")
    return str(value).strip()


# Projects


class ProjectCreate(BaseModel):
    """Request model for creating a project."""

    name: str = Field(max_length=200, description="Project name")
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.PLANNING
    priority: Priority = Priority.MEDIUM
    start_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    end_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    budget: Optional[float] = Field(None, ge=0)
    owner_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Project name")

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_dates(cls, v):
        return _validate_calendar_date(v)

    @model_validator(mode="after")
    def validate_timeline(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ProjectUpdate(BaseModel):
    """Partial update; only fields present in the body are written."""

    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[Priority] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    budget: Optional[float] = Field(None, ge=0)
    owner_id: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            raise ValueError("Project name cannot be null")
        return _strip_required(v, "Project name")

    @field_validator("status", "priority")
    @classmethod
    def validate_not_null(cls, v, info):
        return _reject_null(v, info.field_name)

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_dates(cls, v):
        return _validate_calendar_date(v)


class MemberAdd(BaseModel):
    user_id: int
    role: MemberRole = MemberRole.MEMBER


# Tasks


class TaskCreate(BaseModel):
    """Request model for creating a task inside a project."""

    project_id: int
    title: str = Field(max_length=200)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: Priority = Priority.MEDIUM
    assignee_id: Optional[int] = None
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = Field(None, ge=0)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Task title")

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return _validate_calendar_date(v)


class TaskUpdate(BaseModel):
    project_id: Optional[int] = None
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[Priority] = None
    assignee_id: Optional[int] = None
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if v is None:
            raise ValueError("Task title cannot be null")
        return _strip_required(v, "Task title")

    @field_validator("status", "priority")
    @classmethod
    def validate_not_null(cls, v, info):
        return _reject_null(v, info.field_name)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return _validate_calendar_date(v)


class CommentCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        return _strip_required(v, "Comment content")


# Users


class UserCreate(BaseModel):
    """Administrative user creation."""

    name: str = Field(max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(min_length=1)
    role: UserRole = UserRole.MEMBER
    avatar: Optional[str] = Field(None, max_length=500)
    department: Optional[str] = Field(None, max_length=100)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Name")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _validate_email(v)


class RegisterRequest(BaseModel):
    """Self-registration; the role is always member."""

    name: str = Field(max_length=100)
    email: str = Field(max_length=255)
    password: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Name")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _validate_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        if len(v) < MIN_REGISTER_PASSWORD_LENGTH:
            raise ValueError(
                f"Password must be at least {MIN_REGISTER_PASSWORD_LENGTH} characters"
            )
        return v


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=255)
    password: Optional[str] = Field(None, min_length=1)
    role: Optional[UserRole] = None
    avatar: Optional[str] = Field(None, max_length=500)
    department: Optional[str] = Field(None, max_length=100)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            raise ValueError("Name cannot be null")
        return _strip_required(v, "Name")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        if v is None:
            raise ValueError("Email cannot be null")
        return _validate_email(v)

    @field_validator("password", "role")
    @classmethod
    def validate_not_null(cls, v, info):
        return _reject_null(v, info.field_name)


class SessionEvent(BaseModel):
    event: SessionEventKind


# Calendar


class CalendarEventCreate(BaseModel):
    """
    Request model for creating or fully replacing a calendar event.

    Times are normalized to UTC ``YYYY-MM-DDTHH:MM:SSZ``. ``participants`` is a
    list of user IDs; on update, omitting it leaves the current participants
    untouched.
    """

    title: str = Field(max_length=200)
    description: Optional[str] = None
    start_time: str
    end_time: str
    all_day: bool = False
    event_type: EventType
    entity_type: EventEntityType = EventEntityType.NONE
    entity_id: Optional[Union[str, int]] = None
    project_id: Optional[int] = None
    location: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, max_length=20)
    recurrence_rule: Optional[str] = Field(None, max_length=500)
    participants: Optional[List[int]] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Event title")

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return normalize_event_time(v)

    @field_validator("entity_id")
    @classmethod
    def validate_entity_id(cls, v):
        return None if v is None or v == "" else str(v)

    @field_validator("recurrence_rule")
    @classmethod
    def validate_recurrence_rule(cls, v):
        return normalize_recurrence_rule(v)

    @field_validator("participants")
    @classmethod
    def validate_participants(cls, v):
        if v is None:
            return None
        # Preserve order, drop duplicates
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def validate_interval(self):
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class RsvpRequest(BaseModel):
    status: ParticipantStatus
    response_note: Optional[str] = Field(None, max_length=500)


# Activity & notifications


class ActivityCreate(BaseModel):
    """Request model for recording an audit entry directly."""

    action: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1)
    entity_type: str = Field(min_length=1, max_length=50)
    entity_id: Union[str, int]
    user_id: Union[str, int]
    user_name: Optional[str] = Field(None, max_length=100)
    ip_address: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=500)
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("entity_id", "user_id")
    @classmethod
    def validate_identifier(cls, v):
        if v is None or str(v).strip() == "":
            raise ValueError("Identifier cannot be empty")
        return str(v).strip()


class NotificationMarkRead(BaseModel):
    id: Optional[int] = None
    mark_all: bool = False

    @model_validator(mode="after")
    def validate_target(self):
        if not self.mark_all and self.id is None:
            raise ValueError("Provide a notification id or mark_all")
        return self


# Utility functions to create consistent envelopes
def create_success_response(
    data: Any = None, message: Optional[str] = None, **extra: Any
) -> Dict[str, Any]:
    """Create a standardized success envelope."""
    response: Dict[str, Any] = {"success": True, "data": data}
    if message:
        response["message"] = message
    response.update(extra)
    return response


def create_error_response(message: str) -> Dict[str, Any]:
    """Create a standardized error envelope."""
    return {"success": False, "error": message}
