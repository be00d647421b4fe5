"""
Pydantic models for kanban-sync API request/response validation.

Provides the board vocabulary (status columns, priorities, action types,
conflict resolution modes) and request bodies for task, board, lock and
conflict endpoints.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    TODO = "Todo"
    IN_PROGRESS = "In Progress"
    DONE = "Done"


class TaskPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    CONTRACTOR = "contractor"


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    ASSIGN = "assign"
    SMART_ASSIGN = "smart_assign"
    CONFLICT_RESOLVE_OVERWRITE = "conflict_resolve_overwrite"
    CONFLICT_RESOLVE_MERGE = "conflict_resolve_merge"


class ResolutionMode(str, Enum):
    OVERWRITE = "overwrite"
    MERGE = "merge"


# Fields a client may change on a task; everything else is server-owned.
MUTABLE_TASK_FIELDS = ("title", "description", "status", "priority", "assigned_user_id")

# Column names double as reserved task titles.
RESERVED_TITLES = tuple(status.value for status in TaskStatus)


def _strip_required(value: str, label: str) -> str:
    if value is None or not value.strip():
        raise ValueError(f"{label} cannot be empty")
    return value.strip()


class UserCreate(BaseModel):
    """Request model for registering a user for attribution."""
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    role: UserRole = UserRole.USER

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Name")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = _strip_required(v, "Email").lower()
        if "@" not in v:
            raise ValueError("Email must contain '@'")
        return v


class BoardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    owner_user_id: int

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _strip_required(v, "Board name")


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            return v
        return _strip_required(v, "Board name")


class TaskCreate(BaseModel):
    """Request model for creating a task on a board."""
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_user_id: Optional[int] = None
    board_id: int
    created_by_id: int

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _strip_required(v, "Title")


class TaskUpdate(BaseModel):
    """
    Request model for editing a task.

    Only fields present in the request body are changed. ``base_version`` is
    the task version the client last observed; leave it out for a
    version-unaware update. ``client_version`` is accepted as an alias.
    """
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_user_id: Optional[int] = None
    user_id: int
    base_version: Optional[int] = Field(None, ge=1)
    client_version: Optional[int] = Field(None, ge=1)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if v is None:
            return v
        return _strip_required(v, "Title")

    def proposed_fields(self) -> Dict[str, Any]:
        """Return the mutable fields the client explicitly sent, JSON-ready."""
        sent = self.model_dump(mode="json", exclude_unset=True)
        return {key: sent[key] for key in MUTABLE_TASK_FIELDS if key in sent}

    def expected_version(self) -> Optional[int]:
        return self.base_version if self.base_version is not None else self.client_version


class StatusChange(BaseModel):
    """Request model for a column move (drag and drop)."""
    status: TaskStatus
    user_id: int
    base_version: Optional[int] = Field(None, ge=1)


class ActorRequest(BaseModel):
    """Body for operations that only need the acting user."""
    user_id: int


class LockRequest(BaseModel):
    user_id: int
    user_name: Optional[str] = Field(None, max_length=255)


class ResolveConflictRequest(BaseModel):
    # Checked by ConflictResolver; an unknown mode is a 400, not a 422
    resolution: str
    user_id: int


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


class MetricsResponse(BaseModel):
    """Response model for the operational metrics endpoint."""
    connections: Dict[str, Any]
    locks: Dict[str, Any]
    conflicts: Dict[str, Any]
    system: Dict[str, Any]


class LockStatusResponse(BaseModel):
    locked: bool
    owner: bool = False
    task_id: int
    locked_by: Optional[str] = None
    locked_by_id: Optional[int] = None
    locked_at: Optional[str] = None
    lock_age_seconds: Optional[float] = None
    message: str


class BoardView(BaseModel):
    """Board with tasks grouped by status column."""
    board: Dict[str, Any]
    tasks: Dict[str, List[Dict[str, Any]]]
