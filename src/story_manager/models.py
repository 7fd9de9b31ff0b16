"""
Pydantic models and result helpers for the Story Manager core.

Holds the two-tier task shapes (root tasks and subtasks), the request models
validated by MCP tools and API endpoints, and the structured result helpers
used to report expected business outcomes (not found, conflict, not owner,
invalid state) without raising.
"""

from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator


class ErrorKind(str, Enum):
    """Expected, recoverable failure kinds returned to callers."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    NOT_OWNER = "not_owner"
    INVALID_STATE = "invalid_state"


class StoryStatus(str, Enum):
    DRAFT = "draft"
    READY_FOR_DEV = "ready-for-dev"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"


STORY_STATUSES = [status.value for status in StoryStatus]


class VersionedEntity(str, Enum):
    """Entity kinds that support snapshots."""

    EPIC = "epic"
    STORY = "story"
    PLANNING_DOC = "planning_doc"


def success_result(**data) -> Dict[str, Any]:
    """Create a standardized success result dictionary."""
    return {"success": True, **data}


def error_result(kind: ErrorKind, message: str, **context) -> Dict[str, Any]:
    """Create a standardized business-error result dictionary."""
    return {"success": False, "error": kind.value, "message": message, **context}


# Task tree shapes


class Subtask(BaseModel):
    """Second-tier task; always owned by exactly one root task."""

    idx: int
    description: str
    done: bool = False
    completed_at: Optional[str] = None


class RootTask(BaseModel):
    """First-tier task of a story."""

    idx: int
    description: str
    done: bool = False
    completed_at: Optional[str] = None
    is_review_followup: bool = False
    severity: Optional[str] = None
    subtasks: List[Subtask] = Field(default_factory=list)


class TaskProgress(BaseModel):
    done: int
    total: int

    @property
    def all_done(self) -> bool:
        return self.done == self.total


# Request models


class AcceptanceCriterion(BaseModel):
    criterion: str = Field(min_length=1)
    met: bool = False


class NewTask(BaseModel):
    """Root task as supplied by a caller creating a story or adding tasks."""

    description: str = Field(min_length=1)
    subtasks: List[str] = Field(default_factory=list)

    @field_validator("subtasks")
    @classmethod
    def validate_subtasks(cls, v):
        for item in v:
            if not isinstance(item, str) or not item.strip():
                raise ValueError("Subtask descriptions must be non-empty strings")
        return v


class FollowUpTask(BaseModel):
    """Review follow-up task appended after an existing tree."""

    description: str = Field(min_length=1)
    severity: Optional[str] = Field(None, max_length=50)


class CreateStoryRequest(BaseModel):
    project_id: str = Field(min_length=1)
    epic_number: int = Field(ge=0)
    key: str = Field(min_length=1, max_length=100)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    acceptance_criteria: List[AcceptanceCriterion] = Field(default_factory=list)
    tasks: List[NewTask] = Field(default_factory=list)
    dev_notes: Optional[str] = None

    @field_validator("key")
    @classmethod
    def validate_key(cls, v):
        if ":" in v:
            raise ValueError("Story key cannot contain ':'")
        return v.strip()


class UpdateStoryRequest(BaseModel):
    """Partial story update; omitted fields are left untouched."""

    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[StoryStatus] = None
    epic_number: Optional[int] = Field(None, ge=0)
    expected_updated_at: Optional[str] = None

    def changed_fields(self) -> Dict[str, Any]:
        fields = self.model_dump(exclude_none=True, exclude={"expected_updated_at", "epic_number"})
        if "status" in fields:
            fields["status"] = self.status.value
        return fields


class ReserveTaskRequest(BaseModel):
    story_id: str = Field(min_length=1)
    task_idx: int = Field(ge=1)
    agent: str
    ttl_seconds: int = Field(1800, ge=1, le=86400)

    @field_validator("agent")
    @classmethod
    def validate_agent(cls, v):
        if not v or not v.strip():
            raise ValueError("Agent ID cannot be empty")
        return v.strip()


class ReleaseTaskRequest(BaseModel):
    agent: str

    @field_validator("agent")
    @classmethod
    def validate_agent(cls, v):
        if not v or not v.strip():
            raise ValueError("Agent ID cannot be empty")
        return v.strip()


class LeaseRequest(BaseModel):
    """Body of the HTTP reservation endpoint."""

    agent: str
    ttl_seconds: int = Field(1800, ge=1, le=86400)

    @field_validator("agent")
    @classmethod
    def validate_agent(cls, v):
        if not v or not v.strip():
            raise ValueError("Agent ID cannot be empty")
        return v.strip()


# Response models


class HealthResponse(BaseModel):
    status: str
    database_connected: bool
    active_websocket_connections: int
    expired_reservations_swept: int
    timestamp: str


class ReservationResponse(BaseModel):
    success: bool
    story_id: Optional[str] = None
    task_idx: Optional[int] = None
    agent: Optional[str] = None
    expires_at: Optional[str] = None
    error: Optional[str] = None
