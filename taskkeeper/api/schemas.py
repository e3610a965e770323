from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator

from taskkeeper.storage.models import Task, User

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "authentication_failed",
    "duplicate_email",
    "invalid_attachment",
    "unauthorized",
    "invalid_token",
    "unknown_session",
    "not_found",
    "method_not_allowed",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Field rules live in the service layer so that every entry point shares them;
# request models only pin the JSON shape.
class SignupRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = None
    password: Optional[str] = None


class TaskCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = None
    completed: Optional[StrictBool] = False


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    has_avatar: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            has_avatar=user.has_avatar,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    token: str


class TaskResponse(BaseModel):
    id: str
    description: str
    completed: bool
    owner: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            description=task.description,
            completed=task.completed,
            owner=task.owner_id,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class LogoutResponse(BaseModel):
    revoked: int


class AvatarResponse(BaseModel):
    media_type: str
    size: int
