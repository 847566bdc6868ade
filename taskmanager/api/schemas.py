from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from taskmanager.logging import get_correlation_id
from taskmanager.storage.models import TaskStatus

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "invalid_credentials",
    "account_locked",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    """Accepts camelCase on the wire as well as snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Registration and sign-in fields are left unchecked here; AuthService owns
# the messages returned for bad input.
class RegisterRequest(_CamelModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=256)
    confirm_password: Optional[str] = Field(default=None, max_length=256)


class LoginRequest(_CamelModel):
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=256)


class ClaimResponse(BaseModel):
    type: str
    value: str


class UserTokenInfo(BaseModel):
    id: str
    email: str
    claims: List[ClaimResponse] = Field(default_factory=list)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    user: UserTokenInfo


class NewTaskRequest(_CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None


class UpdateTaskRequest(_CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: TaskStatus
    created_at: Optional[datetime] = None
    due_date: Optional[datetime] = None


class TaskResponse(_CamelModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    created_at: datetime
    due_date: Optional[datetime] = None
