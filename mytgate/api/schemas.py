from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from mytgate.service.upstream import MAX_CREDENTIAL_LENGTH, validate_username


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """Envelope used for every error response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return validate_username(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    status: str = "logged_out"


class SessionResponse(BaseModel):
    sub: str
    sid: str
    token_type: str
    iat: int
    exp: int


class HealthResponse(BaseModel):
    status: str
    circuit: str
