from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_STRING_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
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


# user auth
class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=3, max_length=MAX_STRING_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("username must be at least 3 characters")
        return value


class LoginResponse(BaseModel):
    device_id: str
    token_expires_at: datetime


class VerifyTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    token: str = Field(..., min_length=1, max_length=64)


class VerifyTokenResponse(BaseModel):
    session_id: str
    expires_at: datetime


class SessionStatusResponse(BaseModel):
    authenticated: bool
    status: str
    username: Optional[str] = None
    time_remaining: int = 0
    duration: int = 0


# admin console
class AdminLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class AdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str


class TokenResponse(BaseModel):
    id: str
    device_id: str
    status: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    time_remaining: int


class TokenListResponse(BaseModel):
    items: List[TokenResponse]


class AutoPurgeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool


class AutoPurgeResponse(BaseModel):
    enabled: bool
    purged: int


class SessionResponse(BaseModel):
    id: str
    username: str
    device_id: str
    origin_ip: Optional[str] = None
    status: str
    started_at: datetime
    expires_at: datetime
    time_remaining: int
    duration: int


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class VirtualTokenRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device_id: str = Field(..., min_length=1, max_length=MAX_STRING_LENGTH)


class VirtualTokenResponse(BaseModel):
    token_id: str
    device_id: str
    token: str
    expires_at: datetime


class DashboardStatsResponse(BaseModel):
    total_users: int
    active_tokens: int
    expired_tokens: int
    active_sessions: int
    auto_purge_enabled: bool


class PrincipalResponse(BaseModel):
    id: str
    username: str
    device_id: str
    created_at: datetime
    profile: Dict[str, Optional[str]]


class PrincipalListResponse(BaseModel):
    items: List[PrincipalResponse]
