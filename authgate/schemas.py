from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_correlation_id
from authgate.service.errors import ServiceError

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "validation_error",
    "server_error",
    "upstream_error",
})


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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class OAuthTokenResponse(BaseModel):
    """Provider token endpoint result, mapped to caller-facing names."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None


class AuthUserProfile(BaseModel):
    id: str
    email: str
    username: str
    display_name: str
    created_at: Optional[datetime] = None


class AuthTokens(BaseModel):
    access_token: str
    access_token_expires_at: Optional[datetime] = None
    refresh_token: str
    refresh_token_expires_at: datetime
    user: AuthUserProfile


def error_envelope(exc: ServiceError) -> Envelope:
    """Render a service error as the stable error envelope.

    The request id follows the active correlation id when one is set.
    """

    body = ErrorBody(code=exc.error_code, message=exc.message, details=exc.detail or None)
    cid = get_correlation_id()
    if cid:
        return Envelope(status="error", error=body, request_id=cid)
    return Envelope(status="error", error=body)
