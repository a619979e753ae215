from __future__ import annotations

from enum import Enum
from typing import Optional


class MessageCode(str, Enum):
    """Stable identifiers for every user-facing auth error message."""

    MISSING_OAUTH_ISSUER = "auth_missing_oauth_issuer"
    OIDC_DISCOVERY_FAILED = "auth_oidc_discovery_failed"
    MISSING_WEB_CLIENT = "auth_missing_web_client"
    MISSING_REDIRECT_URI = "auth_missing_redirect_uri"
    REDIRECT_URI_NOT_ALLOWED = "auth_redirect_uri_not_allowed"
    NO_TOKEN_ENDPOINT = "auth_no_token_endpoint"
    TOKEN_RESPONSE_UNPARSABLE = "auth_failed_to_parse_token_response"
    TOKEN_EXCHANGE_FAILED = "auth_token_exchange_failed"
    TOKEN_EXCHANGE_MISSING_ACCESS_TOKEN = "auth_token_exchange_missing_access_token"
    UNSUPPORTED_OAUTH_PROVIDER = "auth_unsupported_oauth_provider"
    MISSING_OAUTH_CREDENTIALS = "auth_missing_oauth_credentials"
    EMAIL_NOT_VERIFIED = "auth_google_email_not_verified"
    OAUTH_CLIENT_MISMATCH = "auth_oauth_client_mismatch"
    UNABLE_TO_VALIDATE_OAUTH_TOKENS = "auth_unable_to_validate_oauth_tokens"
    MISSING_REFRESH_TOKEN = "auth_missing_refresh_token"
    INVALID_REFRESH_TOKEN = "auth_invalid_refresh_token"
    REFRESH_TOKEN_REVOKED = "auth_refresh_token_revoked"
    REFRESH_TOKEN_EXPIRED = "auth_refresh_token_expired"
    USER_NOT_FOUND_FOR_REFRESH_TOKEN = "auth_user_not_found_for_refresh_token"
    USER_NOT_FOUND = "auth_user_not_found"


MESSAGES: dict[MessageCode, str] = {
    MessageCode.MISSING_OAUTH_ISSUER: "Missing OAUTH_ISSUER",
    MessageCode.OIDC_DISCOVERY_FAILED: "OIDC discovery failed",
    MessageCode.MISSING_WEB_CLIENT: "Missing OAuth web client configuration",
    MessageCode.MISSING_REDIRECT_URI: "Missing redirect URI",
    MessageCode.REDIRECT_URI_NOT_ALLOWED: "Redirect URI not allowed",
    MessageCode.NO_TOKEN_ENDPOINT: "No token endpoint",
    MessageCode.TOKEN_RESPONSE_UNPARSABLE: "Failed to parse token response",
    MessageCode.TOKEN_EXCHANGE_FAILED: "Token exchange failed: {reason}",
    MessageCode.TOKEN_EXCHANGE_MISSING_ACCESS_TOKEN: "Token exchange missing access_token",
    MessageCode.UNSUPPORTED_OAUTH_PROVIDER: "Unsupported OAuth provider",
    MessageCode.MISSING_OAUTH_CREDENTIALS: "Missing OAuth credentials",
    MessageCode.EMAIL_NOT_VERIFIED: "Google account email not verified",
    MessageCode.OAUTH_CLIENT_MISMATCH: "OAuth client mismatch",
    MessageCode.UNABLE_TO_VALIDATE_OAUTH_TOKENS: "Unable to validate OAuth tokens",
    MessageCode.MISSING_REFRESH_TOKEN: "Missing refresh token",
    MessageCode.INVALID_REFRESH_TOKEN: "Invalid refresh token",
    MessageCode.REFRESH_TOKEN_REVOKED: "Refresh token revoked",
    MessageCode.REFRESH_TOKEN_EXPIRED: "Refresh token expired",
    MessageCode.USER_NOT_FOUND_FOR_REFRESH_TOKEN: "User not found for refresh token",
    MessageCode.USER_NOT_FOUND: "User not found",
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - server_error (500)
    - upstream_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @classmethod
    def from_code(cls, code: MessageCode, **fmt: str) -> "ServiceError":
        """Build an error carrying a catalog message and its message code."""

        message = MESSAGES[code].format(**fmt) if fmt else MESSAGES[code]
        return cls(message, detail={"message_code": code.value})

    @property
    def message_code(self) -> Optional[str]:
        return self.detail.get("message_code")


class ConfigurationError(ServiceError):
    """Server-side OAuth configuration is missing or unusable (500)."""
    status_code = 500
    error_code = "server_error"


class RejectedRequestError(ServiceError):
    """Caller supplied a value this deployment does not allow (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UpstreamError(ServiceError):
    """The identity provider failed or answered with garbage (502)."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "MessageCode",
    "MESSAGES",
    "ServiceError",
    "ConfigurationError",
    "RejectedRequestError",
    "AuthenticationError",
    "UpstreamError",
]
