from __future__ import annotations

import os
import secrets
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientPreset:
    """One named group of OAuth web client settings.

    Values are the raw configuration strings; parsing and validation happen
    when the client directory is built.
    """

    name: str
    client_id: str | None
    client_secret: str | None = None
    redirect_uris: str | None = None
    allowed_origins: str | None = None
    # Whether the shared OAUTH_WEB_CLIENT_SECRET may stand in for a missing secret
    use_shared_secret: bool = False


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the OAuth client directory and token ledger."""

    # OIDC provider
    oauth_issuer: str | None = env_field(None, "OAUTH_ISSUER")
    oauth_userinfo_url: str = env_field(
        "https://openidconnect.googleapis.com/v1/userinfo", "OAUTH_USERINFO_URL"
    )
    oauth_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "OAUTH_TOKENINFO_URL"
    )
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    oauth_discovery_ttl_seconds: int = env_field(
        600,
        "OAUTH_DISCOVERY_TTL_SECONDS",
        description="How long a fetched discovery document is served from cache",
    )

    # Shared secret used by the next/expo presets when they carry none
    oauth_web_client_secret: str | None = env_field(None, "OAUTH_WEB_CLIENT_SECRET")
    # Primary web client
    oauth_web_client_id_next: str | None = env_field(None, "OAUTH_WEB_CLIENT_ID_NEXT")
    oauth_web_client_secret_next: str | None = env_field(
        None, "OAUTH_WEB_CLIENT_SECRET_NEXT"
    )
    oauth_web_redirect_uri_next: str | None = env_field(
        None, "OAUTH_WEB_REDIRECT_URI_NEXT"
    )
    oauth_web_allowed_origins_next: str | None = env_field(
        None, "OAUTH_WEB_ALLOWED_ORIGINS_NEXT"
    )
    # Companion app web client
    oauth_web_client_id_expo: str | None = env_field(None, "OAUTH_WEB_CLIENT_ID_EXPO")
    oauth_web_client_secret_expo: str | None = env_field(
        None, "OAUTH_WEB_CLIENT_SECRET_EXPO"
    )
    oauth_web_redirect_uri_expo: str | None = env_field(
        None, "OAUTH_WEB_REDIRECT_URI_EXPO"
    )
    oauth_web_allowed_origins_expo: str | None = env_field(
        None, "OAUTH_WEB_ALLOWED_ORIGINS_EXPO"
    )
    # Legacy default client
    oauth_web_client_id: str | None = env_field(None, "OAUTH_WEB_CLIENT_ID")
    oauth_web_redirect_uri: str | None = env_field(None, "OAUTH_WEB_REDIRECT_URI")
    oauth_web_allowed_origins: str | None = env_field(
        None, "OAUTH_WEB_ALLOWED_ORIGINS"
    )
    # Native clients only contribute accepted audiences
    oauth_android_client_id: str | None = env_field(None, "OAUTH_ANDROID_CLIENT_ID")
    oauth_ios_client_id: str | None = env_field(None, "OAUTH_IOS_CLIENT_ID")

    # Refresh token ledger
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_scan_limit: int = env_field(
        500,
        "REFRESH_TOKEN_SCAN_LIMIT",
        description="Upper bound on records hash-compared when a token has no indexed id",
    )
    refresh_rotation_lock: bool = env_field(
        False,
        "REFRESH_ROTATION_LOCK",
        description="Claim each refresh record in Redis before rotating it",
    )

    # Access tokens
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authgate", "JWT_ISSUER")
    jwt_audience: str = env_field("authgate-clients", "JWT_AUDIENCE")

    shared_fs_root: str = env_field("/srv/authgate", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    def client_presets(self) -> tuple[ClientPreset, ...]:
        """Web client presets in resolution order."""

        return (
            ClientPreset(
                name="next",
                client_id=self.oauth_web_client_id_next,
                client_secret=self.oauth_web_client_secret_next,
                redirect_uris=self.oauth_web_redirect_uri_next,
                allowed_origins=self.oauth_web_allowed_origins_next,
                use_shared_secret=True,
            ),
            ClientPreset(
                name="expo",
                client_id=self.oauth_web_client_id_expo,
                client_secret=self.oauth_web_client_secret_expo,
                redirect_uris=self.oauth_web_redirect_uri_expo,
                allowed_origins=self.oauth_web_allowed_origins_expo,
                use_shared_secret=True,
            ),
            ClientPreset(
                name="default",
                client_id=self.oauth_web_client_id,
                client_secret=self.oauth_web_client_secret,
                redirect_uris=self.oauth_web_redirect_uri,
                allowed_origins=self.oauth_web_allowed_origins,
            ),
        )

    def native_client_ids(self) -> tuple[str | None, ...]:
        return (self.oauth_android_client_id, self.oauth_ios_client_id)

    @field_validator("refresh_token_ttl_days", "refresh_token_scan_limit")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
