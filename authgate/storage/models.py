from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Parent marker carried by the first refresh token of a login
ROOT_PARENT_ID = "root"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    username_normalized: Optional[str] = None
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token metadata. The raw token is never stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    token_id: Optional[str] = None
    revoked: bool = False
    rotation_parent_id: str = ROOT_PARENT_ID
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        token_id: Optional[str] = None,
        rotation_parent_id: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            token_id=token_id,
            rotation_parent_id=rotation_parent_id or ROOT_PARENT_ID,
        )


@dataclass
class IssuedRefreshToken:
    """Raw refresh token handed to the caller exactly once, at issuance."""

    raw_token: str
    expires_at: datetime
    storage_id: str
