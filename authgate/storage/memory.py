from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import ROOT_PARENT_ID, RefreshTokenRecord, User


class MemoryStore:
    """In-memory backing store for users and refresh tokens.

    When ``fs_root`` is given, every write is snapshotted to
    ``fs_root/state/memory_store.json`` and reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # token_id -> storage id
        self._token_index: Dict[str, str] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        display_name: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                username_normalized=username.lower() if username else None,
                display_name=display_name,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def username_exists(
        self, normalized: str, *, exclude_user_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            return any(
                user.username_normalized == normalized and user.id != exclude_user_id
                for user in self.users.values()
            )

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        username_normalized: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if username is not None:
                user.username = username
                user.username_normalized = username_normalized or username.lower()
            if display_name is not None:
                user.display_name = display_name
            self._persist_state()
            return replace(user)

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "id"})
            if record.token_id and record.token_id in self._token_index:
                raise ConstraintViolation(
                    "refresh token id exists", {"field": "token_id"}
                )
            stored = replace(record)
            self.refresh_tokens[stored.id] = stored
            if stored.token_id:
                self._token_index[stored.token_id] = stored.id
            self._persist_state()
            return replace(stored)

    def get_refresh_token(self, record_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            return replace(record) if record else None

    def find_refresh_token_by_token_id(
        self, token_id: str
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._token_index.get(token_id)
            if record_id is None:
                return None
            record = self.refresh_tokens.get(record_id)
            return replace(record) if record else None

    def list_active_refresh_tokens(
        self, limit: Optional[int] = None
    ) -> List[RefreshTokenRecord]:
        """Non-revoked records, newest first, at most ``limit`` of them."""

        with self._data_lock:
            active = [r for r in self.refresh_tokens.values() if not r.revoked]
            active.sort(key=lambda r: r.created_at, reverse=True)
            if limit is not None:
                active = active[:limit]
            return [replace(r) for r in active]

    def update_refresh_token(
        self, record_id: str, *, revoked: bool
    ) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(record_id)
            if not record:
                return None
            if record.revoked and not revoked:
                raise ConstraintViolation(
                    "revoked refresh token cannot be restored", {"field": "revoked"}
                )
            if record.revoked == revoked:
                return replace(record)
            record.revoked = revoked
            self._persist_state()
            return replace(record)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self._token_index = {
            r.token_id: r.id for r in self.refresh_tokens.values() if r.token_id
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "username_normalized": user.username_normalized,
            "display_name": user.display_name,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username"),
            username_normalized=data.get("username_normalized"),
            display_name=data.get("display_name"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_id": record.token_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "rotation_parent_id": record.rotation_parent_id,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            token_id=data.get("token_id"),
            revoked=bool(data.get("revoked", False)),
            rotation_parent_id=data.get("rotation_parent_id") or ROOT_PARENT_ID,
            created_at=self._deserialize_datetime(data["created_at"]),
        )
