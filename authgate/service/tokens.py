"""Refresh-token ledger: issuance, lookup, validation and rotation.

Raw tokens look like ``<token_id>.<secret>``. Only an argon2id hash of the
whole raw value is stored; ``token_id`` is kept in clear as the lookup key.
Records are never deleted, only revoked, so the rotation chain stays
available for replay audits.
"""

from __future__ import annotations

import inspect
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError
from redis.exceptions import RedisError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.schemas import AuthTokens, AuthUserProfile
from authgate.service.errors import AuthenticationError, MessageCode
from authgate.service.signing import TokenSigner
from authgate.storage.models import (
    ROOT_PARENT_ID,
    IssuedRefreshToken,
    RefreshTokenRecord,
    User,
)

TOKEN_DELIMITER = "."


class LedgerStore(Protocol):
    def find_refresh_token_by_token_id(
        self, token_id: str
    ) -> Optional[RefreshTokenRecord]: ...

    def get_refresh_token(self, record_id: str) -> Optional[RefreshTokenRecord]: ...

    def list_active_refresh_tokens(
        self, limit: Optional[int] = None
    ) -> List[RefreshTokenRecord]: ...

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def update_refresh_token(
        self, record_id: str, *, revoked: bool
    ) -> Optional[RefreshTokenRecord]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


ProfileBuilder = Callable[[User], AuthUserProfile]
UsernameEnsurer = Callable[[User], Union[User, Awaitable[User]]]


class TokenLedger:
    def __init__(
        self,
        store: LedgerStore,
        signer: TokenSigner,
        settings: Settings,
        *,
        cache: Any = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.settings = settings
        self.cache = cache
        self.logger = get_logger(__name__)
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self.stats = {"fallback_scans": 0, "fallback_hits": 0}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _hash_matches(self, token_hash: str, raw: str) -> bool:
        try:
            return self._hasher.verify(token_hash, raw)
        except (InvalidHash, VerificationError):
            return False

    def issue(self, user_id: str, parent_id: Optional[str] = None) -> IssuedRefreshToken:
        raw = secrets.token_urlsafe(16) + TOKEN_DELIMITER + secrets.token_urlsafe(32)
        token_id = self.extract_token_id(raw)
        expires_at = self._now() + timedelta(days=self.settings.refresh_token_ttl_days)
        record = RefreshTokenRecord.new(
            user_id,
            self._hasher.hash(raw),
            expires_at,
            token_id=token_id,
            rotation_parent_id=parent_id or ROOT_PARENT_ID,
        )
        stored = self.store.create_refresh_token(record)
        self.logger.info(
            "refresh_token_issued",
            user_id=user_id,
            record_id=stored.id,
            rotation_parent_id=stored.rotation_parent_id,
        )
        return IssuedRefreshToken(
            raw_token=raw, expires_at=stored.expires_at, storage_id=stored.id
        )

    @staticmethod
    def extract_token_id(raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        token_id, sep, _ = raw.partition(TOKEN_DELIMITER)
        if not sep:
            return raw
        return token_id or None

    def find_record(self, raw: str) -> Optional[RefreshTokenRecord]:
        token_id = self.extract_token_id(raw)
        if token_id:
            record = self.store.find_refresh_token_by_token_id(token_id)
            if record:
                return record

        # Tokens issued without an indexed id can only be found by hash
        limit = self.settings.refresh_token_scan_limit
        candidates = self.store.list_active_refresh_tokens(limit=limit)
        self.stats["fallback_scans"] += 1
        for candidate in candidates:
            if self._hash_matches(candidate.token_hash, raw):
                self.stats["fallback_hits"] += 1
                self.logger.warning(
                    "refresh_token_fallback_hit",
                    record_id=candidate.id,
                    scanned=len(candidates),
                )
                return candidate
        self.logger.info(
            "refresh_token_fallback_miss",
            scanned=len(candidates),
            capped=len(candidates) >= limit,
        )
        return None

    def derive_access_expiry(self, access_token: str) -> Optional[datetime]:
        payload = self.signer.decode(access_token)
        if not isinstance(payload, dict):
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    async def _revoke(self, record: RefreshTokenRecord) -> None:
        self.store.update_refresh_token(record.id, revoked=True)
        if self.cache is None:
            return
        remaining = self._as_utc(record.expires_at) - self._now()
        try:
            await self.cache.mark_refresh_revoked(
                record.id, int(remaining.total_seconds())
            )
        except RedisError as exc:
            # The stored flag already records the revocation
            self.logger.warning(
                "refresh_cache_unavailable",
                operation="mark_revoked",
                record_id=record.id,
                error=str(exc),
            )

    async def _is_revoked(self, record: RefreshTokenRecord) -> bool:
        if record.revoked:
            return True
        if self.cache is None:
            return False
        try:
            return await self.cache.is_refresh_revoked(record.id)
        except RedisError as exc:
            self.logger.warning(
                "refresh_cache_unavailable",
                operation="is_revoked",
                record_id=record.id,
                error=str(exc),
            )
            return False

    def _rotation_lock_enabled(self) -> bool:
        return self.cache is not None and self.settings.refresh_rotation_lock

    async def _claim_rotation(self, record: RefreshTokenRecord) -> bool:
        if not self._rotation_lock_enabled():
            return True
        remaining = self._as_utc(record.expires_at) - self._now()
        try:
            return await self.cache.claim_refresh_rotation(
                record.id, int(remaining.total_seconds())
            )
        except RedisError as exc:
            # Same as running without a cache: the store stays authoritative
            self.logger.warning(
                "refresh_cache_unavailable",
                operation="claim_rotation",
                record_id=record.id,
                error=str(exc),
            )
            return True

    async def _release_rotation(self, record: RefreshTokenRecord) -> None:
        if not self._rotation_lock_enabled():
            return
        try:
            await self.cache.release_refresh_rotation(record.id)
        except RedisError as exc:
            self.logger.warning(
                "refresh_cache_unavailable",
                operation="release_rotation",
                record_id=record.id,
                error=str(exc),
            )

    async def refresh(
        self,
        raw_token: Optional[str],
        build_profile: ProfileBuilder,
        ensure_username: UsernameEnsurer,
    ) -> AuthTokens:
        candidate = raw_token.strip() if isinstance(raw_token, str) else ""
        if not candidate:
            raise AuthenticationError.from_code(MessageCode.MISSING_REFRESH_TOKEN)

        record = self.find_record(candidate)
        if record is None:
            self.logger.warning("refresh_token_unknown")
            raise AuthenticationError.from_code(MessageCode.INVALID_REFRESH_TOKEN)

        if await self._is_revoked(record):
            self.logger.warning(
                "refresh_token_reuse_detected",
                record_id=record.id,
                user_id=record.user_id,
            )
            raise AuthenticationError.from_code(MessageCode.REFRESH_TOKEN_REVOKED)

        if self._as_utc(record.expires_at) <= self._now():
            await self._revoke(record)
            self.logger.info("refresh_token_expired", record_id=record.id)
            raise AuthenticationError.from_code(MessageCode.REFRESH_TOKEN_EXPIRED)

        if not self._hash_matches(record.token_hash, candidate):
            self.logger.warning("refresh_token_hash_mismatch", record_id=record.id)
            raise AuthenticationError.from_code(MessageCode.INVALID_REFRESH_TOKEN)

        user = self.store.get_user(record.user_id)
        if user is None:
            await self._revoke(record)
            self.logger.warning(
                "refresh_token_user_missing",
                record_id=record.id,
                user_id=record.user_id,
            )
            raise AuthenticationError.from_code(
                MessageCode.USER_NOT_FOUND_FOR_REFRESH_TOKEN
            )

        ensured = ensure_username(user)
        if inspect.isawaitable(ensured):
            ensured = await ensured
        user = ensured

        access_token = self.signer.sign(
            {"sub": user.id, "email": user.email, "username": user.username}
        )
        access_expires_at = self.derive_access_expiry(access_token)

        if not await self._claim_rotation(record):
            self.logger.warning("refresh_rotation_claim_lost", record_id=record.id)
            raise AuthenticationError.from_code(MessageCode.REFRESH_TOKEN_REVOKED)

        try:
            rotated = self.issue(user.id, parent_id=record.id)
            await self._revoke(record)
        except Exception:
            # An unrevoked record must stay claimable
            await self._release_rotation(record)
            raise
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            record_id=record.id,
            child_id=rotated.storage_id,
        )

        return AuthTokens(
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            refresh_token=rotated.raw_token,
            refresh_token_expires_at=rotated.expires_at,
            user=build_profile(user),
        )

    def lineage(self, record_id: str) -> List[RefreshTokenRecord]:
        """Walk the rotation chain from ``record_id`` back to the root, newest first."""

        chain: List[RefreshTokenRecord] = []
        seen = set()
        current = self.store.get_refresh_token(record_id)
        while current is not None and current.id not in seen:
            chain.append(current)
            seen.add(current.id)
            if current.rotation_parent_id == ROOT_PARENT_ID:
                break
            current = self.store.get_refresh_token(current.rotation_parent_id)
        return chain
