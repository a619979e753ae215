from __future__ import annotations

import secrets
from typing import Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.schemas import AuthTokens, AuthUserProfile, OAuthTokenResponse
from authgate.service.clients import ClientDirectory
from authgate.service.errors import (
    AuthenticationError,
    MessageCode,
    RejectedRequestError,
)
from authgate.service.provider import ProviderExchange, ProviderProfile
from authgate.service.signing import TokenSigner
from authgate.service.tokens import TokenLedger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.memory import MemoryStore
from authgate.storage.models import User

SUPPORTED_OAUTH_PROVIDERS = frozenset({"google"})
_USERNAME_ALLOWED = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"
)
MIN_USERNAME_LENGTH = 3


class AuthService:
    """Maps provider identities to local users and hands out token pairs."""

    def __init__(
        self,
        store: MemoryStore,
        directory: ClientDirectory,
        provider: ProviderExchange,
        ledger: TokenLedger,
        signer: TokenSigner,
        settings: Settings,
    ) -> None:
        self.store = store
        self.directory = directory
        self.provider = provider
        self.ledger = ledger
        self.signer = signer
        self.settings = settings
        self.logger = get_logger(__name__)

    async def exchange_code(
        self,
        code: str,
        *,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        request_origin: Optional[str] = None,
    ) -> OAuthTokenResponse:
        return await self.provider.exchange_code(
            code,
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            request_origin=request_origin,
        )

    async def login_with_oauth(
        self,
        provider: str,
        *,
        access_token: Optional[str] = None,
        id_token: Optional[str] = None,
    ) -> AuthTokens:
        if provider not in SUPPORTED_OAUTH_PROVIDERS:
            self.logger.warning("oauth_unknown_provider", provider=provider)
            raise RejectedRequestError.from_code(MessageCode.UNSUPPORTED_OAUTH_PROVIDER)
        if not access_token and not id_token:
            raise AuthenticationError.from_code(MessageCode.MISSING_OAUTH_CREDENTIALS)

        profile = await self.provider.fetch_provider_profile(
            access_token=access_token, id_token=id_token
        )
        if not profile.email_verified:
            self.logger.warning("oauth_email_unverified", provider=provider)
            raise AuthenticationError.from_code(MessageCode.EMAIL_NOT_VERIFIED)

        user = self.get_or_create_oauth_user(profile)
        tokens = self._issue_tokens(user)
        self.logger.info("oauth_login_success", provider=provider, user_id=user.id)
        return tokens

    async def refresh_tokens(self, raw_token: Optional[str]) -> AuthTokens:
        return await self.ledger.refresh(
            raw_token, self.build_user_profile, self.ensure_username
        )

    def get_user_profile(self, user_id: str) -> AuthUserProfile:
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError.from_code(MessageCode.USER_NOT_FOUND)
        return self.build_user_profile(self.ensure_username(user))

    def _issue_tokens(self, user: User) -> AuthTokens:
        access_token = self.signer.sign(
            {"sub": user.id, "email": user.email, "username": user.username}
        )
        refresh = self.ledger.issue(user.id)
        return AuthTokens(
            access_token=access_token,
            access_token_expires_at=self.ledger.derive_access_expiry(access_token),
            refresh_token=refresh.raw_token,
            refresh_token_expires_at=refresh.expires_at,
            user=self.build_user_profile(user),
        )

    @staticmethod
    def sanitize_username_candidate(source: str) -> str:
        base = "".join(ch for ch in source if ch in _USERNAME_ALLOWED)
        if len(base) >= MIN_USERNAME_LENGTH:
            return base
        return f"user{secrets.randbelow(9000) + 1000}"

    def _unique_username(self, base: str, exclude_user_id: Optional[str] = None) -> str:
        candidate = base
        suffix = 1
        while self.store.username_exists(
            candidate.lower(), exclude_user_id=exclude_user_id
        ):
            candidate = f"{base}{suffix}"
            suffix += 1
        return candidate

    def ensure_username(self, user: User) -> User:
        """Give ``user`` a unique username derived from the e-mail local part."""

        if user.username and user.username_normalized:
            return user
        local = user.email.split("@")[0] or "user"
        base = self.sanitize_username_candidate(local)
        candidate = self._unique_username(base, exclude_user_id=user.id)
        updated = self.store.update_user(
            user.id, username=candidate, username_normalized=candidate.lower()
        )
        self.logger.info("username_assigned", user_id=user.id)
        return updated or user

    def get_or_create_oauth_user(self, profile: ProviderProfile) -> User:
        email = profile.email.lower()
        preferred_display = (profile.name or "").strip() or None
        existing = self.store.get_user_by_email(email)
        if existing:
            user = self.ensure_username(existing)
            if preferred_display and user.display_name != preferred_display:
                user = self.store.update_user(user.id, display_name=preferred_display) or user
            return user

        base = self.sanitize_username_candidate(preferred_display or email.split("@")[0] or "user")
        candidate = self._unique_username(base)
        try:
            user = self.store.create_user(
                email, username=candidate, display_name=preferred_display
            )
        except ConstraintViolation:
            # Lost a race with a concurrent login for the same e-mail
            existing = self.store.get_user_by_email(email)
            if existing is None:
                raise
            return self.ensure_username(existing)
        self.logger.info("oauth_user_created", user_id=user.id)
        return user

    @staticmethod
    def resolve_display_name(user: User) -> str:
        for value in (user.display_name, user.username):
            preferred = (value or "").strip()
            if preferred:
                return preferred
        local = (user.email or "").split("@")[0].strip()
        return local or user.email

    def build_user_profile(self, user: User) -> AuthUserProfile:
        return AuthUserProfile(
            id=user.id,
            email=user.email,
            username=user.username or "",
            display_name=self.resolve_display_name(user),
            created_at=user.created_at,
        )
