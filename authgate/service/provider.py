from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from authgate.config import Settings
from authgate.logging import get_logger, sanitize_error_message
from authgate.schemas import OAuthTokenResponse
from authgate.service.clients import ClientDirectory
from authgate.service.errors import (
    AuthenticationError,
    ConfigurationError,
    MessageCode,
    RejectedRequestError,
    UpstreamError,
)
from authgate.service.redirects import sanitize

# Longest provider error text echoed back to callers
_MAX_PROVIDER_ERROR_LENGTH = 120


@dataclass(frozen=True)
class ProviderProfile:
    sub: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    audience: Optional[str] = None


def parse_email_verified(value: Any) -> bool:
    """Coerce the provider's ``email_verified`` claim.

    Accepted as verified: ``True``, the string ``"true"``, the number ``1``
    and the string ``"1"``. Everything else, including ``"TRUE"`` and
    ``"yes"``, is unverified.
    """
    if value is True:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 1
    return value in ("true", "1")


class ProviderExchange:
    """Authorization-code exchange and identity lookup against the OIDC provider."""

    def __init__(
        self,
        directory: ClientDirectory,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.directory = directory
        self.settings = settings
        self.logger = get_logger(__name__)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        request_origin: Optional[str] = None,
    ) -> OAuthTokenResponse:
        clients = self.directory.list_clients()
        if not clients:
            raise ConfigurationError.from_code(MessageCode.MISSING_WEB_CLIENT)

        effective_redirect = sanitize(redirect_uri)
        client = None
        if effective_redirect:
            client = self.directory.find_client_for_redirect(clients, effective_redirect)
            if client is None:
                self.logger.warning("oauth_redirect_not_allowed")
                raise RejectedRequestError.from_code(MessageCode.REDIRECT_URI_NOT_ALLOWED)
        else:
            match = (
                self.directory.find_client_by_origin(clients, request_origin)
                if request_origin
                else None
            )
            if match:
                client = match.client
                effective_redirect = match.redirect_uri or (
                    client.redirect_uris[0] if client.redirect_uris else None
                )
            else:
                client = self.directory.find_default_client(clients)
                if client and client.redirect_uris:
                    effective_redirect = client.redirect_uris[0]

        if client is None:
            raise ConfigurationError.from_code(MessageCode.MISSING_WEB_CLIENT)
        if not effective_redirect:
            raise ConfigurationError.from_code(MessageCode.MISSING_REDIRECT_URI)

        discovery = await self.directory.get_discovery()
        if not discovery.token_endpoint:
            raise ConfigurationError.from_code(MessageCode.NO_TOKEN_ENDPOINT)

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client.id,
            "client_secret": client.secret,
            "redirect_uri": effective_redirect,
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        try:
            async with self._client() as http:
                response = await http.post(
                    discovery.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_token_request_failed", client_id=client.id, error=str(exc)
            )
            raise UpstreamError.from_code(
                MessageCode.TOKEN_EXCHANGE_FAILED, reason="request error"
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            self.logger.error(
                "oauth_token_parse_error",
                client_id=client.id,
                status_code=response.status_code,
            )
            raise UpstreamError.from_code(MessageCode.TOKEN_RESPONSE_UNPARSABLE) from exc

        if not response.is_success or not isinstance(payload, dict):
            provider_error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(provider_error, str) and provider_error.strip():
                reason = sanitize_error_message(
                    provider_error.strip(), max_length=_MAX_PROVIDER_ERROR_LENGTH
                )
            else:
                reason = str(response.status_code)
            self.logger.error(
                "oauth_token_exchange_failed",
                client_id=client.id,
                status_code=response.status_code,
                reason=reason,
            )
            raise UpstreamError.from_code(MessageCode.TOKEN_EXCHANGE_FAILED, reason=reason)

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            self.logger.error("oauth_no_access_token", client_id=client.id)
            raise UpstreamError.from_code(MessageCode.TOKEN_EXCHANGE_MISSING_ACCESS_TOKEN)

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float, str)):
            expires_in = None
        elif isinstance(expires_in, str):
            expires_in = int(expires_in) if expires_in.isdigit() else None

        self.logger.info("oauth_exchange_success", client_id=client.id)
        return OAuthTokenResponse(
            access_token=access_token,
            refresh_token=_optional_str(payload.get("refresh_token")),
            id_token=_optional_str(payload.get("id_token")),
            token_type=_optional_str(payload.get("token_type")),
            scope=_optional_str(payload.get("scope")),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    async def fetch_provider_profile(
        self,
        access_token: Optional[str] = None,
        id_token: Optional[str] = None,
    ) -> ProviderProfile:
        allowed_audiences = self.directory.allowed_client_ids()

        async with self._client() as http:
            if access_token:
                data = await self._get_json(
                    http,
                    "userinfo",
                    self.settings.oauth_userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                profile = self._profile_from(data, allowed_audiences, "userinfo")
                if profile:
                    return profile
            if id_token:
                data = await self._get_json(
                    http,
                    "tokeninfo",
                    self.settings.oauth_tokeninfo_url,
                    params={"id_token": id_token},
                )
                profile = self._profile_from(data, allowed_audiences, "tokeninfo")
                if profile:
                    return profile

        raise AuthenticationError.from_code(MessageCode.UNABLE_TO_VALIDATE_OAUTH_TOKENS)

    async def _get_json(
        self, http: httpx.AsyncClient, attempt: str, url: str, **kwargs: Any
    ) -> Optional[dict]:
        try:
            response = await http.get(url, **kwargs)
        except httpx.HTTPError as exc:
            self.logger.warning("oauth_profile_request_failed", attempt=attempt, error=str(exc))
            return None
        if not response.is_success:
            self.logger.info(
                "oauth_profile_rejected", attempt=attempt, status_code=response.status_code
            )
            return None
        try:
            data = response.json()
        except ValueError:
            self.logger.warning("oauth_profile_parse_error", attempt=attempt)
            return None
        return data if isinstance(data, dict) else None

    def _profile_from(
        self, data: Optional[dict], allowed_audiences: List[str], attempt: str
    ) -> Optional[ProviderProfile]:
        if not data:
            return None
        email = data.get("email")
        email = email.lower() if isinstance(email, str) else ""
        sub = data.get("sub") if isinstance(data.get("sub"), str) else ""
        if not email or not sub:
            self.logger.info("oauth_profile_incomplete", attempt=attempt)
            return None
        aud = data.get("aud") if isinstance(data.get("aud"), str) else None
        if allowed_audiences and aud and aud not in allowed_audiences:
            self.logger.warning("oauth_audience_mismatch", attempt=attempt, audience=aud)
            raise AuthenticationError.from_code(MessageCode.OAUTH_CLIENT_MISMATCH)
        name = data.get("name") if isinstance(data.get("name"), str) else None
        return ProviderProfile(
            sub=sub,
            email=email,
            email_verified=parse_email_verified(data.get("email_verified")),
            name=name,
            audience=aud,
        )


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None
