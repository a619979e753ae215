from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from authgate.config import ClientPreset, Settings
from authgate.logging import get_logger
from authgate.service.errors import ConfigurationError, MessageCode, UpstreamError
from authgate.service.redirects import (
    normalize_url,
    origin_of,
    parse_redirect_entry,
    parse_redirect_list,
    sanitize,
)

DISCOVERY_PATH = ".well-known/openid-configuration"


def _add_unique(target: List[str], value: str) -> None:
    if value not in target:
        target.append(value)


@dataclass
class ClientConfig:
    """A resolved OAuth web client.

    ``redirect_uris`` and ``allowed_origins`` behave as ordered sets so the
    first redirect URI is stable across builds.
    """

    id: str
    secret: str
    redirect_uris: List[str] = field(default_factory=list)
    allowed_origins: List[str] = field(default_factory=list)

    def merge(self, other: "ClientConfig") -> "ClientConfig":
        redirect_uris = list(self.redirect_uris)
        allowed_origins = list(self.allowed_origins)
        for uri in other.redirect_uris:
            _add_unique(redirect_uris, uri)
        for origin in other.allowed_origins:
            _add_unique(allowed_origins, origin)
        return ClientConfig(
            id=self.id,
            secret=self.secret,
            redirect_uris=redirect_uris,
            allowed_origins=allowed_origins,
        )


@dataclass(frozen=True)
class OriginMatch:
    client: ClientConfig
    redirect_uri: Optional[str] = None


@dataclass(frozen=True)
class DiscoveryDocument:
    issuer: str
    token_endpoint: Optional[str]
    fetched_at: float
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveryCache:
    """Holds the last discovery document; FRESH until ``ttl_seconds`` pass."""

    ttl_seconds: float
    document: Optional[DiscoveryDocument] = None

    def fresh(self, issuer: str, now: float) -> Optional[DiscoveryDocument]:
        doc = self.document
        if doc is None or doc.issuer != issuer:
            return None
        if now - doc.fetched_at > self.ttl_seconds:
            return None
        return doc

    def store(self, document: DiscoveryDocument) -> None:
        self.document = document

    def clear(self) -> None:
        self.document = None


def discovery_url(issuer: str) -> str:
    return issuer.rstrip("/") + "/" + DISCOVERY_PATH


class ClientDirectory:
    """Resolves configured OAuth web clients and the provider discovery document."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.logger = get_logger(__name__)
        self._transport = transport
        self._clock = clock
        self.discovery_cache = DiscoveryCache(
            ttl_seconds=settings.oauth_discovery_ttl_seconds
        )
        self._discovery_locks: Dict[str, asyncio.Lock] = {}
        self.discovery_fetches = 0

    def build_client_config(
        self, preset: ClientPreset, fallback_secret: Optional[str] = None
    ) -> Optional[ClientConfig]:
        client_id = sanitize(preset.client_id)
        if not client_id:
            return None
        secret = sanitize(preset.client_secret)
        if not secret and preset.use_shared_secret:
            secret = sanitize(fallback_secret)
        if not secret:
            self.logger.debug(
                "oauth_client_skipped", preset=preset.name, reason="missing_secret"
            )
            return None

        config = ClientConfig(id=client_id, secret=secret)
        for entry in parse_redirect_list(preset.redirect_uris):
            parsed = parse_redirect_entry(entry)
            if not parsed:
                self.logger.debug("oauth_redirect_entry_dropped", preset=preset.name)
                continue
            if parsed.exact:
                _add_unique(config.redirect_uris, parsed.exact)
            if parsed.origin:
                _add_unique(config.allowed_origins, parsed.origin)
        for entry in parse_redirect_list(preset.allowed_origins):
            parsed = parse_redirect_entry(entry)
            if not parsed or not parsed.origin:
                self.logger.debug("oauth_origin_entry_dropped", preset=preset.name)
                continue
            _add_unique(config.allowed_origins, parsed.origin)
        return config

    def list_clients(self) -> List[ClientConfig]:
        fallback_secret = self.settings.oauth_web_client_secret
        unique: Dict[str, ClientConfig] = {}
        for preset in self.settings.client_presets():
            config = self.build_client_config(preset, fallback_secret)
            if config is None:
                continue
            current = unique.get(config.id)
            unique[config.id] = current.merge(config) if current else config
        return list(unique.values())

    def allowed_client_ids(self) -> List[str]:
        ids: List[str] = []
        web_ids = [client.id for client in self.list_clients()]
        native_ids = [sanitize(v) for v in self.settings.native_client_ids()]
        for value in web_ids + native_ids:
            if value:
                _add_unique(ids, value)
        return ids

    async def get_discovery(self) -> DiscoveryDocument:
        issuer = sanitize(self.settings.oauth_issuer)
        if not issuer:
            raise ConfigurationError.from_code(MessageCode.MISSING_OAUTH_ISSUER)
        cached = self.discovery_cache.fresh(issuer, self._clock())
        if cached:
            return cached

        lock = self._discovery_locks.setdefault(issuer, asyncio.Lock())
        async with lock:
            # Another waiter may have refreshed while we queued
            cached = self.discovery_cache.fresh(issuer, self._clock())
            if cached:
                return cached
            document = await self._fetch_discovery(issuer)
            self.discovery_cache.store(document)
            return document

    async def _fetch_discovery(self, issuer: str) -> DiscoveryDocument:
        url = discovery_url(issuer)
        self.discovery_fetches += 1
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            self.logger.error("oidc_discovery_request_failed", url=url, error=str(exc))
            raise UpstreamError.from_code(MessageCode.OIDC_DISCOVERY_FAILED) from exc

        if not response.is_success:
            self.logger.error(
                "oidc_discovery_failed", url=url, status_code=response.status_code
            )
            raise UpstreamError.from_code(MessageCode.OIDC_DISCOVERY_FAILED)
        try:
            payload = response.json()
        except ValueError as exc:
            self.logger.error("oidc_discovery_parse_error", url=url, error=str(exc))
            raise UpstreamError.from_code(MessageCode.OIDC_DISCOVERY_FAILED) from exc
        if not isinstance(payload, dict):
            self.logger.error("oidc_discovery_invalid_format", url=url)
            raise UpstreamError.from_code(MessageCode.OIDC_DISCOVERY_FAILED)

        self.logger.info("oidc_discovery_fetched", issuer=issuer)
        return DiscoveryDocument(
            issuer=issuer,
            token_endpoint=sanitize(payload.get("token_endpoint")),
            fetched_at=self._clock(),
            raw=payload,
        )

    @staticmethod
    def find_client_for_redirect(
        clients: List[ClientConfig], redirect_uri: Optional[str]
    ) -> Optional[ClientConfig]:
        normalized = normalize_url(redirect_uri)
        if not normalized:
            return None
        for client in clients:
            if normalized in client.redirect_uris:
                return client
        origin = origin_of(normalized)
        if not origin:
            return None
        for client in clients:
            if origin in client.allowed_origins:
                return client
        return None

    @staticmethod
    def find_default_client(clients: List[ClientConfig]) -> Optional[ClientConfig]:
        for client in clients:
            if client.redirect_uris:
                return client
        return clients[0] if clients else None

    @staticmethod
    def find_client_by_origin(
        clients: List[ClientConfig], origin: Optional[str]
    ) -> Optional[OriginMatch]:
        normalized = origin_of(origin)
        if not normalized:
            return None
        matches = [c for c in clients if normalized in c.allowed_origins]
        if not matches:
            return None
        for client in matches:
            for candidate in client.redirect_uris:
                if origin_of(candidate) == normalized:
                    return OriginMatch(client=client, redirect_uri=candidate)
        first = matches[0]
        return OriginMatch(
            client=first,
            redirect_uri=first.redirect_uris[0] if first.redirect_uris else None,
        )
