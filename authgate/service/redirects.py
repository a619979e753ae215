"""Parsing helpers for redirect URI and origin configuration strings.

Every helper returns ``None`` on malformed input; callers drop such entries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional
from urllib.parse import urlsplit, urlunsplit

WILDCARD_SUFFIX = "/*"

_DEFAULT_PORTS = {"http": 80, "https": 443}
_LIST_SEPARATOR = re.compile(r"[,\r\n]")


@dataclass(frozen=True)
class RedirectEntry:
    """One parsed redirect entry.

    Wildcard entries (``https://app.example/*``) carry only ``origin``;
    exact entries carry the normalized URL and its origin.
    """

    exact: Optional[str] = None
    origin: Optional[str] = None

    @property
    def is_wildcard(self) -> bool:
        return self.exact is None


def sanitize(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _split(value: str):
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None
    # Credentialed URLs never match a registered redirect
    if parts.username is not None or parts.password is not None:
        return None
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    if port is not None and _DEFAULT_PORTS.get(scheme) == port:
        port = None
    netloc = host if port is None else f"{host}:{port}"
    return scheme, netloc, parts


def normalize_url(value: Any) -> Optional[str]:
    """Canonical absolute form of ``value`` or None when it does not parse.

    Scheme and host are lower-cased, default ports dropped and an empty
    http(s) path becomes ``/``. URLs carrying credentials are rejected.
    """
    raw = sanitize(value)
    if raw is None:
        return None
    split = _split(raw)
    if split is None:
        return None
    scheme, netloc, parts = split
    path = parts.path
    if not path and scheme in _DEFAULT_PORTS:
        path = "/"
    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def origin_of(value: Any) -> Optional[str]:
    raw = sanitize(value)
    if raw is None:
        return None
    split = _split(raw)
    if split is None:
        return None
    scheme, netloc, _ = split
    return f"{scheme}://{netloc}"


def parse_redirect_list(value: Any) -> List[str]:
    raw = sanitize(value)
    if raw is None:
        return []
    return [entry.strip() for entry in _LIST_SEPARATOR.split(raw) if entry.strip()]


def parse_redirect_entry(raw: Any) -> Optional[RedirectEntry]:
    value = sanitize(raw)
    if value is None:
        return None
    if value.endswith(WILDCARD_SUFFIX):
        base = normalize_url(value[: -len(WILDCARD_SUFFIX)])
        origin = origin_of(base) if base else None
        return RedirectEntry(origin=origin) if origin else None
    exact = normalize_url(value)
    if exact is None:
        return None
    origin = origin_of(exact)
    if origin is None:
        return None
    return RedirectEntry(exact=exact, origin=origin)


def resolve_request_origin(
    origin_header: Optional[str], referer_header: Optional[str] = None
) -> Optional[str]:
    """Origin of the first of ``Origin`` / ``Referer`` that parses as a URL."""
    for candidate in (origin_header, referer_header):
        origin = origin_of(candidate)
        if origin:
            return origin
    return None
