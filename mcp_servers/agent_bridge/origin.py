"""Trusted-origin handling.

The origin that authorizes a command is always the one the transport attests
(the WebSocket handshake ``Origin`` header, which page script cannot set).
Payload fields named ``origin`` are never consulted for decisions.
"""

from __future__ import annotations

import ipaddress
import logging
from urllib.parse import urlsplit

from .errors import InvalidOrigin

logger = logging.getLogger("mcp.agent_bridge.origin")

_AUTH_SCHEMES = {"http", "https", "chrome-extension"}
EXTENSION_SCHEME = "chrome-extension"


def _split(url: str) -> tuple[str, str, str | None] | None:
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc or not host:
        return None
    scheme = parts.scheme.lower()
    host = host.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port is not None else host
    return scheme, netloc, parts.hostname.lower() if parts.hostname else None


def normalize_origin(raw: str) -> str | None:
    """Reduce an origin or URL to ``scheme://host[:port]`` (lowercase)."""
    split = _split(raw)
    if split is None:
        return None
    scheme, netloc, _host = split
    return f"{scheme}://{netloc}"


def origin_from_url(url: str) -> str | None:
    """Target origin of an http(s) URL, or None for anything else."""
    split = _split(url)
    if split is None:
        return None
    scheme, netloc, _host = split
    if scheme not in {"http", "https"}:
        return None
    return f"{scheme}://{netloc}"


def _is_loopback_host(host: str | None) -> bool:
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def is_secure_origin(origin: str) -> bool:
    """HTTPS origins, or plain HTTP only on localhost/loopback."""
    split = _split(origin)
    if split is None:
        return False
    scheme, _netloc, host = split
    if scheme == "https":
        return True
    if scheme == "http":
        return _is_loopback_host(host)
    return False


def is_extension_origin(origin: str) -> bool:
    return isinstance(origin, str) and origin.startswith(EXTENSION_SCHEME + "://")


class OriginAuthenticator:
    """Produces the trusted origin of an inbound message from its channel."""

    def authenticate(self, channel_origin: str | None, payload: dict | None = None) -> str:
        origin = normalize_origin(channel_origin or "")
        if origin is None or origin.split("://", 1)[0] not in _AUTH_SCHEMES:
            raise InvalidOrigin("Sender origin is missing or not attested by the transport")

        declared = payload.get("origin") if isinstance(payload, dict) else None
        if isinstance(declared, str) and declared.strip():
            if normalize_origin(declared) != origin:
                logger.warning("declared_origin_ignored declared=%s trusted=%s", declared[:200], origin)
        return origin
