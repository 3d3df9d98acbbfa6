from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import TokenExpired, TokenInvalid, TokenMissing, TokenOriginMismatch
from .origin import is_secure_origin

DEFAULT_TOKEN_TTL_S = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class SessionToken:
    token: str
    origin: str
    session_id: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    @property
    def brief(self) -> str:
        """Log-safe prefix of the bearer value."""
        return self.token[:8] + "..."


class SessionTokenStore:
    """Issues and validates bearer tokens bound to an origin and a session."""

    is_secure_origin = staticmethod(is_secure_origin)

    def __init__(self, *, ttl_s: float = DEFAULT_TOKEN_TTL_S, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._tokens: dict[str, SessionToken] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def issue(self, origin: str, session_id: str) -> SessionToken:
        now = self._clock()
        tok = SessionToken(
            token=secrets.token_urlsafe(32),
            origin=origin,
            session_id=session_id,
            created_at=now,
            expires_at=now + self.ttl_s,
        )
        self._tokens[tok.token] = tok
        return tok

    def validate(self, token: str | None, claimed_origin: str) -> SessionToken:
        if not isinstance(token, str) or not token:
            raise TokenMissing("Session token required")
        info = self._tokens.get(token)
        if info is None:
            raise TokenInvalid("Invalid session token")
        if info.is_expired(self._clock()):
            raise TokenExpired("Session token expired")
        if info.origin != claimed_origin:
            raise TokenOriginMismatch("Session token origin mismatch")
        return info

    def revoke(self, token: str) -> bool:
        return self._tokens.pop(token, None) is not None

    def prune_expired(self) -> int:
        now = self._clock()
        stale = [t for t, info in self._tokens.items() if info.is_expired(now)]
        for t in stale:
            del self._tokens[t]
        return len(stale)

    def reset(self) -> None:
        self._tokens.clear()
