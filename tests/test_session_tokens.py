from __future__ import annotations

import pytest

from mcp_servers.agent_bridge.errors import TokenExpired, TokenInvalid, TokenMissing, TokenOriginMismatch
from mcp_servers.agent_bridge.tokens import SessionTokenStore

HOUR = 60 * 60


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_token_validates_until_expiry() -> None:
    clock = _Clock()
    t0 = clock.now
    store = SessionTokenStore(clock=clock)
    tok = store.issue("https://app.com", "sess-1")
    assert tok.expires_at == t0 + 24 * HOUR
    assert tok.token and len(tok.token) >= 32

    clock.now = t0 + 23 * HOUR + 59 * 60
    assert store.validate(tok.token, "https://app.com").session_id == "sess-1"

    clock.now = t0 + 24 * HOUR + 60
    with pytest.raises(TokenExpired):
        store.validate(tok.token, "https://app.com")


def test_token_failure_kinds() -> None:
    store = SessionTokenStore()
    tok = store.issue("https://app.com", "sess-1")
    with pytest.raises(TokenMissing):
        store.validate(None, "https://app.com")
    with pytest.raises(TokenMissing):
        store.validate("", "https://app.com")
    with pytest.raises(TokenInvalid):
        store.validate("not-a-token", "https://app.com")
    with pytest.raises(TokenOriginMismatch):
        store.validate(tok.token, "https://evil.com")


def test_tokens_are_unique_and_coexist() -> None:
    store = SessionTokenStore()
    a = store.issue("https://app.com", "sess-1")
    b = store.issue("https://app.com", "sess-2")
    assert a.token != b.token
    assert store.validate(a.token, "https://app.com").session_id == "sess-1"
    assert store.validate(b.token, "https://app.com").session_id == "sess-2"
    assert a.brief.endswith("...") and len(a.brief) == 11


def test_prune_and_revoke() -> None:
    clock = _Clock()
    store = SessionTokenStore(ttl_s=10, clock=clock)
    old = store.issue("https://app.com", "sess-1")
    clock.now += 11
    fresh = store.issue("https://app.com", "sess-2")
    assert store.prune_expired() == 1
    with pytest.raises(TokenInvalid):
        store.validate(old.token, "https://app.com")
    assert store.revoke(fresh.token) is True
    assert store.revoke(fresh.token) is False
    assert len(store) == 0


@pytest.mark.parametrize(
    ("origin", "secure"),
    [
        ("https://a.com", True),
        ("https://a.com:8443", True),
        ("http://localhost:3000", True),
        ("http://localhost", True),
        ("http://127.0.0.1:8080", True),
        ("http://[::1]:3000", True),
        ("http://a.com", False),
        ("http://localhost.evil.com", False),
        ("ftp://a.com", False),
        ("chrome-extension://abcdef", False),
        ("null", False),
        ("", False),
    ],
)
def test_is_secure_origin(origin: str, secure: bool) -> None:
    assert SessionTokenStore.is_secure_origin(origin) is secure
