from __future__ import annotations

import pytest

from mcp_servers.agent_bridge.errors import InvalidSession, TabAccessDenied
from mcp_servers.agent_bridge.sessions import SessionRegistry


def test_tab_ownership_is_exact_and_isolated() -> None:
    reg = SessionRegistry()
    s1 = reg.create_session("https://app.com")
    s2 = reg.create_session("https://app.com")
    tabs = {11, 12, 13}
    for t in tabs:
        reg.add_tab(s1.session_id, t)

    for t in tabs:
        assert reg.is_tab_owned(s1.session_id, t) is True
        assert reg.is_tab_owned(s2.session_id, t) is False
    assert reg.is_tab_owned(s1.session_id, 99) is False
    assert reg.is_tab_owned(s1.session_id, None) is False
    assert reg.is_tab_owned("sess-unknown", 11) is False
    assert reg.owner_of(12) == s1.session_id


def test_tab_cannot_move_to_another_session() -> None:
    reg = SessionRegistry()
    s1 = reg.create_session("https://app.com")
    s2 = reg.create_session("https://other.com")
    reg.add_tab(s1.session_id, 5)
    with pytest.raises(TabAccessDenied):
        reg.add_tab(s2.session_id, 5)
    assert reg.is_tab_owned(s2.session_id, 5) is False


def test_session_grants_do_not_leak_to_new_sessions() -> None:
    reg = SessionRegistry()
    s1 = reg.create_session("https://app.com")
    reg.grant_origin_for_session(s1.session_id, "https://bank.com")
    assert reg.is_origin_granted_for_session(s1.session_id, "https://bank.com") is True

    s2 = reg.create_session("https://app.com")
    assert reg.is_origin_granted_for_session(s2.session_id, "https://bank.com") is False
    assert s1.session_id != s2.session_id


def test_unknown_session_lookups() -> None:
    reg = SessionRegistry()
    assert reg.get("nope") is None
    assert reg.get(None) is None
    with pytest.raises(InvalidSession):
        reg.require("nope")
    with pytest.raises(InvalidSession):
        reg.add_tab("nope", 1)
    with pytest.raises(InvalidSession):
        reg.grant_origin_for_session("nope", "https://bank.com")


def test_session_to_dict_and_reset() -> None:
    reg = SessionRegistry(clock=lambda: 1_700_000_000.5)
    s = reg.create_session("https://app.com")
    reg.add_tab(s.session_id, 3)
    data = s.to_dict()
    assert data["sessionId"] == s.session_id
    assert data["createdAt"] == 1_700_000_000_500
    assert data["tabIds"] == [3]

    reg.reset()
    assert len(reg) == 0
    assert reg.owner_of(3) is None
