"""Session registry: which tabs and granted target origins belong to whom.

Sessions live only as long as the host process. A tab belongs to at most one
session, and lookups for tabs that were never added answer "not owned".
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidSession, TabAccessDenied

logger = logging.getLogger("mcp.agent_bridge.sessions")


@dataclass
class Session:
    session_id: str
    caller_origin: str
    created_at: float
    tab_ids: set[int] = field(default_factory=set)
    granted_origins: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "callerOrigin": self.caller_origin,
            "createdAt": int(self.created_at * 1000),
            "tabIds": sorted(self.tab_ids),
            "grantedOrigins": sorted(self.granted_origins),
        }


class SessionRegistry:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        # tab_id -> owning session_id
        self._tab_owner: dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create_session(self, origin: str) -> Session:
        session = Session(session_id=f"sess-{uuid.uuid4().hex}", caller_origin=origin, created_at=self._clock())
        self._sessions[session.session_id] = session
        logger.info("session_created session=%s origin=%s", session.session_id, origin)
        return session

    def get(self, session_id: str | None) -> Session | None:
        if not isinstance(session_id, str) or not session_id:
            return None
        return self._sessions.get(session_id)

    def require(self, session_id: str | None) -> Session:
        session = self.get(session_id)
        if session is None:
            raise InvalidSession("Invalid session")
        return session

    def add_tab(self, session_id: str, tab_id: int) -> None:
        session = self.require(session_id)
        owner = self._tab_owner.get(tab_id)
        if owner is not None and owner != session_id:
            raise TabAccessDenied(f"Tab {tab_id} belongs to another session")
        session.tab_ids.add(tab_id)
        self._tab_owner[tab_id] = session_id

    def is_tab_owned(self, session_id: str | None, tab_id: int | None) -> bool:
        if tab_id is None:
            return False
        session = self.get(session_id)
        if session is None:
            return False
        return tab_id in session.tab_ids and self._tab_owner.get(tab_id) == session.session_id

    def owner_of(self, tab_id: int) -> str | None:
        return self._tab_owner.get(tab_id)

    def grant_origin_for_session(self, session_id: str, origin: str) -> None:
        session = self.require(session_id)
        if origin not in session.granted_origins:
            session.granted_origins.add(origin)
            logger.info("session_origin_granted session=%s origin=%s", session_id, origin)

    def is_origin_granted_for_session(self, session_id: str | None, origin: str) -> bool:
        session = self.get(session_id)
        return session is not None and origin in session.granted_origins

    def reset(self) -> None:
        self._sessions.clear()
        self._tab_owner.clear()
