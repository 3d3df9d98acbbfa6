"""
Boundary types for the browser side of the bridge.

The bridge never touches the DOM itself. Anything that can open tabs and run a
tool in a tab (the extension connection in `gateway.py`, a fake in tests)
implements BrowserBackend.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from .origin import origin_from_url


@dataclass(frozen=True, slots=True)
class TabInfo:
    id: int
    url: str = ""
    title: str = ""

    @property
    def origin(self) -> str | None:
        return origin_from_url(self.url)

    def to_dict(self, session_id: str | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.id, "url": self.url, "title": self.title or "Untitled"}
        if session_id is not None:
            out["sessionId"] = session_id
        return out

    @classmethod
    def from_dict(cls, data: Any) -> TabInfo | None:
        if not isinstance(data, dict):
            return None
        raw_id = data.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
            return None
        try:
            tab_id = int(raw_id)
        except ValueError:
            return None
        return cls(id=tab_id, url=str(data.get("url") or ""), title=str(data.get("title") or ""))


class BrowserBackend(Protocol):
    async def create_tab(self, url: str) -> TabInfo: ...

    async def navigate_tab(self, tab_id: int, url: str) -> None: ...

    async def get_tab(self, tab_id: int) -> TabInfo | None: ...

    async def list_tabs(self) -> list[TabInfo]: ...

    async def execute(
        self,
        tab_id: int,
        tool: str,
        args: dict[str, Any],
        *,
        expected_origin: str | None = None,
    ) -> Any:
        """Run a DOM tool in a tab; must refuse if the tab left `expected_origin`."""
        ...
