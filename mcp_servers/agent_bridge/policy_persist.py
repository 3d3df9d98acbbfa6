"""Durable storage for remembered permission policies.

Design
- One small JSON document holds every policy (default under `data/policies/`).
- Atomic writes: write temp file then replace; best-effort `.bak` of the
  previous file.
- Fail-soft reads: a missing or corrupt file loads as "no policies".

Security posture
- This is NOT encrypted. Only origins and action names are stored.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .permissions import PermissionPolicy

logger = logging.getLogger("mcp.agent_bridge.policy_persist")


class PolicyStorage(Protocol):
    def load(self) -> list[PermissionPolicy]: ...

    def save(self, policy: PermissionPolicy) -> None: ...

    def delete(self, caller_origin: str, target_origin: str) -> None: ...


class MemoryPolicyStorage:
    """Process-local storage; useful for tests and for ephemeral hosts."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], dict[str, Any]] = {}

    def load(self) -> list[PermissionPolicy]:
        from .permissions import PermissionPolicy

        out: list[PermissionPolicy] = []
        for data in self.items.values():
            policy = PermissionPolicy.from_dict(data)
            if policy is not None:
                out.append(policy)
        return out

    def save(self, policy: PermissionPolicy) -> None:
        self.items[policy.key] = policy.to_dict()

    def delete(self, caller_origin: str, target_origin: str) -> None:
        self.items.pop((caller_origin, target_origin), None)


class JsonPolicyStorage:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _read_items(self) -> list[dict[str, Any]]:
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return []
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            logger.warning("policy_file_unreadable path=%s error=%s", p, exc)
            return []

        if not isinstance(obj, dict):
            return []
        items = obj.get("policies")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    def _write_items(self, items: list[dict[str, Any]]) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)

        payload = {"version": 1, "updatedAt": int(time.time() * 1000), "policies": items}
        text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        bak = p.with_suffix(p.suffix + ".bak")

        # Backup is best-effort.
        with suppress(OSError):
            if p.exists() and p.is_file():
                shutil.copyfile(p, bak)

        tmp.write_text(text, encoding="utf-8")
        with suppress(OSError):
            os.chmod(tmp, 0o600)
        tmp.replace(p)
        with suppress(OSError):
            os.chmod(p, 0o600)

    def load(self) -> list[PermissionPolicy]:
        from .permissions import PermissionPolicy

        out: list[PermissionPolicy] = []
        for item in self._read_items():
            policy = PermissionPolicy.from_dict(item)
            if policy is not None:
                out.append(policy)
        return out

    def save(self, policy: PermissionPolicy) -> None:
        items = [
            item
            for item in self._read_items()
            if (item.get("callerOrigin"), item.get("targetOrigin")) != policy.key
        ]
        items.append(policy.to_dict())
        self._write_items(items)

    def delete(self, caller_origin: str, target_origin: str) -> None:
        items = self._read_items()
        kept = [i for i in items if (i.get("callerOrigin"), i.get("targetOrigin")) != (caller_origin, target_origin)]
        if len(kept) != len(items):
            self._write_items(kept)
