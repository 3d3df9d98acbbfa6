from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .policy_persist import MemoryPolicyStorage, PolicyStorage

logger = logging.getLogger("mcp.agent_bridge.permissions")

ACTION_NAVIGATE = "navigate"
ACTION_CLICK = "click"
ACTION_TYPE = "type"
ACTION_EVALUATE = "evaluate"
ACTION_CREATE_TAB = "createTab"

SENSITIVE_ACTIONS = frozenset({ACTION_NAVIGATE, ACTION_CLICK, ACTION_TYPE, ACTION_EVALUATE, ACTION_CREATE_TAB})


def _norm_action(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    val = raw.strip()
    return val or None


def _parse_action_list(raw: Any) -> list[str]:
    if isinstance(raw, (list, tuple, set, frozenset)):
        return [a for a in (_norm_action(item) for item in raw) if a]
    if isinstance(raw, str):
        return [a for a in (_norm_action(s) for s in raw.split(",")) if a]
    return []


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    action: str
    caller_origin: str
    target_origin: str
    element: str | None = None
    ref: str | None = None
    text: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "callerOrigin": self.caller_origin,
            "targetOrigin": self.target_origin,
            **({"element": self.element} if self.element else {}),
            **({"ref": self.ref} if self.ref else {}),
            **({"text": self.text} if self.text else {}),
            "url": self.url or self.target_origin,
        }


@dataclass
class PermissionPolicy:
    caller_origin: str
    target_origin: str
    allowed_actions: set[str] = field(default_factory=set)

    @property
    def key(self) -> tuple[str, str]:
        return (self.caller_origin, self.target_origin)

    def to_dict(self) -> dict[str, Any]:
        return {
            "callerOrigin": self.caller_origin,
            "targetOrigin": self.target_origin,
            "allowedActions": sorted(self.allowed_actions),
        }

    @classmethod
    def from_dict(cls, data: Any) -> PermissionPolicy | None:
        if not isinstance(data, dict):
            return None
        caller = data.get("callerOrigin")
        target = data.get("targetOrigin")
        if not (isinstance(caller, str) and caller.strip() and isinstance(target, str) and target.strip()):
            return None
        actions = set(_parse_action_list(data.get("allowedActions")))
        if not actions:
            return None
        return cls(caller_origin=caller.strip(), target_origin=target.strip(), allowed_actions=actions)


class PermissionPolicyStore:
    """Cross-session allow-rules keyed by the exact (caller, target) origin pair.

    No wildcard or suffix matching: a rule for https://bank.com does not cover
    https://www.bank.com.
    """

    def __init__(self, storage: PolicyStorage | None = None) -> None:
        self.storage: PolicyStorage = storage if storage is not None else MemoryPolicyStorage()
        self._policies: dict[tuple[str, str], PermissionPolicy] = {}

    def __len__(self) -> int:
        return len(self._policies)

    def load(self) -> int:
        self._policies.clear()
        for policy in self.storage.load():
            prev = self._policies.get(policy.key)
            if prev is not None:
                prev.allowed_actions.update(policy.allowed_actions)
            else:
                self._policies[policy.key] = policy
        logger.info("policies_loaded count=%d", len(self._policies))
        return len(self._policies)

    def grant(self, request: PermissionRequest, persist: bool = True) -> PermissionPolicy:
        key = (request.caller_origin, request.target_origin)
        policy = self._policies.get(key)
        if policy is None:
            policy = PermissionPolicy(caller_origin=request.caller_origin, target_origin=request.target_origin)
            self._policies[key] = policy
        policy.allowed_actions.add(request.action)
        logger.info(
            "policy_granted caller=%s target=%s action=%s persist=%s",
            request.caller_origin,
            request.target_origin,
            request.action,
            persist,
        )
        if persist:
            self.storage.save(policy)
        return policy

    def is_allowed(self, request: PermissionRequest) -> bool:
        policy = self._policies.get((request.caller_origin, request.target_origin))
        return policy is not None and request.action in policy.allowed_actions

    def policies_for(self, caller_origin: str) -> list[PermissionPolicy]:
        return [p for (caller, _target), p in self._policies.items() if caller == caller_origin]

    def revoke(self, caller_origin: str, target_origin: str) -> bool:
        policy = self._policies.pop((caller_origin, target_origin), None)
        if policy is None:
            return False
        self.storage.delete(caller_origin, target_origin)
        return True

    def reset(self) -> None:
        """Drop in-memory rules; durable storage is left alone."""
        self._policies.clear()
