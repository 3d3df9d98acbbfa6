"""
Structured errors for the agent bridge.

Every rejection in the command pipeline is a BridgeError subclass with a stable
`code`. The router catches them once and turns them into a response payload,
so nothing here ever crashes the host process.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for protocol rejections."""

    code = "BridgeError"

    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = dict(details or {})

    def __str__(self) -> str:
        return self.reason

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.reason, "success": False, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InsecureOrigin(BridgeError):
    code = "InsecureOrigin"


class InvalidOrigin(BridgeError):
    code = "InvalidOrigin"


class MissingNonce(BridgeError):
    code = "MissingNonce"


class ReplayDetected(BridgeError):
    code = "ReplayDetected"


class TokenMissing(BridgeError):
    code = "TokenMissing"


class TokenInvalid(BridgeError):
    code = "TokenInvalid"


class TokenExpired(BridgeError):
    code = "TokenExpired"


class TokenOriginMismatch(BridgeError):
    code = "TokenOriginMismatch"


class InvalidSession(BridgeError):
    code = "InvalidSession"


class TabAccessDenied(BridgeError):
    code = "TabAccessDenied"


class PermissionDenied(BridgeError):
    code = "PermissionDenied"


class PermissionTimeout(PermissionDenied):
    code = "PermissionTimeout"


class UnknownCommand(BridgeError):
    code = "UnknownCommand"


class InvalidCommand(BridgeError):
    code = "InvalidCommand"


class ExecutionFailure(BridgeError):
    """Opaque passthrough of a backend error (element not found, etc.)."""

    code = "ExecutionFailure"


__all__ = [
    "BridgeError",
    "ExecutionFailure",
    "InsecureOrigin",
    "InvalidCommand",
    "InvalidOrigin",
    "InvalidSession",
    "MissingNonce",
    "PermissionDenied",
    "PermissionTimeout",
    "ReplayDetected",
    "TabAccessDenied",
    "TokenExpired",
    "TokenInvalid",
    "TokenMissing",
    "TokenOriginMismatch",
    "UnknownCommand",
]
