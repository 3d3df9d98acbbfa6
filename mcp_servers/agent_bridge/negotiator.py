"""Permission negotiation: session grant -> remembered policy -> ask the human.

The interactive step goes through a FIFO queue. The approval UI sees one
request at a time (the head of the queue); later requests wait their turn
instead of being hidden behind an arbitrary "first" entry. Every waiter is
bounded by the approval timeout, which always resolves as a denial.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import PermissionDenied, PermissionTimeout
from .permissions import PermissionPolicyStore, PermissionRequest
from .sessions import SessionRegistry

logger = logging.getLogger("mcp.agent_bridge.negotiator")

DEFAULT_APPROVAL_TIMEOUT_S = 30.0

RESOLVED_BY_SESSION = "session"
RESOLVED_BY_POLICY = "policy"
RESOLVED_BY_USER = "user"


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    allow: bool
    remember: bool = False


@dataclass(eq=False)
class PendingApproval:
    id: str
    request: PermissionRequest
    session_id: str
    created_at: float
    future: asyncio.Future = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view for the approval UI (no future)."""
        return {
            "id": self.id,
            **self.request.to_dict(),
            "sessionId": self.session_id,
            "timestamp": int(self.created_at * 1000),
        }


class ApprovalPresenter(Protocol):
    """Shows a request to the human; may raise or never return."""

    async def present(self, approval: PendingApproval) -> ApprovalDecision | None: ...


class PermissionNegotiator:
    def __init__(
        self,
        sessions: SessionRegistry,
        policies: PermissionPolicyStore,
        *,
        presenter: ApprovalPresenter | None = None,
        timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions = sessions
        self.policies = policies
        self.presenter = presenter
        self.timeout_s = float(timeout_s)
        self._clock = clock

        self._queue: deque[PendingApproval] = deque()
        self._by_id: dict[str, PendingApproval] = {}
        self._presenting: PendingApproval | None = None
        self._present_task: asyncio.Task | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Decision algorithm
    # ─────────────────────────────────────────────────────────────────────────

    async def negotiate(self, request: PermissionRequest, session_id: str) -> str:
        """Resolve a request; returns how it was allowed or raises PermissionDenied."""
        if self.sessions.is_origin_granted_for_session(session_id, request.target_origin):
            logger.info("auto_allowed source=session action=%s target=%s", request.action, request.target_origin)
            return RESOLVED_BY_SESSION

        if self.policies.is_allowed(request):
            logger.info(
                "auto_allowed source=policy action=%s caller=%s target=%s",
                request.action,
                request.caller_origin,
                request.target_origin,
            )
            return RESOLVED_BY_POLICY

        approval = self._enqueue(request, session_id)
        try:
            decision = await asyncio.wait_for(approval.future, timeout=self.timeout_s)
        except asyncio.TimeoutError:
            self._remove(approval)
            logger.info("approval_timeout id=%s action=%s", approval.id, request.action)
            raise PermissionTimeout(f"Permission request timed out for action: {request.action}") from None
        except asyncio.CancelledError:
            self._remove(approval)
            raise

        if not decision.allow:
            raise PermissionDenied(f"Permission denied for action: {request.action}")
        return RESOLVED_BY_USER

    async def is_allowed(self, request: PermissionRequest, session_id: str) -> bool:
        try:
            await self.negotiate(request, session_id)
        except PermissionDenied:
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Approval queue
    # ─────────────────────────────────────────────────────────────────────────

    def current(self) -> PendingApproval | None:
        """The approval currently shown to the human (head of the queue)."""
        return self._queue[0] if self._queue else None

    def pending(self) -> list[PendingApproval]:
        return list(self._queue)

    def decide(self, permission_id: str, allow: bool, remember: bool = False) -> bool:
        """Apply a human decision. Returns False when the id is unknown or settled."""
        approval = self._by_id.get(permission_id)
        if approval is None or approval.future.done():
            return False

        request = approval.request
        if allow:
            # Session grant always applies on approval; the policy only on "remember".
            if self.sessions.get(approval.session_id) is not None:
                self.sessions.grant_origin_for_session(approval.session_id, request.target_origin)
            if remember:
                self.policies.grant(request, persist=True)

        logger.info(
            "approval_decided id=%s action=%s target=%s allow=%s remember=%s",
            approval.id,
            request.action,
            request.target_origin,
            bool(allow),
            bool(remember),
        )
        approval.future.set_result(ApprovalDecision(allow=bool(allow), remember=bool(remember)))
        self._remove(approval)
        return True

    def reset(self) -> None:
        """Drop the queue; every waiter resolves as a denial."""
        for approval in list(self._queue):
            if not approval.future.done():
                approval.future.set_exception(
                    PermissionDenied(f"Permission request discarded for action: {approval.request.action}")
                )
        self._queue.clear()
        self._by_id.clear()
        self._presenting = None
        task = self._present_task
        self._present_task = None
        if task is not None and not task.done():
            task.cancel()

    def _enqueue(self, request: PermissionRequest, session_id: str) -> PendingApproval:
        loop = asyncio.get_running_loop()
        approval = PendingApproval(
            id=secrets.token_hex(8),
            request=request,
            session_id=session_id,
            created_at=self._clock(),
            future=loop.create_future(),
        )
        self._queue.append(approval)
        self._by_id[approval.id] = approval
        logger.info(
            "approval_queued id=%s action=%s caller=%s target=%s depth=%d",
            approval.id,
            request.action,
            request.caller_origin,
            request.target_origin,
            len(self._queue),
        )
        self._surface()
        return approval

    def _remove(self, approval: PendingApproval) -> None:
        with contextlib.suppress(ValueError):
            self._queue.remove(approval)
        self._by_id.pop(approval.id, None)
        if self._presenting is approval:
            self._presenting = None
            task = self._present_task
            self._present_task = None
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._surface()

    def _surface(self) -> None:
        if self._presenting is not None or not self._queue:
            return
        head = self._queue[0]
        self._presenting = head
        if self.presenter is not None:
            self._present_task = asyncio.ensure_future(self._run_presenter(head))

    async def _run_presenter(self, approval: PendingApproval) -> None:
        presenter = self.presenter
        if presenter is None:
            return
        try:
            decision = await presenter.present(approval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            # Left for the timeout (or a polled decision) to settle.
            logger.warning("approval_present_failed id=%s error=%s", approval.id, exc)
            return
        if isinstance(decision, ApprovalDecision):
            self.decide(approval.id, decision.allow, decision.remember)
