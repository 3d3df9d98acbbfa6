"""
Command pipeline for controller frames.

Order per command: trusted origin -> nonce -> (connect: secure-origin gate,
new session + token) | (token -> session -> tab ownership -> permission ->
backend). Every rejection comes back as a payload correlated by requestId.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import Any, TypeVar

from .backend import BrowserBackend
from .commands import (
    TOOL_NAVIGATE,
    ConnectCommand,
    CreateTabCommand,
    Envelope,
    ExecuteCommand,
    ListTabsCommand,
    parse_command,
    parse_envelope,
)
from .config import BridgeConfig
from .correlation import PendingRequestTracker
from .errors import (
    BridgeError,
    ExecutionFailure,
    InsecureOrigin,
    InvalidCommand,
    InvalidSession,
    PermissionDenied,
    TabAccessDenied,
)
from .negotiator import ApprovalPresenter, PermissionNegotiator
from .origin import OriginAuthenticator, origin_from_url
from .permissions import SENSITIVE_ACTIONS, PermissionPolicyStore, PermissionRequest
from .policy_persist import JsonPolicyStorage, PolicyStorage
from .redaction import redact_command_args, redact_url
from .replay import ReplayGuard
from .sessions import Session, SessionRegistry
from .tokens import SessionTokenStore

logger = logging.getLogger("mcp.agent_bridge.router")

T = TypeVar("T")


class CommandRouter:
    def __init__(
        self,
        backend: BrowserBackend,
        *,
        authenticator: OriginAuthenticator | None = None,
        replay: ReplayGuard | None = None,
        tokens: SessionTokenStore | None = None,
        sessions: SessionRegistry | None = None,
        policies: PermissionPolicyStore | None = None,
        negotiator: PermissionNegotiator | None = None,
        pending: PendingRequestTracker | None = None,
        sensitive_actions: frozenset[str] = SENSITIVE_ACTIONS,
    ) -> None:
        self.backend = backend
        self.authenticator = authenticator if authenticator is not None else OriginAuthenticator()
        self.replay = replay if replay is not None else ReplayGuard()
        self.tokens = tokens if tokens is not None else SessionTokenStore()
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.policies = policies if policies is not None else PermissionPolicyStore()
        self.negotiator = negotiator if negotiator is not None else PermissionNegotiator(self.sessions, self.policies)
        self.pending = pending if pending is not None else PendingRequestTracker()
        self.sensitive_actions = frozenset(sensitive_actions)

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        backend: BrowserBackend,
        *,
        presenter: ApprovalPresenter | None = None,
        storage: PolicyStorage | None = None,
    ) -> CommandRouter:
        sessions = SessionRegistry()
        policies = PermissionPolicyStore(storage if storage is not None else JsonPolicyStorage(config.policy_file))
        policies.load()
        return cls(
            backend,
            replay=ReplayGuard(max_entries=config.nonce_cache_size, max_age_s=config.nonce_max_age_s),
            tokens=SessionTokenStore(ttl_s=config.token_ttl_s),
            sessions=sessions,
            policies=policies,
            negotiator=PermissionNegotiator(
                sessions,
                policies,
                presenter=presenter,
                timeout_s=config.approval_timeout_s,
            ),
            pending=PendingRequestTracker(ttl_s=config.pending_request_ttl_s),
        )

    def reset(self) -> None:
        """Drop all process-local state (sessions, tokens, nonces, approvals)."""
        self.replay.reset()
        self.tokens.reset()
        self.sessions.reset()
        self.negotiator.reset()
        self.pending.reset()

    # ─────────────────────────────────────────────────────────────────────────
    # Controller commands
    # ─────────────────────────────────────────────────────────────────────────

    async def handle(self, message: Any, *, channel_origin: str | None) -> dict[str, Any]:
        """Process one controller frame; never raises for protocol errors."""
        request_id = message.get("requestId") if isinstance(message, dict) else None
        try:
            origin = self.authenticator.authenticate(channel_origin, message if isinstance(message, dict) else None)
            envelope = parse_envelope(message)
            payload = await self._process(envelope, origin)
        except BridgeError as exc:
            logger.warning(
                "command_rejected code=%s request=%s origin=%s reason=%s",
                exc.code,
                request_id,
                channel_origin,
                exc.reason,
            )
            payload = exc.to_payload()
        except Exception as exc:  # noqa: BLE001
            logger.exception("command_failed request=%s", request_id)
            payload = ExecutionFailure(str(exc) or type(exc).__name__).to_payload()
        return {"requestId": request_id, "payload": payload}

    async def _process(self, envelope: Envelope, origin: str) -> Any:
        self.replay.check(envelope.nonce)
        command = parse_command(envelope)

        if isinstance(command, ConnectCommand):
            return self._connect(origin)

        token = self.tokens.validate(envelope.session_token, origin)
        session = self.sessions.require(command.session_id)
        if token.session_id != session.session_id or session.caller_origin != origin:
            raise InvalidSession("Session token was not issued for this session")

        if isinstance(command, CreateTabCommand):
            return await self._create_tab(command, session, origin)
        if isinstance(command, ListTabsCommand):
            return await self._list_tabs(session)
        if isinstance(command, ExecuteCommand):
            return await self._execute(command, session, origin, envelope.request_id)
        raise InvalidCommand(f"Unhandled command: {type(command).__name__}")

    def _connect(self, origin: str) -> dict[str, Any]:
        if not self.tokens.is_secure_origin(origin):
            raise InsecureOrigin(f'Insecure origin "{origin}". Only HTTPS or localhost allowed.')
        self.tokens.prune_expired()
        self.pending.prune()

        session = self.sessions.create_session(origin)
        token = self.tokens.issue(origin, session.session_id)
        logger.info("session_connected session=%s origin=%s token=%s", session.session_id, origin, token.brief)
        return {**session.to_dict(), "sessionToken": token.token, "success": True}

    async def _create_tab(self, command: CreateTabCommand, session: Session, origin: str) -> dict[str, Any]:
        target = origin_from_url(command.url)
        await self._authorize(
            PermissionRequest(action="createTab", caller_origin=origin, target_origin=target or "", url=command.url),
            session,
        )
        tab = await self._call_backend("createTab", self.backend.create_tab(command.url))
        self.sessions.add_tab(session.session_id, tab.id)
        return tab.to_dict(session.session_id)

    async def _list_tabs(self, session: Session) -> list[dict[str, Any]]:
        tabs = await self._call_backend("listTabs", self.backend.list_tabs())
        return [t.to_dict(session.session_id) for t in tabs if self.sessions.is_tab_owned(session.session_id, t.id)]

    async def _execute(
        self,
        command: ExecuteCommand,
        session: Session,
        origin: str,
        request_id: str | None,
    ) -> Any:
        tool, args = command.tool, command.args
        logger.info(
            "execute session=%s tool=%s tab=%s args=%s",
            session.session_id,
            tool,
            command.tab_id,
            redact_command_args(tool, args),
        )

        if tool == TOOL_NAVIGATE and command.tab_id is None:
            return await self._navigate_new_tab(command, session, origin)

        tab_id = command.tab_id
        if tab_id is None:
            raise TabAccessDenied(f'Tool "{tool}" requires a tabId owned by this session')
        if not self.sessions.is_tab_owned(session.session_id, tab_id):
            raise TabAccessDenied(f"Access denied: Tab {tab_id} does not belong to this session")

        if request_id:
            if self.pending.get(request_id) is not None:
                raise InvalidCommand(f"Request {request_id} is already in flight")
            self.pending.track(request_id, origin, tab_id)
        try:
            if tool == TOOL_NAVIGATE:
                url = command.url or ""
                await self._authorize(
                    PermissionRequest(
                        action=TOOL_NAVIGATE,
                        caller_origin=origin,
                        target_origin=origin_from_url(url) or "",
                        url=url,
                    ),
                    session,
                )
                await self._call_backend(tool, self.backend.navigate_tab(tab_id, url))
                return {"code": f"navigate('{url}')", "pageState": f"Navigated to {url}", "tabId": tab_id}

            expected_origin = None
            if tool in self.sensitive_actions:
                expected_origin = await self._tab_origin(tab_id, tool)
                await self._authorize(
                    PermissionRequest(
                        action=tool,
                        caller_origin=origin,
                        target_origin=expected_origin,
                        element=_opt_text(args.get("element")),
                        ref=_opt_text(args.get("ref")),
                        text=_opt_text(args.get("text")),
                    ),
                    session,
                )
            return await self._call_backend(
                tool,
                self.backend.execute(tab_id, tool, args, expected_origin=expected_origin),
            )
        finally:
            if request_id:
                self.pending.complete(request_id)

    async def _navigate_new_tab(self, command: ExecuteCommand, session: Session, origin: str) -> dict[str, Any]:
        url = command.url or ""
        await self._authorize(
            PermissionRequest(
                action=TOOL_NAVIGATE,
                caller_origin=origin,
                target_origin=origin_from_url(url) or "",
                url=url,
            ),
            session,
        )
        tab = await self._call_backend(TOOL_NAVIGATE, self.backend.create_tab(url))
        self.sessions.add_tab(session.session_id, tab.id)
        return {"code": f"navigate('{url}')", "pageState": f"Navigated to {url} in new tab", "tabId": tab.id}

    async def _tab_origin(self, tab_id: int, tool: str) -> str:
        tab = await self._call_backend(tool, self.backend.get_tab(tab_id))
        if tab is None:
            raise ExecutionFailure(f"Tab {tab_id} not found")
        target = tab.origin
        if target is None:
            raise PermissionDenied(f'Cannot authorize "{tool}" on a page without an http(s) origin')
        return target

    async def _authorize(self, request: PermissionRequest, session: Session) -> None:
        if request.action not in self.sensitive_actions:
            return
        if not request.target_origin:
            raise PermissionDenied(f"Permission denied for action: {request.action}")
        how = await self.negotiator.negotiate(request, session.session_id)
        logger.info(
            "permission_allowed session=%s action=%s target=%s via=%s url=%s",
            session.session_id,
            request.action,
            request.target_origin,
            how,
            redact_url(request.url or ""),
        )

    async def _call_backend(self, tool: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (BridgeError, asyncio.CancelledError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExecutionFailure(f'Failed to execute tool "{tool}": {exc}') from exc

    # ─────────────────────────────────────────────────────────────────────────
    # Approval UI messages
    # ─────────────────────────────────────────────────────────────────────────

    def pending_permission(self) -> dict[str, Any] | None:
        head = self.negotiator.current()
        return head.to_dict() if head is not None else None

    def permission_decision(self, message: dict[str, Any]) -> dict[str, Any]:
        permission_id = message.get("permissionId")
        if not isinstance(permission_id, str) or not permission_id:
            return {"success": False, "error": "permissionId is required"}
        ok = self.negotiator.decide(
            permission_id,
            allow=message.get("allow") is True,
            remember=message.get("remember") is True,
        )
        if not ok:
            return {"success": False, "error": "Permission not found"}
        return {"success": True}

    def status(self) -> dict[str, Any]:
        return {
            "status": "active",
            "timestamp": int(time.time() * 1000),
            "sessions": len(self.sessions),
            "pendingApprovals": len(self.negotiator.pending()),
            "pendingRequests": len(self.pending),
            "policies": len(self.policies),
        }


def _opt_text(raw: Any) -> str | None:
    if isinstance(raw, str) and raw:
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    return None
