from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from .backend import TabInfo
from .config import BridgeConfig
from .negotiator import PendingApproval
from .origin import EXTENSION_SCHEME, is_extension_origin, normalize_origin
from .redaction import redact_envelope_for_log
from .router import CommandRouter

logger = logging.getLogger("mcp.agent_bridge.gateway")

BRIDGE_PROTOCOL_VERSION = "2026-10-01"
BRIDGE_WELL_KNOWN_PATH = "/.well-known/agent-bridge"

_HELLO_TIMEOUT_S = 2.5
_RPC_TIMEOUT_S = 10.0
# Tool execution waits on the page (waitFor etc.), so it gets more headroom.
_EXECUTE_TIMEOUT_S = 60.0
_STATUS_LOG_TAIL = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


class GatewayError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionClientInfo:
    extension_id: str
    extension_version: str | None = None
    user_agent: str | None = None
    capabilities: dict[str, Any] | None = None


def _ws_origin(ws: ServerConnection) -> str | None:
    request = getattr(ws, "request", None)
    if request is None:
        return None
    raw = request.headers.get("Origin")
    return raw if isinstance(raw, str) and raw.strip() else None


def _decode(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


class BridgeGateway:
    """Local WebSocket gateway between controller pages, the extension and the approval popup.

    Roles are picked by the first frame on a socket:
    - `hello` (extension origin): the extension that owns tabs and runs tools.
      The gateway talks to it with `rpc` frames and serves as the router's backend.
    - `approverHello` (extension origin): the approval popup.
    - anything else: a controller page. The handshake Origin header is the
      trusted origin for every frame on that socket.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        router: CommandRouter | None = None,
    ) -> None:
        self.config = config if config is not None else BridgeConfig.from_env()
        self.router = router if router is not None else CommandRouter.from_config(self.config, self, presenter=self)
        self.host = self.config.host
        self.port = self.config.port

        self._server: Server | None = None
        self._started_at_ms = _now_ms()

        self._ext_ws: ServerConnection | None = None
        self._client: ExtensionClientInfo | None = None
        self._connected = asyncio.Event()
        self._next_id = 1
        self._pending_rpc: dict[int, asyncio.Future] = {}

        self._approvers: set[ServerConnection] = set()
        self._controllers: set[ServerConnection] = set()

        # small gateway log buffer (for diagnostics)
        self._logs: deque[dict[str, Any]] = deque(maxlen=200)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await serve(
            self._handler,
            self.host,
            int(self.port),
            process_request=self._process_request,
            max_size=2_000_000,
            ping_interval=None,
        )
        sockets = list(self._server.sockets or [])
        if sockets:
            self.port = int(sockets[0].getsockname()[1])
        self._log("info", f"gateway listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        srv = self._server
        self._server = None
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        self._disconnect_extension()
        self.router.negotiator.reset()

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    def status(self) -> dict[str, Any]:
        client = self._client
        return {
            "listening": self._server is not None,
            "host": self.host,
            "port": self.port,
            "protocolVersion": BRIDGE_PROTOCOL_VERSION,
            "serverStartedAtMs": self._started_at_ms,
            "extensionConnected": self._ext_ws is not None,
            "approvers": len(self._approvers),
            "controllers": len(self._controllers),
            **(
                {
                    "client": {
                        "extensionId": client.extension_id,
                        **({"extensionVersion": client.extension_version} if client.extension_version else {}),
                        **({"userAgent": client.user_agent} if client.user_agent else {}),
                        **({"capabilities": client.capabilities} if isinstance(client.capabilities, dict) else {}),
                    }
                }
                if client is not None
                else {}
            ),
            "recentLogs": list(self._logs)[-_STATUS_LOG_TAIL:],
            **self.router.status(),
        }

    def is_connected(self) -> bool:
        return self._ext_ws is not None

    async def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        """Wait until the extension completed its hello, or timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # BrowserBackend (via extension RPC)
    # ─────────────────────────────────────────────────────────────────────────

    async def create_tab(self, url: str) -> TabInfo:
        tab = TabInfo.from_dict(await self.rpc_call("tabs.create", {"url": url}))
        if tab is None:
            raise GatewayError("Extension returned no tab for tabs.create")
        return tab

    async def navigate_tab(self, tab_id: int, url: str) -> None:
        await self.rpc_call("tabs.update", {"tabId": tab_id, "url": url})

    async def get_tab(self, tab_id: int) -> TabInfo | None:
        return TabInfo.from_dict(await self.rpc_call("tabs.get", {"tabId": tab_id}))

    async def list_tabs(self) -> list[TabInfo]:
        res = await self.rpc_call("tabs.query", {})
        if not isinstance(res, list):
            return []
        return [tab for tab in (TabInfo.from_dict(item) for item in res) if tab is not None]

    async def execute(
        self,
        tab_id: int,
        tool: str,
        args: dict[str, Any],
        *,
        expected_origin: str | None = None,
    ) -> Any:
        params: dict[str, Any] = {"tabId": tab_id, "tool": tool, "args": args}
        if expected_origin:
            params["expectedOrigin"] = expected_origin
        return await self.rpc_call("tool.execute", params, timeout=_EXECUTE_TIMEOUT_S)

    async def rpc_call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float = _RPC_TIMEOUT_S) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise GatewayError("Extension RPC method is required")
        ws = self._ext_ws
        if ws is None:
            raise GatewayError(
                "Extension is not connected. Install/enable the extension and ensure it can connect to the gateway."
            )

        req_id = self._next_id
        self._next_id += 1
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_rpc[req_id] = fut

        msg: dict[str, Any] = {"type": "rpc", "id": req_id, "method": method}
        if params:
            msg["params"] = params
        try:
            try:
                await self._send_json(ws, msg)
            except ConnectionClosed as exc:
                raise GatewayError(f"Extension RPC send failed: {exc}") from exc
            try:
                return await asyncio.wait_for(fut, timeout=max(0.1, float(timeout)))
            except asyncio.TimeoutError:
                raise GatewayError(f"Extension RPC timed out: method={method}") from None
        finally:
            self._pending_rpc.pop(req_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # ApprovalPresenter
    # ─────────────────────────────────────────────────────────────────────────

    async def present(self, approval: PendingApproval) -> None:
        """Push the request to every connected popup; the decision comes back as a frame."""
        if not self._approvers:
            self._log("warn", f"no approval UI connected for permission {approval.id}")
        await self._broadcast_approvers({"type": "permissionRequest", "permission": approval.to_dict()})
        # Settled through router.permission_decision(); the negotiator cancels this wait.
        await asyncio.Future()

    async def _broadcast_approvers(self, payload: dict[str, Any]) -> None:
        targets = list(self._approvers)
        if targets:
            await asyncio.gather(*[self._send_json(w, payload) for w in targets], return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handling
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, ws: ServerConnection) -> None:
        channel_origin = _ws_origin(ws)
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=_HELLO_TIMEOUT_S)
        except (asyncio.TimeoutError, ConnectionClosed):
            self._log("warn", "hello timeout")
            return

        first = _decode(raw)
        if not isinstance(first, dict):
            with contextlib.suppress(ConnectionClosed):
                await ws.close(code=1002, reason="expected a JSON object")
            return

        mtype = str(first.get("type") or "").strip()
        if mtype == "hello":
            await self._serve_extension(ws, channel_origin, first)
        elif mtype == "approverHello":
            await self._serve_approver(ws, channel_origin)
        else:
            await self._serve_controller(ws, channel_origin, first)

    def _extension_origin_ok(self, channel_origin: str | None, ext_id: str | None = None) -> bool:
        origin = normalize_origin(channel_origin or "")
        if origin is None or not is_extension_origin(origin):
            return False
        origin_id = origin[len(EXTENSION_SCHEME) + 3 :]
        if ext_id is not None and origin_id != ext_id.lower():
            return False
        expected = self.config.expected_extension_id
        return expected is None or origin_id == expected.lower()

    async def _serve_extension(self, ws: ServerConnection, channel_origin: str | None, hello: dict[str, Any]) -> None:
        ext_id = str(hello.get("extensionId") or "").strip()
        if not ext_id:
            with contextlib.suppress(ConnectionClosed):
                await ws.close(code=1002, reason="missing extensionId")
            return
        if not self._extension_origin_ok(channel_origin, ext_id):
            logger.warning("extension_rejected origin=%s extension=%s", channel_origin, ext_id)
            with contextlib.suppress(ConnectionClosed):
                await ws.close(code=1008, reason="unexpected extension origin")
            return

        # Replace active client (MV3 can reconnect often).
        self._disconnect_extension()
        self._ext_ws = ws
        self._client = ExtensionClientInfo(
            extension_id=ext_id,
            extension_version=str(hello.get("extensionVersion") or "") or None,
            user_agent=str(hello.get("userAgent") or "") or None,
            capabilities=hello.get("capabilities") if isinstance(hello.get("capabilities"), dict) else None,
        )
        try:
            await self._send_json(
                ws,
                {
                    "type": "helloAck",
                    "protocolVersion": BRIDGE_PROTOCOL_VERSION,
                    "serverVersion": os.environ.get("MCP_SERVER_VERSION") or "0.1.0",
                    "serverStartedAtMs": self._started_at_ms,
                    "gatewayPort": int(self.port),
                },
            )
        except ConnectionClosed:
            self._disconnect_extension(ws)
            return
        self._connected.set()
        logger.info("extension_connected extension=%s", ext_id)

        try:
            async for raw_msg in ws:
                self._on_extension_message(_decode(raw_msg))
        except ConnectionClosed:
            pass
        finally:
            self._disconnect_extension(ws)

    def _on_extension_message(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            return
        mtype = msg.get("type")

        if mtype == "rpcResult":
            raw_id = msg.get("id")
            if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
                return
            try:
                req_id = int(raw_id)
            except ValueError:
                return
            fut = self._pending_rpc.get(req_id)
            if fut is None or fut.done():
                return
            if msg.get("ok"):
                fut.set_result(msg.get("result"))
                return
            err = msg.get("error")
            err_msg = err.get("message") if isinstance(err, dict) else None
            fut.set_exception(GatewayError(err_msg if isinstance(err_msg, str) else "Extension RPC failed"))
            return

        if mtype == "log":
            level = str(msg.get("level") or "info")
            self._log(level if level in {"debug", "info", "warn", "error"} else "info", str(msg.get("message") or ""))

    def _disconnect_extension(self, ws: ServerConnection | None = None) -> None:
        if ws is not None and ws is not self._ext_ws:
            return
        was_connected = self._ext_ws is not None
        self._ext_ws = None
        self._client = None
        self._connected.clear()
        pending = list(self._pending_rpc.values())
        self._pending_rpc.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(GatewayError("Extension disconnected"))
        if was_connected:
            logger.info("extension_disconnected")

    async def _serve_approver(self, ws: ServerConnection, channel_origin: str | None) -> None:
        if not self._extension_origin_ok(channel_origin):
            logger.warning("approver_rejected origin=%s", channel_origin)
            with contextlib.suppress(ConnectionClosed):
                await ws.close(code=1008, reason="approval UI must be an extension page")
            return

        self._approvers.add(ws)
        try:
            await self._send_json(ws, {"type": "approverHelloAck", "protocolVersion": BRIDGE_PROTOCOL_VERSION})
            head = self.router.pending_permission()
            if head is not None:
                await self._send_json(ws, {"type": "permissionRequest", "permission": head})

            async for raw_msg in ws:
                msg = _decode(raw_msg)
                if not isinstance(msg, dict):
                    continue
                mtype = msg.get("type")
                reply: dict[str, Any] | None = None
                if mtype == "getPendingPermission":
                    reply = {"type": "pendingPermission", "permission": self.router.pending_permission()}
                elif mtype == "permissionDecision":
                    reply = {"type": "permissionDecisionResult", **self.router.permission_decision(msg)}
                elif mtype == "ping":
                    reply = {"type": "pong", "ts": _now_ms()}
                if reply is None:
                    continue
                if "id" in msg:
                    reply["id"] = msg["id"]
                await self._send_json(ws, reply)
        except ConnectionClosed:
            pass
        finally:
            self._approvers.discard(ws)

    async def _serve_controller(self, ws: ServerConnection, channel_origin: str | None, first: dict[str, Any]) -> None:
        origin = normalize_origin(channel_origin or "")
        if origin is None or is_extension_origin(origin) or not self.config.is_controller_origin_allowed(origin):
            logger.warning("controller_rejected origin=%s", channel_origin)
            with contextlib.suppress(ConnectionClosed):
                await ws.close(code=1008, reason="origin not allowed")
            return

        self._controllers.add(ws)
        tasks: set[asyncio.Task] = set()

        def _spawn(msg: Any) -> None:
            # Commands run concurrently so one waiting on approval does not stall the socket.
            task = asyncio.ensure_future(self._controller_frame(ws, channel_origin, msg))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        try:
            _spawn(first)
            async for raw_msg in ws:
                _spawn(_decode(raw_msg))
        except ConnectionClosed:
            pass
        finally:
            self._controllers.discard(ws)
            for task in list(tasks):
                task.cancel()

    async def _controller_frame(self, ws: ServerConnection, channel_origin: str | None, msg: Any) -> None:
        if isinstance(msg, dict) and msg.get("type") == "ping":
            reply: dict[str, Any] = {"type": "pong", **self.router.status()}
        else:
            if os.environ.get("MCP_TRACE"):
                logger.info("recv %s", redact_envelope_for_log(msg))
            reply = {"type": "response", **await self.router.handle(msg, channel_origin=channel_origin)}
        with contextlib.suppress(ConnectionClosed):
            await self._send_json(ws, reply)

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP discovery
    # ─────────────────────────────────────────────────────────────────────────

    def _process_request(self, _conn: ServerConnection, request: Request) -> Response | None:
        upgrade = str(request.headers.get("Upgrade") or "").lower()
        if upgrade == "websocket":
            return None

        headers = Headers()
        headers["Cache-Control"] = "no-store"
        headers["Access-Control-Allow-Origin"] = "*"
        if request.path != BRIDGE_WELL_KNOWN_PATH:
            headers["Content-Type"] = "text/plain"
            return Response(404, "Not Found", headers, b"not found")

        payload = {
            "type": "agentBridgeGateway",
            "protocolVersion": BRIDGE_PROTOCOL_VERSION,
            "serverStartedAtMs": self._started_at_ms,
            "gatewayPort": int(self.port),
            "pid": os.getpid(),
            "extensionConnected": self._ext_ws is not None,
        }
        headers["Content-Type"] = "application/json"
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return Response(200, "OK", headers, body)

    async def _send_json(self, ws: ServerConnection, payload: dict[str, Any]) -> None:
        await ws.send(json.dumps(payload, ensure_ascii=False))

    def _log(self, level: str, message: str) -> None:
        self._logs.append({"ts": _now_ms(), "level": level, "message": message[:2000]})
        log_level = {"debug": logging.DEBUG, "warn": logging.WARNING, "error": logging.ERROR}.get(level, logging.INFO)
        logger.log(log_level, "%s", message)
