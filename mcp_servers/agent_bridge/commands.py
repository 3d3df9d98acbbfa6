"""
Inbound message shapes.

Controller frames are parsed once, at the router boundary, into a closed set
of command dataclasses. Field checks live here so the router can match on the
type instead of probing dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .errors import InvalidCommand, UnknownCommand
from .origin import origin_from_url

ENVELOPE_CONNECT = "connect"
ENVELOPE_CREATE_SESSION = "createSession"
ENVELOPE_EXECUTE = "executeCommand"

ENVELOPE_TYPES = frozenset({ENVELOPE_CONNECT, ENVELOPE_CREATE_SESSION, ENVELOPE_EXECUTE})

COMMAND_CONNECT = "connect"
COMMAND_CREATE_TAB = "createTab"
COMMAND_LIST_TABS = "listTabs"
COMMAND_EXECUTE = "execute"

TOOL_NAVIGATE = "navigate"


@dataclass(frozen=True, slots=True)
class Envelope:
    type: str
    nonce: str | None
    request_id: str | None
    session_token: str | None = None
    command: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ConnectCommand:
    pass


@dataclass(frozen=True, slots=True)
class CreateTabCommand:
    session_id: str
    url: str


@dataclass(frozen=True, slots=True)
class ListTabsCommand:
    session_id: str


@dataclass(frozen=True, slots=True)
class ExecuteCommand:
    session_id: str
    tool: str
    args: dict[str, Any] = field(default_factory=dict)
    tab_id: int | None = None

    @property
    def url(self) -> str | None:
        url = self.args.get("url")
        return url if isinstance(url, str) and url.strip() else None


Command = Union[ConnectCommand, CreateTabCommand, ListTabsCommand, ExecuteCommand]


def _opt_str(raw: Any) -> str | None:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    if isinstance(raw, int) and not isinstance(raw, bool):
        return str(raw)
    return None


def _tab_id(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    raise InvalidCommand("tabId must be an integer")


def _require_session(cmd: dict[str, Any]) -> str:
    sid = _opt_str(cmd.get("sessionId"))
    if sid is None:
        raise InvalidCommand("Session ID required")
    return sid


def _require_http_url(raw: Any, what: str) -> str:
    url = raw.strip() if isinstance(raw, str) else ""
    if not url or origin_from_url(url) is None:
        raise InvalidCommand(f"{what} requires an http(s) url")
    return url


def parse_envelope(msg: Any) -> Envelope:
    if not isinstance(msg, dict):
        raise InvalidCommand("Invalid message structure")
    mtype = str(msg.get("type") or "").strip()
    if mtype not in ENVELOPE_TYPES:
        raise UnknownCommand(f"Unknown message type: {mtype or '<missing>'}")
    command = msg.get("command")
    if command is None and mtype in {ENVELOPE_CONNECT, ENVELOPE_CREATE_SESSION}:
        command = {"type": COMMAND_CONNECT}
    if not isinstance(command, dict):
        raise InvalidCommand("Invalid command structure")
    return Envelope(
        type=mtype,
        nonce=_opt_str(msg.get("nonce")),
        request_id=_opt_str(msg.get("requestId")),
        session_token=_opt_str(msg.get("sessionToken")),
        command=command,
    )


def parse_command(envelope: Envelope) -> Command:
    if envelope.type in {ENVELOPE_CONNECT, ENVELOPE_CREATE_SESSION}:
        return ConnectCommand()

    cmd = envelope.command
    ctype = str(cmd.get("type") or "").strip()

    if ctype == COMMAND_CONNECT:
        return ConnectCommand()

    if ctype == COMMAND_CREATE_TAB:
        url = _require_http_url(cmd.get("url"), "createTab")
        return CreateTabCommand(session_id=_require_session(cmd), url=url)

    if ctype == COMMAND_LIST_TABS:
        return ListTabsCommand(session_id=_require_session(cmd))

    if ctype == COMMAND_EXECUTE:
        tool = _opt_str(cmd.get("tool"))
        if tool is None:
            raise InvalidCommand("execute requires a tool name")
        raw_args = cmd.get("args")
        if raw_args is not None and not isinstance(raw_args, dict):
            raise InvalidCommand("args must be an object")
        args = dict(raw_args or {})
        if tool == TOOL_NAVIGATE:
            # Accept the url at command level too.
            args["url"] = _require_http_url(args.get("url") or cmd.get("url"), "navigate")
        return ExecuteCommand(
            session_id=_require_session(cmd),
            tool=tool,
            args=args,
            tab_id=_tab_id(cmd.get("tabId")),
        )

    raise UnknownCommand(f"Unknown command type: {ctype or '<missing>'}")
