"""Redaction utilities for logging.

Prefers safety over fidelity: bearer tokens, typed text and secret-looking
URL parameters never reach the log as-is.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

_SENSITIVE_EXACT = {
    # Avoid false-positives like "author"/"authorship" while still protecting obvious keys.
    "auth",
}

# Tools whose free-text argument is user input (may be a password).
_TEXT_INPUT_TOOLS = {"type", "fill", "evaluate"}

_MAX_LOG_STR = 200


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _redact_pairs(raw: str) -> tuple[str, bool]:
    pairs = parse_qsl(raw, keep_blank_values=True)
    redacted_any = False
    out_pairs: list[tuple[str, str]] = []
    for k, v in pairs:
        if is_sensitive_key(k) and v:
            out_pairs.append((k, "<redacted>"))
            redacted_any = True
        else:
            out_pairs.append((k, v))
    if not redacted_any:
        return raw, False
    return urlencode(out_pairs, doseq=True), True


def redact_url(url: str) -> str:
    """Redact suspicious URL parameters without destroying normal queries.

    - Keeps non-sensitive query params intact.
    - Redacts values for keys like token/auth/secret/api-key.
    - Sanitizes an OAuth-style fragment.
    - Removes userinfo (`user:pass@host`) from netloc.
    """
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc, query, fragment = parts.netloc, parts.query, parts.fragment

    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    if query:
        query, did = _redact_pairs(query)
        changed = changed or did
    if fragment and "=" in fragment:
        fragment, did = _redact_pairs(fragment)
        changed = changed or did

    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))


def _redacted_summary(value: Any) -> str:
    if isinstance(value, str):
        return f"<redacted str len={len(value)}>"
    if isinstance(value, (list, tuple, set)):
        return f"<redacted list len={len(value)}>"
    if isinstance(value, dict):
        return f"<redacted dict keys={len(value)}>"
    return "<redacted>"


def brief_token(token: Any) -> str | None:
    if not isinstance(token, str) or not token:
        return None
    return token[:8] + "..."


def redact_command_args(tool: str | None, args: Any) -> Any:
    """Redact tool arguments for safe logging."""
    if not isinstance(args, dict):
        return args
    out: dict[str, Any] = {}
    for k, v in args.items():
        key = str(k)
        if is_sensitive_key(key):
            out[key] = _redacted_summary(v)
        elif key == "url" and isinstance(v, str):
            out[key] = redact_url(v)
        elif key in {"text", "value", "expression", "script"} and (tool or "") in _TEXT_INPUT_TOOLS:
            out[key] = _redacted_summary(v)
        elif isinstance(v, str) and len(v) > _MAX_LOG_STR:
            out[key] = v[:_MAX_LOG_STR] + "..."
        else:
            out[key] = v
    return out


def redact_envelope_for_log(msg: Any) -> Any:
    """Log-safe copy of an inbound controller frame."""
    if not isinstance(msg, dict):
        return msg
    out = dict(msg)
    if "sessionToken" in out:
        out["sessionToken"] = brief_token(out.get("sessionToken"))
    command = out.get("command")
    if isinstance(command, dict):
        command = dict(command)
        if isinstance(command.get("url"), str):
            command["url"] = redact_url(command["url"])
        if "args" in command:
            command["args"] = redact_command_args(command.get("tool"), command.get("args"))
        out["command"] = command
    return out
