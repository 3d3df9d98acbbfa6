from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _repo_root() -> Path:
    # mcp_servers/agent_bridge/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def default_policy_file() -> str:
    return str(_repo_root() / "data" / "policies" / "permissions.json")


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = 8766
    token_ttl_s: float = 24 * 60 * 60
    nonce_cache_size: int = 10_000
    # 0 disables timestamp-based nonce expiry (insertion-order eviction only).
    nonce_max_age_s: float = 0.0
    approval_timeout_s: float = 30.0
    pending_request_ttl_s: float = 60 * 60
    policy_file: str = field(default_factory=default_policy_file)
    expected_extension_id: str | None = None
    allowed_origins: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> BridgeConfig:
        host = (os.environ.get("MCP_BRIDGE_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        policy_raw = os.environ.get("MCP_BRIDGE_POLICY_FILE", "")
        policy_file = expand_path(policy_raw) if policy_raw.strip() else default_policy_file()
        ext_id = (os.environ.get("MCP_BRIDGE_EXTENSION_ID") or "").strip() or None
        allowed_raw = os.environ.get("MCP_BRIDGE_ALLOWED_ORIGINS", "")
        allowed = [o.strip().lower().rstrip("/") for o in allowed_raw.split(",") if o.strip()]
        return cls(
            host=host,
            port=max(1, min(_env_int("MCP_BRIDGE_PORT", 8766), 65535)),
            token_ttl_s=max(1.0, _env_float("MCP_BRIDGE_TOKEN_TTL", 24 * 60 * 60)),
            nonce_cache_size=max(1, _env_int("MCP_BRIDGE_NONCE_CACHE", 10_000)),
            nonce_max_age_s=max(0.0, _env_float("MCP_BRIDGE_NONCE_MAX_AGE", 0.0)),
            approval_timeout_s=max(0.1, _env_float("MCP_BRIDGE_APPROVAL_TIMEOUT", 30.0)),
            pending_request_ttl_s=max(1.0, _env_float("MCP_BRIDGE_PENDING_TTL", 60 * 60)),
            policy_file=policy_file,
            expected_extension_id=ext_id,
            allowed_origins=allowed,
        )

    def is_controller_origin_allowed(self, origin: str) -> bool:
        if not self.allowed_origins:
            return True
        return (origin or "").strip().lower().rstrip("/") in self.allowed_origins
