from __future__ import annotations

from pathlib import Path

import pytest

from mcp_servers.agent_bridge.config import BridgeConfig, default_policy_file


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MCP_BRIDGE_HOST",
        "MCP_BRIDGE_PORT",
        "MCP_BRIDGE_TOKEN_TTL",
        "MCP_BRIDGE_NONCE_CACHE",
        "MCP_BRIDGE_APPROVAL_TIMEOUT",
        "MCP_BRIDGE_POLICY_FILE",
        "MCP_BRIDGE_EXTENSION_ID",
        "MCP_BRIDGE_ALLOWED_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = BridgeConfig.from_env()
    assert cfg.host == "127.0.0.1"
    assert cfg.port == 8766
    assert cfg.token_ttl_s == 24 * 60 * 60
    assert cfg.nonce_cache_size == 10_000
    assert cfg.approval_timeout_s == 30.0
    assert cfg.policy_file == default_policy_file()
    assert cfg.expected_extension_id is None
    assert cfg.is_controller_origin_allowed("https://anything.example") is True


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MCP_BRIDGE_PORT", "9001")
    monkeypatch.setenv("MCP_BRIDGE_TOKEN_TTL", "60")
    monkeypatch.setenv("MCP_BRIDGE_APPROVAL_TIMEOUT", "5")
    monkeypatch.setenv("MCP_BRIDGE_POLICY_FILE", str(tmp_path / "p.json"))
    monkeypatch.setenv("MCP_BRIDGE_EXTENSION_ID", " abc ")
    monkeypatch.setenv("MCP_BRIDGE_ALLOWED_ORIGINS", "https://App.com/, http://localhost:3000")

    cfg = BridgeConfig.from_env()
    assert cfg.port == 9001
    assert cfg.token_ttl_s == 60.0
    assert cfg.approval_timeout_s == 5.0
    assert cfg.policy_file == str(tmp_path / "p.json")
    assert cfg.expected_extension_id == "abc"
    assert cfg.is_controller_origin_allowed("https://app.com") is True
    assert cfg.is_controller_origin_allowed("http://localhost:3000") is True
    assert cfg.is_controller_origin_allowed("https://evil.com") is False


def test_bad_numbers_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCP_BRIDGE_PORT", "not-a-port")
    monkeypatch.setenv("MCP_BRIDGE_NONCE_CACHE", "-5")

    cfg = BridgeConfig.from_env()
    assert cfg.port == 8766
    assert cfg.nonce_cache_size == 1
