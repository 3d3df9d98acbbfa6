#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[agent-bridge] host={os.environ.get('MCP_BRIDGE_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('MCP_BRIDGE_PORT', '8766')} | "
    f"policies={os.environ.get('MCP_BRIDGE_POLICY_FILE', 'data/policies/permissions.json')} | "
    f"extension={os.environ.get('MCP_BRIDGE_EXTENSION_ID', 'any')}",
    file=sys.stderr,
)

from mcp_servers.agent_bridge.main import main  # noqa: E402

if __name__ == "__main__":
    main()
