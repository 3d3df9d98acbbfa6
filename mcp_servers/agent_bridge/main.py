"""
Agent bridge entry point.

Starts the local WebSocket gateway that authenticates controller pages, asks
the user for permission and forwards approved commands to the extension.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .config import BridgeConfig
from .gateway import BridgeGateway

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.agent_bridge")

__all__ = ["main", "run"]


async def run(config: BridgeConfig) -> None:
    gateway = BridgeGateway(config)
    logger.info(
        "agent_bridge_starting host=%s port=%s policies=%s",
        config.host,
        config.port,
        len(gateway.router.policies),
    )
    await gateway.serve_forever()


def main() -> None:
    """Main entry point for the agent bridge."""
    config = BridgeConfig.from_env()
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(config))


if __name__ == "__main__":
    main()
