"""Authorization and session layer between agent controllers and a live browser."""

from .errors import BridgeError
from .router import CommandRouter

__all__ = ["BridgeError", "CommandRouter"]
