"""Connection manager and provider client."""

from .manager import ConnectionManager
from .provider import BridgeClient, ProviderClient

__all__ = ["BridgeClient", "ConnectionManager", "ProviderClient"]
