"""UPnP port forwarding.

Provides the gateway capability, a UPnP IGD implementation of it and the
lifecycle manager that opens, refreshes and closes a set of port mappings.
"""

from mcupnp.nat.exceptions import NATError, UPnPError
from mcupnp.nat.gateway import BlockingGatewayAdapter, GatewayClient
from mcupnp.nat.manager import MappingLifecycleManager
from mcupnp.nat.schedule import RefreshSchedule
from mcupnp.nat.upnp import UPnPClient, UPnPGateway

__all__ = [
    "BlockingGatewayAdapter",
    "GatewayClient",
    "MappingLifecycleManager",
    "NATError",
    "RefreshSchedule",
    "UPnPClient",
    "UPnPError",
    "UPnPGateway",
]
