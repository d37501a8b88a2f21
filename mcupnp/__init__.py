"""mcupnp - UPnP port forwarding lifecycle for dedicated game servers."""

from __future__ import annotations

__version__ = "0.1.0"

from mcupnp.host import UPnPHost
from mcupnp.models import (
    LifecycleState,
    MappingOutcome,
    PortSet,
    PortSpec,
    PortProtocol,
    RefreshPolicy,
    StatusSnapshot,
)
from mcupnp.nat.manager import MappingLifecycleManager

__all__ = [
    "LifecycleState",
    "MappingLifecycleManager",
    "MappingOutcome",
    "PortSet",
    "PortSpec",
    "PortProtocol",
    "RefreshPolicy",
    "StatusSnapshot",
    "UPnPHost",
    "__version__",
]
