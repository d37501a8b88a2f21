"""Host integration: server lifecycle hooks and the status command."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from mcupnp.models import Config, LifecycleResult, LifecycleState, UPnPConfig
from mcupnp.nat.gateway import GatewayClient
from mcupnp.nat.manager import MappingLifecycleManager
from mcupnp.nat.upnp import UPnPGateway
from mcupnp.status import render_status
from mcupnp.utils.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)

# "owner" permission level on a dedicated server
OWNER_PERMISSION_LEVEL = 4

GatewayFactory = Callable[[UPnPConfig], GatewayClient]


@dataclass(frozen=True)
class Principal:
    """Whoever invokes a host command."""

    name: str
    permission_level: int = 0

    def has_permission(self, level: int) -> bool:
        return self.permission_level >= level


CONSOLE = Principal("Server", OWNER_PERMISSION_LEVEL)


class UPnPHost:
    """Binds a mapping manager to a server's start and stop events.

    A fresh manager is created on every :meth:`on_start`, so a host that
    restarts its server gets a new, unused manager each time.
    """

    def __init__(
        self,
        config: Config,
        gateway_factory: GatewayFactory | None = None,
    ) -> None:
        """Initialize host integration.

        Args:
            config: Loaded configuration
            gateway_factory: Builds the gateway from the ``[upnp]`` section;
                defaults to :meth:`UPnPGateway.from_config`

        """
        self.config = config
        self.gateway_factory = gateway_factory or UPnPGateway.from_config
        self.manager: MappingLifecycleManager | None = None
        self._gateway: GatewayClient | None = None

    @property
    def enabled(self) -> bool:
        """Hooks only act when running as a dedicated server."""
        return self.config.host.dedicated_server

    def _get_gateway(self) -> GatewayClient:
        if self._gateway is None:
            self._gateway = self.gateway_factory(self.config.upnp)
        return self._gateway

    def _new_manager(self) -> MappingLifecycleManager:
        upnp = self.config.upnp
        return MappingLifecycleManager(
            self._get_gateway(),
            upnp.port_set(),
            upnp.refresh_policy(),
            description=upnp.description,
            shutdown_grace=upnp.shutdown_grace_seconds,
        )

    async def on_start(self) -> LifecycleResult | None:
        """Map the configured ports once the server is ready to serve."""
        if not self.enabled:
            return None
        if self.manager is not None and self.manager.state is not LifecycleState.STOPPED:
            logger.warning("UPnP already started, ignoring repeated start hook")
            return None

        try:
            self.manager = self._new_manager()
            return await self.manager.start()
        except Exception:
            logger.exception("UPnP port forwarding failed to start")
            return None

    async def on_stopping(self) -> None:
        """Unmap the configured ports as the server shuts down."""
        if not self.enabled or self.manager is None:
            return
        try:
            await self.manager.stop()
        except Exception:
            logger.exception("UPnP port forwarding failed to stop cleanly")

    async def status_command(self, principal: Principal = CONSOLE) -> list[str]:
        """Run the ``upnp`` status command for ``principal``.

        Raises:
            PermissionDeniedError: If ``principal`` is below owner level

        """
        if not principal.has_permission(OWNER_PERMISSION_LEVEL):
            msg = f"{principal.name} may not run the upnp command"
            raise PermissionDeniedError(
                msg, {"required_level": OWNER_PERMISSION_LEVEL}
            )

        manager = self.manager or self._new_manager()
        snapshot = await manager.query_status(
            self._get_gateway(), self.config.upnp.port_set()
        )
        return render_status(snapshot)
