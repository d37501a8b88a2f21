"""Port mapping lifecycle manager.

Owns the open / refresh / close state machine for one port set against
one gateway::

    IDLE --start(available)--> ACTIVE --stop()--> SHUTTING_DOWN --> STOPPED
    IDLE --start(unavailable)--> STOPPED
    IDLE --stop()--> SHUTTING_DOWN --> STOPPED  (also while start() is mapping)

A manager is single-use: nothing leads out of STOPPED.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, TypeVar

from mcupnp.models import (
    DEFAULT_DESCRIPTION,
    LifecycleResult,
    LifecycleState,
    MappingOutcome,
    PortSet,
    PortSpec,
    PortStatus,
    RefreshPolicy,
    StatusSnapshot,
)
from mcupnp.nat.gateway import GatewayClient
from mcupnp.nat.schedule import RefreshSchedule
from mcupnp.utils.exceptions import LifecycleError
from mcupnp.utils.logging_config import correlation_scope
from mcupnp.utils.network import list_global_ipv6_addresses

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SHUTDOWN_GRACE = 5.0


class MappingLifecycleManager:
    """Maps a port set on start, re-asserts it periodically, unmaps on stop."""

    def __init__(
        self,
        gateway: GatewayClient | None = None,
        port_set: PortSet | None = None,
        policy: RefreshPolicy | None = None,
        *,
        description: str = DEFAULT_DESCRIPTION,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        ipv6_provider: Callable[[], list[str]] = list_global_ipv6_addresses,
    ) -> None:
        """Initialize manager.

        Args:
            gateway: Gateway to use when :meth:`start` is called without one
            port_set: Entries to manage when :meth:`start` is called without one
            policy: Refresh policy when :meth:`start` is called without one
            description: Mapping description shown by the router
            shutdown_grace: Seconds :meth:`stop` waits for an in-flight refresh
            ipv6_provider: Returns this host's global IPv6 addresses for status

        """
        self.description = description
        self.shutdown_grace = shutdown_grace
        self.ipv6_provider = ipv6_provider
        self.logger = logging.getLogger(__name__)

        self._gateway = gateway
        self._port_set = port_set or PortSet()
        self._policy = policy or RefreshPolicy()
        self._state = LifecycleState.IDLE
        self._schedule: RefreshSchedule | None = None
        self._refresh_count = 0
        self._starting = False
        # Open passes (start or refresh) currently running; stop() waits for them
        self._passes_in_flight = 0
        self._passes_done = asyncio.Event()
        self._passes_done.set()

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def schedule(self) -> RefreshSchedule | None:
        """The refresh schedule; set only while ACTIVE with refresh enabled."""
        return self._schedule

    @property
    def gateway(self) -> GatewayClient | None:
        return self._gateway

    @property
    def port_set(self) -> PortSet:
        return self._port_set

    @property
    def policy(self) -> RefreshPolicy:
        return self._policy

    async def _guarded(
        self,
        what: str,
        call: Callable[..., Awaitable[T]],
        *args: Any,
        default: T,
    ) -> T:
        """Await one gateway call, turning any exception into ``default``."""
        try:
            return await call(*args)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Gateway call %s%s raised", what, args)
            return default

    @contextlib.contextmanager
    def _open_pass(self) -> Iterator[None]:
        self._passes_in_flight += 1
        self._passes_done.clear()
        try:
            yield
        finally:
            self._passes_in_flight -= 1
            if self._passes_in_flight == 0:
                self._passes_done.set()

    @property
    def _stopping(self) -> bool:
        return self._state in (LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED)

    async def start(
        self,
        gateway: GatewayClient | None = None,
        port_set: PortSet | None = None,
        policy: RefreshPolicy | None = None,
    ) -> LifecycleResult:
        """Run the initial mapping pass and arm the refresh schedule.

        Already-mapped entries are reported as stale and left alone. Each
        entry is visited once, TCP group first; a failure never aborts the
        pass.

        Raises:
            LifecycleError: If the manager is not IDLE

        """
        if self._state is not LifecycleState.IDLE:
            msg = f"Cannot start mapping manager in state {self._state.value}"
            raise LifecycleError(msg, {"state": self._state.value})
        if self._starting:
            msg = "Mapping manager is already starting"
            raise LifecycleError(msg, {"state": self._state.value})

        if gateway is not None:
            self._gateway = gateway
        if port_set is not None:
            self._port_set = port_set
        if policy is not None:
            self._policy = policy
        if self._gateway is None:
            msg = "No gateway to start the mapping manager with"
            raise LifecycleError(msg)
        gw = self._gateway

        self._starting = True
        try:
            return await self._start_pass(gw)
        finally:
            self._starting = False

    async def _start_pass(self, gw: GatewayClient) -> LifecycleResult:
        with correlation_scope("upnp-start"), self._open_pass():
            self.logger.info("Attempting UPnP port forwarding...")
            if not await self._guarded("is_available", gw.is_available, default=False):
                self.logger.error(
                    "UPnP is not available on this network. "
                    "If you are an admin please check the settings on your router/hub"
                )
                if self._state is LifecycleState.IDLE:
                    self._state = LifecycleState.STOPPED
                return LifecycleResult(
                    state=self._state, gateway_available=False, outcomes=[]
                )

            outcomes: list[MappingOutcome] = []
            for spec in self._port_set.specs():
                if self._state is not LifecycleState.IDLE:
                    outcomes.append(MappingOutcome(spec=spec, succeeded=False))
                    continue
                outcomes.append(await self._open_if_unmapped(gw, spec))

            if self._state is not LifecycleState.IDLE:
                # stop() ran during the pass; it owns the rest of the lifecycle
                self.logger.info("UPnP mapping manager stopped while starting")
                return LifecycleResult(
                    state=self._state, gateway_available=True, outcomes=outcomes
                )

            if self._policy.enabled:
                self.logger.info(
                    "Scheduling UPnP refresh every %d minutes",
                    self._policy.interval_minutes,
                )
                self._schedule = RefreshSchedule(
                    self._scheduled_refresh,
                    self._policy.interval_seconds,
                    name="upnp-refresh",
                )
                self._schedule.start()
            else:
                self.logger.info(
                    "Periodic UPnP refresh is disabled (refresh interval is 0)"
                )
            self._state = LifecycleState.ACTIVE

        return LifecycleResult(
            state=self._state, gateway_available=True, outcomes=outcomes
        )

    async def _open_if_unmapped(self, gw: GatewayClient, spec: PortSpec) -> MappingOutcome:
        proto = spec.protocol.value
        if await self._guarded("is_mapped", gw.is_mapped, spec.protocol, spec.port, default=False):
            self.logger.warning(
                "%s port %d is already mapped. (Either another service is using it "
                "or your server did not shut down correctly!)",
                proto,
                spec.port,
            )
            return MappingOutcome(spec=spec, succeeded=False, already_mapped=True)

        opened = await self._guarded(
            "open", gw.open, spec.protocol, spec.port, self.description, default=False
        )
        if opened:
            self.logger.info("UPnP opened %s port %d", proto, spec.port)
        else:
            self.logger.error("UPnP failed to open %s port %d", proto, spec.port)
        return MappingOutcome(spec=spec, succeeded=bool(opened))

    async def _scheduled_refresh(self) -> None:
        if self._state is not LifecycleState.ACTIVE:
            return
        await self.refresh_pass()

    async def refresh_pass(self) -> list[MappingOutcome]:
        """Re-open every configured entry to renew its lease.

        Unlike the start pass this does not check for existing mappings.
        An unreachable gateway yields an all-failed result; the lifecycle
        state is never changed.
        """
        specs = self._port_set.specs()
        if self._stopping:
            self.logger.debug(
                "Skipping UPnP refresh, manager is %s", self._state.value
            )
            return []
        if self._gateway is None:
            self.logger.error("UPnP refresh requested without a gateway")
            return [MappingOutcome(spec=spec, succeeded=False) for spec in specs]
        gw = self._gateway

        self._refresh_count += 1
        with correlation_scope(f"upnp-refresh-{self._refresh_count}"), self._open_pass():
            self.logger.info("Refreshing UPnP port mappings...")
            if not await self._guarded("is_available", gw.is_available, default=False):
                self.logger.error("UPnP is not available. Refresh failed.")
                return [MappingOutcome(spec=spec, succeeded=False) for spec in specs]

            outcomes: list[MappingOutcome] = []
            for spec in specs:
                if self._stopping:
                    outcomes.append(MappingOutcome(spec=spec, succeeded=False))
                    continue
                opened = await self._guarded(
                    "open", gw.open, spec.protocol, spec.port, self.description, default=False
                )
                if not opened:
                    self.logger.warning(
                        "Failed to refresh %s port %d", spec.protocol.value, spec.port
                    )
                outcomes.append(MappingOutcome(spec=spec, succeeded=bool(opened)))

            self.logger.info(
                "UPnP refresh complete: %d/%d ports refreshed successfully",
                sum(1 for o in outcomes if o.succeeded),
                len(outcomes),
            )
        return outcomes

    async def query_status(
        self,
        gateway: GatewayClient | None = None,
        port_set: PortSet | None = None,
    ) -> StatusSnapshot:
        """Report gateway availability and the mapped state of each entry.

        Read-only; safe to run while a refresh pass is in progress.
        Defaults to the manager's own gateway and port set.
        """
        gw = gateway if gateway is not None else self._gateway
        ports = port_set if port_set is not None else self._port_set
        specs = ports.specs()
        unmapped = [PortStatus(spec=spec, mapped=False) for spec in specs]

        if gw is None or not await self._guarded("is_available", gw.is_available, default=False):
            return StatusSnapshot(available=False, ports=unmapped)

        external_address = await self._guarded(
            "get_external_address", gw.get_external_address, default=None
        )
        try:
            ipv6_addresses = list(self.ipv6_provider())
        except Exception:
            self.logger.debug("Could not list IPv6 addresses", exc_info=True)
            ipv6_addresses = []

        statuses = [
            PortStatus(
                spec=spec,
                mapped=bool(
                    await self._guarded(
                        "is_mapped", gw.is_mapped, spec.protocol, spec.port, default=False
                    )
                ),
            )
            for spec in specs
        ]
        return StatusSnapshot(
            available=True,
            external_address=external_address,
            ipv6_addresses=ipv6_addresses,
            ports=statuses,
        )

    async def stop(self) -> None:
        """Cancel refreshing and unmap every configured entry.

        Waits up to ``shutdown_grace`` seconds in total for the scheduled
        refresh and for any start or refresh pass still running, so the
        close pass never overlaps an open pass. Passes notice the state
        change and skip their remaining entries. Close failures are logged
        and ignored; the manager always ends STOPPED. A second call is a
        no-op.
        """
        if self._stopping:
            self.logger.debug("UPnP mapping manager already %s", self._state.value)
            return

        self._state = LifecycleState.SHUTTING_DOWN
        schedule, self._schedule = self._schedule, None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_grace
        try:
            with correlation_scope("upnp-stop"):
                if schedule is not None:
                    self.logger.info("Stopping UPnP refresh scheduler...")
                    await schedule.shutdown(self.shutdown_grace)

                if not self._passes_done.is_set():
                    self.logger.info("Waiting for running UPnP pass to finish...")
                    try:
                        await asyncio.wait_for(
                            self._passes_done.wait(),
                            timeout=max(0.0, deadline - loop.time()),
                        )
                    except asyncio.TimeoutError:
                        self.logger.warning(
                            "UPnP pass still running after %.1fs grace period, "
                            "closing ports anyway",
                            self.shutdown_grace,
                        )

                if self._gateway is not None:
                    await self._close_all(self._gateway)
        finally:
            self._state = LifecycleState.STOPPED
        self.logger.info("UPnP mapping manager stopped")

    async def _close_all(self, gw: GatewayClient) -> list[MappingOutcome]:
        specs = self._port_set.specs()
        if specs:
            self.logger.info("Closing UPnP ports...")
        outcomes: list[MappingOutcome] = []
        for spec in specs:
            closed = await self._guarded("close", gw.close, spec.protocol, spec.port, default=False)
            if closed:
                self.logger.info("Closed %s port %d", spec.protocol.value, spec.port)
            else:
                self.logger.warning(
                    "Failed to close %s port %d", spec.protocol.value, spec.port
                )
            outcomes.append(MappingOutcome(spec=spec, succeeded=bool(closed)))
        return outcomes
