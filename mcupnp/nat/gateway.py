"""Gateway capability consumed by the mapping lifecycle manager.

Every call is best-effort: a gateway reports failure by returning
False or None, not by raising.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from mcupnp.models import PortProtocol


@runtime_checkable
class GatewayClient(Protocol):
    """Async port mapping capability of an Internet Gateway Device."""

    async def is_available(self) -> bool:
        """Return True if a gateway answers on this network."""
        ...

    async def get_external_address(self) -> str | None:
        """Return the gateway's external IPv4 address, if known."""
        ...

    async def is_mapped(self, protocol: PortProtocol, port: int) -> bool:
        """Return True if ``port`` is currently forwarded for ``protocol``."""
        ...

    async def open(self, protocol: PortProtocol, port: int, description: str) -> bool:
        """Forward ``port`` to this host; True on success."""
        ...

    async def close(self, protocol: PortProtocol, port: int) -> bool:
        """Remove the forwarding for ``port``; True on success."""
        ...


class BlockingGateway(Protocol):
    """Synchronous variant of :class:`GatewayClient` (e.g. a miniupnpc wrapper)."""

    def is_available(self) -> bool: ...

    def get_external_address(self) -> str | None: ...

    def is_mapped(self, protocol: PortProtocol, port: int) -> bool: ...

    def open(self, protocol: PortProtocol, port: int, description: str) -> bool: ...

    def close(self, protocol: PortProtocol, port: int) -> bool: ...


class BlockingGatewayAdapter:
    """Run a blocking gateway's calls in worker threads.

    Calls are forwarded one at a time, in the order they are awaited, so
    the wrapped client never sees concurrent requests.
    """

    def __init__(self, client: BlockingGateway) -> None:
        """Initialize adapter.

        Args:
            client: Synchronous gateway whose calls may block on the network

        """
        self.client = client
        self._lock = asyncio.Lock()

    async def _call(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    async def is_available(self) -> bool:
        return bool(await self._call(self.client.is_available))

    async def get_external_address(self) -> str | None:
        return await self._call(self.client.get_external_address)

    async def is_mapped(self, protocol: PortProtocol, port: int) -> bool:
        return bool(await self._call(self.client.is_mapped, protocol, port))

    async def open(self, protocol: PortProtocol, port: int, description: str) -> bool:
        return bool(await self._call(self.client.open, protocol, port, description))

    async def close(self, protocol: PortProtocol, port: int) -> bool:
        return bool(await self._call(self.client.close, protocol, port))
