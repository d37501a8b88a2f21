"""Pytest configuration and shared fixtures for mcupnp tests."""

from __future__ import annotations

import asyncio
import logging
import os

import pytest

from mcupnp.models import PortProtocol, PortSet


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("timeout", "marks tests with timeout requirements"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("nat", "marks tests as port mapping tests"),
        ("network", "marks tests as network protocol tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("host", "marks tests as host integration tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _clear_mcupnp_env(monkeypatch):
    """Keep MCUPNP_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("MCUPNP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        if not isinstance(logger, logging.Logger):
            continue
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        # setup_logging() turns propagation off; caplog needs it back on
        logger.propagate = True

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


class FakeGateway:
    """In-memory gateway recording every call in order.

    ``mapped`` holds the (protocol, port) pairs the router currently
    forwards; ``open``/``close`` update it when they succeed.
    """

    def __init__(
        self,
        available: bool = True,
        external_address: str | None = "203.0.113.7",
        mapped: set[tuple[PortProtocol, int]] | None = None,
    ):
        self.available = available
        self.external_address = external_address
        self.mapped: set[tuple[PortProtocol, int]] = set(mapped or ())
        self.calls: list[tuple] = []
        self.fail_open: set[tuple[PortProtocol, int]] = set()
        self.fail_close: set[tuple[PortProtocol, int]] = set()
        self.raise_on: set[str] = set()
        self.open_delay = 0.0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if name in self.raise_on:
            msg = f"{name} exploded"
            raise RuntimeError(msg)

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def is_available(self) -> bool:
        self._record("is_available")
        return self.available

    async def get_external_address(self) -> str | None:
        self._record("get_external_address")
        return self.external_address

    async def is_mapped(self, protocol: PortProtocol, port: int) -> bool:
        self._record("is_mapped", protocol, port)
        return (protocol, port) in self.mapped

    async def open(self, protocol: PortProtocol, port: int, description: str) -> bool:
        self._record("open", protocol, port, description)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if (protocol, port) in self.fail_open:
            return False
        self.mapped.add((protocol, port))
        return True

    async def close(self, protocol: PortProtocol, port: int) -> bool:
        self._record("close", protocol, port)
        if (protocol, port) in self.fail_close:
            return False
        self.mapped.discard((protocol, port))
        return True


@pytest.fixture
def gateway():
    """An available fake gateway with nothing mapped."""
    return FakeGateway()


@pytest.fixture
def port_set():
    """TCP 25565, 25575 and UDP 19132."""
    return PortSet(tcp_ports=(25565, 25575), udp_ports=(19132,))


@pytest.fixture
def make_gateway():
    """Factory for fake gateways with custom initial state."""
    return FakeGateway
