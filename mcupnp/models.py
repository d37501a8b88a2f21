"""Pydantic models for mcupnp.

Provides validated data models for the port set, the mapping lifecycle
and the configuration file.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_PORT = 1
MAX_PORT = 65535
DEFAULT_DESCRIPTION = "Minecraft Server (dedicatedmcupnp)"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PortProtocol(str, Enum):
    """Transport protocol of a port mapping."""

    TCP = "TCP"
    UDP = "UDP"


class LifecycleState(str, Enum):
    """States of the mapping lifecycle manager."""

    IDLE = "idle"
    ACTIVE = "active"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class PortSpec(BaseModel):
    """A single (protocol, port) entry to forward."""

    model_config = ConfigDict(frozen=True)

    protocol: PortProtocol = Field(..., description="Transport protocol")
    port: int = Field(..., ge=MIN_PORT, le=MAX_PORT, description="Port number")

    def __str__(self) -> str:
        return f"{self.protocol.value} {self.port}"


def _check_ports(value: list[int]) -> list[int]:
    for port in value:
        if port < MIN_PORT or port > MAX_PORT:
            msg = f"Port {port} out of range ({MIN_PORT}-{MAX_PORT})"
            raise ValueError(msg)
    return value


class PortSet(BaseModel):
    """Ordered TCP and UDP port groups.

    Entries are not deduplicated: a port listed twice is visited twice.
    """

    model_config = ConfigDict(frozen=True)

    tcp_ports: tuple[int, ...] = Field(default=(), description="TCP ports")
    udp_ports: tuple[int, ...] = Field(default=(), description="UDP ports")

    @field_validator("tcp_ports", "udp_ports")
    @classmethod
    def validate_ports(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        """Validate every port is in range."""
        return tuple(_check_ports(list(v)))

    def specs(self) -> list[PortSpec]:
        """Return every entry, TCP group first, each in configured order."""
        return [PortSpec(protocol=PortProtocol.TCP, port=p) for p in self.tcp_ports] + [
            PortSpec(protocol=PortProtocol.UDP, port=p) for p in self.udp_ports
        ]

    def __len__(self) -> int:
        return len(self.tcp_ports) + len(self.udp_ports)


class RefreshPolicy(BaseModel):
    """Periodic refresh interval; 0 disables refreshing."""

    model_config = ConfigDict(frozen=True)

    interval_minutes: int = Field(default=0, ge=0, description="Refresh interval")

    @property
    def enabled(self) -> bool:
        return self.interval_minutes > 0

    @property
    def interval_seconds(self) -> float:
        return float(self.interval_minutes * 60)


class MappingOutcome(BaseModel):
    """Result of one open/refresh/close attempt for one entry."""

    model_config = ConfigDict(frozen=True)

    spec: PortSpec
    succeeded: bool
    already_mapped: bool = False


class LifecycleResult(BaseModel):
    """Outcome of ``MappingLifecycleManager.start``."""

    state: LifecycleState
    gateway_available: bool
    outcomes: list[MappingOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> list[MappingOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> list[MappingOutcome]:
        return [o for o in self.outcomes if not o.succeeded and not o.already_mapped]

    @property
    def already_mapped(self) -> list[MappingOutcome]:
        return [o for o in self.outcomes if o.already_mapped]


class PortStatus(BaseModel):
    """Mapped state of one configured entry at query time."""

    model_config = ConfigDict(frozen=True)

    spec: PortSpec
    mapped: bool


class StatusSnapshot(BaseModel):
    """Read-only view of the gateway and the configured entries."""

    available: bool
    external_address: str | None = None
    ipv6_addresses: list[str] = Field(default_factory=list)
    ports: list[PortStatus] = Field(default_factory=list)

    @property
    def mapped_ports(self) -> list[PortSpec]:
        return [p.spec for p in self.ports if p.mapped]

    @property
    def mapped_count(self) -> int:
        return len(self.mapped_ports)


class UPnPConfig(BaseModel):
    """UPnP port forwarding configuration."""

    tcp_ports: list[int] = Field(
        default_factory=lambda: [25565],
        description="TCP ports to forward, in order",
    )
    udp_ports: list[int] = Field(
        default_factory=list,
        description="UDP ports to forward, in order",
    )
    refresh_interval_minutes: int = Field(
        default=0,
        ge=0,
        le=10080,
        description="Minutes between refresh passes (0 disables refreshing)",
    )
    description: str = Field(
        default=DEFAULT_DESCRIPTION,
        min_length=1,
        description="Port mapping description shown by the router",
    )
    lease_duration: int = Field(
        default=0,
        ge=0,
        le=604800,
        description="Requested lease in seconds (0 for permanent)",
    )
    shutdown_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        le=300.0,
        description="Seconds to wait for an in-flight refresh on shutdown",
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="HTTP timeout for each SOAP request to the gateway",
    )
    device_url: str | None = Field(
        default=None,
        description="IGD device description URL (skips SSDP discovery)",
    )

    @field_validator("tcp_ports", "udp_ports")
    @classmethod
    def validate_ports(cls, v: list[int]) -> list[int]:
        """Validate every port is in range."""
        return _check_ports(v)

    def port_set(self) -> PortSet:
        """Build the immutable port set."""
        return PortSet(tcp_ports=tuple(self.tcp_ports), udp_ports=tuple(self.udp_ports))

    def refresh_policy(self) -> RefreshPolicy:
        """Build the immutable refresh policy."""
        return RefreshPolicy(interval_minutes=self.refresh_interval_minutes)


class HostConfig(BaseModel):
    """Host process configuration."""

    dedicated_server: bool = Field(
        default=True,
        description="Manage port forwarding only when running as a dedicated server",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines instead of rich console output",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Root configuration."""

    upnp: UPnPConfig = Field(default_factory=UPnPConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
