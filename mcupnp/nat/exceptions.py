"""NAT traversal exceptions."""

from mcupnp.utils.exceptions import MCUPnPError


class NATError(MCUPnPError):
    """Base exception for NAT traversal errors."""


class UPnPError(NATError):
    """UPnP specific error."""
