"""Exception hierarchy for mcupnp.

Gateway faults are reported through logged outcomes and never raised to
the host. These exceptions cover configuration problems and misuse of
the lifecycle API.
"""

from __future__ import annotations

from typing import Any


class MCUPnPError(Exception):
    """Base exception for all mcupnp errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize mcupnp error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(MCUPnPError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class LifecycleError(MCUPnPError):
    """Invalid lifecycle transition (e.g. starting a manager twice)."""


class PermissionDeniedError(MCUPnPError):
    """The invoking principal may not run the requested command."""
