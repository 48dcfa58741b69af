"""Exception hierarchy shared by the HomeMap components."""

from __future__ import annotations


class HomeMapError(Exception):
    """Base class for all HomeMap failures."""


class TransportError(HomeMapError):
    """Raised when a controller request fails or returns a non-success status."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Record the HTTP status alongside the failure message."""

        super().__init__(message)
        self.status = status


class AuthenticationError(TransportError):
    """Raised when the controller rejects the configured credentials."""


class ProtocolDecodeError(HomeMapError):
    """Raised for malformed long-poll bodies, events or peripheral messages."""


class ResolutionMiss(HomeMapError):
    """Raised when a widget, icon or device cannot be resolved."""


class VersionIncompatible(HomeMapError):
    """Raised when a widget targets an unsupported widget format version."""

    def __init__(self, version: str, minimum: str) -> None:
        """Store the offending and minimum supported versions."""

        super().__init__(
            f"Widget version {version} is not compatible with minimum {minimum}"
        )
        self.version = version
        self.minimum = minimum


class ExpressionError(HomeMapError):
    """Raised when an expression cannot be parsed or evaluated."""
