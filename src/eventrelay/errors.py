"""
Module: errors.py
Description: Exception taxonomy for the delivery subsystem.

Transport and storage failures are raised by the collaborators and
classified by the components that consume them: the dispatcher turns
transport errors into ResponseOutcome values, and the queue turns storage
errors into log entries while it keeps operating in memory.

Key Components:
- EventRelayError: Base class for every error raised by this package
- TransportError: Network and timeout failures of a single attempt
- InvalidRequestError: A request no resend could deliver (bad endpoint)
- StorageError: Durable storage I/O failures
- DispatchCancelled: Cooperative cancellation of a wait or attempt
"""

from typing import Optional


class EventRelayError(Exception):
    """Base class for all eventrelay errors."""


class ConfigurationError(EventRelayError):
    """Raised when a component is constructed with an unusable configuration."""


class TransportError(EventRelayError):
    """
    Base class for failures raised by a transport.

    Attributes:
        endpoint: Endpoint the failed attempt was sent to
    """

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class TransportNetworkError(TransportError):
    """No connection could be made (refused, DNS failure, reset)."""


class TransportTimeoutError(TransportError):
    """The attempt exceeded its timeout."""


class InvalidRequestError(TransportError, ValueError):
    """The request cannot be sent as built, e.g. its endpoint is not an HTTP/HTTPS URL."""


class StorageError(EventRelayError):
    """
    Raised when durable storage cannot be read or written.

    Attributes:
        key: Blob key involved in the failed operation
    """

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class DispatchCancelled(EventRelayError):
    """Raised inside a dispatch when its cancellation token fires."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason


class CoordinatorNotRunning(EventRelayError):
    """Raised when the coordinator is used before start() or after stop()."""
