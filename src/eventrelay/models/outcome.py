"""
Module: outcome.py
Description: Attempt outcomes and submission results.

A ResponseOutcome is produced by the dispatcher for every attempt and is
only ever reported, never persisted. A SubmitResult is what the caller
of DeliveryCoordinator.submit() eventually observes.

Key Components:
- StatusCategory: Classification of an attempt
- DispatchState: Per-request dispatcher state machine
- RawResponse: What a transport returns for a completed exchange
- ResponseOutcome: Classified result of one attempt
- SubmitStatus / SubmitResult: Terminal view for the submitting caller
- classify_status(): HTTP status code to StatusCategory

Dependencies: pydantic, enum
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from eventrelay.models.queue import DropReason


class StatusCategory(str, Enum):
    """Classification of a single attempt."""

    SUCCESS = "success"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    CANCELLED = "cancelled"


RECOVERABLE_CATEGORIES = frozenset({
    StatusCategory.NETWORK_ERROR,
    StatusCategory.TIMEOUT,
    StatusCategory.SERVER_ERROR,
})


class DispatchState(str, Enum):
    """
    Dispatcher state of one request.

    Pending -> InFlight -> {Succeeded | Retrying -> InFlight | Failed | Cancelled}
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DispatchState.SUCCEEDED, DispatchState.FAILED, DispatchState.CANCELLED)


def classify_status(status_code: int) -> StatusCategory:
    """
    Classify an HTTP status code.

    429 is rate limiting and therefore retryable like a 5xx; every other
    4xx is a client error that resubmission would not fix.
    """
    if status_code == 429 or status_code >= 500:
        return StatusCategory.SERVER_ERROR
    if status_code >= 400:
        return StatusCategory.CLIENT_ERROR
    return StatusCategory.SUCCESS


class RawResponse(BaseModel):
    """Transport-level response of a completed exchange."""

    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    elapsed_ms: Optional[float] = None


class ResponseOutcome(BaseModel):
    """
    Classified result of one delivery attempt.

    Attributes:
        success: Whether the attempt delivered the request
        status_category: Classification of the attempt
        status_code: HTTP status code when a response was received
        latency_ms: Wall time spent in the attempt
        error_message: Human-readable failure description
        attempt: 1-based attempt number within the dispatch
        request_id: Request the attempt belongs to
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    status_category: StatusCategory
    status_code: Optional[int] = None
    latency_ms: float = 0.0
    error_message: Optional[str] = None
    attempt: int = Field(default=1, ge=0)
    request_id: Optional[str] = None

    @property
    def is_recoverable(self) -> bool:
        """NetworkError, Timeout and ServerError (5xx/429) are recoverable."""
        return self.status_category in RECOVERABLE_CATEGORIES

    @classmethod
    def from_status(
        cls,
        status_code: int,
        latency_ms: float = 0.0,
        attempt: int = 1,
        request_id: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> "ResponseOutcome":
        category = classify_status(status_code)
        success = category == StatusCategory.SUCCESS
        if not success and error_message is None:
            error_message = f"HTTP {status_code}"
        return cls(
            success=success,
            status_category=category,
            status_code=status_code,
            latency_ms=latency_ms,
            error_message=error_message,
            attempt=attempt,
            request_id=request_id
        )

    @classmethod
    def network_error(cls, message: str, latency_ms: float = 0.0, attempt: int = 1,
                      request_id: Optional[str] = None) -> "ResponseOutcome":
        return cls(
            success=False,
            status_category=StatusCategory.NETWORK_ERROR,
            latency_ms=latency_ms,
            error_message=message,
            attempt=attempt,
            request_id=request_id
        )

    @classmethod
    def timeout(cls, message: str, latency_ms: float = 0.0, attempt: int = 1,
                request_id: Optional[str] = None) -> "ResponseOutcome":
        return cls(
            success=False,
            status_category=StatusCategory.TIMEOUT,
            latency_ms=latency_ms,
            error_message=message,
            attempt=attempt,
            request_id=request_id
        )

    @classmethod
    def invalid_request(cls, message: str, latency_ms: float = 0.0, attempt: int = 1,
                        request_id: Optional[str] = None) -> "ResponseOutcome":
        """Client error for a request that could not be sent at all; never retried."""
        return cls(
            success=False,
            status_category=StatusCategory.CLIENT_ERROR,
            latency_ms=latency_ms,
            error_message=message,
            attempt=attempt,
            request_id=request_id
        )

    @classmethod
    def cancelled(cls, message: str = "cancelled", latency_ms: float = 0.0, attempt: int = 0,
                  request_id: Optional[str] = None) -> "ResponseOutcome":
        return cls(
            success=False,
            status_category=StatusCategory.CANCELLED,
            latency_ms=latency_ms,
            error_message=message,
            attempt=attempt,
            request_id=request_id
        )


class SubmitStatus(str, Enum):
    """What happened to a submitted request."""

    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    QUEUED = "queued"
    DROPPED = "dropped"


class SubmitResult(BaseModel):
    """
    Terminal view of a submit() call.

    Attributes:
        request_id: Submitted request
        status: Delivered, Failed, Cancelled, Queued or Dropped
        outcome: Last attempt outcome, if an attempt was made
        drop_reason: Why the request could not be queued (dropped only)
    """

    request_id: str
    status: SubmitStatus
    outcome: Optional[ResponseOutcome] = None
    drop_reason: Optional[DropReason] = None

    @property
    def queued(self) -> bool:
        return self.status == SubmitStatus.QUEUED
