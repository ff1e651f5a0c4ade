"""
Module: models
Description: Package initialization for delivery data models.

This package contains the data models shared by every component:
- RequestSpec / Payload / Priority: Immutable intent to deliver
- ResponseOutcome / StatusCategory: Result of a single attempt
- QueueEntry / QueueStats / QueueSnapshot: Queue contents and persistence

All models are exported here for convenient importing.
"""

from eventrelay.models.outcome import (
    DispatchState,
    RawResponse,
    ResponseOutcome,
    StatusCategory,
    SubmitResult,
    SubmitStatus,
    classify_status,
)
from eventrelay.models.queue import (
    SNAPSHOT_VERSION,
    DropReason,
    EnqueueResult,
    OverflowPolicy,
    QueueEntry,
    QueueSnapshot,
    QueueStats,
)
from eventrelay.models.request import Payload, Priority, RequestSpec, generate_request_id

__all__ = [
    "DispatchState",
    "DropReason",
    "EnqueueResult",
    "OverflowPolicy",
    "Payload",
    "Priority",
    "QueueEntry",
    "QueueSnapshot",
    "QueueStats",
    "RawResponse",
    "RequestSpec",
    "ResponseOutcome",
    "SNAPSHOT_VERSION",
    "StatusCategory",
    "SubmitResult",
    "SubmitStatus",
    "classify_status",
    "generate_request_id",
]
