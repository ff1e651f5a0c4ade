"""
Module: queue.py
Description: Queue models for the persistent priority queue.

Key Components:
- OverflowPolicy: Rule applied when an enqueue would exceed capacity
- DropReason: Why an entry left the queue without being delivered
- QueueEntry: A queued RequestSpec with enqueue metadata
- QueueStats: Monotonic queue counters
- EnqueueResult: Accepted / Dropped(reason) result of enqueue
- QueueSnapshot: Versioned persisted layout of the whole queue

Dependencies: pydantic, datetime, enum
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from eventrelay.models.request import Priority, RequestSpec

# Bump whenever the persisted layout changes incompatibly.
SNAPSHOT_VERSION = 1


class OverflowPolicy(str, Enum):
    """Rule applied when the queue is full."""

    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"
    DROP_LOWEST_PRIORITY = "drop_lowest_priority"


class DropReason(str, Enum):
    """Why an entry was dropped."""

    OVERFLOW = "overflow"
    EXPIRED = "expired"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class QueueEntry(BaseModel):
    """
    A request waiting in the persistent queue.

    Attributes:
        spec: The request to deliver
        sequence: Monotonic enqueue counter, breaks ties within a priority
        enqueued_at: When the entry entered the queue (UTC)
        attempt_count: Delivery attempts made for this entry so far
    """

    model_config = ConfigDict(validate_assignment=True)

    spec: RequestSpec
    sequence: int = Field(..., ge=0)
    enqueued_at: datetime
    attempt_count: int = Field(default=0, ge=0)

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def priority(self) -> Priority:
        return self.spec.priority

    @property
    def sort_key(self) -> Tuple[int, int]:
        """Dispatch order: priority rank first, then enqueue sequence."""
        return (int(self.spec.priority), self.sequence)

    def is_expired(self, now: datetime, max_age_hours: float) -> bool:
        """Whether the entry is older than max_age_hours (0 disables)."""
        if max_age_hours <= 0:
            return False
        return now - self.enqueued_at > timedelta(hours=max_age_hours)


class QueueStats(BaseModel):
    """Queue counters. Totals are monotonic until an explicit clear."""

    current_size: int = 0
    total_enqueued: int = 0
    total_dequeued: int = 0
    total_dropped: int = 0
    peak_size: int = 0


class EnqueueResult(BaseModel):
    """
    Result of an enqueue call.

    Attributes:
        accepted: True when the incoming request was inserted
        entry: The inserted entry (accepted only)
        reason: Why the incoming request was rejected (dropped only)
        evicted: Entry evicted to make room, if any
    """

    accepted: bool
    entry: Optional[QueueEntry] = None
    reason: Optional[DropReason] = None
    evicted: Optional[QueueEntry] = None

    @classmethod
    def accept(cls, entry: QueueEntry, evicted: Optional[QueueEntry] = None) -> "EnqueueResult":
        return cls(accepted=True, entry=entry, evicted=evicted)

    @classmethod
    def drop(cls, reason: DropReason) -> "EnqueueResult":
        return cls(accepted=False, reason=reason)


class QueueSnapshot(BaseModel):
    """Persisted queue state: ordered entries, sequence counter and stats."""

    version: int = SNAPSHOT_VERSION
    sequence: int = Field(default=0, ge=0)
    stats: QueueStats = Field(default_factory=QueueStats)
    entries: List[QueueEntry] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
