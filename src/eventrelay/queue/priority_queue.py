"""
Module: priority_queue.py
Description: Durable, bounded, priority-ordered queue of undelivered requests.

Entries are ordered by (priority rank, sequence number). The sequence
number is a monotonic counter assigned at enqueue time and persisted with
the queue, so FIFO order within a priority survives restarts.

Entries are never removed by reading them: dequeue_next() peeks, and the
caller removes the entry with remove() or drop() only after a terminal
outcome. An interrupted dispatch therefore leaves its entry queued.

Writers (enqueue, remove, drop, evict, persist, restore, clear) are
serialized by an asyncio.Lock. Each in-memory mutation completes without
yielding to the event loop, so readers always observe a consistent order.

Key Components:
- PersistentPriorityQueue: enqueue / dequeue_next / remove / drop
- Overflow policies: drop oldest, drop newest, drop lowest priority
- evict_expired(): Age-based eviction
- persist() / restore(): Versioned JSON snapshot through a BlobStore

Dependencies: pydantic, asyncio, bisect, storage
"""

import asyncio
import bisect
import json
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from eventrelay.config.settings import DeliverySettings
from eventrelay.errors import StorageError
from eventrelay.models.queue import (
    SNAPSHOT_VERSION,
    DropReason,
    EnqueueResult,
    OverflowPolicy,
    QueueEntry,
    QueueSnapshot,
    QueueStats,
)
from eventrelay.models.request import RequestSpec
from eventrelay.storage.blob import BlobStore, InMemoryBlobStore
from eventrelay.utils.events import EventBus, EventType
from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_STORAGE_KEY = "delivery-queue.json"

_OrderKey = Tuple[int, int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _order_key(entry: QueueEntry) -> _OrderKey:
    return (int(entry.spec.priority), entry.sequence, entry.spec.id)


class PersistentPriorityQueue:
    """
    Priority queue with overflow policy, age limit and atomic persistence.

    Example:
        >>> queue = PersistentPriorityQueue(store=FileBlobStore(".eventrelay"), max_size=500)
        >>> await queue.restore()
        >>> result = await queue.enqueue(spec)
        >>> entry = queue.dequeue_next()
        >>> await queue.remove(entry.id)
    """

    def __init__(
        self,
        store: Optional[BlobStore] = None,
        key: str = DEFAULT_STORAGE_KEY,
        max_size: int = 1000,
        overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        max_age_hours: float = 72.0,
        auto_persist: bool = True,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        """
        Initialize the queue.

        Args:
            store: Durable blob store (in-memory when omitted)
            key: Blob key the snapshot is stored under
            max_size: Capacity; inserts beyond it apply the overflow policy
            overflow_policy: Rule applied when the queue is full
            max_age_hours: Default age bound for evict_expired (0 disables)
            auto_persist: Persist after every committed mutation
            events: Event bus for enqueue/dequeue/drop events
            clock: Source of "now" (UTC datetimes)

        Raises:
            ValueError: If max_size or max_age_hours is out of range
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if max_age_hours < 0:
            raise ValueError("max_age_hours must be >= 0")
        if not key or not isinstance(key, str):
            raise ValueError("key must be a non-empty string")

        self._store = store if store is not None else InMemoryBlobStore()
        self.key = key
        self.max_size = max_size
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self.max_age_hours = max_age_hours
        self.auto_persist = auto_persist
        self.events = events or EventBus()
        self._clock = clock

        self._order: List[_OrderKey] = []
        self._entries: Dict[str, QueueEntry] = {}
        self._in_flight: Set[str] = set()
        self._sequence = 0
        self._stats = QueueStats()
        self._lock = asyncio.Lock()
        self._storage_healthy = True

        logger.info(
            "Priority queue initialized",
            key=key,
            max_size=max_size,
            overflow_policy=self.overflow_policy.value,
            max_age_hours=max_age_hours,
            store=type(self._store).__name__
        )

    @classmethod
    def from_settings(
        cls,
        settings: DeliverySettings,
        store: Optional[BlobStore] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = _utcnow
    ) -> "PersistentPriorityQueue":
        """Build a queue from delivery settings."""
        return cls(
            store=store,
            key=settings.storage_key,
            max_size=settings.max_queue_size,
            overflow_policy=OverflowPolicy(settings.overflow_policy),
            max_age_hours=settings.max_queue_age_hours,
            auto_persist=settings.auto_persist,
            events=events,
            clock=clock
        )

    # Read side

    @property
    def count(self) -> int:
        return len(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    @property
    def sequence(self) -> int:
        """Next sequence number to be assigned."""
        return self._sequence

    @property
    def storage_healthy(self) -> bool:
        """False once a persistence operation failed in this session."""
        return self._storage_healthy

    def get(self, request_id: str) -> Optional[QueueEntry]:
        entry = self._entries.get(request_id)
        return entry.model_copy() if entry is not None else None

    def entries(self) -> List[QueueEntry]:
        """Ordered snapshot of every queued entry (in-flight ones included)."""
        return [self._entries[k[2]].model_copy() for k in self._order]

    def is_in_flight(self, request_id: str) -> bool:
        return request_id in self._in_flight

    def dequeue_next(self, exclude: AbstractSet[str] = frozenset()) -> Optional[QueueEntry]:
        """
        Peek the highest-priority, oldest entry that is not in flight.

        The entry stays queued; call remove() or drop() after its
        terminal outcome.

        Args:
            exclude: Request ids to skip as well

        Returns:
            The next entry to dispatch, or None when nothing is dispatchable
        """
        for order_key in self._order:
            if order_key[2] not in self._in_flight and order_key[2] not in exclude:
                return self._entries[order_key[2]].model_copy()
        return None

    def get_stats(self) -> QueueStats:
        return self._stats.model_copy(update={'current_size': len(self._order)})

    # In-flight tracking

    def mark_in_flight(self, request_id: str) -> bool:
        """Protect an entry from overflow eviction while it is dispatched."""
        if request_id not in self._entries:
            return False
        self._in_flight.add(request_id)
        return True

    def release(self, request_id: str) -> None:
        """Return an in-flight entry to the evictable pool."""
        self._in_flight.discard(request_id)

    # Internal mutation helpers (caller holds the lock)

    def _insert(self, entry: QueueEntry) -> None:
        bisect.insort(self._order, _order_key(entry))
        self._entries[entry.id] = entry

    def _pop(self, request_id: str) -> Optional[QueueEntry]:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return None
        order_key = _order_key(entry)
        index = bisect.bisect_left(self._order, order_key)
        if index < len(self._order) and self._order[index] == order_key:
            del self._order[index]
        else:
            self._order.remove(order_key)
        self._in_flight.discard(request_id)
        return entry

    def _select_victim(self, incoming: RequestSpec) -> Optional[QueueEntry]:
        """Pick the entry to evict for an incoming request, or None to reject it."""
        if self.overflow_policy == OverflowPolicy.DROP_NEWEST:
            return None

        candidates = [
            self._entries[k[2]] for k in self._order if k[2] not in self._in_flight
        ]
        if not candidates:
            return None

        if self.overflow_policy == OverflowPolicy.DROP_OLDEST:
            return min(candidates, key=lambda e: (e.enqueued_at, e.sequence))

        # DROP_LOWEST_PRIORITY: candidates are already in dispatch order,
        # so the last one is the newest entry of the lowest tier present.
        victim = candidates[-1]
        if int(incoming.priority) >= int(victim.spec.priority):
            return None
        return victim

    def _expired_locked(self, now: datetime, max_age_hours: float) -> List[QueueEntry]:
        expired = [
            self._entries[k[2]]
            for k in self._order
            if k[2] not in self._in_flight and self._entries[k[2]].is_expired(now, max_age_hours)
        ]
        for entry in expired:
            self._pop(entry.id)
            self._stats.total_dropped += 1
        return expired

    def _snapshot_bytes(self) -> bytes:
        snapshot = QueueSnapshot(
            version=SNAPSHOT_VERSION,
            sequence=self._sequence,
            stats=self.get_stats(),
            entries=[self._entries[k[2]] for k in self._order],
            saved_at=self._clock()
        )
        return snapshot.model_dump_json().encode('utf-8')

    async def _persist_locked(self) -> bool:
        data = self._snapshot_bytes()
        try:
            await asyncio.to_thread(self._store.write_blob, self.key, data)
        except StorageError as e:
            if self._storage_healthy:
                logger.error(
                    "Queue persistence failed, continuing in memory",
                    key=self.key,
                    size=len(self._order),
                    error=str(e)
                )
            self._storage_healthy = False
            return False

        if not self._storage_healthy:
            logger.info("Queue persistence recovered", key=self.key)
        self._storage_healthy = True
        return True

    async def _auto_persist_locked(self) -> None:
        if self.auto_persist and self._storage_healthy:
            await self._persist_locked()

    def _emit_dropped(self, entry: QueueEntry, reason: DropReason) -> None:
        logger.warning(
            "Queue entry dropped",
            request_id=entry.id,
            priority=entry.priority.name,
            reason=reason.value,
            attempt_count=entry.attempt_count
        )
        self.events.emit(EventType.ENTRY_DROPPED, entry=entry, reason=reason)

    # Write side

    async def enqueue(self, spec: RequestSpec) -> EnqueueResult:
        """
        Insert a request, applying the overflow policy when full.

        The eviction and the insert happen under one lock acquisition with
        no suspension between them, so no reader ever sees more than
        max_size entries. Entries currently in flight are never evicted.
        Enqueueing an id that is already queued is a no-op that reports
        the existing entry as accepted.

        Args:
            spec: Request to queue

        Returns:
            EnqueueResult.accepted, or dropped with DropReason.OVERFLOW
        """
        if not isinstance(spec, RequestSpec):
            raise ValueError("spec must be a RequestSpec instance")

        evicted: Optional[QueueEntry] = None
        async with self._lock:
            existing = self._entries.get(spec.id)
            if existing is not None:
                logger.debug("Request already queued", request_id=spec.id)
                return EnqueueResult.accept(existing.model_copy())

            entry = QueueEntry(spec=spec, sequence=self._sequence, enqueued_at=self._clock())

            if len(self._order) >= self.max_size:
                victim = self._select_victim(spec)
                if victim is None:
                    self._stats.total_dropped += 1
                    await self._auto_persist_locked()
                    rejected = True
                else:
                    self._pop(victim.id)
                    self._stats.total_dropped += 1
                    evicted = victim
                    rejected = False
            else:
                rejected = False

            if not rejected:
                self._insert(entry)
                self._sequence += 1
                self._stats.total_enqueued += 1
                self._stats.peak_size = max(self._stats.peak_size, len(self._order))
                await self._auto_persist_locked()

        if rejected:
            self._emit_dropped(entry, DropReason.OVERFLOW)
            return EnqueueResult.drop(DropReason.OVERFLOW)

        if evicted is not None:
            self._emit_dropped(evicted, DropReason.OVERFLOW)

        logger.info(
            "Request queued",
            request_id=spec.id,
            priority=spec.priority.name,
            sequence=entry.sequence,
            size=len(self._order)
        )
        self.events.emit(EventType.ENTRY_ENQUEUED, entry=entry)
        return EnqueueResult.accept(entry.model_copy(), evicted=evicted)

    async def remove(self, request_id: str) -> bool:
        """
        Remove an entry after it was delivered.

        Counts toward total_dequeued and emits entry-dequeued.

        Returns:
            False if the id was not queued
        """
        async with self._lock:
            entry = self._pop(request_id)
            if entry is None:
                return False
            self._stats.total_dequeued += 1
            await self._auto_persist_locked()

        logger.debug("Queue entry removed", request_id=request_id, size=len(self._order))
        self.events.emit(EventType.ENTRY_DEQUEUED, entry=entry)
        return True

    async def drop(self, request_id: str, reason: DropReason) -> Optional[QueueEntry]:
        """
        Remove an entry that reached a terminal state without delivery.

        Counts toward total_dropped and emits entry-dropped.

        Returns:
            The dropped entry, or None if the id was not queued
        """
        async with self._lock:
            entry = self._pop(request_id)
            if entry is None:
                return None
            self._stats.total_dropped += 1
            await self._auto_persist_locked()

        self._emit_dropped(entry, DropReason(reason))
        return entry

    async def record_attempt(self, request_id: str) -> Optional[int]:
        """
        Increment an entry's attempt count.

        Returns:
            The new attempt count, or None if the id was not queued
        """
        async with self._lock:
            entry = self._entries.get(request_id)
            if entry is None:
                return None
            entry.attempt_count += 1
            await self._auto_persist_locked()
            return entry.attempt_count

    async def evict_expired(self, max_age_hours: Optional[float] = None) -> List[QueueEntry]:
        """
        Drop queued entries older than the age bound.

        Args:
            max_age_hours: Age bound in hours; the queue default when
                omitted, 0 disables the bound

        Returns:
            The evicted entries
        """
        bound = self.max_age_hours if max_age_hours is None else max_age_hours
        if bound < 0:
            raise ValueError("max_age_hours must be >= 0")
        if bound == 0:
            return []

        async with self._lock:
            expired = self._expired_locked(self._clock(), bound)
            if expired:
                await self._auto_persist_locked()

        for entry in expired:
            self._emit_dropped(entry, DropReason.EXPIRED)
        if expired:
            logger.info("Expired queue entries evicted", count=len(expired), max_age_hours=bound)
        return expired

    async def clear(self) -> int:
        """
        Remove every entry and reset the counters.

        The sequence counter is kept so later entries still order after
        anything a stale snapshot might contain.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            removed = len(self._order)
            self._order.clear()
            self._entries.clear()
            self._in_flight.clear()
            self._stats = QueueStats()
            await self._auto_persist_locked()

        logger.info("Queue cleared", removed=removed)
        return removed

    async def persist(self) -> bool:
        """
        Write the full queue to the blob store.

        Storage failures are logged, never raised; the queue keeps
        operating in memory.

        Returns:
            True if the snapshot was committed
        """
        async with self._lock:
            return await self._persist_locked()

    async def restore(self) -> int:
        """
        Replace the in-memory queue with the persisted snapshot.

        A missing snapshot leaves the queue empty. A snapshot with an
        unknown version or invalid content is discarded with a warning.
        Expired entries are evicted right after loading.

        Returns:
            Number of entries restored (after age eviction)
        """
        async with self._lock:
            try:
                data = await asyncio.to_thread(self._store.read_blob, self.key)
            except StorageError as e:
                logger.error("Queue restore failed, starting empty", key=self.key, error=str(e))
                self._storage_healthy = False
                return 0

            if data is None:
                logger.info("No persisted queue found", key=self.key)
                return 0

            snapshot = self._parse_snapshot(data)
            if snapshot is None:
                return 0

            self._order.clear()
            self._entries.clear()
            self._in_flight.clear()
            for entry in snapshot.entries:
                self._insert(entry)

            highest = max((e.sequence for e in snapshot.entries), default=-1)
            self._sequence = max(snapshot.sequence, highest + 1)
            self._stats = snapshot.stats.model_copy(update={'current_size': len(self._order)})
            self._stats.peak_size = max(self._stats.peak_size, len(self._order))

            expired = self._expired_locked(self._clock(), self.max_age_hours)
            if expired:
                await self._auto_persist_locked()

        for entry in expired:
            self._emit_dropped(entry, DropReason.EXPIRED)

        logger.info(
            "Queue restored",
            key=self.key,
            restored=len(self._order),
            expired=len(expired),
            sequence=self._sequence
        )
        return len(self._order)

    def _parse_snapshot(self, data: bytes) -> Optional[QueueSnapshot]:
        try:
            raw = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Discarding unreadable queue snapshot", key=self.key, error=str(e))
            return None

        version = raw.get('version') if isinstance(raw, dict) else None
        if version != SNAPSHOT_VERSION:
            logger.warning(
                "Discarding queue snapshot with incompatible version",
                key=self.key,
                version=version,
                expected=SNAPSHOT_VERSION
            )
            return None

        try:
            return QueueSnapshot.model_validate_json(data)
        except ValidationError as e:
            logger.warning(
                "Discarding invalid queue snapshot",
                key=self.key,
                errors=e.error_count()
            )
            return None
