"""
Module: delivery/coordinator.py
Description: Top-level delivery service.

Accepts new requests and attempts them immediately. Requests that fail
recoverably (network error, timeout, exhausted 5xx/429 retries) are moved
into the persistent priority queue; successes and non-recoverable
failures are reported straight back to the caller. When the network
monitor reports that connectivity is restored, the queue is flushed in
priority order.

Key Components:
- DeliveryCoordinator: start/stop lifecycle, submit, flush, cancel, stats
- DeliveryHandle: Awaitable result channel for one submission
- DeliveryStats / FlushSummary: Counters and per-pass results

Dependencies: asyncio, gzip, dispatcher, queue, monitor, metrics
"""

import asyncio
import contextlib
import gzip
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from pydantic import BaseModel

from eventrelay.config.settings import DeliverySettings
from eventrelay.errors import CoordinatorNotRunning
from eventrelay.models.outcome import ResponseOutcome, StatusCategory, SubmitResult, SubmitStatus
from eventrelay.models.queue import DropReason, QueueEntry, QueueStats
from eventrelay.models.request import Payload, Priority, RequestSpec
from eventrelay.network.monitor import NetworkConditionMonitor
from eventrelay.network.probe import HttpConnectivityProbe
from eventrelay.network.types import ConnectivityProbe, ConnectivityState
from eventrelay.queue.priority_queue import PersistentPriorityQueue
from eventrelay.storage.blob import BlobStore, create_blob_store
from eventrelay.utils.events import DeliveryEvent, EventBus, EventType
from eventrelay.utils.logger import get_logger
from eventrelay.utils.metrics import MetricsClient
from eventrelay.utils.signing import Signer, hmac_sha256_signer
from eventrelay.delivery.cancellation import CancellationToken
from eventrelay.delivery.dispatcher import RequestDispatcher
from eventrelay.delivery.retry import RetryConfig
from eventrelay.delivery.transport import HttpTransport, Transport

logger = get_logger(__name__)

CANCEL_BY_CALLER = "cancelled by caller"
CANCEL_BY_SHUTDOWN = "coordinator stopped"

_QUEUE_EVENTS = (EventType.ENTRY_ENQUEUED, EventType.ENTRY_DEQUEUED, EventType.ENTRY_DROPPED)
_MONITOR_EVENTS = (EventType.CONNECTIVITY_CHANGED, EventType.CONNECTION_RESTORED)


class DeliveryStats(BaseModel):
    """Delivery counters since the coordinator was created."""

    submitted: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0
    queued: int = 0
    dropped: int = 0
    flushes: int = 0


class FlushSummary(BaseModel):
    """Result of one flush pass."""

    attempted: int = 0
    delivered: int = 0
    requeued: int = 0
    dropped: int = 0
    cancelled: int = 0
    remaining: int = 0
    interrupted: bool = False
    duration_ms: float = 0.0


class DeliveryHandle:
    """
    Result channel for one submitted request.

    Await the handle (or call wait()) for the SubmitResult, poll with
    done()/result(), or register add_done_callback(). Awaiting is
    shielded: cancelling the awaiting task does not cancel the delivery;
    use cancel() for that.
    """

    def __init__(self, request_id: str, future: "asyncio.Future[SubmitResult]", token: CancellationToken):
        self.request_id = request_id
        self._future = future
        self._token = token

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> SubmitResult:
        """Return the result; raises asyncio.InvalidStateError while pending."""
        return self._future.result()

    async def wait(self, timeout: Optional[float] = None) -> SubmitResult:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)

    def cancel(self) -> bool:
        """Cancel the delivery if it is still dispatching."""
        if self._future.done():
            return False
        return self._token.cancel(CANCEL_BY_CALLER)

    def add_done_callback(self, callback: Callable[[SubmitResult], Any]) -> None:
        def _relay(future: "asyncio.Future[SubmitResult]") -> None:
            if not future.cancelled() and future.exception() is None:
                callback(future.result())

        self._future.add_done_callback(_relay)

    def __await__(self):
        return asyncio.shield(self._future).__await__()

    def __repr__(self) -> str:
        return f"DeliveryHandle(request_id={self.request_id!r}, done={self.done()})"


class DeliveryCoordinator:
    """
    Orchestrates immediate delivery, queueing and flushing.

    All collaborators are injected; there is no global instance. Use
    create() to build a fully wired coordinator from settings.

    Example:
        >>> coordinator = DeliveryCoordinator.create(settings)
        >>> await coordinator.start()
        >>> handle = await coordinator.submit(coordinator.create_request(Payload.from_json_object(body)))
        >>> result = await handle
        >>> result.status
        <SubmitStatus.DELIVERED: 'delivered'>
        >>> await coordinator.stop()
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        queue: PersistentPriorityQueue,
        monitor: Optional[NetworkConditionMonitor] = None,
        settings: Optional[DeliverySettings] = None,
        signer: Optional[Signer] = None,
        metrics: Optional[MetricsClient] = None,
        events: Optional[EventBus] = None
    ):
        """
        Initialize the coordinator.

        Args:
            dispatcher: Request dispatcher
            queue: Persistent priority queue
            monitor: Network condition monitor (always-online behavior without one)
            settings: Delivery settings (fresh DeliverySettings() when omitted)
            signer: Signature function, used when settings.signing_secret is set
            metrics: Optional CloudWatch metrics client
            events: Event bus for the coordinator's public event streams
        """
        if dispatcher is None or queue is None:
            raise ValueError("dispatcher and queue are required")

        self.settings = settings or DeliverySettings()
        self.dispatcher = dispatcher
        self.queue = queue
        self.monitor = monitor
        self.metrics = metrics
        self.events = events or queue.events
        self._signer = signer or hmac_sha256_signer

        self._stats = DeliveryStats()
        self._slots = asyncio.Semaphore(self.settings.max_concurrency)
        self._flush_lock = asyncio.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribers: list = []
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_again = False
        self._eviction_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._running = False
        self._closables: list = []

        if self.queue.events is not self.events:
            for event_type in _QUEUE_EVENTS:
                self.queue.events.subscribe(event_type, self._forward)
        if self.monitor is not None and self.monitor.events is not self.events:
            for event_type in _MONITOR_EVENTS:
                self.monitor.events.subscribe(event_type, self._forward)

    @classmethod
    def create(
        cls,
        settings: Optional[DeliverySettings] = None,
        transport: Optional[Transport] = None,
        probe: Optional[ConnectivityProbe] = None,
        store: Optional[BlobStore] = None,
        signer: Optional[Signer] = None,
        metrics: Optional[MetricsClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None
    ) -> "DeliveryCoordinator":
        """
        Build a coordinator whose components share one event bus.

        Transports and probes created here are closed by stop().
        """
        settings = settings or DeliverySettings()
        events = EventBus()

        owned = []
        if transport is None:
            transport = HttpTransport()
            owned.append(transport)
        if probe is None and (settings.reachability_url or settings.endpoint_url):
            probe = HttpConnectivityProbe(timeout_seconds=settings.request_timeout_seconds)
            owned.append(probe)
        if store is None:
            store = create_blob_store(settings)
        if metrics is None and settings.metrics_enabled:
            metrics = MetricsClient(namespace=settings.metrics_namespace)

        dispatcher = RequestDispatcher(
            transport,
            RetryConfig.from_settings(settings),
            rng=rng,
            events=events
        )
        queue_kwargs = {'clock': clock} if clock is not None else {}
        queue = PersistentPriorityQueue.from_settings(settings, store=store, events=events, **queue_kwargs)
        monitor = NetworkConditionMonitor.from_settings(settings, probe=probe, events=events)

        coordinator = cls(
            dispatcher,
            queue,
            monitor=monitor,
            settings=settings,
            signer=signer,
            metrics=metrics,
            events=events
        )
        coordinator._closables.extend(owned)
        return coordinator

    # Events and readiness

    def _forward(self, event: DeliveryEvent) -> None:
        self.events.emit(event.type, **event.data)

    def subscribe(self, event_type: EventType, callback: Callable[[DeliveryEvent], Any]) -> Callable[[], None]:
        """Subscribe to entry-enqueued, entry-dequeued, entry-dropped, queue-flushed or connectivity-changed."""
        return self.events.subscribe(event_type, callback)

    def _ready_future(self) -> asyncio.Future:
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        return self._ready

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Wait until start() has finished initializing."""
        await asyncio.wait_for(asyncio.shield(self._ready_future()), timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._running

    def _require_running(self) -> None:
        if not self._running:
            raise CoordinatorNotRunning("coordinator is not running; call start() first")

    # Lifecycle

    async def start(self) -> None:
        """
        Restore the queue, start monitoring and background maintenance.

        Resolves the readiness future when done. If restored entries are
        waiting and the network is not known to be offline, a flush is
        scheduled right away when auto_flush is enabled.
        """
        if self._running:
            return

        restored = await self.queue.restore()
        await self.queue.evict_expired(self.settings.max_queue_age_hours)

        if self.monitor is not None:
            self._unsubscribers.append(
                self.monitor.events.subscribe(EventType.CONNECTION_RESTORED, self._on_connection_restored)
            )
            await self.monitor.start()

        if self.metrics is not None:
            self._unsubscribers.append(
                self.events.subscribe(EventType.ENTRY_DROPPED, self._publish_drop_metric)
            )

        self._eviction_task = asyncio.create_task(self._eviction_loop())
        self._running = True

        ready = self._ready_future()
        if not ready.done():
            ready.set_result(True)

        logger.info(
            "Delivery coordinator started",
            restored=restored,
            queue_size=self.queue.count,
            max_concurrency=self.settings.max_concurrency,
            auto_flush=self.settings.auto_flush
        )

        if self.settings.auto_flush and self.queue.count and not self._is_offline():
            self._schedule_flush("startup")

    async def stop(self) -> None:
        """
        Cancel in-flight work, persist the queue and stop background tasks.

        Immediate submissions interrupted here are queued rather than lost;
        queued entries stay queued.
        """
        if not self._running:
            return
        self._running = False

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._eviction_task is not None:
            self._eviction_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._eviction_task
            self._eviction_task = None

        if self.monitor is not None:
            await self.monitor.stop()

        for token in list(self._tokens.values()):
            token.cancel(CANCEL_BY_SHUTDOWN)

        pending = [t for t in self._tasks if not t.done()]
        if self._flush_task is not None and not self._flush_task.done():
            pending.append(self._flush_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.queue.persist()
        await self.events.drain()

        for resource in self._closables:
            await resource.aclose()
        self._closables.clear()
        self._ready = None

        logger.info("Delivery coordinator stopped", queue_size=self.queue.count, **self._stats.model_dump())

    async def __aenter__(self) -> "DeliveryCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # Submission

    def create_request(
        self,
        payload: Payload,
        endpoint: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
        headers: Optional[Dict[str, str]] = None,
        request_id: Optional[str] = None
    ) -> RequestSpec:
        """
        Build a RequestSpec with retry and timeout defaults from settings.

        Raises:
            ValueError: If no endpoint is given and none is configured
        """
        endpoint = endpoint or self.settings.endpoint_url
        if not endpoint:
            raise ValueError("endpoint must be a non-empty string")

        fields: Dict[str, Any] = {
            'endpoint': endpoint,
            'payload': payload,
            'priority': priority,
            'max_retries': self.settings.max_retries,
            'timeout_seconds': self.settings.request_timeout_seconds,
            'headers': headers or {},
        }
        if request_id is not None:
            fields['id'] = request_id
        return RequestSpec(**fields)

    async def submit(self, spec: RequestSpec) -> DeliveryHandle:
        """
        Submit a request for delivery.

        The request is attempted immediately (with retries) in the
        background. The returned handle resolves to Delivered, Failed
        (non-recoverable), Cancelled, Queued (recoverable failure, now in
        the queue) or Dropped (could not be queued).

        Raises:
            CoordinatorNotRunning: If start() has not completed
            ValueError: If a request with the same id is already dispatching
        """
        self._require_running()
        if not isinstance(spec, RequestSpec):
            raise ValueError("spec must be a RequestSpec instance")
        if spec.id in self._tokens:
            raise ValueError(f"request {spec.id} is already in flight")

        token = CancellationToken()
        self._tokens[spec.id] = token
        future = asyncio.get_running_loop().create_future()
        self._stats.submitted += 1

        task = asyncio.create_task(self._deliver(spec, token, future))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.debug("Request submitted", request_id=spec.id, priority=spec.priority.name)
        return DeliveryHandle(spec.id, future, token)

    async def _deliver(self, spec: RequestSpec, token: CancellationToken, future: asyncio.Future) -> None:
        try:
            result = await self._submit_once(spec, token)
        except Exception as e:
            logger.error(
                "Unexpected error delivering request",
                request_id=spec.id,
                error=str(e),
                error_type=type(e).__name__
            )
            if not future.done():
                future.set_exception(e)
            return
        finally:
            self._tokens.pop(spec.id, None)

        if not future.done():
            future.set_result(result)

    def _should_defer(self, spec: RequestSpec) -> bool:
        if self.monitor is None or not self.settings.defer_when_offline:
            return False
        if not self.monitor.should_defer(self.settings.mobile_constrained):
            return False
        return self._is_offline() or spec.priority != Priority.CRITICAL

    def _is_offline(self) -> bool:
        return self.monitor is not None and self.monitor.connectivity == ConnectivityState.OFFLINE

    async def _submit_once(self, spec: RequestSpec, token: CancellationToken) -> SubmitResult:
        if self._should_defer(spec):
            logger.info("Deferring request", request_id=spec.id, priority=spec.priority.name)
            return await self._enqueue(spec, None)

        async with self._slots:
            outcome = await self.dispatcher.attempt_with_retry(self._prepare(spec), token)

        if outcome.success:
            self._stats.delivered += 1
            logger.info(
                "Request delivered",
                request_id=spec.id,
                attempts=outcome.attempt,
                status_code=outcome.status_code
            )
            return SubmitResult(request_id=spec.id, status=SubmitStatus.DELIVERED, outcome=outcome)

        if outcome.status_category == StatusCategory.CANCELLED:
            if token.reason == CANCEL_BY_SHUTDOWN:
                return await self._enqueue(spec, outcome)
            self._stats.cancelled += 1
            return SubmitResult(request_id=spec.id, status=SubmitStatus.CANCELLED, outcome=outcome)

        if outcome.is_recoverable:
            return await self._enqueue(spec, outcome)

        self._stats.failed += 1
        return SubmitResult(request_id=spec.id, status=SubmitStatus.FAILED, outcome=outcome)

    async def _enqueue(self, spec: RequestSpec, outcome: Optional[ResponseOutcome]) -> SubmitResult:
        result = await self.queue.enqueue(spec)
        if result.accepted:
            self._stats.queued += 1
            return SubmitResult(request_id=spec.id, status=SubmitStatus.QUEUED, outcome=outcome)

        self._stats.dropped += 1
        return SubmitResult(
            request_id=spec.id,
            status=SubmitStatus.DROPPED,
            outcome=outcome,
            drop_reason=result.reason
        )

    def _prepare(self, spec: RequestSpec) -> RequestSpec:
        """Apply the compression advisory and signing to an outgoing copy."""
        payload = spec.payload
        if (
            self.settings.compress_payloads
            and self.monitor is not None
            and payload.content_encoding is None
            and self.monitor.should_compress(payload.size)
        ):
            payload = Payload(
                data=gzip.compress(payload.data),
                content_type=payload.content_type,
                content_encoding="gzip"
            )
            logger.debug(
                "Payload compressed",
                request_id=spec.id,
                original_size=spec.payload.size,
                compressed_size=payload.size
            )
            spec = spec.with_payload(payload)

        if self.settings.signing_secret:
            signature = self._signer(payload.data, self.settings.signing_secret)
            spec = spec.with_headers({self.settings.signature_header: signature.hex()})

        return spec

    # Flushing

    def _on_connection_restored(self, event: DeliveryEvent) -> None:
        if self.settings.auto_flush and self._running:
            self._schedule_flush("connection_restored")

    def _schedule_flush(self, trigger: str) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_again = True
            return
        logger.info("Flush scheduled", trigger=trigger, queue_size=self.queue.count)
        self._flush_task = asyncio.create_task(self._auto_flush())

    async def _auto_flush(self) -> None:
        while True:
            self._flush_again = False
            try:
                await self.flush()
            except CoordinatorNotRunning:
                return
            except Exception as e:
                logger.error("Automatic flush failed", error=str(e), error_type=type(e).__name__)
                return
            if not self._flush_again:
                return

    async def flush(self) -> FlushSummary:
        """
        Drain the queue in priority order.

        Entries are started in (priority, sequence) order. No entry starts
        while an entry of a higher priority from this pass is still
        dispatching, and entries enqueued during the pass are picked up in
        order as well. Within a tier up to settings.flush_concurrency
        entries run at once (one by default). Each entry gets a single
        attempt per pass and is removed only after a terminal outcome:
        delivered, rejected (non-recoverable), exhausted or cancelled.
        The pass stops early if the monitor reports the network offline.

        Returns:
            FlushSummary for the pass
        """
        self._require_running()
        async with self._flush_lock:
            return await self._flush_pass()

    async def _flush_pass(self) -> FlushSummary:
        started = time.perf_counter()
        summary = FlushSummary()
        attempted: Set[str] = set()
        running: Dict[asyncio.Task, QueueEntry] = {}
        per_tier = min(self.settings.flush_concurrency, self.settings.max_concurrency)

        logger.info("Flush started", queue_size=self.queue.count)

        try:
            while self._running:
                if self._is_offline():
                    summary.interrupted = True
                    logger.warning("Flush interrupted, network offline", remaining=self.queue.count)
                    break

                # Ids held by an immediate submit are left for a later pass
                candidate = self.queue.dequeue_next(exclude=attempted.union(self._tokens))
                if candidate is None:
                    break

                blocking = [
                    task for task, entry in running.items()
                    if int(entry.priority) < int(candidate.priority)
                ]
                if blocking or len(running) >= per_tier:
                    await asyncio.wait(
                        blocking or list(running),
                        return_when=asyncio.FIRST_COMPLETED
                    )
                    self._reap(running)
                    continue

                attempted.add(candidate.id)
                summary.attempted += 1
                task = asyncio.create_task(self._flush_entry(candidate, summary))
                running[task] = candidate

            if running:
                await asyncio.wait(list(running))
                self._reap(running)

        finally:
            for task in running:
                if not task.done():
                    task.cancel()

        summary.remaining = self.queue.count
        summary.duration_ms = (time.perf_counter() - started) * 1000
        self._stats.flushes += 1

        logger.info("Flush completed", **summary.model_dump())
        self.events.emit(EventType.QUEUE_FLUSHED, summary=summary, stats=self.queue.get_stats())

        if self.metrics is not None:
            await asyncio.to_thread(self.metrics.publish_queue_stats, self.queue.get_stats())

        return summary

    @staticmethod
    def _reap(running: Dict[asyncio.Task, QueueEntry]) -> None:
        for task in [t for t in running if t.done()]:
            entry = running.pop(task)
            error = None if task.cancelled() else task.exception()
            if error is not None:
                logger.error(
                    "Flush of queued request failed",
                    request_id=entry.id,
                    error=str(error),
                    error_type=type(error).__name__
                )

    async def _flush_entry(self, entry: QueueEntry, summary: FlushSummary) -> None:
        request_id = entry.id
        if request_id in self._tokens or not self.queue.mark_in_flight(request_id):
            return

        token = CancellationToken()
        self._tokens[request_id] = token
        try:
            outcome: Optional[ResponseOutcome] = None
            try:
                async with self._slots:
                    outcome = await self.dispatcher.attempt(
                        self._prepare(entry.spec),
                        token,
                        attempt_number=entry.attempt_count + 1
                    )
            except Exception as e:
                # Counts as a failed attempt so the entry still reaches max_queue_attempts
                logger.error(
                    "Unexpected error flushing queued request",
                    request_id=request_id,
                    error=str(e),
                    error_type=type(e).__name__
                )

            if outcome is not None and outcome.status_category == StatusCategory.CANCELLED:
                if token.reason == CANCEL_BY_CALLER:
                    if await self.queue.drop(request_id, DropReason.CANCELLED) is not None:
                        self._stats.cancelled += 1
                        summary.cancelled += 1
                return

            attempts = await self.queue.record_attempt(request_id)
            if attempts is None:
                return

            if outcome is not None and outcome.success:
                await self.queue.remove(request_id)
                self._stats.delivered += 1
                summary.delivered += 1
                logger.info(
                    "Queued request delivered",
                    request_id=request_id,
                    priority=entry.priority.name,
                    attempts=attempts
                )
            elif outcome is not None and not outcome.is_recoverable:
                await self.queue.drop(request_id, DropReason.REJECTED)
                self._stats.failed += 1
                summary.dropped += 1
            elif attempts >= self.settings.max_queue_attempts:
                await self.queue.drop(request_id, DropReason.RETRIES_EXHAUSTED)
                self._stats.dropped += 1
                summary.dropped += 1
            else:
                summary.requeued += 1
                logger.info(
                    "Queued request failed again, keeping it queued",
                    request_id=request_id,
                    attempts=attempts,
                    status_category=outcome.status_category.value if outcome is not None else None
                )

        finally:
            self.queue.release(request_id)
            if self._tokens.get(request_id) is token:
                del self._tokens[request_id]

    async def _publish_drop_metric(self, event: DeliveryEvent) -> None:
        await asyncio.to_thread(
            self.metrics.put_metric,
            "EntriesDropped",
            1.0,
            "Count",
            {"Reason": DropReason(event["reason"]).value}
        )

    # Cancellation

    async def cancel(self, request_id: str) -> bool:
        """
        Cancel a request.

        An in-flight dispatch is aborted immediately (its wait or call is
        interrupted). A queued entry is removed with a cancelled drop event.

        Returns:
            True if a dispatching or queued request matched the id
        """
        token = self._tokens.get(request_id)
        if token is not None:
            token.cancel(CANCEL_BY_CALLER)
            logger.info("Cancellation requested", request_id=request_id)
            return True

        if await self.queue.drop(request_id, DropReason.CANCELLED) is not None:
            self._stats.cancelled += 1
            return True
        return False

    def cancel_all(self) -> int:
        """
        Cancel every in-flight dispatch. Queued entries are left alone.

        Returns:
            Number of dispatches cancelled
        """
        cancelled = sum(1 for token in list(self._tokens.values()) if token.cancel(CANCEL_BY_CALLER))
        if cancelled:
            logger.info("All in-flight requests cancelled", count=cancelled)
        return cancelled

    # Statistics

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def get_stats(self) -> DeliveryStats:
        return self._stats.model_copy()

    @property
    def in_flight(self) -> list:
        """Ids of requests currently dispatching."""
        return list(self._tokens)

    # Maintenance

    async def _eviction_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.eviction_interval_seconds)
            try:
                await self.queue.evict_expired(self.settings.max_queue_age_hours)
            except Exception as e:
                logger.error("Periodic eviction failed", error=str(e), error_type=type(e).__name__)
