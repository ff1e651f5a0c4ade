"""
Package: eventrelay
Description: Resilient delivery of application events to a remote HTTP endpoint.

Submits requests immediately when the network allows, falls back to a
durable priority queue when it does not, and drains that queue in priority
order once connectivity is restored.

Key Components:
- DeliveryCoordinator: Top-level service (submit, flush, cancel, stats)
- RequestDispatcher: Single-request attempt/retry/cancel lifecycle
- PersistentPriorityQueue: Durable, bounded, priority-ordered holding area
- NetworkConditionMonitor: Connectivity state and adaptive advisories
- RetryConfig / next_delay: Backoff delay computation
"""

from eventrelay.config.settings import DeliverySettings
from eventrelay.delivery.cancellation import CancellationToken
from eventrelay.delivery.coordinator import DeliveryCoordinator, DeliveryHandle, DeliveryStats, FlushSummary
from eventrelay.delivery.dispatcher import RequestDispatcher
from eventrelay.delivery.retry import RetryConfig, next_delay
from eventrelay.delivery.transport import HttpTransport
from eventrelay.models.outcome import ResponseOutcome, StatusCategory, SubmitResult, SubmitStatus
from eventrelay.models.queue import DropReason, OverflowPolicy, QueueEntry, QueueStats
from eventrelay.models.request import Payload, Priority, RequestSpec
from eventrelay.network.monitor import NetworkConditionMonitor
from eventrelay.network.types import ConnectivityState, LinkType
from eventrelay.queue.priority_queue import PersistentPriorityQueue
from eventrelay.utils.events import EventBus, EventType

__version__ = "0.3.0"

__all__ = [
    "CancellationToken",
    "ConnectivityState",
    "DeliveryCoordinator",
    "DeliveryHandle",
    "DeliverySettings",
    "DeliveryStats",
    "DropReason",
    "EventBus",
    "EventType",
    "FlushSummary",
    "HttpTransport",
    "LinkType",
    "NetworkConditionMonitor",
    "OverflowPolicy",
    "Payload",
    "PersistentPriorityQueue",
    "Priority",
    "QueueEntry",
    "QueueStats",
    "RequestDispatcher",
    "RequestSpec",
    "ResponseOutcome",
    "RetryConfig",
    "StatusCategory",
    "SubmitResult",
    "SubmitStatus",
    "next_delay",
]
