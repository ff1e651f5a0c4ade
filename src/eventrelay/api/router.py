"""
Module: router.py
Description: Operations endpoints over a running delivery coordinator.

Lets operators inspect the delivery queue, trigger a flush and cancel
individual requests without touching the host application.

Key Components:
- create_router(): Builds the /delivery APIRouter bound to a coordinator
- get_stats(): Delivery, queue and network counters
- get_queue(): Queued entries in dispatch order
- flush_queue() / cancel_request(): Operator actions

Dependencies: FastAPI, pydantic, coordinator
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as status_codes
from pydantic import BaseModel

from eventrelay.delivery.coordinator import DeliveryCoordinator, DeliveryStats, FlushSummary
from eventrelay.errors import CoordinatorNotRunning
from eventrelay.models.queue import QueueStats
from eventrelay.network.types import NetworkStatus
from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)

MAX_QUEUE_LIMIT = 100


class StatsResponse(BaseModel):
    """Combined delivery statistics."""

    running: bool
    delivery: DeliveryStats
    queue: QueueStats
    network: Optional[NetworkStatus] = None
    in_flight: int = 0
    storage_healthy: bool = True


class QueueEntryResponse(BaseModel):
    """Queued entry as shown to operators (payload bytes omitted)."""

    request_id: str
    endpoint: str
    priority: str
    sequence: int
    enqueued_at: datetime
    attempt_count: int
    payload_size: int
    in_flight: bool


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool
    message: str


def create_router(coordinator: DeliveryCoordinator) -> APIRouter:
    """
    Build the operations router for a coordinator.

    Args:
        coordinator: Coordinator the endpoints operate on

    Returns:
        APIRouter mounted under /delivery
    """
    if coordinator is None:
        raise ValueError("coordinator is required")

    router = APIRouter(prefix="/delivery", tags=["delivery"])

    def get_coordinator() -> DeliveryCoordinator:
        """Dependency returning the bound coordinator."""
        return coordinator

    @router.get("/stats", response_model=StatsResponse)
    async def get_stats(
        coordinator: DeliveryCoordinator = Depends(get_coordinator)
    ) -> StatsResponse:
        """
        Return delivery counters, queue statistics and network status.

        Example:
            GET /delivery/stats

            Response (200):
            {
                "running": true,
                "delivery": {"submitted": 12, "delivered": 10, ...},
                "queue": {"current_size": 2, "total_enqueued": 2, ...},
                "network": {"connectivity": "online", ...},
                "in_flight": 0,
                "storage_healthy": true
            }
        """
        monitor = coordinator.monitor
        return StatsResponse(
            running=coordinator.is_running,
            delivery=coordinator.get_stats(),
            queue=coordinator.get_queue_stats(),
            network=monitor.status() if monitor is not None else None,
            in_flight=len(coordinator.in_flight),
            storage_healthy=coordinator.queue.storage_healthy
        )

    @router.get("/queue", response_model=List[QueueEntryResponse])
    async def get_queue(
        limit: int = 100,
        coordinator: DeliveryCoordinator = Depends(get_coordinator)
    ) -> List[QueueEntryResponse]:
        """
        List queued entries in dispatch order (priority, then FIFO).

        Raises:
            HTTPException: 400 if limit is out of range
        """
        if limit > MAX_QUEUE_LIMIT:
            raise HTTPException(
                status_code=status_codes.HTTP_400_BAD_REQUEST,
                detail=f"Limit cannot exceed {MAX_QUEUE_LIMIT}"
            )
        if limit < 1:
            raise HTTPException(
                status_code=status_codes.HTTP_400_BAD_REQUEST,
                detail="Limit must be at least 1"
            )

        entries = coordinator.queue.entries()[:limit]
        logger.info("Delivery queue listed", count=len(entries), limit=limit)

        return [
            QueueEntryResponse(
                request_id=entry.id,
                endpoint=entry.spec.endpoint,
                priority=entry.priority.name.lower(),
                sequence=entry.sequence,
                enqueued_at=entry.enqueued_at,
                attempt_count=entry.attempt_count,
                payload_size=entry.spec.payload.size,
                in_flight=coordinator.queue.is_in_flight(entry.id)
            )
            for entry in entries
        ]

    @router.post("/flush", response_model=FlushSummary)
    async def flush_queue(
        coordinator: DeliveryCoordinator = Depends(get_coordinator)
    ) -> FlushSummary:
        """
        Run one flush pass and return its summary.

        Raises:
            HTTPException: 503 if the coordinator is not running
        """
        try:
            summary = await coordinator.flush()
        except CoordinatorNotRunning as e:
            raise HTTPException(
                status_code=status_codes.HTTP_503_SERVICE_UNAVAILABLE,
                detail=str(e)
            )
        except Exception as e:
            logger.error("Flush request failed", error=str(e), error_type=type(e).__name__)
            raise HTTPException(
                status_code=status_codes.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to flush delivery queue"
            )
        return summary

    @router.delete("/requests/{request_id}", response_model=CancelResponse)
    async def cancel_request(
        request_id: str,
        coordinator: DeliveryCoordinator = Depends(get_coordinator)
    ) -> CancelResponse:
        """
        Cancel an in-flight or queued request.

        Raises:
            HTTPException: 404 if no request with this id is dispatching or queued
        """
        if not await coordinator.cancel(request_id):
            raise HTTPException(
                status_code=status_codes.HTTP_404_NOT_FOUND,
                detail=f"Request {request_id} not found"
            )

        return CancelResponse(
            request_id=request_id,
            cancelled=True,
            message="Request cancelled"
        )

    return router
