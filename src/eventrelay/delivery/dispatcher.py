"""
Module: delivery/dispatcher.py
Description: Attempt, retry and cancellation lifecycle of a single request.

The dispatcher sends a RequestSpec through the transport, classifies the
result into a ResponseOutcome and, when asked to, retries recoverable
failures with backoff. Every attempt is published to subscribers
independently of the terminal outcome returned to the caller.

State machine per request:
    Pending -> InFlight -> {Succeeded | Retrying -> InFlight | Failed | Cancelled}

Key Components:
- RequestDispatcher.attempt(): One try, no retry loop
- RequestDispatcher.attempt_with_retry(): Full retry loop on tenacity
- subscribe(): Per-attempt observations

Dependencies: tenacity, asyncio, transport, retry
"""

import asyncio
import random
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt

from eventrelay.errors import DispatchCancelled, InvalidRequestError, TransportNetworkError, TransportTimeoutError
from eventrelay.models.outcome import DispatchState, ResponseOutcome, StatusCategory
from eventrelay.models.request import RequestSpec
from eventrelay.utils.events import DeliveryEvent, EventBus, EventType
from eventrelay.utils.logger import get_logger
from eventrelay.delivery.cancellation import CancellationToken
from eventrelay.delivery.retry import RetryConfig, RetryPolicyWait
from eventrelay.delivery.transport import Transport

logger = get_logger(__name__)

# Terminal states kept for state_of() lookups
STATE_HISTORY_LIMIT = 1000


class RequestDispatcher:
    """
    Dispatches requests through a transport.

    Example:
        >>> dispatcher = RequestDispatcher(HttpTransport(), RetryConfig())
        >>> outcome = await dispatcher.attempt_with_retry(spec, CancellationToken())
        >>> outcome.status_category
        <StatusCategory.SUCCESS: 'success'>
    """

    def __init__(
        self,
        transport: Transport,
        retry_config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
        events: Optional[EventBus] = None
    ):
        """
        Initialize the dispatcher.

        Args:
            transport: Collaborator that sends requests
            retry_config: Backoff parameters (defaults to RetryConfig())
            rng: Random source for jitter
            events: Event bus for attempt observations (a private one by default)
        """
        if transport is None:
            raise ValueError("transport is required")

        self._transport = transport
        self.retry_config = retry_config or RetryConfig()
        self._rng = rng
        self._events = events or EventBus()
        self._states: "OrderedDict[str, DispatchState]" = OrderedDict()
        self._active: Dict[str, DispatchState] = {}

    # Observation

    def subscribe(self, callback: Callable[[DeliveryEvent], object]) -> Callable[[], None]:
        """Register a callback receiving every attempt's outcome."""
        return self._events.subscribe(EventType.ATTEMPT_COMPLETED, callback)

    def unsubscribe(self, callback: Callable[[DeliveryEvent], object]) -> bool:
        return self._events.unsubscribe(EventType.ATTEMPT_COMPLETED, callback)

    def state_of(self, request_id: str) -> Optional[DispatchState]:
        """Current (or last terminal) dispatch state of a request."""
        if request_id in self._active:
            return self._active[request_id]
        return self._states.get(request_id)

    @property
    def in_flight(self) -> List[str]:
        """Ids of requests with a non-terminal dispatch state."""
        return list(self._active)

    def _set_state(self, request_id: str, state: DispatchState) -> None:
        if state.is_terminal:
            self._active.pop(request_id, None)
            self._states[request_id] = state
            self._states.move_to_end(request_id)
            while len(self._states) > STATE_HISTORY_LIMIT:
                self._states.popitem(last=False)
        else:
            self._active[request_id] = state

    def _finish(self, spec: RequestSpec, outcome: ResponseOutcome) -> ResponseOutcome:
        if outcome.success:
            self._set_state(spec.id, DispatchState.SUCCEEDED)
        elif outcome.status_category == StatusCategory.CANCELLED:
            self._set_state(spec.id, DispatchState.CANCELLED)
        else:
            self._set_state(spec.id, DispatchState.FAILED)
        return outcome

    # Attempts

    async def _send_once(
        self,
        spec: RequestSpec,
        token: CancellationToken,
        attempt_number: int
    ) -> ResponseOutcome:
        """Run one attempt and classify it. Never raises for transport failures."""
        self._set_state(spec.id, DispatchState.IN_FLIGHT)
        started = time.perf_counter()

        def _elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            raw = await token.run(
                asyncio.wait_for(
                    self._transport.send(
                        spec.endpoint,
                        spec.payload,
                        dict(spec.headers),
                        spec.timeout_seconds
                    ),
                    timeout=spec.timeout_seconds
                )
            )
            latency = raw.elapsed_ms if raw.elapsed_ms is not None else _elapsed()
            outcome = ResponseOutcome.from_status(
                raw.status_code,
                latency_ms=latency,
                attempt=attempt_number,
                request_id=spec.id
            )

        except DispatchCancelled as e:
            outcome = ResponseOutcome.cancelled(
                e.reason or "cancelled",
                latency_ms=_elapsed(),
                attempt=attempt_number,
                request_id=spec.id
            )

        except (InvalidRequestError, ValueError) as e:
            logger.warning("Request cannot be sent", request_id=spec.id, endpoint=spec.endpoint, error=str(e))
            outcome = ResponseOutcome.invalid_request(
                f"{type(e).__name__}: {e}",
                latency_ms=_elapsed(),
                attempt=attempt_number,
                request_id=spec.id
            )

        except (TransportTimeoutError, asyncio.TimeoutError):
            outcome = ResponseOutcome.timeout(
                f"attempt exceeded {spec.timeout_seconds}s",
                latency_ms=_elapsed(),
                attempt=attempt_number,
                request_id=spec.id
            )

        except (TransportNetworkError, OSError) as e:
            outcome = ResponseOutcome.network_error(
                str(e) or type(e).__name__,
                latency_ms=_elapsed(),
                attempt=attempt_number,
                request_id=spec.id
            )

        except Exception as e:
            logger.error(
                "Unexpected transport failure",
                request_id=spec.id,
                error=str(e),
                error_type=type(e).__name__
            )
            outcome = ResponseOutcome.network_error(
                f"{type(e).__name__}: {e}",
                latency_ms=_elapsed(),
                attempt=attempt_number,
                request_id=spec.id
            )

        logger.debug(
            "Attempt completed",
            request_id=spec.id,
            attempt=attempt_number,
            status_category=outcome.status_category.value,
            status_code=outcome.status_code,
            latency_ms=round(outcome.latency_ms, 2)
        )
        self._events.emit(
            EventType.ATTEMPT_COMPLETED,
            request_id=spec.id,
            outcome=outcome
        )
        return outcome

    async def attempt(
        self,
        spec: RequestSpec,
        token: Optional[CancellationToken] = None,
        attempt_number: int = 1
    ) -> ResponseOutcome:
        """
        Make a single attempt; the caller orchestrates any retries.

        Args:
            spec: Request to send
            token: Cancellation token (a fresh one when omitted)
            attempt_number: Attempt number reported in the outcome

        Returns:
            ResponseOutcome of the attempt
        """
        if not isinstance(spec, RequestSpec):
            raise ValueError("spec must be a RequestSpec instance")
        token = token or CancellationToken()

        self._set_state(spec.id, DispatchState.PENDING)
        if token.cancelled:
            return self._finish(
                spec,
                ResponseOutcome.cancelled(token.reason or "cancelled", attempt=0, request_id=spec.id)
            )

        outcome = await self._send_once(spec, token, attempt_number)
        return self._finish(spec, outcome)

    async def attempt_with_retry(
        self,
        spec: RequestSpec,
        token: Optional[CancellationToken] = None,
        max_retries: Optional[int] = None
    ) -> ResponseOutcome:
        """
        Attempt a request, retrying recoverable failures with backoff.

        Retries happen only for NetworkError, Timeout and ServerError
        (5xx/429) outcomes while the retry budget lasts. ClientError and
        Cancelled outcomes are terminal immediately. Cancelling the token
        during a backoff wait ends the dispatch as Cancelled without
        another attempt.

        Args:
            spec: Request to send
            token: Cancellation token (a fresh one when omitted)
            max_retries: Retry budget override (spec.max_retries by default)

        Returns:
            Terminal ResponseOutcome (the last attempt's outcome)
        """
        if not isinstance(spec, RequestSpec):
            raise ValueError("spec must be a RequestSpec instance")
        token = token or CancellationToken()
        budget = spec.max_retries if max_retries is None else max_retries
        if budget < 0:
            raise ValueError("max_retries must be >= 0")

        self._set_state(spec.id, DispatchState.PENDING)
        if token.cancelled:
            return self._finish(
                spec,
                ResponseOutcome.cancelled(token.reason or "cancelled", attempt=0, request_id=spec.id)
            )

        def _before_sleep(retry_state: RetryCallState) -> None:
            self._set_state(spec.id, DispatchState.RETRYING)
            last = retry_state.outcome.result()
            logger.info(
                "Retrying request",
                request_id=spec.id,
                attempt=retry_state.attempt_number,
                status_category=last.status_category.value,
                status_code=last.status_code,
                delay_seconds=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(budget + 1),
            wait=RetryPolicyWait(self.retry_config, self._rng),
            retry=retry_if_result(lambda result: result.is_recoverable),
            sleep=token.sleep,
            before_sleep=_before_sleep,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            reraise=False
        )

        outcome: Optional[ResponseOutcome] = None
        attempts_made = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts_made = attempt.retry_state.attempt_number
                    outcome = await self._send_once(spec, token, attempts_made)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(outcome)

        except DispatchCancelled as e:
            logger.info(
                "Request cancelled during backoff",
                request_id=spec.id,
                attempts=attempts_made
            )
            outcome = ResponseOutcome.cancelled(
                e.reason or "cancelled",
                attempt=attempts_made,
                request_id=spec.id
            )

        if outcome is None:
            outcome = ResponseOutcome.cancelled("no attempt made", attempt=0, request_id=spec.id)

        if not outcome.success and outcome.status_category != StatusCategory.CANCELLED:
            logger.warning(
                "Request failed",
                request_id=spec.id,
                attempts=attempts_made,
                status_category=outcome.status_category.value,
                status_code=outcome.status_code,
                error=outcome.error_message
            )

        return self._finish(spec, outcome)
