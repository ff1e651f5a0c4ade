"""
Module: test_delivery_flow.py
Description: Integration tests for end-to-end delivery flows.

Coordinators are built with DeliveryCoordinator.create() so the queue,
monitor and dispatcher share one event bus, with a file-backed queue in
a temporary directory and scripted transports in place of HTTP.
"""

import json

import pytest

from eventrelay.delivery.coordinator import DeliveryCoordinator
from eventrelay.errors import TransportNetworkError
from eventrelay.models.outcome import DispatchState, StatusCategory, SubmitStatus
from eventrelay.models.queue import DropReason
from eventrelay.models.request import Payload, Priority
from eventrelay.queue.priority_queue import PersistentPriorityQueue
from eventrelay.storage.blob import FileBlobStore
from eventrelay.utils.events import EventType

from tests.conftest import FakeProbe, FakeTransport


@pytest.fixture
def file_settings(test_settings, tmp_path):
    return test_settings.model_copy(update={
        'storage_backend': "file",
        'storage_path': str(tmp_path / "queue"),
        'max_retries': 1,
    })


def build(settings, transport, **kwargs):
    kwargs.setdefault('probe', FakeProbe())
    return DeliveryCoordinator.create(settings, transport=transport, **kwargs)


class TestQueueAndFlush:
    """Failing deliveries land in the queue and leave it in priority order."""

    @pytest.mark.asyncio
    async def test_failures_queue_then_flush_in_priority_order(self, file_settings):
        transport = FakeTransport(default=TransportNetworkError("connection refused"))
        coordinator = build(file_settings, transport)

        async with coordinator:
            results = []
            for text, priority in [("low", Priority.LOW), ("critical", Priority.CRITICAL),
                                   ("normal", Priority.NORMAL)]:
                spec = coordinator.create_request(Payload.from_text(text), priority=priority)
                results.append(await (await coordinator.submit(spec)))

            assert [r.status for r in results] == [SubmitStatus.QUEUED] * 3
            assert coordinator.get_queue_stats().current_size == 3

            transport.default = 200
            before = len(transport.calls)
            summary = await coordinator.flush()

        flushed = [call.text for call in transport.calls[before:]]
        assert flushed == ["critical", "normal", "low"]
        assert summary.delivered == 3
        assert coordinator.get_queue_stats().total_dequeued == 3
        assert coordinator.get_queue_stats().current_size == 0

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, file_settings, eventually):
        failing = FakeTransport(default=503)
        first = build(file_settings, failing)

        async with first:
            for text, priority in [("normal", Priority.NORMAL), ("high", Priority.HIGH)]:
                spec = first.create_request(Payload.from_json_object({"event": text}), priority=priority)
                await (await first.submit(spec))

        settings = file_settings.model_copy(update={'auto_flush': True})
        delivering = FakeTransport(default=200)
        second = build(settings, delivering)
        flushed = []
        second.subscribe(EventType.QUEUE_FLUSHED, flushed.append)

        async with second:
            await second.wait_ready(timeout=1.0)
            await eventually(lambda: len(flushed) == 1)

        assert [json.loads(call.payload.data)["event"] for call in delivering.calls] == ["high", "normal"]
        assert second.queue.count == 0
        assert second.get_queue_stats().total_dequeued == 2

    @pytest.mark.asyncio
    async def test_exhausted_entry_dropped_after_queue_attempts(self, file_settings):
        transport = FakeTransport(default=503)
        coordinator = build(file_settings, transport)
        dropped = []
        coordinator.subscribe(EventType.ENTRY_DROPPED, dropped.append)

        async with coordinator:
            spec = coordinator.create_request(Payload.from_text("doomed"))
            await (await coordinator.submit(spec))

            for _ in range(file_settings.max_queue_attempts):
                await coordinator.flush()

        assert coordinator.queue.count == 0
        assert [event["reason"] for event in dropped] == [DropReason.RETRIES_EXHAUSTED]


class TestExpiry:
    """Age-based eviction."""

    @pytest.mark.asyncio
    async def test_entry_older_than_max_age_is_evicted(self, tmp_path, fake_clock, make_spec):
        queue = PersistentPriorityQueue(store=FileBlobStore(str(tmp_path)), max_age_hours=1, clock=fake_clock)
        dropped = []
        queue.events.subscribe(EventType.ENTRY_DROPPED, dropped.append)

        await queue.enqueue(make_spec("stale"))
        fake_clock.advance(hours=2)
        evicted = await queue.evict_expired()

        assert len(evicted) == 1
        assert queue.count == 0
        assert len(dropped) == 1
        assert dropped[0]["reason"] == DropReason.EXPIRED

        restored = PersistentPriorityQueue(store=FileBlobStore(str(tmp_path)), clock=fake_clock)
        assert await restored.restore() == 0


class TestCancellation:
    """Cancellation of a dispatch waiting out its backoff."""

    @pytest.mark.asyncio
    async def test_cancel_mid_backoff_is_never_reattempted(self, file_settings, eventually):
        settings = file_settings.model_copy(update={
            'initial_delay_seconds': 5.0,
            'max_delay_seconds': 5.0,
            'max_retries': 3,
        })
        transport = FakeTransport(default=503)
        coordinator = build(settings, transport)

        async with coordinator:
            spec = coordinator.create_request(Payload.from_text("slow"))
            handle = await coordinator.submit(spec)
            await eventually(lambda: coordinator.dispatcher.state_of(spec.id) == DispatchState.RETRYING)

            assert await coordinator.cancel(spec.id) is True
            result = await handle.wait(timeout=1.0)

        assert result.status == SubmitStatus.CANCELLED
        assert result.outcome.status_category == StatusCategory.CANCELLED
        assert len(transport.calls) == 1
        assert spec.id not in coordinator.queue
