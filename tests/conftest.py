"""
Module: conftest.py
Description: Shared pytest fixtures for eventrelay tests.

Provides test settings, a scripted fake transport, a fake connectivity
probe, a controllable clock, in-memory storage and factories for request
specs and fully wired coordinators. Uses moto for AWS service mocking.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import boto3
import pytest
from moto import mock_aws

from eventrelay.config.settings import DeliverySettings
from eventrelay.delivery.coordinator import DeliveryCoordinator
from eventrelay.delivery.dispatcher import RequestDispatcher
from eventrelay.delivery.retry import RetryConfig
from eventrelay.errors import TransportNetworkError
from eventrelay.models.outcome import RawResponse
from eventrelay.models.request import Payload, Priority, RequestSpec
from eventrelay.network.monitor import NetworkConditionMonitor
from eventrelay.network.types import LinkType
from eventrelay.queue.priority_queue import PersistentPriorityQueue
from eventrelay.storage.blob import InMemoryBlobStore
from eventrelay.utils.events import EventBus

TEST_ENDPOINT = "https://hooks.example.com/events"

# Scripted step that never completes on its own
HANG = "hang"


@dataclass
class SentRequest:
    endpoint: str
    payload: Payload
    headers: Dict[str, str]
    timeout: float

    @property
    def text(self) -> str:
        return self.payload.data.decode('utf-8', errors='replace')


class FakeTransport:
    """
    Transport returning scripted results in order.

    Each script step is an HTTP status code, an exception instance to
    raise, or HANG to block until cancelled. Once the script runs out,
    ``default`` is used for every further call.
    """

    def __init__(self, script: Optional[List[Any]] = None, default: Any = 200):
        self.script = list(script or [])
        self.default = default
        self.calls: List[SentRequest] = []

    async def send(self, endpoint, payload, headers, timeout) -> RawResponse:
        self.calls.append(SentRequest(endpoint, payload, dict(headers), timeout))
        step = self.script.pop(0) if self.script else self.default

        if step == HANG:
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step

        return RawResponse(status_code=step, elapsed_ms=1.0)

    @property
    def sent_texts(self) -> List[str]:
        return [call.text for call in self.calls]


class FakeProbe:
    """Connectivity probe with directly settable link and reachability."""

    def __init__(self, link_type: LinkType = LinkType.WIFI, reachable: bool = True, latency_ms: float = 50.0):
        self.link_type = link_type
        self.reachable = reachable
        self.latency_ms = latency_ms
        self.low_power = False
        self.pings: List[str] = []

    async def current_link_type(self) -> LinkType:
        return self.link_type

    async def is_low_power(self) -> bool:
        return self.low_power

    async def ping(self, target: str) -> float:
        self.pings.append(target)
        if not self.reachable:
            raise TransportNetworkError("unreachable", endpoint=target)
        return self.latency_ms


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def test_settings():
    """
    Provide test configuration settings.

    Disables .env loading and uses short delays so retry paths run fast.
    """
    return DeliverySettings(
        _env_file=None,
        app_name="eventrelay-test",
        app_version="0.3.0-test",
        log_level="DEBUG",
        endpoint_url=TEST_ENDPOINT,
        request_timeout_seconds=2.0,
        max_retries=2,
        initial_delay_seconds=0.01,
        max_delay_seconds=0.05,
        jitter=False,
        storage_backend="memory",
        max_queue_attempts=3,
        eviction_interval_seconds=3600,
        ping_interval_seconds=3600,
        auto_flush=False
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def make_spec():
    """Factory for RequestSpecs whose payload text identifies them."""

    def _make(text: str = "event", priority: Priority = Priority.NORMAL, **kwargs) -> RequestSpec:
        kwargs.setdefault('endpoint', TEST_ENDPOINT)
        kwargs.setdefault('timeout_seconds', 2.0)
        return RequestSpec(payload=Payload.from_text(text), priority=priority, **kwargs)

    return _make


@pytest.fixture
def make_coordinator(test_settings, blob_store, fake_clock):
    """
    Factory for coordinators wired to fakes on one shared event bus.

    The coordinator is not started; tests start and stop it.
    """

    def _make(
        transport: Optional[FakeTransport] = None,
        probe: Optional[FakeProbe] = None,
        settings: Optional[DeliverySettings] = None,
        **kwargs
    ) -> DeliveryCoordinator:
        settings = settings or test_settings
        events = EventBus()
        dispatcher = RequestDispatcher(
            transport or FakeTransport(),
            RetryConfig.from_settings(settings),
            events=events
        )
        queue = PersistentPriorityQueue.from_settings(
            settings,
            store=blob_store,
            events=events,
            clock=fake_clock
        )
        monitor = NetworkConditionMonitor.from_settings(settings, probe=probe, events=events)
        return DeliveryCoordinator(
            dispatcher,
            queue,
            monitor=monitor,
            settings=settings,
            events=events,
            **kwargs
        )

    return _make


@pytest.fixture
def eventually():
    """Await a condition with a short timeout instead of fixed sleeps."""

    async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def aws_credentials():
    """Mocked AWS credentials for moto."""
    os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
    os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
    os.environ['AWS_SECURITY_TOKEN'] = 'testing'
    os.environ['AWS_SESSION_TOKEN'] = 'testing'
    os.environ['AWS_DEFAULT_REGION'] = 'us-east-1'


@pytest.fixture
def s3_bucket(aws_credentials):
    """Create a mock S3 bucket for queue persistence tests."""
    with mock_aws():
        s3 = boto3.client('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='eventrelay-test-queue')
        yield s3
