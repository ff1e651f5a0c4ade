"""
Module: test_monitor.py
Description: Unit tests for NetworkConditionMonitor and HttpConnectivityProbe.
"""

import asyncio

import httpx
import pytest

from eventrelay.errors import TransportNetworkError, TransportTimeoutError
from eventrelay.network.monitor import NetworkConditionMonitor
from eventrelay.network.probe import HttpConnectivityProbe
from eventrelay.network.types import ConnectivityState, LatencyQuality, LinkType
from eventrelay.utils.events import EventBus, EventType

from tests.conftest import FakeProbe

TARGET = "https://hooks.example.com/health"


def make_monitor(probe=None, events=None, **kwargs):
    kwargs.setdefault('reachability_target', TARGET)
    return NetworkConditionMonitor(probe=probe, events=events or EventBus(), **kwargs)


class TestTransitions:
    """Test cases for connectivity transitions and events."""

    @pytest.mark.asyncio
    async def test_initial_state(self):
        monitor = make_monitor()

        assert monitor.connectivity == ConnectivityState.UNKNOWN
        assert monitor.link_type == LinkType.NONE
        assert monitor.latency_quality == LatencyQuality.UNKNOWN
        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_restored_fires_once_per_offline_to_online(self):
        events = EventBus()
        monitor = make_monitor(events=events)
        changed = []
        restored = []
        events.subscribe(EventType.CONNECTIVITY_CHANGED, changed.append)
        events.subscribe(EventType.CONNECTION_RESTORED, restored.append)

        monitor.report(connectivity=ConnectivityState.ONLINE, link_type=LinkType.WIFI)
        monitor.report(connectivity=ConnectivityState.OFFLINE)
        monitor.report(connectivity=ConnectivityState.OFFLINE)
        monitor.report(connectivity=ConnectivityState.ONLINE)
        monitor.report(connectivity=ConnectivityState.ONLINE)

        assert [(e["previous"], e["current"]) for e in changed] == [
            (ConnectivityState.UNKNOWN, ConnectivityState.ONLINE),
            (ConnectivityState.ONLINE, ConnectivityState.OFFLINE),
            (ConnectivityState.OFFLINE, ConnectivityState.ONLINE),
        ]
        assert len(restored) == 1

    @pytest.mark.asyncio
    async def test_unknown_to_online_is_not_a_restore(self):
        events = EventBus()
        monitor = make_monitor(events=events)
        restored = []
        events.subscribe(EventType.CONNECTION_RESTORED, restored.append)

        monitor.report(connectivity=ConnectivityState.ONLINE)

        assert restored == []

    @pytest.mark.asyncio
    async def test_link_none_implies_offline(self):
        monitor = make_monitor()
        monitor.report(connectivity=ConnectivityState.ONLINE, link_type=LinkType.WIFI)

        status = monitor.report(link_type=LinkType.NONE)

        assert status.connectivity == ConnectivityState.OFFLINE
        assert monitor.should_defer() is True

    @pytest.mark.asyncio
    async def test_wait_until_online(self):
        monitor = make_monitor()
        monitor.report(connectivity=ConnectivityState.OFFLINE)
        asyncio.get_running_loop().call_later(0.02, monitor.report, ConnectivityState.ONLINE)

        assert await monitor.wait_until_online(timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_wait_until_online_times_out(self):
        monitor = make_monitor()
        monitor.report(connectivity=ConnectivityState.OFFLINE)

        assert await monitor.wait_until_online(timeout=0.02) is False


class TestAdvisories:
    """Test cases for latency quality, compression and deferral advice."""

    @pytest.mark.parametrize("latency, quality", [
        (50, LatencyQuality.EXCELLENT),
        (100, LatencyQuality.EXCELLENT),
        (250, LatencyQuality.GOOD),
        (700, LatencyQuality.FAIR),
        (1000, LatencyQuality.POOR),
        (5000, LatencyQuality.POOR),
    ])
    def test_latency_quality(self, latency, quality):
        monitor = make_monitor()
        monitor.report(latency_ms=latency)

        assert monitor.latency_quality == quality

    def test_compress_large_payload_on_cellular(self):
        monitor = make_monitor(compression_threshold_bytes=10240)
        monitor.report(link_type=LinkType.CELLULAR, latency_ms=50)

        assert monitor.should_compress(50_000) is True
        assert monitor.should_compress(10_240) is False

    def test_compress_large_payload_on_poor_latency(self):
        monitor = make_monitor()
        monitor.report(link_type=LinkType.WIFI, latency_ms=1500)

        assert monitor.should_compress(50_000) is True

    def test_no_compression_on_good_wifi(self):
        monitor = make_monitor()
        monitor.report(link_type=LinkType.WIFI, latency_ms=80)

        assert monitor.should_compress(50_000) is False

    def test_defer_in_low_power_only_when_constrained(self):
        monitor = make_monitor()
        monitor.report(connectivity=ConnectivityState.ONLINE, link_type=LinkType.CELLULAR, is_low_power=True)

        assert monitor.should_defer() is False
        assert monitor.should_defer(mobile_constrained=True) is True

    @pytest.mark.parametrize("kwargs, message", [
        ({'ping_interval_seconds': 0}, "ping_interval_seconds must be > 0"),
        ({'excellent_latency_ms': 500, 'good_latency_ms': 300}, "latency thresholds"),
        ({'compression_threshold_bytes': -1}, "compression_threshold_bytes must be >= 0"),
    ])
    def test_invalid_arguments(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            make_monitor(**kwargs)


class TestChecks:
    """Test cases for probe-driven checks."""

    @pytest.mark.asyncio
    async def test_check_now_online_with_latency(self):
        probe = FakeProbe(link_type=LinkType.WIFI, latency_ms=42.0)
        monitor = make_monitor(probe)

        status = await monitor.check_now()

        assert status.connectivity == ConnectivityState.ONLINE
        assert status.last_latency_ms == 42.0
        assert status.link_type == LinkType.WIFI
        assert probe.pings == [TARGET]

    @pytest.mark.asyncio
    async def test_check_now_unreachable(self):
        monitor = make_monitor(FakeProbe(reachable=False))

        status = await monitor.check_now()

        assert status.connectivity == ConnectivityState.OFFLINE

    @pytest.mark.asyncio
    async def test_check_now_no_link(self):
        probe = FakeProbe(link_type=LinkType.NONE)
        monitor = make_monitor(probe)

        status = await monitor.check_now()

        assert status.connectivity == ConnectivityState.OFFLINE
        assert probe.pings == []

    @pytest.mark.asyncio
    async def test_check_now_without_target(self):
        probe = FakeProbe()
        monitor = make_monitor(probe, reachability_target=None)

        status = await monitor.check_now()

        assert status.connectivity == ConnectivityState.ONLINE
        assert probe.pings == []

    @pytest.mark.asyncio
    async def test_check_now_reads_low_power(self):
        probe = FakeProbe()
        probe.low_power = True
        monitor = make_monitor(probe)

        status = await monitor.check_now()

        assert status.is_low_power is True

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        probe = FakeProbe()
        monitor = make_monitor(probe, ping_interval_seconds=0.01)

        await monitor.start()
        assert monitor.running
        assert monitor.is_online
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert not monitor.running
        assert len(probe.pings) >= 2

    @pytest.mark.asyncio
    async def test_periodic_check_detects_outage(self, eventually):
        probe = FakeProbe()
        monitor = make_monitor(probe, ping_interval_seconds=0.01)
        await monitor.start()
        try:
            probe.reachable = False
            await eventually(lambda: monitor.connectivity == ConnectivityState.OFFLINE)
            probe.reachable = True
            await eventually(lambda: monitor.is_online)
        finally:
            await monitor.stop()

    def test_from_settings(self, test_settings):
        monitor = NetworkConditionMonitor.from_settings(test_settings)

        assert monitor.reachability_target == test_settings.endpoint_url
        assert monitor.poor_latency_ms == test_settings.poor_latency_ms


class TestHttpConnectivityProbe:
    """Test cases for the httpx reachability probe."""

    @pytest.mark.asyncio
    async def test_ping_measures_latency(self, httpx_mock):
        httpx_mock.add_response(url=TARGET, method="HEAD", status_code=404)
        probe = HttpConnectivityProbe()

        latency = await probe.ping(TARGET)
        await probe.aclose()

        assert latency >= 0

    @pytest.mark.asyncio
    async def test_ping_network_error(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectError("no route to host"))
        probe = HttpConnectivityProbe()

        with pytest.raises(TransportNetworkError):
            await probe.ping(TARGET)
        await probe.aclose()

    @pytest.mark.asyncio
    async def test_ping_timeout(self, httpx_mock):
        httpx_mock.add_exception(httpx.ConnectTimeout("timed out"))
        probe = HttpConnectivityProbe(timeout_seconds=0.5)

        with pytest.raises(TransportTimeoutError):
            await probe.ping(TARGET)
        await probe.aclose()

    @pytest.mark.asyncio
    async def test_link_type_and_low_power_are_host_reported(self):
        probe = HttpConnectivityProbe()

        assert await probe.current_link_type() == LinkType.OTHER
        assert await probe.is_low_power() is None

        probe.set_link_type(LinkType.CELLULAR)
        probe.set_low_power(True)

        assert await probe.current_link_type() == LinkType.CELLULAR
        assert await probe.is_low_power() is True

    def test_invalid_timeout(self):
        with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
            HttpConnectivityProbe(timeout_seconds=0)
