"""
Module: monitor.py
Description: Network condition monitoring with adaptive advisories.

Holds the current connectivity, link type, latency and low-power state.
State is driven by a connectivity probe (periodic checks while started)
and by signals the host pushes through report(). Every change of
connectivity emits connectivity-changed; each Offline -> Online
transition additionally emits connection-restored exactly once.

Key Components:
- NetworkConditionMonitor: State holder, periodic checker, event source
- should_compress() / should_defer(): Advisory functions over current state
- wait_until_online(): Await connectivity instead of polling

Dependencies: asyncio, events, probe types
"""

import asyncio
import contextlib
from typing import Optional

from eventrelay.config.settings import DeliverySettings
from eventrelay.utils.events import EventBus, EventType
from eventrelay.utils.logger import get_logger
from eventrelay.network.types import ConnectivityProbe, ConnectivityState, LatencyQuality, LinkType, NetworkStatus

logger = get_logger(__name__)


class NetworkConditionMonitor:
    """
    Observes network conditions and advises on adaptive behavior.

    The advisory functions are pure given the current state; callers
    decide whether to honor them.

    Example:
        >>> monitor = NetworkConditionMonitor(probe, reachability_target="https://hooks.example.com")
        >>> monitor.events.subscribe(EventType.CONNECTION_RESTORED, on_restored)
        >>> await monitor.start()
        >>> monitor.should_compress(50_000)
        False
    """

    def __init__(
        self,
        probe: Optional[ConnectivityProbe] = None,
        reachability_target: Optional[str] = None,
        ping_interval_seconds: float = 30.0,
        excellent_latency_ms: float = 100.0,
        good_latency_ms: float = 300.0,
        poor_latency_ms: float = 1000.0,
        compression_threshold_bytes: int = 10240,
        events: Optional[EventBus] = None
    ):
        """
        Initialize the monitor.

        Args:
            probe: Connectivity probe (state is only pushed via report() without one)
            reachability_target: Target pinged by periodic latency checks
            ping_interval_seconds: Interval between periodic checks
            excellent_latency_ms: Latency at or below which the link is excellent
            good_latency_ms: Latency at or below which the link is good
            poor_latency_ms: Latency at or above which the link is poor
            compression_threshold_bytes: Payload size above which compression may be advised
            events: Event bus for connectivity events
        """
        if ping_interval_seconds <= 0:
            raise ValueError("ping_interval_seconds must be > 0")
        if not excellent_latency_ms <= good_latency_ms <= poor_latency_ms:
            raise ValueError("latency thresholds must satisfy excellent <= good <= poor")
        if compression_threshold_bytes < 0:
            raise ValueError("compression_threshold_bytes must be >= 0")

        self._probe = probe
        self.reachability_target = reachability_target
        self.ping_interval_seconds = ping_interval_seconds
        self.excellent_latency_ms = excellent_latency_ms
        self.good_latency_ms = good_latency_ms
        self.poor_latency_ms = poor_latency_ms
        self.compression_threshold_bytes = compression_threshold_bytes
        self.events = events or EventBus()

        self._connectivity = ConnectivityState.UNKNOWN
        self._link_type = LinkType.NONE
        self._last_latency_ms: Optional[float] = None
        self._is_low_power = False
        self._online = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: DeliverySettings,
        probe: Optional[ConnectivityProbe] = None,
        events: Optional[EventBus] = None
    ) -> "NetworkConditionMonitor":
        return cls(
            probe=probe,
            reachability_target=settings.reachability_url or settings.endpoint_url,
            ping_interval_seconds=settings.ping_interval_seconds,
            excellent_latency_ms=settings.excellent_latency_ms,
            good_latency_ms=settings.good_latency_ms,
            poor_latency_ms=settings.poor_latency_ms,
            compression_threshold_bytes=settings.compression_threshold_bytes,
            events=events
        )

    # State

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    @property
    def link_type(self) -> LinkType:
        return self._link_type

    @property
    def last_latency_ms(self) -> Optional[float]:
        return self._last_latency_ms

    @property
    def is_low_power(self) -> bool:
        return self._is_low_power

    @property
    def is_online(self) -> bool:
        return self._connectivity == ConnectivityState.ONLINE

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latency_quality(self) -> LatencyQuality:
        latency = self._last_latency_ms
        if latency is None:
            return LatencyQuality.UNKNOWN
        if latency <= self.excellent_latency_ms:
            return LatencyQuality.EXCELLENT
        if latency <= self.good_latency_ms:
            return LatencyQuality.GOOD
        if latency < self.poor_latency_ms:
            return LatencyQuality.FAIR
        return LatencyQuality.POOR

    def status(self) -> NetworkStatus:
        return NetworkStatus(
            connectivity=self._connectivity,
            link_type=self._link_type,
            last_latency_ms=self._last_latency_ms,
            latency_quality=self.latency_quality,
            is_low_power=self._is_low_power
        )

    # Advisories

    def should_compress(self, payload_size: int) -> bool:
        """True for payloads above the threshold on cellular or poor-latency links."""
        if payload_size <= self.compression_threshold_bytes:
            return False
        return self._link_type == LinkType.CELLULAR or self.latency_quality == LatencyQuality.POOR

    def should_defer(self, mobile_constrained: bool = False) -> bool:
        """True when offline, or in low power mode for mobile-constrained callers."""
        if self._connectivity == ConnectivityState.OFFLINE:
            return True
        return self._is_low_power and mobile_constrained

    # Transitions

    def report(
        self,
        connectivity: Optional[ConnectivityState] = None,
        link_type: Optional[LinkType] = None,
        latency_ms: Optional[float] = None,
        is_low_power: Optional[bool] = None
    ) -> NetworkStatus:
        """
        Apply signals pushed by the host or gathered by a check.

        A link type of NONE without an explicit connectivity implies
        Offline. Fields left as None keep their current value.

        Returns:
            The resulting NetworkStatus
        """
        if link_type is not None:
            self._link_type = LinkType(link_type)
            if link_type == LinkType.NONE and connectivity is None:
                connectivity = ConnectivityState.OFFLINE
        if latency_ms is not None:
            self._last_latency_ms = float(latency_ms)
        if is_low_power is not None:
            self._is_low_power = bool(is_low_power)
        if connectivity is not None:
            self._transition(ConnectivityState(connectivity))
        return self.status()

    def _transition(self, new_state: ConnectivityState) -> None:
        previous = self._connectivity
        if new_state == previous:
            return

        self._connectivity = new_state
        if new_state == ConnectivityState.ONLINE:
            self._online.set()
        else:
            self._online.clear()

        logger.info(
            "Connectivity changed",
            previous=previous.value,
            current=new_state.value,
            link_type=self._link_type.value,
            latency_ms=self._last_latency_ms
        )
        self.events.emit(
            EventType.CONNECTIVITY_CHANGED,
            previous=previous,
            current=new_state,
            status=self.status()
        )

        if previous == ConnectivityState.OFFLINE and new_state == ConnectivityState.ONLINE:
            self.events.emit(EventType.CONNECTION_RESTORED, status=self.status())

    async def check_now(self) -> NetworkStatus:
        """
        Query the probe once and apply the result.

        No link means Offline. With a link, a reachable target means
        Online and a failed ping means Offline. Without a target, a link
        is taken as Online.
        """
        if self._probe is None:
            return self.status()

        try:
            link_type = LinkType(await self._probe.current_link_type())
        except Exception as e:
            logger.warning("Connectivity probe failed", error=str(e), error_type=type(e).__name__)
            return self.status()

        low_power = None
        is_low_power = getattr(self._probe, 'is_low_power', None)
        if is_low_power is not None:
            try:
                low_power = await is_low_power()
            except Exception as e:
                logger.debug("Low power query failed", error=str(e))

        if link_type == LinkType.NONE:
            return self.report(
                connectivity=ConnectivityState.OFFLINE,
                link_type=link_type,
                is_low_power=low_power
            )

        if not self.reachability_target:
            return self.report(
                connectivity=ConnectivityState.ONLINE,
                link_type=link_type,
                is_low_power=low_power
            )

        try:
            latency = await self._probe.ping(self.reachability_target)
        except Exception as e:
            logger.debug(
                "Reachability check failed",
                target=self.reachability_target,
                error=str(e),
                error_type=type(e).__name__
            )
            return self.report(
                connectivity=ConnectivityState.OFFLINE,
                link_type=link_type,
                is_low_power=low_power
            )

        return self.report(
            connectivity=ConnectivityState.ONLINE,
            link_type=link_type,
            latency_ms=latency,
            is_low_power=low_power
        )

    async def wait_until_online(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for Online connectivity.

        Returns:
            True if online, False if the timeout elapsed first
        """
        if self.is_online:
            return True
        try:
            await asyncio.wait_for(self._online.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # Lifecycle

    async def start(self) -> None:
        """Run an immediate check, then check periodically until stop()."""
        if self.running:
            return
        await self.check_now()
        if self._probe is not None:
            self._task = asyncio.create_task(self._run())
        logger.info(
            "Network monitor started",
            connectivity=self._connectivity.value,
            target=self.reachability_target,
            interval_seconds=self.ping_interval_seconds
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Network monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_seconds)
            try:
                await self.check_now()
            except Exception as e:
                logger.error(
                    "Network check failed",
                    error=str(e),
                    error_type=type(e).__name__
                )
