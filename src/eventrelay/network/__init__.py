"""
Package: network
Description: Network condition monitoring and connectivity probes.

Tracks connectivity, link type and latency, emits connectivity-changed
and connection-restored events, and advises callers on compression and
deferral.
"""

from eventrelay.network.monitor import NetworkConditionMonitor
from eventrelay.network.probe import HttpConnectivityProbe
from eventrelay.network.types import ConnectivityProbe, ConnectivityState, LatencyQuality, LinkType, NetworkStatus

__all__ = [
    "ConnectivityProbe",
    "ConnectivityState",
    "HttpConnectivityProbe",
    "LatencyQuality",
    "LinkType",
    "NetworkConditionMonitor",
    "NetworkStatus",
]
