"""
Module: types.py
Description: Network condition types and the connectivity probe protocol.
"""

from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel


class ConnectivityState(str, Enum):
    UNKNOWN = "unknown"
    OFFLINE = "offline"
    ONLINE = "online"


class LinkType(str, Enum):
    NONE = "none"
    CELLULAR = "cellular"
    WIFI = "wifi"
    OTHER = "other"


class LatencyQuality(str, Enum):
    UNKNOWN = "unknown"
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class NetworkStatus(BaseModel):
    """Point-in-time view of the monitored network conditions."""

    connectivity: ConnectivityState = ConnectivityState.UNKNOWN
    link_type: LinkType = LinkType.NONE
    last_latency_ms: Optional[float] = None
    latency_quality: LatencyQuality = LatencyQuality.UNKNOWN
    is_low_power: bool = False


class ConnectivityProbe(Protocol):
    """
    Host-provided source of connectivity signals.

    ping() raises on failure; any exception means the target is unreachable.
    """

    async def current_link_type(self) -> LinkType:
        ...

    async def ping(self, target: str) -> float:
        ...
