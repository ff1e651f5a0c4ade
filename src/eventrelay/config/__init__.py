"""
Package: config
Description: Configuration for the delivery subsystem.
"""

from eventrelay.config.settings import DeliverySettings, settings

__all__ = ["DeliverySettings", "settings"]
