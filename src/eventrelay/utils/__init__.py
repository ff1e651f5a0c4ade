"""
Module: utils
Description: Shared helpers for the delivery subsystem.

Current utilities:
- logger: Structured logging configuration and helpers
- events: In-process event bus for delivery notifications
- metrics: CloudWatch metrics publishing
- signing: Default payload signer
"""

__all__ = []
