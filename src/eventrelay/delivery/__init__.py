"""
Package: delivery
Description: Request delivery for eventrelay.

Provides the backoff policy, cancellation tokens, the HTTP transport,
the per-request dispatcher and the top-level delivery coordinator.
"""
