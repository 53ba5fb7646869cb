"""Upstream DNS transports (UDP, pooled TCP)."""
