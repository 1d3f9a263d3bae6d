"""Sync, matching, throttling and cleanup services."""
