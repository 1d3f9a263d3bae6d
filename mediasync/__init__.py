"""Background synchronisation engine for external media libraries."""

__version__ = "0.1.0"
