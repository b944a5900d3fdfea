"""Beacon: cron-driven job scheduling and multi-channel notification dispatch."""

__version__ = "0.1.0"
