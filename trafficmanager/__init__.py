"""Insight models and cron-driven synchronisation services for ad and sales data."""

__version__ = "0.1.0"