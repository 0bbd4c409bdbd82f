"""Incremental profile sync engine for product analytics data."""

__version__ = "0.1.0"
