"""Synthetic latency probe for presence-based chat services."""

__version__ = "0.3.0"
