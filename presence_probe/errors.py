"""Exception types raised by the probe."""

from __future__ import annotations

from typing import Optional


class ProbeError(Exception):
    """Base class for every failure the probe reports."""


class ConfigError(ProbeError, ValueError):
    pass


class QuoteCorpusError(ProbeError):
    pass


class TransportError(ProbeError):
    def __init__(self, message: str, reason: Optional[int] = None) -> None:
        super().__init__(message)
        self.reason = reason


class TransportTimeout(TransportError):
    pass


class NavigationError(ProbeError):
    def __init__(self, message: str, reason: int) -> None:
        super().__init__(message)
        self.reason = reason
