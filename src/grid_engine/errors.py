"""Error taxonomy for the grid engine."""
from __future__ import annotations

from typing import Optional


class GridError(Exception):
    """Base class for all grid engine errors."""


class ConfigurationError(GridError):
    """Invalid configuration.  Fatal: raised before any order is placed."""


class StaleDataError(GridError):
    """A stream skipped a sequence number or its data aged out.

    Recoverable: the consumer refetches a REST snapshot before resuming.
    """

    def __init__(self, message: str, *, expected: Optional[int] = None, received: Optional[int] = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.received = received


class TransportError(GridError):
    """Network-level failure talking to the exchange.  Retried by the dispatcher."""


class DispatchFailure(GridError):
    """An action could not be delivered this cycle.

    The action is dropped and re-evaluated by the next reconciliation.
    """

    def __init__(self, action: object, reason: str, attempts: int = 0) -> None:
        super().__init__(f"dispatch failed after {attempts} attempt(s): {reason}")
        self.action = action
        self.reason = reason
        self.attempts = attempts


class RiskHalt(GridError):
    """A kill-switch condition holds.  Placement stops until cleared."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnrecognizedEvent(GridError):
    """An execution report the tracker cannot apply.  Logged and dropped."""
