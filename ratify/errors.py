"""Exception hierarchy used inside ratify components.

These never cross the runtime or dispatcher boundary: callers of those
receive typed results from :mod:`ratify.contracts` instead.
"""

from __future__ import annotations

from typing import Optional


class RatifyError(Exception):
    """Base class for all ratify errors."""


class StepError(RatifyError):
    """Raised by step logic to signal how a failure should be classified."""


class RetryableStepError(StepError):
    """Transient failure; the step executor retries it per policy."""


class FatalStepError(StepError):
    """Unrecoverable failure; aborts the step without further attempts."""


class LedgerBusyError(RetryableStepError):
    """The ledger row could not be locked in time."""


class InvalidTransitionError(RatifyError):
    """The lifecycle does not accept ``event`` in ``state``."""

    def __init__(self, state: str, event: str, reason: Optional[str] = None) -> None:
        self.state = state
        self.event = event
        self.reason = reason or "transition not declared"
        super().__init__(f"cannot apply '{event}' in state '{state}': {self.reason}")


class PreconditionFailedError(RatifyError):
    """The caller asked for something the current state does not allow."""
