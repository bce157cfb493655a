"""Scheduled condition checks and queue draining."""

from .scheduler import CONDITION_SWEEP, DISPATCH_SWEEP, RelayScheduler

__all__ = ["CONDITION_SWEEP", "DISPATCH_SWEEP", "RelayScheduler"]
