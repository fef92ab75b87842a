"""Accumulation window policy.

Pure decision function: given the receive times of a conversation's pending
messages and the current time, decide whether the burst has settled.

- The quiet period restarts with every new message; a user who never pauses
  keeps deferring (no cap).
- A conversation with a single pending message still waits the full quiet
  period.
- ``now - newest == quiet_period`` dispatches.
- The optional minimum response delay is measured from the oldest pending
  message and only pushes the dispatch time later, it never drops messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from app.services.timeutil import ensure_utc


class WindowAction(str, Enum):
    IDLE = "idle"
    DEFER = "defer"
    DISPATCH = "dispatch"


@dataclass(frozen=True)
class WindowDecision:
    action: WindowAction
    wait_until: Optional[datetime] = None
    newest_received_at: Optional[datetime] = None

    @property
    def should_dispatch(self) -> bool:
        return self.action == WindowAction.DISPATCH

    @property
    def should_defer(self) -> bool:
        return self.action == WindowAction.DEFER


@dataclass(frozen=True)
class WindowPolicy:
    quiet_period: timedelta
    min_response_delay: timedelta = timedelta(0)

    @classmethod
    def from_seconds(cls, quiet_period_seconds: float, min_response_delay_seconds: float = 0.0) -> "WindowPolicy":
        return cls(
            quiet_period=timedelta(seconds=max(quiet_period_seconds, 0.0)),
            min_response_delay=timedelta(seconds=max(min_response_delay_seconds, 0.0)),
        )

    def ready_at(self, received_at: Iterable[datetime], *, apply_min_delay: bool = True) -> Optional[datetime]:
        """Earliest moment the pending set may be dispatched, None when nothing is pending."""
        times = [ensure_utc(value) for value in received_at if value is not None]
        if not times:
            return None
        ready = max(times) + self.quiet_period
        if apply_min_delay and self.min_response_delay > timedelta(0):
            ready = max(ready, min(times) + self.min_response_delay)
        return ready

    def evaluate(
        self,
        received_at: Iterable[datetime],
        now: datetime,
        *,
        apply_min_delay: bool = True,
    ) -> WindowDecision:
        times = [ensure_utc(value) for value in received_at if value is not None]
        ready = self.ready_at(times, apply_min_delay=apply_min_delay)
        if ready is None:
            return WindowDecision(action=WindowAction.IDLE)

        newest = max(times)
        if ensure_utc(now) < ready:
            return WindowDecision(action=WindowAction.DEFER, wait_until=ready, newest_received_at=newest)
        return WindowDecision(action=WindowAction.DISPATCH, newest_received_at=newest)
