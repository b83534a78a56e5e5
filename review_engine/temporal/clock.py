"""
Logical Clock
=============

Injectable clock so change timestamps, version creation times and blocker
deadlines are deterministic under test.

GUARANTEES:
- Same scripted ticks = byte-identical change log
- Never reads system time implicitly in scripted mode
- Every tick handed out is recorded
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from ..contracts.base import Timestamp


class ClockExhausted(Exception):
    """Raised when a scripted clock runs out of ticks."""
    pass


@dataclass
class LogicalClock:
    """
    Injectable clock.

    MODES:
    ======
    1. LIVE mode: system time, every tick logged
    2. SCRIPTED mode: pre-recorded ticks, or a fixed start advanced by a step
    """
    _ticks: List[datetime] = field(default_factory=list)
    _current_index: int = 0
    _is_live: bool = True
    _step: Optional[timedelta] = None
    _cursor: Optional[datetime] = None

    def now(self) -> Timestamp:
        return Timestamp(value=self._next())

    def _next(self) -> datetime:
        if self._is_live:
            current = datetime.now(timezone.utc)
            self._ticks.append(current)
            self._current_index = len(self._ticks)
            return current
        if self._step is not None:
            current = self._cursor
            self._cursor = current + self._step
            self._ticks.append(current)
            self._current_index = len(self._ticks)
            return current
        if self._current_index >= len(self._ticks):
            raise ClockExhausted(
                f"Scripted clock exhausted at index {self._current_index}. "
                f"Only {len(self._ticks)} ticks were recorded."
            )
        tick = self._ticks[self._current_index]
        self._current_index += 1
        return tick

    def peek(self) -> Timestamp:
        """Current time without consuming a tick (used as a reference time)."""
        if self._is_live:
            return Timestamp.now()
        if self._step is not None:
            return Timestamp(value=self._cursor)
        if self._current_index < len(self._ticks):
            return Timestamp(value=self._ticks[self._current_index])
        if self._ticks:
            return Timestamp(value=self._ticks[-1])
        raise ClockExhausted("Scripted clock has no ticks")

    @classmethod
    def live(cls) -> LogicalClock:
        return cls(_is_live=True)

    @classmethod
    def scripted(cls, ticks: Iterable[datetime]) -> LogicalClock:
        return cls(_ticks=[Timestamp(value=t).value for t in ticks], _is_live=False)

    @classmethod
    def stepping(
        cls,
        start: datetime,
        step: timedelta = timedelta(seconds=1)
    ) -> LogicalClock:
        """Deterministic clock: start, start + step, start + 2*step, ..."""
        return cls(_is_live=False, _step=step, _cursor=Timestamp(value=start).value)

    def __repr__(self) -> str:
        mode = "LIVE" if self._is_live else "SCRIPTED"
        return f"LogicalClock({mode}, ticks={len(self._ticks)}, index={self._current_index})"
