"""
Temporal Immutability Layer
===========================

Event-sourced assessment history.

INVARIANTS:
- All content is derived from the append-only change log
- No mutation of stored changes or versions
- Same log → same derived content (deterministic)

Modules:
- change_log: Append-only change storage, fold, replay, diff
- versioning: Version DAG, branch/merge, checksum integrity
- clock: Injectable logical clock
"""

from .change_log import ChangeLog, LogState, fold, touched_questions
from .versioning import VersionStore, MergePlan, compute_metadata
from .clock import LogicalClock, ClockExhausted

__all__ = [
    'ChangeLog',
    'LogState',
    'fold',
    'touched_questions',
    'VersionStore',
    'MergePlan',
    'compute_metadata',
    'LogicalClock',
    'ClockExhausted',
]
