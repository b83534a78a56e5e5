"""
Notification Boundary
=====================

Fire-and-forget hooks invoked after a mutation is committed.

BOUNDARY ENFORCEMENT:
- Hooks run after the change log, versions and persistence are updated
  and after the assessment lock is released, so a hook may call back
  into the engine
- A hook failure never rolls back the mutation that triggered it
- Failures are captured as Error records for the audit log
- The engine never retries a failed delivery
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .contracts.base import Error, ErrorCode, StageStatus
from .contracts.records import AssessmentBlocker


class NotificationHook:
    """Interface for delivery implementations."""

    def on_blocker_raised(self, assessment_id: str, blocker: AssessmentBlocker) -> None:
        raise NotImplementedError

    def on_stage_transition(self, assessment_id: str, stage_id: str, new_status: StageStatus) -> None:
        raise NotImplementedError


class NullNotificationHook(NotificationHook):
    def on_blocker_raised(self, assessment_id: str, blocker: AssessmentBlocker) -> None:
        return None

    def on_stage_transition(self, assessment_id: str, stage_id: str, new_status: StageStatus) -> None:
        return None


class RecordingNotificationHook(NotificationHook):
    """Keeps every delivery in memory. Used by tests and the demo server."""

    def __init__(self):
        self.blockers: List[Tuple[str, AssessmentBlocker]] = []
        self.transitions: List[Tuple[str, str, StageStatus]] = []

    def on_blocker_raised(self, assessment_id: str, blocker: AssessmentBlocker) -> None:
        self.blockers.append((assessment_id, blocker))

    def on_stage_transition(self, assessment_id: str, stage_id: str, new_status: StageStatus) -> None:
        self.transitions.append((assessment_id, stage_id, new_status))


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one hook call."""
    hook: str
    delivered: bool
    error: Optional[Error] = None


class NotificationDispatcher:
    """
    Calls every registered hook and captures failures.

    Exceptions raised by a hook are converted to DeliveryResult records.
    The caller decides how to audit them; nothing is raised from here.
    """

    def __init__(self, hooks: Optional[Sequence[NotificationHook]] = None):
        self._hooks: List[NotificationHook] = list(hooks or [])

    def register(self, hook: NotificationHook) -> None:
        self._hooks.append(hook)

    @property
    def hooks(self) -> Tuple[NotificationHook, ...]:
        return tuple(self._hooks)

    def blocker_raised(self, assessment_id: str, blocker: AssessmentBlocker) -> List[DeliveryResult]:
        return [
            self._deliver(hook, "on_blocker_raised", hook.on_blocker_raised, assessment_id, blocker)
            for hook in self._hooks
        ]

    def stage_transition(
        self,
        assessment_id: str,
        stage_id: str,
        new_status: StageStatus
    ) -> List[DeliveryResult]:
        return [
            self._deliver(
                hook, "on_stage_transition", hook.on_stage_transition,
                assessment_id, stage_id, new_status
            )
            for hook in self._hooks
        ]

    @staticmethod
    def _deliver(hook: NotificationHook, name: str, call, *args) -> DeliveryResult:
        label = f"{type(hook).__name__}.{name}"
        try:
            call(*args)
        except Exception as e:
            return DeliveryResult(
                hook=label,
                delivered=False,
                error=Error.create(ErrorCode.NOTIFICATION_FAILED, str(e), hook=label),
            )
        return DeliveryResult(hook=label, delivered=True)


__all__ = [
    'NotificationHook',
    'NullNotificationHook',
    'RecordingNotificationHook',
    'DeliveryResult',
    'NotificationDispatcher',
]
