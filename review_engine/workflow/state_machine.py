"""
Review Workflow State Machine
=============================

Stage progression gated by required roles.

STAGE STATES:
    pending → active → completed
    pending | active → skipped        (terminal alternative to completed)

TRANSITION RULES:
- A stage activates only when every earlier stage is completed or skipped
  and at least one of its required roles is assigned. A stage other than
  the terminal one with no required roles never activates or completes on
  its own; it waits to be skipped.
- A stage completes when every required role covers 100% of its assigned
  scope, no unresolved conflict sits in that scope and, when approval is
  required, an approval was logged for the stage.
- A reset moves an earlier stage back to active and every later stage back
  to pending. It is administrative and always logged.

INVARIANT: the workflow is completed only when every stage is completed
or skipped.

This module DOES NOT write the log. It checks transitions and folds
workflow changes; the engine appends them.
"""

from __future__ import annotations
from dataclasses import replace
from typing import FrozenSet, List, Mapping, Optional, Sequence, Tuple
import numpy as np

from ..contracts.base import StageKind, StageStatus, ChangeField, ErrorCode
from ..contracts.errors import InvalidTransitionError, InvalidChangeError
from ..contracts.records import (
    AssessmentChange, ReviewWorkflow, StagePayload, WorkflowStage
)


StageTransition = Tuple[str, StageStatus]


def default_workflow(
    assessors: Sequence[str] = (),
    reviewers: Sequence[str] = (),
    approvers: Sequence[str] = (),
    approval_required: bool = True,
    escalation_days: int = 3,
    review_sections: Optional[Mapping[str, Sequence[str]]] = None
) -> ReviewWorkflow:
    """The standard assessment → review → approval → completed pipeline."""
    return ReviewWorkflow(
        stages=(
            WorkflowStage(
                stage_id="assessment",
                kind=StageKind.ASSESSMENT,
                name="Assessment",
                required_roles=tuple(assessors),
                order=0,
            ),
            WorkflowStage(
                stage_id="review",
                kind=StageKind.REVIEW,
                name="Review",
                required_roles=tuple(reviewers),
                order=1,
            ),
            WorkflowStage(
                stage_id="approval",
                kind=StageKind.APPROVAL,
                name="Approval",
                required_roles=tuple(approvers),
                order=2,
                approval_required=approval_required,
            ),
            WorkflowStage(
                stage_id="completed",
                kind=StageKind.COMPLETED,
                name="Completed",
                order=3,
            ),
        ),
        approval_required=approval_required,
        reviewers=tuple(reviewers),
        escalation_days=escalation_days,
        review_sections=tuple((r, tuple(s)) for r, s in (review_sections or {}).items()),
    )


class WorkflowStateMachine:
    """
    Holds the current ReviewWorkflow and validates moves against it.

    All check_* methods raise InvalidTransitionError and never mutate.
    """

    def __init__(self, workflow: ReviewWorkflow):
        self._workflow = workflow

    @property
    def workflow(self) -> ReviewWorkflow:
        return self._workflow

    @property
    def is_completed(self) -> bool:
        return self._workflow.is_completed

    def stage(self, stage_id: str) -> WorkflowStage:
        stage = self._workflow.stage(stage_id)
        if stage is None:
            raise InvalidTransitionError(f"Unknown stage {stage_id}", stage_id=stage_id)
        return stage

    def active_stage(self) -> Optional[WorkflowStage]:
        for stage in self._workflow.stages:
            if stage.status is StageStatus.ACTIVE:
                return stage
        return None

    # =========================================================================
    # CHECKS
    # =========================================================================

    def _prior_closed(self, stage_id: str) -> bool:
        index = self._workflow.index_of(stage_id)
        return all(s.status.is_closed for s in self._workflow.stages[:index])

    @staticmethod
    def _needs_roles(stage: WorkflowStage) -> bool:
        """Every stage but the terminal one is gated by at least one role."""
        return stage.kind is not StageKind.COMPLETED

    def activation_blocker(self, stage_id: str, assigned: FrozenSet[str]) -> Optional[str]:
        """Why the stage cannot activate, or None."""
        stage = self.stage(stage_id)
        if stage.status is not StageStatus.PENDING:
            return f"stage {stage_id} is {stage.status.value}"
        if not self._prior_closed(stage_id):
            return f"an earlier stage than {stage_id} is still open"
        if self._needs_roles(stage) and not stage.required_roles:
            return f"stage {stage_id} has no required roles and can only be skipped"
        if stage.required_roles and not (set(stage.required_roles) & assigned):
            return f"no required role of {stage_id} is assigned"
        return None

    def completion_blocker(
        self,
        stage_id: str,
        progress: Mapping[str, float],
        approvals: FrozenSet[str],
        conflicted: FrozenSet[str] = frozenset(),
        scopes: Optional[Mapping[str, FrozenSet[str]]] = None
    ) -> Optional[str]:
        """Why the active stage cannot complete, or None."""
        stage = self.stage(stage_id)
        if stage.status is not StageStatus.ACTIVE:
            return f"stage {stage_id} is {stage.status.value}"
        if self._needs_roles(stage) and not stage.required_roles:
            return f"stage {stage_id} has no required roles and can only be skipped"
        for role_id in stage.required_roles:
            if progress.get(role_id, 0.0) < 100.0:
                return f"role {role_id} has not covered its scope"
        if conflicted & self.blocking_scope(stage_id, scopes or {}, conflicted):
            return f"unresolved conflicts block {stage_id}"
        if stage.approval_required and stage_id not in approvals:
            return f"stage {stage_id} awaits approval"
        return None

    def blocking_scope(
        self,
        stage_id: str,
        scopes: Mapping[str, FrozenSet[str]],
        universe: FrozenSet[str]
    ) -> FrozenSet[str]:
        """Questions whose conflicts hold this stage back."""
        stage = self.stage(stage_id)
        if not stage.required_roles:
            return universe
        covered: set = set()
        for role_id in stage.required_roles:
            covered.update(scopes.get(role_id, frozenset()))
        return frozenset(covered)

    def check_activate(self, stage_id: str, assigned: FrozenSet[str]) -> None:
        reason = self.activation_blocker(stage_id, assigned)
        if reason is not None:
            raise InvalidTransitionError(f"Cannot activate: {reason}", stage_id=stage_id)

    def check_complete(
        self,
        stage_id: str,
        progress: Mapping[str, float],
        approvals: FrozenSet[str],
        conflicted: FrozenSet[str] = frozenset(),
        scopes: Optional[Mapping[str, FrozenSet[str]]] = None
    ) -> None:
        reason = self.completion_blocker(stage_id, progress, approvals, conflicted, scopes)
        if reason is not None:
            raise InvalidTransitionError(f"Cannot complete: {reason}", stage_id=stage_id)

    def check_skip(self, stage_id: str) -> None:
        stage = self.stage(stage_id)
        if stage.status.is_closed:
            raise InvalidTransitionError(
                f"Cannot skip: stage {stage_id} is already {stage.status.value}",
                stage_id=stage_id,
            )
        if stage.kind is StageKind.COMPLETED:
            raise InvalidTransitionError("The completed stage cannot be skipped", stage_id=stage_id)

    def check_add(self, stage: WorkflowStage) -> None:
        if self._workflow.stage(stage.stage_id) is not None:
            raise InvalidTransitionError(
                f"Stage {stage.stage_id} already exists", stage_id=stage.stage_id
            )
        if stage.status is not StageStatus.PENDING:
            raise InvalidTransitionError("New stages start pending", stage_id=stage.stage_id)
        started_after = [
            s for s in self._workflow.stages
            if s.order > stage.order and s.status is not StageStatus.PENDING
        ]
        if started_after:
            raise InvalidTransitionError(
                f"Cannot insert {stage.stage_id} before stage {started_after[0].stage_id}",
                stage_id=stage.stage_id,
            )

    def reset_plan(self, stage_id: str) -> List[StageTransition]:
        """Transitions a reset to stage_id performs, target first."""
        target = self.stage(stage_id)
        current = self._workflow.current_stage
        if current is not None and self._workflow.index_of(stage_id) > self._workflow.index_of(current.stage_id):
            raise InvalidTransitionError(
                f"Cannot reset forward to {stage_id}", stage_id=stage_id
            )
        plan: List[StageTransition] = []
        if target.status is not StageStatus.ACTIVE:
            plan.append((stage_id, StageStatus.ACTIVE))
        index = self._workflow.index_of(stage_id)
        for later in self._workflow.stages[index + 1:]:
            if later.status is not StageStatus.PENDING:
                plan.append((later.stage_id, StageStatus.PENDING))
        if not plan:
            raise InvalidTransitionError(f"Stage {stage_id} is already current", stage_id=stage_id)
        return plan

    # =========================================================================
    # AUTOMATIC PROGRESSION
    # =========================================================================

    def evaluate(
        self,
        progress: Mapping[str, float],
        assigned: FrozenSet[str],
        approvals: FrozenSet[str],
        conflicted: FrozenSet[str] = frozenset(),
        scopes: Optional[Mapping[str, FrozenSet[str]]] = None
    ) -> List[StageTransition]:
        """
        Transitions the current state allows: complete the active stage when
        its criteria hold, then activate the next eligible stage. Returns the
        plan; the caller logs each step and folds it back in.
        """
        if not self._workflow.enabled:
            return []

        plan: List[StageTransition] = []
        scratch = WorkflowStateMachine(self._workflow)
        while True:
            current = scratch.workflow.current_stage
            if current is None:
                break
            if current.status is StageStatus.PENDING:
                if scratch.activation_blocker(current.stage_id, assigned) is not None:
                    break
                step = (current.stage_id, StageStatus.ACTIVE)
            elif scratch.completion_blocker(
                current.stage_id, progress, approvals, conflicted, scopes
            ) is None:
                step = (current.stage_id, StageStatus.COMPLETED)
            else:
                break
            plan.append(step)
            scratch._set_status(*step)
        return plan

    # =========================================================================
    # FOLDS
    # =========================================================================

    def apply(self, change: AssessmentChange) -> ReviewWorkflow:
        """Fold a logged workflow-stage change into the workflow."""
        if change.field is not ChangeField.WORKFLOW_STAGE:
            return self._workflow
        stage_id = change.target.stage_id
        payload = change.payload if isinstance(change.payload, StagePayload) else None

        if self._workflow.stage(stage_id) is None:
            if payload is None or payload.stage is None:
                raise InvalidChangeError(
                    f"Change {change.change_id} adds stage {stage_id} without a definition",
                    code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                )
            self._workflow = replace(
                self._workflow, stages=self._workflow.stages + (payload.stage,)
            )
            return self._workflow

        self._set_status(stage_id, StageStatus(change.new_value))
        return self._workflow

    def _set_status(self, stage_id: str, status: StageStatus) -> None:
        stage = self.stage(stage_id)
        self._workflow = self._workflow.with_stage(replace(stage, status=status))

    # =========================================================================
    # PROGRESS
    # =========================================================================

    def stage_completion(self, stage: WorkflowStage, progress: Mapping[str, float]) -> float:
        if stage.status is StageStatus.COMPLETED:
            return 1.0
        if stage.status is StageStatus.ACTIVE and stage.required_roles:
            values = np.array([progress.get(r, 0.0) for r in stage.required_roles], dtype=float)
            return float(np.mean(values) / 100.0)
        return 0.0

    def overall_progress(self, progress: Mapping[str, float]) -> float:
        """
        Weighted average of per-stage completion, as a percentage.
        Skipped stages are excluded from both numerator and denominator.
        """
        stages = [s for s in self._workflow.stages if s.status is not StageStatus.SKIPPED]
        if not stages:
            return 100.0 if self._workflow.stages else 0.0
        weights = np.array([s.weight for s in stages], dtype=float)
        if weights.sum() <= 0:
            return 0.0
        completion = np.array([self.stage_completion(s, progress) for s in stages], dtype=float)
        return round(float(np.average(completion, weights=weights) * 100.0), 2)
