"""
Blocker & Pending-Action Tracker
================================

Derives what needs attention from the current state. Nothing here is
stored: the engine recomputes both lists after every accepted mutation.

BLOCKERS:
- missing-assignment   a section has categories no role covers
- overdue-response     an assigned role is past its deadline, progress < 100
- unresolved-conflict  a consensus stub or merge conflict awaits a decision
- approval-pending     the active stage requires approval and has none

SEVERITY:
- Conflicts that hold back the active stage are critical
- Any blocker on a question with an open critical review comment is critical
- Everything else scales with deadline proximity (see BlockerConfig)

Ids are hashes of kind and scope, so recomputing the same state yields
the same ids.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..contracts.base import (
    Timestamp, BlockerKind, CommentSeverity, Severity, PendingActionKind, StageKind,
    derived_id
)
from ..contracts.records import (
    AssessmentBlocker, AssessmentVersion, AssignedRole, PendingAction,
    ReviewComment, ReviewWorkflow, RoleResponse, WorkflowStage
)
from ..contracts.structure import AssessmentStructure
from .comments import needs_follow_up
from .state_machine import WorkflowStateMachine


@dataclass(frozen=True)
class BlockerConfig:
    """
    Deadline thresholds for severity scaling.

    escalation_days=None defers to the workflow's own escalation_days.
    """
    urgent_days: int = 1
    soon_days: int = 3
    escalation_days: Optional[int] = None
    coordinator: str = "coordinator"

    def __post_init__(self):
        if self.urgent_days < 0 or self.soon_days < self.urgent_days:
            raise ValueError("require 0 <= urgent_days <= soon_days")


@dataclass(frozen=True)
class AttentionInputs:
    """Everything the tracker reads. Built by the engine per recomputation."""
    structure: AssessmentStructure
    workflow: ReviewWorkflow
    assignments: Tuple[AssignedRole, ...]
    role_responses: Tuple[RoleResponse, ...]
    heads: Tuple[AssessmentVersion, ...]
    approvals: FrozenSet[str]
    reference_time: Timestamp
    scopes: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    comments: Tuple[ReviewComment, ...] = field(default_factory=tuple)


def deadline_severity(
    deadline: Optional[Timestamp],
    now: Timestamp,
    config: BlockerConfig,
    escalation_days: int
) -> Severity:
    if deadline is None:
        return Severity.LOW
    remaining = deadline.value - now.value
    if remaining < timedelta(0):
        if -remaining > timedelta(days=escalation_days):
            return Severity.CRITICAL
        return Severity.HIGH
    if remaining <= timedelta(days=config.urgent_days):
        return Severity.HIGH
    if remaining <= timedelta(days=config.soon_days):
        return Severity.MEDIUM
    return Severity.LOW


class BlockerTracker:
    """Pure recomputation of blockers and pending actions."""

    def __init__(self, config: Optional[BlockerConfig] = None):
        self._config = config or BlockerConfig()

    @property
    def config(self) -> BlockerConfig:
        return self._config

    def _escalation(self, workflow: ReviewWorkflow) -> int:
        if self._config.escalation_days is not None:
            return self._config.escalation_days
        return workflow.escalation_days

    def _severity(self, deadline: Optional[Timestamp], inputs: AttentionInputs) -> Severity:
        return deadline_severity(
            deadline, inputs.reference_time, self._config, self._escalation(inputs.workflow)
        )

    @staticmethod
    def _active(workflow: ReviewWorkflow) -> Optional[WorkflowStage]:
        machine = WorkflowStateMachine(workflow)
        return machine.active_stage()

    # =========================================================================
    # BLOCKERS
    # =========================================================================

    def blockers(self, inputs: AttentionInputs) -> Tuple[AssessmentBlocker, ...]:
        found: List[AssessmentBlocker] = []
        found.extend(self._missing_assignments(inputs))
        found.extend(self._overdue_responses(inputs))
        found.extend(self._unresolved_conflicts(inputs))
        found.extend(self._approval_pending(inputs))
        found = self._escalate_commented(found, inputs)
        return tuple(sorted(found, key=lambda b: (-b.severity.rank, b.kind.value, b.blocker_id)))

    @staticmethod
    def _escalate_commented(
        found: List[AssessmentBlocker],
        inputs: AttentionInputs
    ) -> List[AssessmentBlocker]:
        flagged = {c.question_id for c in inputs.comments if c.blocks}
        if not flagged:
            return found
        return [
            replace(b, severity=Severity.CRITICAL)
            if flagged.intersection(b.affected_questions) else b
            for b in found
        ]

    def uncovered_categories(self, inputs: AttentionInputs) -> Dict[str, Tuple[str, ...]]:
        covered_sections = {s for r in inputs.assignments for s in r.assigned_sections}
        covered_categories = {c for r in inputs.assignments for c in r.assigned_categories}
        uncovered: Dict[str, Tuple[str, ...]] = {}
        for section in inputs.structure.sections:
            if section.section_id in covered_sections:
                continue
            missing = tuple(
                c.category_id for c in section.categories
                if c.category_id not in covered_categories
            )
            if missing:
                uncovered[section.section_id] = missing
        return uncovered

    def _missing_assignments(self, inputs: AttentionInputs) -> List[AssessmentBlocker]:
        active = self._active(inputs.workflow)
        severity = self._severity(active.deadline if active else None, inputs)
        result = []
        for section_id, categories in sorted(self.uncovered_categories(inputs).items()):
            questions = sorted(
                q.question_id
                for s in inputs.structure.sections if s.section_id == section_id
                for c in s.categories if c.category_id in categories
                for q in c.questions
            )
            result.append(AssessmentBlocker(
                blocker_id=derived_id("blk", BlockerKind.MISSING_ASSIGNMENT.value, section_id),
                kind=BlockerKind.MISSING_ASSIGNMENT,
                description=f"No role is assigned to {', '.join(categories)} in {section_id}",
                severity=severity,
                affected_sections=(section_id,),
                affected_questions=tuple(questions),
                created_at=inputs.reference_time,
            ))
        return result

    def _overdue_responses(self, inputs: AttentionInputs) -> List[AssessmentBlocker]:
        result = []
        for role in inputs.assignments:
            if role.deadline is None or role.progress >= 100.0:
                continue
            if not role.deadline < inputs.reference_time:
                continue
            result.append(AssessmentBlocker(
                blocker_id=derived_id("blk", BlockerKind.OVERDUE_RESPONSE.value, role.role_id),
                kind=BlockerKind.OVERDUE_RESPONSE,
                description=f"Role {role.role_id} is past its deadline at {role.progress:.0f}%",
                severity=self._severity(role.deadline, inputs),
                affected_sections=role.assigned_sections,
                affected_questions=tuple(sorted(inputs.scopes.get(role.role_id, frozenset()))),
                created_at=inputs.reference_time,
            ))
        return result

    def conflicted_questions(self, inputs: AttentionInputs) -> FrozenSet[str]:
        stubs = {r.question_id for r in inputs.role_responses if r.is_conflicted}
        merges = {c.question_id for v in inputs.heads for c in v.unresolved_conflicts}
        return frozenset(stubs | merges)

    def _blocks_active(self, question_id: str, inputs: AttentionInputs) -> bool:
        active = self._active(inputs.workflow)
        if active is None:
            return False
        machine = WorkflowStateMachine(inputs.workflow)
        scope = machine.blocking_scope(
            active.stage_id, inputs.scopes, self.conflicted_questions(inputs)
        )
        return question_id in scope

    def _conflict_severity(self, question_id: str, inputs: AttentionInputs) -> Severity:
        if self._blocks_active(question_id, inputs):
            return Severity.CRITICAL
        active = self._active(inputs.workflow)
        return self._severity(active.deadline if active else None, inputs)

    def _section_of(self, question_id: str, inputs: AttentionInputs) -> Tuple[str, ...]:
        location = inputs.structure.locate(question_id)
        return (location.section_id,) if location else ()

    def _unresolved_conflicts(self, inputs: AttentionInputs) -> List[AssessmentBlocker]:
        result = []
        for record in inputs.role_responses:
            if not record.is_conflicted:
                continue
            answers = ", ".join(f"{r}={v}" for r, v in record.responses)
            result.append(AssessmentBlocker(
                blocker_id=derived_id("blk", BlockerKind.UNRESOLVED_CONFLICT.value, "consensus", record.question_id),
                kind=BlockerKind.UNRESOLVED_CONFLICT,
                description=f"Roles disagree on {record.question_id} ({answers})",
                severity=self._conflict_severity(record.question_id, inputs),
                affected_sections=self._section_of(record.question_id, inputs),
                affected_questions=(record.question_id,),
                created_at=inputs.reference_time,
            ))
        for head in inputs.heads:
            for conflict in head.unresolved_conflicts:
                result.append(AssessmentBlocker(
                    blocker_id=derived_id(
                        "blk", BlockerKind.UNRESOLVED_CONFLICT.value, "merge",
                        head.branch_key, conflict.question_id
                    ),
                    kind=BlockerKind.UNRESOLVED_CONFLICT,
                    description=(
                        f"Merge into {head.branch_key} left {conflict.question_id} undecided"
                    ),
                    severity=self._conflict_severity(conflict.question_id, inputs),
                    affected_sections=self._section_of(conflict.question_id, inputs),
                    affected_questions=(conflict.question_id,),
                    created_at=inputs.reference_time,
                ))
        return result

    def _approval_pending(self, inputs: AttentionInputs) -> List[AssessmentBlocker]:
        active = self._active(inputs.workflow)
        if active is None or not active.approval_required or active.stage_id in inputs.approvals:
            return []
        return [AssessmentBlocker(
            blocker_id=derived_id("blk", BlockerKind.APPROVAL_PENDING.value, active.stage_id),
            kind=BlockerKind.APPROVAL_PENDING,
            description=f"Stage {active.name} requires approval",
            severity=self._severity(active.deadline, inputs),
            created_at=inputs.reference_time,
        )]

    # =========================================================================
    # PENDING ACTIONS
    # =========================================================================

    def pending_actions(self, inputs: AttentionInputs) -> Tuple[PendingAction, ...]:
        actions: List[PendingAction] = []
        active = self._active(inputs.workflow)
        reviewers = inputs.workflow.reviewers or (self._config.coordinator,)
        progress = {r.role_id: r for r in inputs.assignments}

        for section_id, categories in sorted(self.uncovered_categories(inputs).items()):
            actions.append(PendingAction(
                action_id=derived_id("act", PendingActionKind.ASSIGNMENT.value, section_id),
                kind=PendingActionKind.ASSIGNMENT,
                assigned_to=self._config.coordinator,
                description=f"Assign a role to {', '.join(categories)} in {section_id}",
                priority=self._severity(active.deadline if active else None, inputs),
                due_date=active.deadline if active else None,
                created_at=inputs.reference_time,
            ))

        if active is not None:
            for role_id in active.required_roles:
                role = progress.get(role_id)
                if role is not None and role.progress >= 100.0:
                    continue
                due = role.deadline if role is not None and role.deadline else active.deadline
                actions.append(PendingAction(
                    action_id=derived_id("act", PendingActionKind.RESPONSE.value, active.stage_id, role_id),
                    kind=PendingActionKind.RESPONSE,
                    assigned_to=(role.user_id if role is not None and role.user_id else role_id),
                    description=(
                        f"Answer the {active.name} scope of {role_id}"
                        if role is not None else f"Role {role_id} needs an assignment for {active.name}"
                    ),
                    priority=self._severity(due, inputs),
                    due_date=due,
                    created_at=inputs.reference_time,
                ))

            if active.kind is StageKind.REVIEW:
                for reviewer in inputs.workflow.reviewers:
                    actions.append(PendingAction(
                        action_id=derived_id("act", PendingActionKind.REVIEW.value, active.stage_id, reviewer),
                        kind=PendingActionKind.REVIEW,
                        assigned_to=reviewer,
                        description=f"Review the assessment in stage {active.name}",
                        priority=self._severity(active.deadline, inputs),
                        due_date=active.deadline,
                        created_at=inputs.reference_time,
                    ))

            if active.approval_required and active.stage_id not in inputs.approvals:
                approvers = active.required_roles or reviewers
                for approver in approvers:
                    actions.append(PendingAction(
                        action_id=derived_id("act", PendingActionKind.APPROVAL.value, active.stage_id, approver),
                        kind=PendingActionKind.APPROVAL,
                        assigned_to=approver,
                        description=f"Approve stage {active.name}",
                        priority=self._severity(active.deadline, inputs),
                        due_date=active.deadline,
                        created_at=inputs.reference_time,
                    ))

        for question_id in sorted(self.conflicted_questions(inputs)):
            severity = self._conflict_severity(question_id, inputs)
            for reviewer in reviewers:
                actions.append(PendingAction(
                    action_id=derived_id(
                        "act", PendingActionKind.CONFLICT_RESOLUTION.value, question_id, reviewer
                    ),
                    kind=PendingActionKind.CONFLICT_RESOLUTION,
                    assigned_to=reviewer,
                    description=f"Decide the conflicting answers on {question_id}",
                    priority=severity,
                    due_date=active.deadline if active else None,
                    created_at=inputs.reference_time,
                ))

        for comment in inputs.comments:
            if not needs_follow_up(comment):
                continue
            critical = comment.severity is CommentSeverity.CRITICAL
            actions.append(PendingAction(
                action_id=derived_id("act", PendingActionKind.REVIEW.value, "comment", comment.comment_id),
                kind=PendingActionKind.REVIEW,
                assigned_to=comment.created_by,
                description=(
                    f"Follow up the {comment.severity.value} comment on {comment.question_id}: "
                    f"{comment.comment}"
                ),
                priority=(
                    Severity.CRITICAL if critical
                    else self._severity(active.deadline if active else None, inputs)
                ),
                due_date=active.deadline if active else None,
                created_at=inputs.reference_time,
            ))

        return tuple(sorted(actions, key=lambda a: (-a.priority.rank, a.kind.value, a.action_id)))
