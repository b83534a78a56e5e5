"""
Role Assignment & Consensus Engine
==================================

Holds one branch's per-question RoleResponse records and the shared role
assignments, and folds role-answer and resolution changes into them.

STATE RULES:
- A RoleResponse is created when a role first answers
- It changes only through that role's answers or a resolution
- A new answer supersedes any earlier resolution on the question
- Conflicted questions carry a ConflictResolution stub until decided

All state transitions are driven by log entries, so hydration and live
submission share one apply path.
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from ..contracts.base import (
    Timestamp, ChangeField, ConsensusMethod, ConsensusStatus,
    AssignmentStatus, ErrorCode
)
from ..contracts.errors import ConsensusUnavailableError, InvalidChangeError
from ..contracts.records import (
    AssessmentChange, AssignedRole, AssignmentPayload, ConflictResolution,
    ResolutionPayload, RoleAnswerPayload, RoleResponse
)
from ..contracts.structure import AssessmentStructure
from .calculator import ConsensusConfig, ConsensusOutcome, compute_consensus


class ConsensusEngine:
    """
    Consensus state for one branch.

    Assignments are assessment-wide: every branch engine shares the same assignment map.
    """

    def __init__(
        self,
        structure: AssessmentStructure,
        config: Optional[ConsensusConfig] = None,
        assignments: Optional[Dict[str, AssignedRole]] = None
    ):
        self._structure = structure
        self._config = config or ConsensusConfig()
        self._assignments: Dict[str, AssignedRole] = assignments if assignments is not None else {}
        self._records: Dict[str, RoleResponse] = {}
        self._completed_at: Dict[str, Timestamp] = {}

    @property
    def config(self) -> ConsensusConfig:
        return self._config

    @property
    def structure(self) -> AssessmentStructure:
        return self._structure

    @classmethod
    def from_changes(
        cls,
        structure: AssessmentStructure,
        config: ConsensusConfig,
        assignments: Dict[str, AssignedRole],
        changes: Iterable[AssessmentChange]
    ) -> ConsensusEngine:
        """Rebuild branch state from the content changes on its lineage."""
        engine = cls(structure, config, assignments)
        for change in changes:
            engine.apply(change)
        return engine

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    def assign(
        self,
        role_id: str,
        sections: Iterable[str] = (),
        categories: Iterable[str] = (),
        user_id: Optional[str] = None,
        deadline: Optional[Timestamp] = None,
        assigned_at: Optional[Timestamp] = None
    ) -> AssignedRole:
        """Bind a role to sections/categories. Supersedes any earlier binding."""
        section_ids = tuple(sorted(set(sections)))
        category_ids = tuple(sorted(set(categories)))
        self.validate_scope(section_ids, category_ids)

        role = AssignedRole(
            role_id=role_id,
            assigned_sections=section_ids,
            assigned_categories=category_ids,
            status=AssignmentStatus.PENDING,
            progress=0.0,
            assigned_at=assigned_at,
            user_id=user_id,
            deadline=deadline,
        )
        self._assignments[role_id] = role
        return role

    def validate_scope(self, sections: Tuple[str, ...], categories: Tuple[str, ...]) -> None:
        if not sections and not categories:
            raise InvalidChangeError(
                "An assignment needs at least one section or category",
                code=ErrorCode.OUT_OF_SCOPE,
            )
        known_sections = {s.section_id for s in self._structure.sections}
        known_categories = {
            c.category_id for s in self._structure.sections for c in s.categories
        }
        for section_id in sections:
            if section_id not in known_sections:
                raise InvalidChangeError(
                    f"Unknown section {section_id}", code=ErrorCode.NOT_FOUND, section=section_id
                )
        for category_id in categories:
            if category_id not in known_categories:
                raise InvalidChangeError(
                    f"Unknown category {category_id}", code=ErrorCode.NOT_FOUND, category=category_id
                )

    def apply_assignment(self, change: AssessmentChange) -> AssignedRole:
        payload = change.payload
        if not isinstance(payload, AssignmentPayload):
            raise InvalidChangeError(
                f"Assignment change {change.change_id} has no assignment payload",
                code=ErrorCode.STRUCTURAL_INCONSISTENCY,
            )
        self._completed_at.pop(change.target.role_id, None)
        return self.assign(
            change.target.role_id,
            sections=payload.sections,
            categories=payload.categories,
            user_id=payload.user_id,
            deadline=payload.deadline,
            assigned_at=change.timestamp,
        )

    def scope(self, role_id: str) -> FrozenSet[str]:
        role = self._assignments.get(role_id)
        if role is None:
            return frozenset()
        return self._structure.questions_in_scope(role.assigned_sections, role.assigned_categories)

    def assignment(self, role_id: str, reference_time: Optional[Timestamp] = None) -> Optional[AssignedRole]:
        """Assignment with progress and status derived from this branch."""
        role = self._assignments.get(role_id)
        if role is None:
            return None
        progress = self.progress(role_id)
        completed_at = self._completed_at.get(role_id) if progress >= 100.0 else None

        if progress >= 100.0:
            status = AssignmentStatus.COMPLETED
        elif (
            reference_time is not None
            and role.deadline is not None
            and role.deadline < reference_time
        ):
            status = AssignmentStatus.OVERDUE
        elif progress > 0:
            status = AssignmentStatus.IN_PROGRESS
        else:
            status = AssignmentStatus.PENDING

        return replace(role, progress=progress, status=status, completed_at=completed_at)

    def assignments(self, reference_time: Optional[Timestamp] = None) -> Tuple[AssignedRole, ...]:
        return tuple(
            self.assignment(role_id, reference_time) for role_id in sorted(self._assignments)
        )

    def progress(self, role_id: str) -> float:
        """Percentage of the role's scope it has answered on this branch."""
        scope = self.scope(role_id)
        if not scope:
            return 0.0
        answered = sum(
            1 for q in scope
            if q in self._records and role_id in self._records[q].response_map()
        )
        return round(answered / len(scope) * 100.0, 2)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_answer(self, role_id: str, question_id: str, value: Optional[int]) -> None:
        if not self._structure.has_question(question_id):
            raise InvalidChangeError(
                f"Unknown question {question_id}",
                code=ErrorCode.UNKNOWN_QUESTION,
                question_id=question_id,
            )
        if question_id not in self.scope(role_id):
            raise InvalidChangeError(
                f"Role {role_id} is not assigned to {question_id}",
                code=ErrorCode.OUT_OF_SCOPE,
                role_id=role_id,
                question_id=question_id,
            )
        if value is not None:
            self.validate_value(question_id, value)

    def validate_value(self, question_id: str, value: int) -> None:
        valid = self._structure.valid_values(question_id)
        if isinstance(value, bool) or not isinstance(value, int) or value not in valid:
            raise InvalidChangeError(
                f"{value!r} is not a valid option for {question_id}",
                code=ErrorCode.INVALID_VALUE,
                question_id=question_id,
                valid=list(valid),
            )

    # =========================================================================
    # FOLDS
    # =========================================================================

    def apply(self, change: AssessmentChange) -> Optional[RoleResponse]:
        """Dispatch a content change. Fields without consensus state are ignored."""
        if change.field is ChangeField.ROLE_RESPONSE:
            return self.apply_role_response(change)
        if change.field is ChangeField.CONFLICT_RESOLUTION:
            return self.apply_resolution(change)
        return None

    def apply_role_response(self, change: AssessmentChange) -> RoleResponse:
        question_id = change.target.question_id
        role_id = change.target.role_id
        payload = change.payload if isinstance(change.payload, RoleAnswerPayload) else RoleAnswerPayload()

        record = self._records.get(question_id) or RoleResponse(question_id=question_id)
        record = record.with_answer(role_id, change.new_value, payload.confidence, payload.comment)
        record = self._recompute(record)
        self._records[question_id] = record

        if self.progress(role_id) >= 100.0:
            self._completed_at.setdefault(role_id, change.timestamp)
        else:
            self._completed_at.pop(role_id, None)
        return record

    def apply_resolution(self, change: AssessmentChange) -> RoleResponse:
        question_id = change.target.question_id
        payload = change.payload
        method = payload.method if isinstance(payload, ResolutionPayload) else ConsensusMethod.REVIEWER_DECISION
        rationale = payload.rationale if isinstance(payload, ResolutionPayload) else None

        record = self._records.get(question_id) or RoleResponse(question_id=question_id)
        record = replace(
            record,
            consensus=change.new_value,
            status=ConsensusStatus.RESOLVED,
            conflict_resolution=ConflictResolution(
                method=method,
                resolved_by=change.actor,
                resolved_at=change.timestamp,
                rationale=rationale,
            ),
        )
        self._records[question_id] = record
        return record

    def _recompute(self, record: RoleResponse) -> RoleResponse:
        outcome = self.evaluate(record.question_id, record.response_map())
        resolution = ConflictResolution.stub() if outcome.status is ConsensusStatus.CONFLICTED else None
        return replace(
            record,
            consensus=outcome.value,
            status=outcome.status,
            conflict_resolution=resolution,
        )

    def evaluate(
        self,
        question_id: str,
        responses: Dict[str, int],
        method: Optional[ConsensusMethod] = None,
        tolerance: Optional[float] = None
    ) -> ConsensusOutcome:
        return compute_consensus(
            responses,
            method or self._structure.method_for(question_id, self._config.default_method),
            self._config.tolerance if tolerance is None else tolerance,
            self._structure.valid_values(question_id),
        )

    def resolution_value(
        self,
        question_id: str,
        method: ConsensusMethod,
        value: Optional[int]
    ) -> int:
        """
        The value a resolution records. Computed methods ignore tolerance;
        manual and reviewer-decision require an explicit value.
        """
        if value is not None:
            self.validate_value(question_id, value)
            return value
        if not method.is_computed:
            raise InvalidChangeError(
                f"Method {method.value} requires an explicit value",
                code=ErrorCode.INVALID_VALUE,
                question_id=question_id,
            )
        record = self._records.get(question_id)
        responses = record.response_map() if record else {}
        outcome = self.evaluate(question_id, responses, method=method, tolerance=float('inf'))
        if outcome.value is None:
            raise ConsensusUnavailableError(question_id, "no role responses to resolve")
        return outcome.value

    # =========================================================================
    # READS
    # =========================================================================

    def role_response(self, question_id: str) -> Optional[RoleResponse]:
        return self._records.get(question_id)

    def role_responses(self) -> Tuple[RoleResponse, ...]:
        return tuple(self._records[q] for q in sorted(self._records))

    def consensus(self, question_id: str) -> int:
        record = self._records.get(question_id)
        if record is None or record.status is ConsensusStatus.UNANSWERED:
            raise ConsensusUnavailableError(question_id, "unanswered")
        if record.consensus is None:
            raise ConsensusUnavailableError(question_id, record.status.value)
        return record.consensus

    def conflicts(self) -> Tuple[RoleResponse, ...]:
        return tuple(r for r in self.role_responses() if r.is_conflicted)
