"""
Assessment Records
==================

Immutable record shapes for every entity the engine owns.

DECOMPOSITION:
==============
The assessment is not one sprawling record. It is split into small
invariant-bearing entities, each with its own lifecycle:

- Assessment          root aggregate, points at its head version
- AssessmentVersion   immutable snapshot (content + metadata + checksum)
- AssessmentChange    append-only log entry
- RoleResponse        one question's per-role answers and consensus
- AssignedRole        a role bound to sections/categories
- ReviewWorkflow      ordered stages with required roles
- AssessmentBlocker   derived, recomputed on every mutation
- PendingAction       derived, recomputed on every mutation
- ReviewComment       a reviewer remark, opened and resolved through the log

Maps are stored as sorted tuples of pairs so records stay hashable and
their canonical serialization is deterministic.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from .base import (
    Timestamp, ChangeKind, ChangeField, MetadataKey, ImpactLevel,
    ReviewStatus, ConfidenceLevel, ApprovalStatus, VersionType,
    ConsensusMethod, ConsensusStatus, StageKind, StageStatus,
    AssignmentStatus, BlockerKind, Severity, PendingActionKind, CommentSeverity,
    ReviewerStatus, TRUNK
)


# Values a change may carry in old_value/new_value
ChangeValue = Union[None, int, float, str, Tuple[str, ...]]


def _pairs(mapping: Mapping) -> Tuple:
    return tuple(sorted(mapping.items()))


# =============================================================================
# CONTENT (the response map a version snapshots)
# =============================================================================

@dataclass(frozen=True)
class AssessmentContent:
    """
    Everything a version snapshots.

    - responses:  question_id -> consensus option value
    - notes:      question_id -> free text
    - evidence:   question_id -> linked evidence ids (sorted)
    - attributes: metadata key -> value (closed key set, see MetadataKey)
    """
    responses: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)
    notes: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    evidence: Tuple[Tuple[str, Tuple[str, ...]], ...] = field(default_factory=tuple)
    attributes: Tuple[Tuple[str, ChangeValue], ...] = field(default_factory=tuple)

    @staticmethod
    def from_maps(
        responses: Optional[Mapping[str, int]] = None,
        notes: Optional[Mapping[str, str]] = None,
        evidence: Optional[Mapping[str, Iterable[str]]] = None,
        attributes: Optional[Mapping[str, ChangeValue]] = None
    ) -> AssessmentContent:
        return AssessmentContent(
            responses=_pairs(dict(responses or {})),
            notes=_pairs(dict(notes or {})),
            evidence=tuple(sorted(
                (q, tuple(sorted(ids))) for q, ids in (evidence or {}).items() if ids
            )),
            attributes=_pairs(dict(attributes or {})),
        )

    def response_map(self) -> Dict[str, int]:
        return dict(self.responses)

    def note_map(self) -> Dict[str, str]:
        return dict(self.notes)

    def evidence_map(self) -> Dict[str, Tuple[str, ...]]:
        return dict(self.evidence)

    def attribute_map(self) -> Dict[str, ChangeValue]:
        return dict(self.attributes)

    def attribute(self, key: MetadataKey) -> ChangeValue:
        return self.attribute_map().get(key.value)


# =============================================================================
# CHANGE LOG RECORDS
# =============================================================================

@dataclass(frozen=True)
class ChangeTarget:
    """Scope of a change. Which members are set depends on the ChangeField."""
    question_id: Optional[str] = None
    category_id: Optional[str] = None
    section_id: Optional[str] = None
    role_id: Optional[str] = None
    evidence_id: Optional[str] = None
    stage_id: Optional[str] = None
    metadata_key: Optional[MetadataKey] = None
    version_id: Optional[str] = None
    comment_id: Optional[str] = None


@dataclass(frozen=True)
class RoleAnswerPayload:
    confidence: float = 1.0
    comment: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0.0 and 1.0")


@dataclass(frozen=True)
class ResolutionPayload:
    method: ConsensusMethod
    rationale: Optional[str] = None


@dataclass(frozen=True)
class AssignmentPayload:
    sections: Tuple[str, ...] = field(default_factory=tuple)
    categories: Tuple[str, ...] = field(default_factory=tuple)
    user_id: Optional[str] = None
    deadline: Optional[Timestamp] = None


@dataclass(frozen=True)
class StagePayload:
    """Stage definition (for added stages) and whether the move was a reset."""
    stage: Optional[WorkflowStage] = None
    reset: bool = False


@dataclass(frozen=True)
class ReviewCommentPayload:
    """Text and severity of a review comment, carried by the change that opens it."""
    comment: str
    severity: CommentSeverity = CommentSeverity.INFO


ChangePayload = Union[
    RoleAnswerPayload, ResolutionPayload, AssignmentPayload, StagePayload, ReviewCommentPayload
]


@dataclass(frozen=True)
class ChangeDraft:
    """
    A change before it is sealed into the log.

    The log assigns sequence, id, timestamp and hash chain on append.
    """
    kind: ChangeKind
    field: ChangeField
    target: ChangeTarget
    actor: str
    old_value: ChangeValue = None
    new_value: ChangeValue = None
    branch: Optional[str] = None
    impact: ImpactLevel = ImpactLevel.LOW
    review_required: bool = False
    review_status: Optional[ReviewStatus] = None
    reason: Optional[str] = None
    related_changes: Tuple[str, ...] = field(default_factory=tuple)
    automated: bool = False
    rollbackable: bool = True
    confidence_level: Optional[ConfidenceLevel] = None
    payload: Optional[ChangePayload] = None


@dataclass(frozen=True)
class AssessmentChange:
    """
    Immutable log entry.

    INVARIANTS:
    - Once written, never modified or deleted
    - Totally ordered by (timestamp, sequence)
    - Entries form a hash chain for integrity verification
    """
    change_id: str
    sequence: int
    timestamp: Timestamp
    kind: ChangeKind
    field: ChangeField
    target: ChangeTarget
    actor: str
    old_value: ChangeValue
    new_value: ChangeValue
    branch: Optional[str]
    impact: ImpactLevel
    review_required: bool
    review_status: Optional[ReviewStatus]
    reason: Optional[str]
    related_changes: Tuple[str, ...]
    automated: bool
    rollbackable: bool
    confidence_level: Optional[ConfidenceLevel]
    payload: Optional[ChangePayload]
    previous_hash: str
    entry_hash: str

    @property
    def branch_key(self) -> str:
        return self.branch or TRUNK

    @property
    def order_key(self) -> Tuple:
        return (self.timestamp.value, self.sequence)


def field_key(field_kind: ChangeField, target: ChangeTarget) -> Tuple[str, ...]:
    """
    The identity of the value a change overwrites.

    Two changes with the same key write the same slot; the second must
    name the first one's new_value as its old_value.
    """
    if field_kind is ChangeField.RESPONSE:
        return ("response", target.question_id)
    if field_kind is ChangeField.ROLE_RESPONSE:
        return ("role_response", target.question_id, target.role_id)
    if field_kind is ChangeField.NOTE:
        return ("note", target.question_id)
    if field_kind is ChangeField.EVIDENCE:
        return ("evidence", target.question_id, target.evidence_id)
    if field_kind is ChangeField.METADATA:
        return ("metadata", target.metadata_key.value if target.metadata_key else "")
    if field_kind is ChangeField.CONFLICT_RESOLUTION:
        return ("conflict_resolution", target.question_id)
    if field_kind is ChangeField.ASSIGNMENT:
        return ("assignment", target.role_id)
    if field_kind is ChangeField.WORKFLOW_STAGE:
        return ("workflow_stage", target.stage_id)
    if field_kind is ChangeField.APPROVAL and target.version_id is not None:
        return ("version_approval", target.version_id)
    if field_kind is ChangeField.APPROVAL:
        return ("approval", target.stage_id)
    if field_kind is ChangeField.REVIEW_COMMENT:
        return ("review_comment", target.comment_id)
    raise ValueError(f"Unhandled change field {field_kind}")


# =============================================================================
# CONSENSUS RECORDS
# =============================================================================

@dataclass(frozen=True)
class ConflictResolution:
    """
    How a multi-role disagreement was settled.

    A stub (resolved_by is None) exists while a conflict awaits a decision.
    """
    method: ConsensusMethod
    resolved_by: Optional[str] = None
    resolved_at: Optional[Timestamp] = None
    rationale: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_by is not None and self.resolved_at is not None

    @staticmethod
    def stub() -> ConflictResolution:
        return ConflictResolution(method=ConsensusMethod.REVIEWER_DECISION)


@dataclass(frozen=True)
class RoleResponse:
    """One question's answers across roles, and the consensus derived from them."""
    question_id: str
    responses: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)
    consensus: Optional[int] = None
    conflict_resolution: Optional[ConflictResolution] = None
    comments: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    confidence: Tuple[Tuple[str, float], ...] = field(default_factory=tuple)
    status: ConsensusStatus = ConsensusStatus.UNANSWERED

    def response_map(self) -> Dict[str, int]:
        return dict(self.responses)

    def comment_map(self) -> Dict[str, str]:
        return dict(self.comments)

    def confidence_map(self) -> Dict[str, float]:
        return dict(self.confidence)

    @property
    def is_conflicted(self) -> bool:
        return self.status is ConsensusStatus.CONFLICTED

    def with_answer(
        self,
        role_id: str,
        value: Optional[int],
        confidence: float,
        comment: Optional[str]
    ) -> RoleResponse:
        """New record with the role's answer replaced (None withdraws it)."""
        responses = self.response_map()
        confidences = self.confidence_map()
        comments = self.comment_map()
        if value is None:
            responses.pop(role_id, None)
            confidences.pop(role_id, None)
            comments.pop(role_id, None)
        else:
            responses[role_id] = value
            confidences[role_id] = confidence
            if comment:
                comments[role_id] = comment
        return replace(
            self,
            responses=_pairs(responses),
            confidence=_pairs(confidences),
            comments=_pairs(comments),
        )


@dataclass(frozen=True)
class MergeConflict:
    """A question two or more merge sources changed to different values."""
    question_id: str
    base_value: Optional[int]
    source_values: Tuple[Tuple[str, Optional[int]], ...]


# =============================================================================
# VERSION RECORDS
# =============================================================================

@dataclass(frozen=True)
class VersionMetadata:
    """Integer-only summary so the checksum is stable across platforms."""
    total_questions: int = 0
    answered_questions: int = 0
    overall_score: int = 0
    completion_rate: int = 0
    time_spent_seconds: int = 0


@dataclass(frozen=True)
class AssessmentVersion:
    """
    Immutable snapshot of an assessment.

    INVARIANTS:
    - parent_id is None only for the baseline
    - a merge version has two or more merged_from sources
    - checksum == hash(canonical(content) + canonical(metadata))
    """
    version_id: str
    assessment_id: str
    version_number: int
    parent_id: Optional[str]
    content: AssessmentContent
    metadata: VersionMetadata
    checksum: str
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    branch_name: Optional[str] = None
    merged_from: Tuple[str, ...] = field(default_factory=tuple)
    version_type: VersionType = VersionType.SNAPSHOT
    description: str = ""
    tags: Tuple[str, ...] = field(default_factory=tuple)
    created_at: Optional[Timestamp] = None
    created_by: str = ""
    anchor_sequence: int = 0
    change_range: Optional[Tuple[int, int]] = None
    touched_questions: Tuple[str, ...] = field(default_factory=tuple)
    conflicts: Tuple[MergeConflict, ...] = field(default_factory=tuple)
    conflict_resolutions: Tuple[Tuple[str, ConflictResolution], ...] = field(default_factory=tuple)
    approved_by: Optional[str] = None
    approved_at: Optional[Timestamp] = None
    size: int = 0

    @property
    def is_baseline(self) -> bool:
        return self.parent_id is None

    @property
    def is_merge(self) -> bool:
        return len(self.merged_from) >= 2

    @property
    def branch_key(self) -> str:
        return self.branch_name or TRUNK

    @property
    def unresolved_conflicts(self) -> Tuple[MergeConflict, ...]:
        resolved = {q for q, r in self.conflict_resolutions if r.is_resolved}
        return tuple(c for c in self.conflicts if c.question_id not in resolved)


@dataclass(frozen=True)
class Assessment:
    """Root aggregate. Owns the version history through head_version_id."""
    assessment_id: str
    framework_id: str
    head_version_id: Optional[str] = None
    created_at: Optional[Timestamp] = None
    created_by: str = ""
    title: str = ""


# =============================================================================
# ASSIGNMENT & WORKFLOW RECORDS
# =============================================================================

@dataclass(frozen=True)
class AssignedRole:
    """A role bound to a subset of sections and categories."""
    role_id: str
    assigned_sections: Tuple[str, ...] = field(default_factory=tuple)
    assigned_categories: Tuple[str, ...] = field(default_factory=tuple)
    status: AssignmentStatus = AssignmentStatus.PENDING
    progress: float = 0.0
    assigned_at: Optional[Timestamp] = None
    user_id: Optional[str] = None
    completed_at: Optional[Timestamp] = None
    deadline: Optional[Timestamp] = None

    def __post_init__(self):
        if not 0.0 <= self.progress <= 100.0:
            raise ValueError("progress must be between 0 and 100")

    @property
    def scope_tokens(self) -> Tuple[str, ...]:
        """Canonical scope used as the assignment's recorded log value."""
        return tuple(
            sorted(f"section:{s}" for s in self.assigned_sections)
            + sorted(f"category:{c}" for c in self.assigned_categories)
        )


@dataclass(frozen=True)
class WorkflowStage:
    stage_id: str
    kind: StageKind
    name: str
    required_roles: Tuple[str, ...] = field(default_factory=tuple)
    order: int = 0
    status: StageStatus = StageStatus.PENDING
    deadline: Optional[Timestamp] = None
    weight: float = 1.0
    approval_required: bool = False
    description: str = ""

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError("stage weight must be non-negative")


@dataclass(frozen=True)
class ReviewWorkflow:
    """
    Ordered stage pipeline.

    INVARIANT: stage i+1 is never ACTIVE while stage i is open.
    """
    stages: Tuple[WorkflowStage, ...] = field(default_factory=tuple)
    enabled: bool = True
    approval_required: bool = False
    reviewers: Tuple[str, ...] = field(default_factory=tuple)
    escalation_days: int = 3
    review_sections: Tuple[Tuple[str, Tuple[str, ...]], ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(
            self, 'stages', tuple(sorted(self.stages, key=lambda s: s.order))
        )
        ids = [s.stage_id for s in self.stages]
        if len(ids) != len(set(ids)):
            raise ValueError("stage ids must be unique")
        object.__setattr__(self, 'review_sections', tuple(sorted(
            (reviewer, tuple(sections)) for reviewer, sections in dict(self.review_sections).items()
        )))

    def review_section_map(self) -> Dict[str, Tuple[str, ...]]:
        """Reviewer id to the sections they cover. Absent reviewers cover all."""
        return dict(self.review_sections)

    @property
    def current_stage(self) -> Optional[WorkflowStage]:
        for stage in self.stages:
            if stage.status is StageStatus.ACTIVE:
                return stage
        for stage in self.stages:
            if stage.status is StageStatus.PENDING:
                return stage
        return None

    @property
    def is_completed(self) -> bool:
        return bool(self.stages) and all(s.status.is_closed for s in self.stages)

    def stage(self, stage_id: str) -> Optional[WorkflowStage]:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def index_of(self, stage_id: str) -> int:
        for i, stage in enumerate(self.stages):
            if stage.stage_id == stage_id:
                return i
        raise KeyError(stage_id)

    def with_stage(self, updated: WorkflowStage) -> ReviewWorkflow:
        return replace(self, stages=tuple(
            updated if s.stage_id == updated.stage_id else s for s in self.stages
        ))


# =============================================================================
# REVIEW COMMENTS
# =============================================================================

@dataclass(frozen=True)
class ReviewComment:
    """
    A reviewer's remark on one question, folded from REVIEW_COMMENT changes.

    INVARIANT: resolved_at and resolved_by are set exactly when resolved.
    """
    comment_id: str
    question_id: str
    comment: str
    severity: CommentSeverity
    created_by: str
    created_at: Timestamp
    resolved: bool = False
    resolved_at: Optional[Timestamp] = None
    resolved_by: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return not self.resolved

    @property
    def blocks(self) -> bool:
        return self.is_open and self.severity is CommentSeverity.CRITICAL

    def resolve(self, actor: str, at: Timestamp) -> ReviewComment:
        return replace(self, resolved=True, resolved_at=at, resolved_by=actor)


# =============================================================================
# DERIVED RECORDS (never persisted independently)
# =============================================================================

@dataclass(frozen=True)
class AssessmentBlocker:
    blocker_id: str
    kind: BlockerKind
    description: str
    severity: Severity
    affected_sections: Tuple[str, ...] = field(default_factory=tuple)
    affected_questions: Tuple[str, ...] = field(default_factory=tuple)
    created_at: Optional[Timestamp] = None


@dataclass(frozen=True)
class PendingAction:
    action_id: str
    kind: PendingActionKind
    assigned_to: str
    description: str
    priority: Severity
    due_date: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None


@dataclass(frozen=True)
class WorkflowStatus:
    current_stage: Optional[str]
    overall_progress: float
    role_progress: Tuple[Tuple[str, float], ...]
    pending_actions: Tuple[PendingAction, ...]
    blockers: Tuple[AssessmentBlocker, ...]
    is_completed: bool = False


@dataclass(frozen=True)
class WorkflowReviewer:
    """A configured reviewer, the sections they cover and their comments so far."""
    reviewer_id: str
    review_sections: Tuple[str, ...]
    status: ReviewerStatus
    comments: Tuple[ReviewComment, ...] = field(default_factory=tuple)

    @property
    def open_comments(self) -> Tuple[ReviewComment, ...]:
        return tuple(c for c in self.comments if c.is_open)
