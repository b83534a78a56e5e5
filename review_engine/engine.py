"""
Engine Orchestration Module

Unified interface coordinating the change log, consensus, version store,
workflow and blocker tracker for many assessments.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts
2. Every mutation appends to the change log first; all other state is
   folded from log entries through one apply path
3. All operations are traceable through observability
4. Persistence and notifications are boundary calls made after the core
   state is updated; their failures are audited, never raised

MUTATION FLOW:
==============
1. Optimistic concurrency: the caller's expected head must be current
2. Change appended (plus automated consensus / merge changes)
3. Version committed (automatic snapshot, explicit, merge or resolution)
4. Workflow re-evaluated
5. Blockers and pending actions recomputed
6. Notification hooks fired once the lock is released (fire-and-forget)

Steps 1-5 run under the assessment's lock; the engine never retries.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple
import os
import threading

from .contracts.audit import AuditEventType
from .contracts.base import (
    Timestamp, AssessmentId, ChangeKind, ChangeField, MetadataKey, ImpactLevel,
    ReviewStatus, ConfidenceLevel, ApprovalStatus, VersionType,
    ConsensusMethod, StageStatus, CommentSeverity, ErrorCode, TRUNK, branch_key,
    derived_id
)
from .contracts.errors import (
    ReviewEngineError, VersionConflictError, InvalidChangeError,
    InvalidTransitionError, NotFoundError
)
from .contracts.records import (
    Assessment, AssessmentBlocker, AssessmentChange, AssessmentContent,
    AssessmentVersion, AssignedRole, AssignmentPayload, ChangeDraft,
    ChangeTarget, ChangeValue, ConflictResolution, MergeConflict,
    PendingAction, ResolutionPayload, ReviewComment, ReviewCommentPayload,
    ReviewWorkflow, RoleAnswerPayload, RoleResponse, StagePayload,
    WorkflowReviewer, WorkflowStage, WorkflowStatus
)
from .contracts.structure import AssessmentStructure
from .consensus import ConsensusConfig, ConsensusEngine
from .temporal import ChangeLog, VersionStore, LogicalClock
from .workflow import (
    WorkflowStateMachine, default_workflow, BlockerConfig, BlockerTracker,
    AttentionInputs, ReviewCommentBoard, reviewer_standing, review_sections
)
from .workflow.comments import COMMENT_OPEN, COMMENT_RESOLVED
from .storage import StorageBackend, StorageConfig, StorageWriteResult, StoredAssessment
from .observability import ObservabilityEngine, ObservabilityConfig
from .notifications import NotificationDispatcher, NotificationHook


# Marks "fill old_value from the log" in calls that accept an expected value
_UNSET = object()

_ENV_PREFIX = "REVIEW_ENGINE_"

_VERSION_REVIEW = {
    ApprovalStatus.APPROVED: ReviewStatus.APPROVED,
    ApprovalStatus.REJECTED: ReviewStatus.REJECTED,
}


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """
    Unified configuration for the engine.

    auto_version commits a snapshot on the acted-on branch after every
    content mutation, so each accepted submission moves the branch head.
    """
    consensus: ConsensusConfig = None
    blockers: BlockerConfig = None
    storage: StorageConfig = None
    observability: ObservabilityConfig = None
    auto_version: bool = True

    def __post_init__(self):
        self.consensus = self.consensus or ConsensusConfig()
        self.blockers = self.blockers or BlockerConfig()
        self.storage = self.storage or StorageConfig()
        self.observability = self.observability or ObservabilityConfig()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        """Build a config from REVIEW_ENGINE_* variables; unset ones keep defaults."""
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(_ENV_PREFIX + name)
            return value if value not in (None, "") else None

        consensus = ConsensusConfig()
        if get("TOLERANCE") is not None or get("CONSENSUS_METHOD") is not None:
            consensus = ConsensusConfig(
                tolerance=int(get("TOLERANCE") or consensus.tolerance),
                default_method=ConsensusMethod(get("CONSENSUS_METHOD") or consensus.default_method.value),
            )

        defaults = BlockerConfig()
        escalation = get("ESCALATION_DAYS")
        blockers = BlockerConfig(
            urgent_days=int(get("URGENT_DAYS") or defaults.urgent_days),
            soon_days=int(get("SOON_DAYS") or defaults.soon_days),
            escalation_days=int(escalation) if escalation is not None else None,
            coordinator=get("COORDINATOR") or defaults.coordinator,
        )

        storage = StorageConfig(
            backend_type=get("STORAGE") or "memory",
            storage_dir=get("STORAGE_DIR"),
        )

        auto_version = get("AUTO_VERSION")
        return cls(
            consensus=consensus,
            blockers=blockers,
            storage=storage,
            auto_version=_flag(auto_version) if auto_version is not None else True,
        )


def _value_kind(old: ChangeValue, new: ChangeValue, added: ChangeKind,
                modified: ChangeKind, removed: ChangeKind) -> ChangeKind:
    if new is None:
        return removed
    if old is None:
        return added
    return modified


def _confidence_level(confidence: float) -> ConfidenceLevel:
    if confidence >= 0.75:
        return ConfidenceLevel.HIGH
    if confidence >= 0.4:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


class AssessmentState:
    """
    In-memory state of one open assessment.

    Everything except the change log and the version store is derived by
    folding log entries; hydration rebuilds it from persisted records.
    """

    def __init__(
        self,
        assessment: Assessment,
        structure: AssessmentStructure,
        workflow: ReviewWorkflow,
        clock: LogicalClock,
        consensus_config: ConsensusConfig
    ):
        self.assessment = assessment
        self.structure = structure
        self.definition = workflow
        self.consensus_config = consensus_config
        self.log = ChangeLog(assessment.assessment_id, clock)
        self.store = VersionStore(assessment.assessment_id, self.log, structure, clock)
        self.assignments: Dict[str, AssignedRole] = {}
        self.consensus: Dict[str, ConsensusEngine] = {
            TRUNK: ConsensusEngine(structure, consensus_config, self.assignments)
        }
        self.comments: Dict[str, ReviewCommentBoard] = {TRUNK: ReviewCommentBoard()}
        self.machine = WorkflowStateMachine(workflow)
        self.approvals: Set[str] = set()
        self.blockers: Tuple[AssessmentBlocker, ...] = ()
        self.outbox: List[Tuple] = []
        self.lock = threading.Lock()

    @property
    def assessment_id(self) -> str:
        return self.assessment.assessment_id

    @property
    def trunk(self) -> ConsensusEngine:
        return self.consensus[TRUNK]

    def engine_for(self, branch: Optional[str]) -> ConsensusEngine:
        engine = self.consensus.get(branch_key(branch))
        if engine is None:
            raise NotFoundError(f"No branch named {branch_key(branch)}", branch=branch_key(branch))
        return engine

    def rebuild_branch(self, branch: Optional[str]) -> ConsensusEngine:
        changes = self.log.lineage_changes(branch, self.log.head_sequence)
        engine = ConsensusEngine.from_changes(
            self.structure, self.consensus_config, self.assignments, changes
        )
        self.comments[branch_key(branch)] = ReviewCommentBoard.from_changes(changes)
        self.consensus[branch_key(branch)] = engine
        return engine

    def board_for(self, branch: Optional[str]) -> ReviewCommentBoard:
        board = self.comments.get(branch_key(branch))
        if board is None:
            raise NotFoundError(f"No branch named {branch_key(branch)}", branch=branch_key(branch))
        return board

    def take_notices(self) -> List[Tuple]:
        """Drain the queued hook notices. Call with the lock held."""
        notices, self.outbox = self.outbox, []
        return notices


class AssessmentReviewEngine:
    """
    Collaborative assessment review engine.

    LAYER FLOW:
    ===========
    1. Change Log: every mutation, in one total order
    2. Consensus: per-branch role answers folded from the log
    3. Version Store: immutable snapshots in a DAG
    4. Workflow: stage statuses folded from the log
    5. Blockers: recomputed after every accepted mutation
    6. Observability: records all of the above

    Mutating calls take expected_head, the head of the branch acted on
    (the trunk head for assessment-wide changes such as assignments and
    stage transitions).
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        storage: Optional[StorageBackend] = None,
        notifier: Optional[object] = None,
        clock: Optional[LogicalClock] = None
    ):
        self._config = config or EngineConfig()
        self._storage = storage or self._config.storage.create_backend()
        if isinstance(notifier, NotificationHook):
            notifier = NotificationDispatcher([notifier])
        self._notifier: NotificationDispatcher = notifier or NotificationDispatcher()
        self._clock = clock or LogicalClock.live()
        self._tracker = BlockerTracker(self._config.blockers)
        self._observability = ObservabilityEngine(self._config.observability)

        self._states: Dict[str, AssessmentState] = {}
        self._registry_lock = threading.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def storage(self) -> StorageBackend:
        return self._storage

    @property
    def observability(self) -> ObservabilityEngine:
        return self._observability

    @property
    def clock(self) -> LogicalClock:
        return self._clock

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def create_assessment(
        self,
        structure: AssessmentStructure,
        actor: str,
        workflow: Optional[ReviewWorkflow] = None,
        baseline: Optional[Mapping[str, int]] = None,
        title: str = "",
        seed: Optional[str] = None
    ) -> Assessment:
        """
        Create an assessment with its baseline version.

        baseline seeds the trunk's response map (question -> option value).
        """
        workflow = workflow or default_workflow()
        created_at = self._clock.now()
        assessment_id = AssessmentId.generate(
            structure.framework_id, seed or f"{created_at.to_iso()}|{actor}|{title}"
        ).value

        with self._registry_lock:
            if assessment_id in self._states or self._storage.load_assessment(assessment_id):
                raise InvalidChangeError(
                    f"Assessment {assessment_id} already exists",
                    code=ErrorCode.STRUCTURAL_INCONSISTENCY,
                    assessment_id=assessment_id,
                )

            validator = ConsensusEngine(structure, self._config.consensus)
            for question_id, value in (baseline or {}).items():
                if not structure.has_question(question_id):
                    raise InvalidChangeError(
                        f"Unknown question {question_id}",
                        code=ErrorCode.UNKNOWN_QUESTION,
                        question_id=question_id,
                    )
                validator.validate_value(question_id, value)

            known_sections = {s.section_id for s in structure.sections}
            for reviewer_id, sections in workflow.review_sections:
                unknown = sorted(set(sections) - known_sections)
                if unknown:
                    raise InvalidChangeError(
                        f"Reviewer {reviewer_id} covers unknown sections {', '.join(unknown)}",
                        code=ErrorCode.OUT_OF_SCOPE,
                        reviewer=reviewer_id,
                    )

            assessment = Assessment(
                assessment_id=assessment_id,
                framework_id=structure.framework_id,
                created_at=created_at,
                created_by=actor,
                title=title,
            )
            state = AssessmentState(
                assessment, structure, workflow, self._clock, self._config.consensus
            )
            content = AssessmentContent.from_maps(responses=baseline or {})
            state.log.seed_trunk(content)
            version = state.store.create_baseline(content, actor)
            self._states[assessment_id] = state

        with state.lock:
            self._record_version(state, version, "baseline")
            self._advance(state, actor)
            self._refresh(state)
            notices = state.take_notices()
        self._observability.log_audit(
            "create_assessment", assessment_id, details=f"baseline {version.version_id}",
            entity_type="assessment"
        )
        self._dispatch(state, notices)
        return state.assessment

    def open_assessment(self, assessment_id: str) -> Assessment:
        """Return an open assessment, hydrating it from persistence if needed."""
        return self._state(assessment_id).assessment

    def list_assessments(self) -> List[str]:
        return sorted(set(self._states) | set(self._storage.list_assessments()))

    def _state(self, assessment_id: str) -> AssessmentState:
        with self._registry_lock:
            state = self._states.get(assessment_id)
            if state is None:
                state = self._hydrate(assessment_id)
                self._states[assessment_id] = state
            return state

    def _hydrate(self, assessment_id: str) -> AssessmentState:
        """
        Rebuild an assessment from persisted records.

        VERIFIES:
        1. Every change links into the hash chain
        2. Every version matches its checksum
        Either failure is fatal and propagates.
        """
        stored = self._storage.load_assessment(assessment_id)
        if stored is None:
            raise NotFoundError(f"Unknown assessment {assessment_id}", assessment_id=assessment_id)
        versions = self._storage.load_versions(assessment_id)
        if not versions or not versions[0].is_baseline:
            raise NotFoundError(
                f"Assessment {assessment_id} has no baseline version", assessment_id=assessment_id
            )

        state = AssessmentState(
            stored.assessment, stored.structure, stored.workflow,
            self._clock, self._config.consensus
        )
        try:
            state.log.seed_trunk(versions[0].content)
            for change in self._storage.load_changes(assessment_id):
                state.log.load_verified_entry(change)
            for version in versions:
                if not state.log.has_branch(version.branch_name):
                    parent = state.store.get(version.parent_id)
                    state.log.open_branch(
                        version.branch_name, parent.branch_name, parent.anchor_sequence
                    )
                state.store.load_version(version)
        except ReviewEngineError as e:
            self._observability.log_audit(
                "hydrate", assessment_id, outcome="failure", details=e.message,
                layer="storage", event_type=AuditEventType.INTEGRITY
            )
            raise

        # Assessment-wide state first; consensus progress depends on assignments
        for change in state.log.entries():
            if not change.field.is_content:
                self._apply(state, change)
        for name in state.log.branches():
            state.rebuild_branch(name)

        state.assessment = Assessment(
            assessment_id=stored.assessment.assessment_id,
            framework_id=stored.assessment.framework_id,
            head_version_id=state.store.head_id(None),
            created_at=stored.assessment.created_at,
            created_by=stored.assessment.created_by,
            title=stored.assessment.title,
        )
        state.blockers = self._tracker.blockers(self._attention_inputs(state, self._clock.peek()))
        self._observability.log_audit(
            "hydrate", assessment_id,
            details=f"{len(state.log)} changes, {len(state.store)} versions",
            layer="storage", event_type=AuditEventType.INTEGRITY
        )
        return state

    # =========================================================================
    # RESPONSES & CONSENSUS
    # =========================================================================

    def submit_response(
        self,
        assessment_id: str,
        role_id: str,
        question_id: str,
        value: Optional[int],
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None,
        confidence: float = 1.0,
        comment: Optional[str] = None,
        expected_value: object = _UNSET
    ) -> RoleResponse:
        """
        Record a role's answer (None withdraws it) and recompute consensus.

        expected_value, when given, is the role answer the caller last saw;
        a stale one raises InvalidChangeError.
        """
        with self._mutation(assessment_id, "submit_response") as state:
            self._guard(state, expected_head, branch)
            engine = state.engine_for(branch)
            engine.validate_answer(role_id, question_id, value)
            if not 0.0 <= confidence <= 1.0:
                raise InvalidChangeError(
                    "confidence must be between 0.0 and 1.0", code=ErrorCode.INVALID_VALUE
                )
            payload = RoleAnswerPayload(confidence=confidence, comment=comment)

            target = self._question_target(state, question_id, role_id=role_id)
            current = state.log.current_value(ChangeField.ROLE_RESPONSE, target, branch)
            old = current if expected_value is _UNSET else expected_value
            was_conflicted = bool(engine.role_response(question_id)
                                  and engine.role_response(question_id).is_conflicted)

            role_change = self._append(state, ChangeDraft(
                kind=_value_kind(old, value, ChangeKind.RESPONSE_ADDED,
                                 ChangeKind.RESPONSE_MODIFIED, ChangeKind.RESPONSE_REMOVED),
                field=ChangeField.ROLE_RESPONSE,
                target=target,
                actor=actor,
                old_value=old,
                new_value=value,
                branch=branch,
                confidence_level=_confidence_level(confidence),
                payload=payload,
            ))

            record = engine.role_response(question_id)
            if record.is_conflicted and not was_conflicted:
                self._observability.collect_metric("consensus_conflicts_total", 1.0)
                self._observability.log_audit(
                    "consensus_conflict", question_id,
                    details=f"roles disagree beyond tolerance on {branch_key(branch)}",
                    layer="consensus"
                )
            self._sync_consensus(state, question_id, branch, actor, (role_change.change_id,))
            self._finish(state, actor, branch, description=f"Response to {question_id}")
            return state.engine_for(branch).role_response(question_id)

    def resolve_conflict(
        self,
        assessment_id: str,
        question_id: str,
        resolver: str,
        expected_head: Optional[str],
        method: ConsensusMethod = ConsensusMethod.REVIEWER_DECISION,
        value: Optional[int] = None,
        rationale: Optional[str] = None,
        branch: Optional[str] = None
    ) -> RoleResponse:
        """
        Settle a conflicted question. Computed methods derive the value from
        the role answers ignoring tolerance; manual and reviewer-decision
        need an explicit value.
        """
        with self._mutation(assessment_id, "resolve_conflict") as state:
            self._guard(state, expected_head, branch)
            engine = state.engine_for(branch)
            record = engine.role_response(question_id)
            if record is None or not record.is_conflicted:
                raise InvalidChangeError(
                    f"No unresolved consensus conflict on {question_id}",
                    code=ErrorCode.NOT_FOUND,
                    question_id=question_id,
                )
            decided = engine.resolution_value(question_id, method, value)
            change = self._append_resolution(state, question_id, decided, method, rationale, resolver, branch)
            self._sync_consensus(state, question_id, branch, resolver, (change.change_id,))
            self._finish(state, resolver, branch, description=f"Resolved {question_id}")
            return state.engine_for(branch).role_response(question_id)

    def record_note(
        self,
        assessment_id: str,
        question_id: str,
        text: Optional[str],
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None,
        expected_value: object = _UNSET
    ) -> AssessmentChange:
        """Set (or with None, remove) the note on a question."""
        with self._mutation(assessment_id, "record_note") as state:
            self._guard(state, expected_head, branch)
            target = self._question_target(state, question_id)
            current = state.log.current_value(ChangeField.NOTE, target, branch)
            old = current if expected_value is _UNSET else expected_value
            change = self._append(state, ChangeDraft(
                kind=_value_kind(old, text or None, ChangeKind.NOTE_ADDED,
                                 ChangeKind.NOTE_MODIFIED, ChangeKind.NOTE_REMOVED),
                field=ChangeField.NOTE,
                target=target,
                actor=actor,
                old_value=old,
                new_value=text or None,
                branch=branch,
            ))
            self._finish(state, actor, branch, description=f"Note on {question_id}")
            return change

    def link_evidence(
        self,
        assessment_id: str,
        question_id: str,
        evidence_id: str,
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None
    ) -> AssessmentChange:
        return self._evidence(
            assessment_id, "link_evidence", question_id, evidence_id, True, actor, expected_head, branch
        )

    def unlink_evidence(
        self,
        assessment_id: str,
        question_id: str,
        evidence_id: str,
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None
    ) -> AssessmentChange:
        return self._evidence(
            assessment_id, "unlink_evidence", question_id, evidence_id, False, actor, expected_head, branch
        )

    def _evidence(self, assessment_id, action, question_id, evidence_id, link, actor, expected_head, branch):
        with self._mutation(assessment_id, action) as state:
            self._guard(state, expected_head, branch)
            target = self._question_target(state, question_id, evidence_id=evidence_id)
            current = state.log.current_value(ChangeField.EVIDENCE, target, branch)
            if link and current is not None:
                raise InvalidChangeError(
                    f"Evidence {evidence_id} is already linked to {question_id}",
                    question_id=question_id, evidence_id=evidence_id,
                )
            if not link and current is None:
                raise InvalidChangeError(
                    f"Evidence {evidence_id} is not linked to {question_id}",
                    code=ErrorCode.NOT_FOUND,
                    question_id=question_id, evidence_id=evidence_id,
                )
            change = self._append(state, ChangeDraft(
                kind=ChangeKind.EVIDENCE_LINKED if link else ChangeKind.EVIDENCE_UNLINKED,
                field=ChangeField.EVIDENCE,
                target=target,
                actor=actor,
                old_value=current,
                new_value=evidence_id if link else None,
                branch=branch,
            ))
            self._finish(state, actor, branch, description=f"Evidence on {question_id}")
            return change

    def record_metadata(
        self,
        assessment_id: str,
        key: MetadataKey,
        value: ChangeValue,
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None
    ) -> AssessmentChange:
        with self._mutation(assessment_id, "record_metadata") as state:
            self._guard(state, expected_head, branch)
            target = ChangeTarget(metadata_key=key)
            change = self._append(state, ChangeDraft(
                kind=ChangeKind.METADATA_UPDATED,
                field=ChangeField.METADATA,
                target=target,
                actor=actor,
                old_value=state.log.current_value(ChangeField.METADATA, target, branch),
                new_value=value,
                branch=branch,
            ))
            self._finish(state, actor, branch, description=f"Metadata {key.value}")
            return change

    def record_time_spent(
        self,
        assessment_id: str,
        seconds: int,
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None
    ) -> AssessmentChange:
        if seconds < 0:
            raise InvalidChangeError("time spent cannot be negative", code=ErrorCode.INVALID_VALUE)
        return self.record_metadata(
            assessment_id, MetadataKey.TIME_SPENT, int(seconds), actor, expected_head, branch
        )

    # =========================================================================
    # ASSIGNMENTS
    # =========================================================================

    def assign_role(
        self,
        assessment_id: str,
        role_id: str,
        actor: str,
        expected_head: Optional[str],
        sections: Sequence[str] = (),
        categories: Sequence[str] = (),
        user_id: Optional[str] = None,
        deadline: Optional[Timestamp] = None
    ) -> AssignedRole:
        with self._mutation(assessment_id, "assign_role") as state:
            self._guard(state, expected_head, None)
            section_ids = tuple(sorted(set(sections)))
            category_ids = tuple(sorted(set(categories)))
            state.trunk.validate_scope(section_ids, category_ids)

            scope = AssignedRole(
                role_id=role_id, assigned_sections=section_ids, assigned_categories=category_ids
            ).scope_tokens
            target = ChangeTarget(role_id=role_id)
            self._append(state, ChangeDraft(
                kind=ChangeKind.STRUCTURE_CHANGED,
                field=ChangeField.ASSIGNMENT,
                target=target,
                actor=actor,
                old_value=state.log.current_value(ChangeField.ASSIGNMENT, target),
                new_value=scope,
                impact=ImpactLevel.MEDIUM,
                payload=AssignmentPayload(
                    sections=section_ids,
                    categories=category_ids,
                    user_id=user_id,
                    deadline=deadline,
                ),
            ))
            self._finish(state, actor, None, commit=False)
            return state.trunk.assignment(role_id, self._clock.peek())

    # =========================================================================
    # VERSIONS
    # =========================================================================

    def create_version(
        self,
        assessment_id: str,
        parent_id: str,
        actor: str,
        change_range: Optional[Tuple[int, int]] = None,
        version_type: VersionType = VersionType.SNAPSHOT,
        description: str = "",
        tags: Sequence[str] = ()
    ) -> AssessmentVersion:
        """
        Snapshot the parent branch's changes. parent_id is the caller's view
        of the branch head; a moved head raises VersionConflictError.
        """
        with self._mutation(assessment_id, "create_version") as state:
            version = state.store.create_version(
                parent_id, change_range, actor, version_type, description, tuple(tags)
            )
            self._record_version(state, version, "snapshot")
            self._advance(state, actor)
            self._refresh(state)
            return version

    def branch(
        self,
        assessment_id: str,
        from_version_id: str,
        branch_name: str,
        actor: str,
        description: str = ""
    ) -> AssessmentVersion:
        """Open a branch at a version. The source branch head does not move."""
        with self._mutation(assessment_id, "branch") as state:
            version = state.store.branch(from_version_id, branch_name, actor, description)
            state.rebuild_branch(branch_name)
            self._record_version(state, version, "branch")
            return version

    def merge(
        self,
        assessment_id: str,
        source_version_ids: Sequence[str],
        actor: str,
        description: str = ""
    ) -> Tuple[AssessmentVersion, Tuple[MergeConflict, ...]]:
        """
        Merge sources into the first source's branch.

        The first source must be its branch head. Questions touched by only
        one side, or set to the same value by every side, are taken over;
        the rest become MergeConflict entries and keep the target's value.
        """
        with self._mutation(assessment_id, "merge") as state:
            plan = state.store.plan_merge(source_version_ids)
            target_branch = plan.target_branch
            engines: Dict[str, ConsensusEngine] = {}

            for question_id, source_id in plan.copy_from:
                source = state.store.get(source_id)
                if source_id not in engines:
                    engines[source_id] = ConsensusEngine.from_changes(
                        state.structure, state.consensus_config, state.assignments,
                        state.log.lineage_changes(source.branch_name, source.anchor_sequence),
                    )
                self._copy_question(
                    state, question_id, source, engines[source_id], target_branch, actor
                )

            version, conflicts = state.store.commit_merge(plan, actor, description)
            self._record_version(state, version, "merge")
            if conflicts:
                self._observability.collect_metric("merge_conflicts_total", float(len(conflicts)))
                self._observability.log_audit(
                    "merge_conflicts", version.version_id,
                    details=",".join(c.question_id for c in conflicts),
                    layer="versioning", entity_type="version"
                )
            self._advance(state, actor)
            self._refresh(state)
            return version, conflicts

    def _copy_question(
        self,
        state: AssessmentState,
        question_id: str,
        source: AssessmentVersion,
        source_engine: ConsensusEngine,
        target_branch: Optional[str],
        actor: str
    ) -> None:
        """Append automated changes making the target's slot equal the source's."""
        target_engine = state.engine_for(target_branch)
        source_record = source_engine.role_response(question_id)
        target_record = target_engine.role_response(question_id)
        source_answers = source_record.response_map() if source_record else {}
        target_answers = target_record.response_map() if target_record else {}
        reason = f"merged from {source.version_id}"
        related: List[str] = []

        for role_id in sorted(set(source_answers) | set(target_answers)):
            value = source_answers.get(role_id)
            if value == target_answers.get(role_id):
                continue
            target = self._question_target(state, question_id, role_id=role_id)
            old = state.log.current_value(ChangeField.ROLE_RESPONSE, target, target_branch)
            confidence = source_record.confidence_map().get(role_id, 1.0) if source_record else 1.0
            change = self._append(state, ChangeDraft(
                kind=_value_kind(old, value, ChangeKind.RESPONSE_ADDED,
                                 ChangeKind.RESPONSE_MODIFIED, ChangeKind.RESPONSE_REMOVED),
                field=ChangeField.ROLE_RESPONSE,
                target=target,
                actor=actor,
                old_value=old,
                new_value=value,
                branch=target_branch,
                reason=reason,
                automated=True,
                confidence_level=_confidence_level(confidence),
                payload=RoleAnswerPayload(
                    confidence=confidence,
                    comment=source_record.comment_map().get(role_id) if source_record else None,
                ),
            ))
            related.append(change.change_id)

        resolution = source_record.conflict_resolution if source_record else None
        if resolution is not None and resolution.is_resolved:
            change = self._append_resolution(
                state, question_id, source_record.consensus, resolution.method,
                resolution.rationale, actor, target_branch, automated=True, reason=reason,
            )
            related.append(change.change_id)

        self._copy_slot(
            state, ChangeField.RESPONSE, self._question_target(state, question_id),
            source.content.response_map().get(question_id), target_branch, actor, reason, related,
            (ChangeKind.RESPONSE_ADDED, ChangeKind.RESPONSE_MODIFIED, ChangeKind.RESPONSE_REMOVED),
        )
        self._copy_slot(
            state, ChangeField.NOTE, self._question_target(state, question_id),
            source.content.note_map().get(question_id), target_branch, actor, reason, related,
            (ChangeKind.NOTE_ADDED, ChangeKind.NOTE_MODIFIED, ChangeKind.NOTE_REMOVED),
        )

        source_evidence = set(source.content.evidence_map().get(question_id, ()))
        target_evidence = set(state.log.evidence_ids(target_branch, question_id))
        for evidence_id in sorted(source_evidence | target_evidence):
            linked = evidence_id in source_evidence
            self._copy_slot(
                state, ChangeField.EVIDENCE,
                self._question_target(state, question_id, evidence_id=evidence_id),
                evidence_id if linked else None, target_branch, actor, reason, related,
                (ChangeKind.EVIDENCE_LINKED, ChangeKind.EVIDENCE_LINKED, ChangeKind.EVIDENCE_UNLINKED),
            )

    def _copy_slot(self, state, field_kind, target, value, branch, actor, reason, related, kinds):
        old = state.log.current_value(field_kind, target, branch)
        if old == value:
            return
        self._append(state, ChangeDraft(
            kind=_value_kind(old, value, *kinds),
            field=field_kind,
            target=target,
            actor=actor,
            old_value=old,
            new_value=value,
            branch=branch,
            reason=reason,
            related_changes=tuple(related),
            automated=True,
        ))

    def resolve_merge_conflict(
        self,
        assessment_id: str,
        question_id: str,
        value: int,
        resolver: str,
        expected_head: Optional[str],
        rationale: Optional[str] = None,
        branch: Optional[str] = None
    ) -> AssessmentVersion:
        """Decide a merge conflict on the branch head and commit the outcome."""
        with self._mutation(assessment_id, "resolve_merge_conflict") as state:
            self._guard(state, expected_head, branch)
            head = state.store.head(branch)
            if question_id not in {c.question_id for c in head.unresolved_conflicts}:
                raise InvalidChangeError(
                    f"No unresolved merge conflict for {question_id}",
                    code=ErrorCode.NOT_FOUND,
                    question_id=question_id,
                )
            state.engine_for(branch).validate_value(question_id, value)

            change = self._append_resolution(
                state, question_id, value, ConsensusMethod.REVIEWER_DECISION,
                rationale, resolver, branch,
            )
            self._sync_consensus(state, question_id, branch, resolver, (change.change_id,))
            version = state.store.commit_resolution(
                head.version_id,
                question_id,
                ConflictResolution(
                    method=ConsensusMethod.REVIEWER_DECISION,
                    resolved_by=resolver,
                    resolved_at=change.timestamp,
                    rationale=rationale,
                ),
                resolver,
            )
            self._record_version(state, version, "resolution")
            self._finish(state, resolver, branch, commit=False)
            return version

    def set_version_approval(
        self,
        assessment_id: str,
        version_id: str,
        status: ApprovalStatus,
        approver: str
    ) -> AssessmentVersion:
        """
        Update a version's review status. Content and checksum stay fixed.

        The update is logged as an APPROVAL change on the version so the
        change log records who approved or rejected what and when.
        """
        with self._mutation(assessment_id, "set_version_approval") as state:
            state.store.get(version_id)
            target = ChangeTarget(version_id=version_id)
            change = self._append(state, ChangeDraft(
                kind=ChangeKind.METADATA_UPDATED,
                field=ChangeField.APPROVAL,
                target=target,
                actor=approver,
                old_value=state.log.current_value(ChangeField.APPROVAL, target),
                new_value=status.value,
                impact=ImpactLevel.HIGH,
                review_status=_VERSION_REVIEW.get(status, ReviewStatus.PENDING),
            ))
            version = state.store.set_approval(version_id, status, approver, change.timestamp)
            self._persist(state, "save_version", self._storage.save_version(version))
            self._refresh(state)
            return version

    # =========================================================================
    # WORKFLOW
    # =========================================================================

    def activate_stage(
        self,
        assessment_id: str,
        stage_id: str,
        actor: str,
        expected_head: Optional[str]
    ) -> ReviewWorkflow:
        with self._mutation(assessment_id, "activate_stage") as state:
            self._guard(state, expected_head, None)
            state.machine.check_activate(stage_id, frozenset(state.assignments))
            self._transition(state, stage_id, StageStatus.ACTIVE, actor)
            self._advance(state, actor)
            self._refresh(state)
            return state.machine.workflow

    def complete_stage(
        self,
        assessment_id: str,
        stage_id: str,
        actor: str,
        expected_head: Optional[str]
    ) -> ReviewWorkflow:
        """Explicit completion, for workflows with automatic progression disabled."""
        with self._mutation(assessment_id, "complete_stage") as state:
            self._guard(state, expected_head, None)
            progress, _, approvals, conflicted, scopes = self._workflow_inputs(state)
            state.machine.check_complete(stage_id, progress, approvals, conflicted, scopes)
            self._transition(state, stage_id, StageStatus.COMPLETED, actor)
            self._advance(state, actor)
            self._refresh(state)
            return state.machine.workflow

    def skip_stage(
        self,
        assessment_id: str,
        stage_id: str,
        actor: str,
        expected_head: Optional[str],
        reason: Optional[str] = None
    ) -> ReviewWorkflow:
        with self._mutation(assessment_id, "skip_stage") as state:
            self._guard(state, expected_head, None)
            state.machine.check_skip(stage_id)
            self._transition(state, stage_id, StageStatus.SKIPPED, actor, reason=reason)
            self._advance(state, actor)
            self._refresh(state)
            return state.machine.workflow

    def add_stage(
        self,
        assessment_id: str,
        stage: WorkflowStage,
        actor: str,
        expected_head: Optional[str]
    ) -> ReviewWorkflow:
        with self._mutation(assessment_id, "add_stage") as state:
            self._guard(state, expected_head, None)
            state.machine.check_add(stage)
            target = ChangeTarget(stage_id=stage.stage_id)
            self._append(state, ChangeDraft(
                kind=ChangeKind.STRUCTURE_CHANGED,
                field=ChangeField.WORKFLOW_STAGE,
                target=target,
                actor=actor,
                old_value=state.log.current_value(ChangeField.WORKFLOW_STAGE, target),
                new_value=StageStatus.PENDING.value,
                impact=ImpactLevel.MEDIUM,
                payload=StagePayload(stage=stage),
            ))
            self._advance(state, actor)
            self._refresh(state)
            return state.machine.workflow

    def reset_workflow(
        self,
        assessment_id: str,
        stage_id: str,
        actor: str,
        expected_head: Optional[str],
        reason: str
    ) -> ReviewWorkflow:
        """
        Administrative reset to an earlier stage. The target becomes active,
        later stages pending, and approvals of those stages are revoked.
        Automatic progression resumes with the next mutation.
        """
        with self._mutation(assessment_id, "reset_workflow") as state:
            self._guard(state, expected_head, None)
            plan = state.machine.reset_plan(stage_id)
            for reset_id, status in plan:
                self._transition(state, reset_id, status, actor, reason=reason, reset=True)
            reset_ids = {stage_id} | {s for s, _ in plan}
            for revoked in sorted(reset_ids & state.approvals):
                target = ChangeTarget(stage_id=revoked)
                self._append(state, ChangeDraft(
                    kind=ChangeKind.METADATA_UPDATED,
                    field=ChangeField.APPROVAL,
                    target=target,
                    actor=actor,
                    old_value=state.log.current_value(ChangeField.APPROVAL, target),
                    new_value=None,
                    impact=ImpactLevel.HIGH,
                    review_status=ReviewStatus.PENDING,
                    reason=reason,
                ))
            self._refresh(state)
            self._observability.log_audit(
                "workflow_reset", stage_id, details=reason, layer="workflow", entity_type="stage"
            )
            return state.machine.workflow

    def record_approval(
        self,
        assessment_id: str,
        stage_id: str,
        approver: str,
        expected_head: Optional[str],
        rationale: Optional[str] = None
    ) -> ReviewWorkflow:
        """Log the approval an approval-gated stage needs to complete."""
        with self._mutation(assessment_id, "record_approval") as state:
            self._guard(state, expected_head, None)
            stage = state.machine.stage(stage_id)
            if stage.status is not StageStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Stage {stage_id} is {stage.status.value}, only the active stage can be approved",
                    stage_id=stage_id,
                )
            if stage_id in state.approvals:
                raise InvalidTransitionError(f"Stage {stage_id} is already approved", stage_id=stage_id)
            target = ChangeTarget(stage_id=stage_id)
            self._append(state, ChangeDraft(
                kind=ChangeKind.METADATA_UPDATED,
                field=ChangeField.APPROVAL,
                target=target,
                actor=approver,
                old_value=state.log.current_value(ChangeField.APPROVAL, target),
                new_value=ApprovalStatus.APPROVED.value,
                impact=ImpactLevel.HIGH,
                review_status=ReviewStatus.APPROVED,
                reason=rationale,
            ))
            self._finish(state, approver, None, commit=False)
            return state.machine.workflow

    # =========================================================================
    # REVIEW COMMENTS
    # =========================================================================

    def add_review_comment(
        self,
        assessment_id: str,
        question_id: str,
        comment: str,
        actor: str,
        expected_head: Optional[str],
        severity: CommentSeverity = CommentSeverity.INFO,
        branch: Optional[str] = None
    ) -> ReviewComment:
        """
        Open a review comment on a question.

        Reviewers limited to some sections may only comment inside them.
        Comments belong to the branch they were made on and commit no version.
        """
        with self._mutation(assessment_id, "add_review_comment") as state:
            self._guard(state, expected_head, branch)
            target = self._question_target(state, question_id)
            if not comment or not comment.strip():
                raise InvalidChangeError(
                    "A review comment needs text",
                    code=ErrorCode.INVALID_VALUE,
                    question_id=question_id,
                )
            workflow = state.machine.workflow
            if actor in workflow.review_section_map():
                covered = review_sections(workflow, actor, state.structure)
                if target.section_id not in covered:
                    raise InvalidChangeError(
                        f"Reviewer {actor} does not review section {target.section_id}",
                        code=ErrorCode.OUT_OF_SCOPE,
                        question_id=question_id,
                    )
            comment_id = derived_id("cmt", assessment_id, str(state.log.head_sequence + 1))
            target = ChangeTarget(
                question_id=question_id,
                category_id=target.category_id,
                section_id=target.section_id,
                comment_id=comment_id,
            )
            self._append(state, ChangeDraft(
                kind=ChangeKind.NOTE_ADDED,
                field=ChangeField.REVIEW_COMMENT,
                target=target,
                actor=actor,
                old_value=None,
                new_value=COMMENT_OPEN,
                branch=branch,
                impact=(ImpactLevel.HIGH if severity is CommentSeverity.CRITICAL else ImpactLevel.LOW),
                payload=ReviewCommentPayload(comment=comment, severity=severity),
            ))
            self._finish(state, actor, branch, commit=False)
            return state.board_for(branch).get(comment_id)

    def resolve_review_comment(
        self,
        assessment_id: str,
        comment_id: str,
        actor: str,
        expected_head: Optional[str],
        branch: Optional[str] = None
    ) -> ReviewComment:
        with self._mutation(assessment_id, "resolve_review_comment") as state:
            self._guard(state, expected_head, branch)
            existing = state.board_for(branch).get(comment_id)
            if existing is None:
                raise InvalidChangeError(
                    f"Unknown review comment {comment_id}",
                    code=ErrorCode.NOT_FOUND,
                    comment_id=comment_id,
                )
            if existing.resolved:
                raise InvalidChangeError(
                    f"Review comment {comment_id} is already resolved",
                    code=ErrorCode.INVALID_VALUE,
                    comment_id=comment_id,
                )
            location = state.structure.locate(existing.question_id)
            self._append(state, ChangeDraft(
                kind=ChangeKind.NOTE_MODIFIED,
                field=ChangeField.REVIEW_COMMENT,
                target=ChangeTarget(
                    question_id=existing.question_id,
                    category_id=location.category_id,
                    section_id=location.section_id,
                    comment_id=comment_id,
                ),
                actor=actor,
                old_value=COMMENT_OPEN,
                new_value=COMMENT_RESOLVED,
                branch=branch,
            ))
            self._finish(state, actor, branch, commit=False)
            return state.board_for(branch).get(comment_id)

    # =========================================================================
    # READS
    # =========================================================================

    def assessment(self, assessment_id: str) -> Assessment:
        return self._state(assessment_id).assessment

    def structure(self, assessment_id: str) -> AssessmentStructure:
        return self._state(assessment_id).structure

    def workflow(self, assessment_id: str) -> ReviewWorkflow:
        return self._state(assessment_id).machine.workflow

    def head(self, assessment_id: str, branch: Optional[str] = None) -> AssessmentVersion:
        return self._state(assessment_id).store.head(branch)

    def heads(self, assessment_id: str) -> Dict[str, str]:
        return self._state(assessment_id).store.heads()

    def verify(self, assessment_id: str, version_id: str) -> bool:
        ok = self._state(assessment_id).store.verify(version_id)
        if not ok:
            self._observability.log_audit(
                "verify", version_id, outcome="failure", details="checksum mismatch",
                layer="versioning", event_type=AuditEventType.INTEGRITY, entity_type="version"
            )
        return ok

    def verify_log(self, assessment_id: str) -> bool:
        ok, error = self._state(assessment_id).log.verify_integrity()
        if not ok:
            self._observability.log_audit(
                "verify_log", assessment_id, outcome="failure", details=error.message,
                layer="versioning", event_type=AuditEventType.INTEGRITY
            )
        return ok

    def get_version(self, assessment_id: str, version_id: str) -> AssessmentVersion:
        """Verified version; raises ChecksumMismatchError for tampered content."""
        try:
            return self._state(assessment_id).store.get(version_id)
        except ReviewEngineError as e:
            if e.code is ErrorCode.CHECKSUM_MISMATCH:
                self._observability.log_audit(
                    "get_version", version_id, outcome="failure", details=e.message,
                    layer="versioning", event_type=AuditEventType.INTEGRITY, entity_type="version"
                )
            raise

    def history(self, assessment_id: str) -> Iterator[AssessmentVersion]:
        """Versions newest first. Each call returns a fresh iterator."""
        return self._state(assessment_id).store.history()

    def lineage(self, assessment_id: str, version_id: str) -> Tuple[AssessmentVersion, ...]:
        return self._state(assessment_id).store.lineage(version_id)

    def changes(
        self,
        assessment_id: str,
        from_seq: Optional[int] = None,
        until_seq: Optional[int] = None
    ) -> List[AssessmentChange]:
        return list(self._state(assessment_id).log.entries(from_seq, until_seq))

    def diff(self, assessment_id: str, version_a: str, version_b: str) -> List[AssessmentChange]:
        state = self._state(assessment_id)
        return state.log.diff(state.store.get(version_a), state.store.get(version_b))

    def replay(
        self,
        assessment_id: str,
        version_id: str,
        to_sequence: Optional[int] = None
    ) -> AssessmentContent:
        """Fold the version branch's later changes onto the version content."""
        state = self._state(assessment_id)
        version = state.store.get(version_id)
        end = to_sequence if to_sequence is not None else state.log.head_sequence
        return state.log.replay(version, end)

    def replay_from_baseline(
        self,
        assessment_id: str,
        branch: Optional[str] = None,
        to_sequence: Optional[int] = None
    ) -> AssessmentContent:
        """Full replay of a branch's lineage from the baseline."""
        state = self._state(assessment_id)
        end = to_sequence if to_sequence is not None else state.log.head_sequence
        return state.log.replay_lineage(branch, end)

    def role_response(
        self,
        assessment_id: str,
        question_id: str,
        branch: Optional[str] = None
    ) -> Optional[RoleResponse]:
        return self._state(assessment_id).engine_for(branch).role_response(question_id)

    def role_responses(self, assessment_id: str, branch: Optional[str] = None) -> Tuple[RoleResponse, ...]:
        return self._state(assessment_id).engine_for(branch).role_responses()

    def consensus(self, assessment_id: str, question_id: str, branch: Optional[str] = None) -> int:
        """Consensus value; raises ConsensusUnavailableError when there is none."""
        return self._state(assessment_id).engine_for(branch).consensus(question_id)

    def assignments(
        self,
        assessment_id: str,
        reference_time: Optional[Timestamp] = None
    ) -> Tuple[AssignedRole, ...]:
        return self._state(assessment_id).trunk.assignments(reference_time or self._clock.peek())

    def blockers(
        self,
        assessment_id: str,
        reference_time: Optional[Timestamp] = None
    ) -> Tuple[AssessmentBlocker, ...]:
        state = self._state(assessment_id)
        if reference_time is None:
            return state.blockers
        return self._tracker.blockers(self._attention_inputs(state, reference_time))

    def pending_actions(
        self,
        assessment_id: str,
        reference_time: Optional[Timestamp] = None
    ) -> Tuple[PendingAction, ...]:
        state = self._state(assessment_id)
        return self._tracker.pending_actions(
            self._attention_inputs(state, reference_time or self._clock.peek())
        )

    def review_comments(
        self,
        assessment_id: str,
        branch: Optional[str] = None,
        open_only: bool = False
    ) -> Tuple[ReviewComment, ...]:
        board = self._state(assessment_id).board_for(branch)
        return board.open_comments() if open_only else board.comments()

    def reviewers(self, assessment_id: str) -> Tuple[WorkflowReviewer, ...]:
        """Configured reviewers with their sections, status and trunk comments."""
        state = self._state(assessment_id)
        return reviewer_standing(
            state.machine.workflow, state.structure, state.comments[TRUNK].comments()
        )

    def workflow_status(
        self,
        assessment_id: str,
        reference_time: Optional[Timestamp] = None
    ) -> WorkflowStatus:
        state = self._state(assessment_id)
        now = reference_time or self._clock.peek()
        inputs = self._attention_inputs(state, now)
        progress = {r.role_id: r.progress for r in inputs.assignments}
        workflow = state.machine.workflow
        current = workflow.current_stage
        return WorkflowStatus(
            current_stage=current.stage_id if current else None,
            overall_progress=state.machine.overall_progress(progress),
            role_progress=tuple(sorted(progress.items())),
            pending_actions=self._tracker.pending_actions(inputs),
            blockers=self._tracker.blockers(inputs),
            is_completed=workflow.is_completed,
        )

    # =========================================================================
    # INTERNALS: MUTATION PLUMBING
    # =========================================================================

    @contextmanager
    def _mutation(self, assessment_id: str, action: str) -> Iterator[AssessmentState]:
        """
        Run one mutation under the assessment lock.

        Notices queued on the state are taken before the lock is released
        and delivered after it, so hooks may call back into the engine.
        """
        state = self._state(assessment_id)
        with state.lock:
            try:
                yield state
            except VersionConflictError as e:
                self._observability.collect_metric("version_conflicts_total", 1.0)
                self._audit_failure(action, assessment_id, e)
                raise
            except ReviewEngineError as e:
                self._audit_failure(action, assessment_id, e)
                raise
            finally:
                notices = state.take_notices()
            head = state.store.head_id(None)
        self._observability.log_audit(
            action, assessment_id, details=f"head {head}", entity_type="assessment"
        )
        self._dispatch(state, notices)

    def _audit_failure(self, action: str, entity_id: str, error: ReviewEngineError) -> None:
        self._observability.log_audit(
            action, entity_id, outcome="failure",
            details=f"{error.code.name}: {error.message}",
            event_type=AuditEventType.ERROR
        )

    def _guard(self, state: AssessmentState, expected_head: Optional[str], branch: Optional[str]) -> None:
        actual = state.store.head_id(branch)
        if actual is None:
            raise NotFoundError(f"No branch named {branch_key(branch)}", branch=branch_key(branch))
        if expected_head != actual:
            raise VersionConflictError(expected_head, actual, branch_key(branch))

    def _question_target(
        self,
        state: AssessmentState,
        question_id: str,
        role_id: Optional[str] = None,
        evidence_id: Optional[str] = None
    ) -> ChangeTarget:
        location = state.structure.locate(question_id)
        if location is None:
            raise InvalidChangeError(
                f"Unknown question {question_id}",
                code=ErrorCode.UNKNOWN_QUESTION,
                question_id=question_id,
            )
        return ChangeTarget(
            question_id=question_id,
            category_id=location.category_id,
            section_id=location.section_id,
            role_id=role_id,
            evidence_id=evidence_id,
        )

    def _append(self, state: AssessmentState, draft: ChangeDraft) -> AssessmentChange:
        change = state.log.append(draft)
        self._apply(state, change)
        self._persist(
            state, "append_change_record",
            self._storage.append_change_record(state.assessment_id, change)
        )
        self._observability.collect_metric("changes_appended_total", 1.0, {"field": change.field.value})
        return change

    def _apply(self, state: AssessmentState, change: AssessmentChange) -> None:
        """Fold one log entry into the derived state. Shared by live writes and hydration."""
        if change.field.is_content:
            engine = state.consensus.get(change.branch_key)
            if engine is not None:
                engine.apply(change)
            board = state.comments.get(change.branch_key)
            if board is not None:
                board.apply(change)
        elif change.field is ChangeField.ASSIGNMENT:
            state.trunk.apply_assignment(change)
        elif change.field is ChangeField.WORKFLOW_STAGE:
            state.machine.apply(change)
        elif change.field is ChangeField.APPROVAL and change.target.stage_id is not None:
            if change.new_value == ApprovalStatus.APPROVED.value:
                state.approvals.add(change.target.stage_id)
            else:
                state.approvals.discard(change.target.stage_id)

    def _append_resolution(
        self,
        state: AssessmentState,
        question_id: str,
        value: int,
        method: ConsensusMethod,
        rationale: Optional[str],
        actor: str,
        branch: Optional[str],
        automated: bool = False,
        reason: Optional[str] = None
    ) -> AssessmentChange:
        target = self._question_target(state, question_id)
        return self._append(state, ChangeDraft(
            kind=ChangeKind.RESPONSE_MODIFIED,
            field=ChangeField.CONFLICT_RESOLUTION,
            target=target,
            actor=actor,
            old_value=state.log.current_value(ChangeField.CONFLICT_RESOLUTION, target, branch),
            new_value=value,
            branch=branch,
            impact=ImpactLevel.HIGH,
            review_status=ReviewStatus.APPROVED,
            reason=reason or rationale,
            automated=automated,
            payload=ResolutionPayload(method=method, rationale=rationale),
        ))

    def _sync_consensus(
        self,
        state: AssessmentState,
        question_id: str,
        branch: Optional[str],
        actor: str,
        related: Tuple[str, ...]
    ) -> Optional[AssessmentChange]:
        """Append the automated response change when the consensus moved."""
        target = self._question_target(state, question_id)
        recorded = state.log.current_value(ChangeField.RESPONSE, target, branch)
        record = state.engine_for(branch).role_response(question_id)
        value = record.consensus if record else None
        if value == recorded:
            return None
        conflicted = record is not None and record.is_conflicted
        return self._append(state, ChangeDraft(
            kind=_value_kind(recorded, value, ChangeKind.RESPONSE_ADDED,
                             ChangeKind.RESPONSE_MODIFIED, ChangeKind.RESPONSE_REMOVED),
            field=ChangeField.RESPONSE,
            target=target,
            actor=actor,
            old_value=recorded,
            new_value=value,
            branch=branch,
            impact=ImpactLevel.HIGH if conflicted else ImpactLevel.MEDIUM,
            review_required=conflicted,
            review_status=ReviewStatus.PENDING if conflicted else None,
            reason="consensus conflicted" if conflicted else "consensus recomputed",
            related_changes=related,
            automated=True,
        ))

    def _transition(
        self,
        state: AssessmentState,
        stage_id: str,
        status: StageStatus,
        actor: str,
        automated: bool = False,
        reason: Optional[str] = None,
        reset: bool = False
    ) -> AssessmentChange:
        target = ChangeTarget(stage_id=stage_id)
        change = self._append(state, ChangeDraft(
            kind=ChangeKind.STRUCTURE_CHANGED,
            field=ChangeField.WORKFLOW_STAGE,
            target=target,
            actor=actor,
            old_value=state.log.current_value(ChangeField.WORKFLOW_STAGE, target),
            new_value=status.value,
            impact=ImpactLevel.HIGH if reset else ImpactLevel.MEDIUM,
            reason=reason,
            automated=automated,
            payload=StagePayload(reset=True) if reset else None,
        ))
        state.outbox.append(("stage", stage_id, status))
        self._observability.log_audit(
            "stage_transition", stage_id, details=f"{change.old_value} -> {status.value}",
            layer="workflow", entity_type="stage"
        )
        return change

    def _workflow_inputs(self, state: AssessmentState):
        trunk = state.trunk
        progress = {r: trunk.progress(r) for r in state.assignments}
        scopes = {r: trunk.scope(r) for r in state.assignments}
        conflicted = {r.question_id for r in trunk.conflicts()}
        conflicted.update(c.question_id for c in state.store.head(None).unresolved_conflicts)
        return progress, frozenset(state.assignments), frozenset(state.approvals), frozenset(conflicted), scopes

    def _advance(self, state: AssessmentState, actor: str) -> None:
        """Apply every transition the workflow's criteria now allow."""
        progress, assigned, approvals, conflicted, scopes = self._workflow_inputs(state)
        for stage_id, status in state.machine.evaluate(progress, assigned, approvals, conflicted, scopes):
            self._transition(
                state, stage_id, status, actor,
                automated=True, reason="automatic progression",
            )

    def _attention_inputs(self, state: AssessmentState, reference_time: Timestamp) -> AttentionInputs:
        trunk = state.trunk
        heads = tuple(state.store.get(vid) for _, vid in sorted(state.store.heads().items()))
        return AttentionInputs(
            structure=state.structure,
            workflow=state.machine.workflow,
            assignments=trunk.assignments(reference_time),
            role_responses=trunk.role_responses(),
            heads=heads,
            approvals=frozenset(state.approvals),
            reference_time=reference_time,
            scopes={r: trunk.scope(r) for r in state.assignments},
            comments=state.comments[TRUNK].comments(),
        )

    def _refresh(self, state: AssessmentState) -> None:
        """Recompute blockers; newly raised ones are queued for notification."""
        blockers = self._tracker.blockers(self._attention_inputs(state, self._clock.peek()))
        previous = {b.blocker_id for b in state.blockers}
        state.blockers = blockers
        for blocker in blockers:
            if blocker.blocker_id not in previous:
                state.outbox.append(("blocker", blocker))
        self._observability.collect_metric("blockers_active", float(len(blockers)))

    def _finish(
        self,
        state: AssessmentState,
        actor: str,
        branch: Optional[str],
        commit: bool = True,
        description: str = ""
    ) -> None:
        if commit and self._config.auto_version:
            version = state.store.create_version(
                state.store.head_id(branch), None, actor, VersionType.SNAPSHOT, description
            )
            self._record_version(state, version, "snapshot")
        self._advance(state, actor)
        self._refresh(state)

    def _record_version(self, state: AssessmentState, version: AssessmentVersion, kind: str) -> None:
        self._persist(state, "save_version", self._storage.save_version(version))
        self._observability.collect_metric("versions_committed_total", 1.0, {"kind": kind})
        self._observability.log_audit(
            f"commit_{kind}", version.version_id,
            details=f"v{version.version_number} on {version.branch_key}",
            layer="versioning", entity_type="version"
        )
        if version.branch_name is None and state.assessment.head_version_id != version.version_id:
            state.assessment = Assessment(
                assessment_id=state.assessment.assessment_id,
                framework_id=state.assessment.framework_id,
                head_version_id=version.version_id,
                created_at=state.assessment.created_at,
                created_by=state.assessment.created_by,
                title=state.assessment.title,
            )
            self._persist(
                state, "save_assessment",
                self._storage.save_assessment(
                    StoredAssessment(state.assessment, state.structure, state.definition)
                )
            )

    def _persist(self, state: AssessmentState, operation: str, result: StorageWriteResult) -> None:
        if result.success:
            return
        self._observability.collect_metric("storage_write_failures_total", 1.0)
        self._observability.log_audit(
            operation, state.assessment_id, outcome="failure",
            details=result.error.message if result.error else "write failed",
            layer="storage", event_type=AuditEventType.ERROR
        )

    def _dispatch(self, state: AssessmentState, notices: List[Tuple]) -> None:
        """Fire hooks for queued notices. Failures are audited, never raised."""
        for notice in notices:
            if notice[0] == "stage":
                results = self._notifier.stage_transition(state.assessment_id, notice[1], notice[2])
            else:
                results = self._notifier.blocker_raised(state.assessment_id, notice[1])
            for result in results:
                if result.delivered:
                    continue
                self._observability.collect_metric(
                    "notification_failures_total", 1.0, {"hook": result.hook}
                )
                self._observability.log_audit(
                    result.hook, state.assessment_id, outcome="failure",
                    details=result.error.message if result.error else "",
                    layer="notifications", event_type=AuditEventType.NOTIFICATION
                )


__all__ = [
    'EngineConfig',
    'AssessmentState',
    'AssessmentReviewEngine',
]
