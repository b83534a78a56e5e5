"""
Shared Test Fixtures

Deterministic structures, workflows and engine setups. Every engine built
here runs on a stepping clock so change timestamps are reproducible.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence, Tuple

from review_engine.contracts.base import StageKind, Timestamp
from review_engine.contracts.records import ReviewWorkflow, WorkflowStage
from review_engine.contracts.structure import AssessmentStructure
from review_engine.engine import AssessmentReviewEngine, EngineConfig
from review_engine.notifications import RecordingNotificationHook
from review_engine.storage import InMemoryStorageBackend, StorageBackend
from review_engine.temporal import LogicalClock


# =============================================================================
# FIXED TIMESTAMPS
# =============================================================================

T0 = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
YESTERDAY = Timestamp(T0 - timedelta(days=1))
NEXT_WEEK = Timestamp(T0 + timedelta(days=7))

COORDINATOR = "coordinator"
LEAD = "lead"

S1_QUESTIONS = ("Q1", "Q2", "Q3", "Q4", "Q5")
S2_QUESTIONS = ("Q6", "Q7", "Q8", "Q9", "Q10")


# =============================================================================
# DEFINITIONS
# =============================================================================

def make_structure(framework_id: str = "iso27001") -> AssessmentStructure:
    """Two sections of one category each, five questions per category."""
    return AssessmentStructure.uniform(framework_id, {
        "S1": {"C1": list(S1_QUESTIONS)},
        "S2": {"C2": list(S2_QUESTIONS)},
    })


def review_workflow(
    roles: Sequence[str] = ("R1", "R2"),
    approval_required: bool = False
) -> ReviewWorkflow:
    """A single review stage followed by the terminal stage."""
    return ReviewWorkflow(stages=(
        WorkflowStage(
            stage_id="review",
            kind=StageKind.REVIEW,
            name="Review",
            required_roles=tuple(roles),
            order=0,
            approval_required=approval_required,
        ),
        WorkflowStage(
            stage_id="completed",
            kind=StageKind.COMPLETED,
            name="Completed",
            order=1,
        ),
    ))


# =============================================================================
# ENGINE SETUP
# =============================================================================

def make_engine(
    storage: Optional[StorageBackend] = None,
    hook: Optional[object] = None,
    config: Optional[EngineConfig] = None
) -> AssessmentReviewEngine:
    return AssessmentReviewEngine(
        config=config,
        storage=storage or InMemoryStorageBackend(),
        notifier=hook if hook is not None else RecordingNotificationHook(),
        clock=LogicalClock.stepping(T0),
    )


def head_of(engine: AssessmentReviewEngine, assessment_id: str, branch: Optional[str] = None) -> str:
    return engine.head(assessment_id, branch).version_id


def open_review(
    engine: AssessmentReviewEngine,
    baseline: Optional[dict] = None,
    workflow: Optional[ReviewWorkflow] = None,
    assignments: Iterable[Tuple[str, Sequence[str]]] = (("R1", ("S1",)), ("R2", ("S2",))),
    deadlines: Optional[dict] = None
) -> str:
    """Create an assessment and assign roles to sections. Returns its id."""
    assessment = engine.create_assessment(
        make_structure(),
        COORDINATOR,
        workflow=workflow or review_workflow(),
        baseline=baseline,
        title="Annual review",
    )
    assessment_id = assessment.assessment_id
    for role_id, sections in assignments:
        engine.assign_role(
            assessment_id, role_id, COORDINATOR, head_of(engine, assessment_id),
            sections=sections,
            deadline=(deadlines or {}).get(role_id),
        )
    return assessment_id


def answer(
    engine: AssessmentReviewEngine,
    assessment_id: str,
    role_id: str,
    question_id: str,
    value: Optional[int],
    branch: Optional[str] = None
):
    """Submit against the current head of the branch."""
    return engine.submit_response(
        assessment_id, role_id, question_id, value, f"user-{role_id}",
        head_of(engine, assessment_id, branch), branch=branch,
    )
