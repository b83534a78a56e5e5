"""
Workflow Tests
==============

INVARIANTS TESTED:
1. A stage never activates while an earlier stage is open
2. A stage completes only with full role coverage, no conflicts in its
   scope and, when required, an approval
3. The workflow is completed only when every stage is closed
4. Resets are explicit, logged and revoke later approvals
"""

import pytest

from review_engine.contracts.base import ChangeField, StageKind, StageStatus
from review_engine.contracts.errors import InvalidTransitionError
from review_engine.contracts.records import ReviewWorkflow, StagePayload, WorkflowStage
from review_engine.workflow import WorkflowStateMachine, default_workflow

from tests.fixtures import (
    COORDINATOR, LEAD, S1_QUESTIONS, S2_QUESTIONS,
    answer, head_of, make_structure, open_review, review_workflow
)


def finish_scope(engine, assessment_id, role_id, questions, value=3):
    for question_id in questions:
        answer(engine, assessment_id, role_id, question_id, value)


def statuses(engine, assessment_id):
    return {s.stage_id: s.status for s in engine.workflow(assessment_id).stages}


class TestAutomaticProgression:

    def test_first_assignment_activates_stage(self, engine, hook):
        aid = open_review(engine)

        assert statuses(engine, aid) == {
            "review": StageStatus.ACTIVE, "completed": StageStatus.PENDING
        }
        assert (aid, "review", StageStatus.ACTIVE) in hook.transitions

    def test_stage_waits_without_assignments(self, engine):
        aid = open_review(engine, assignments=())

        assert statuses(engine, aid)["review"] is StageStatus.PENDING

    def test_full_coverage_completes_workflow(self, engine):
        aid = open_review(engine)
        finish_scope(engine, aid, "R1", S1_QUESTIONS)
        finish_scope(engine, aid, "R2", S2_QUESTIONS)

        workflow = engine.workflow(aid)

        assert workflow.is_completed
        assert statuses(engine, aid) == {
            "review": StageStatus.COMPLETED, "completed": StageStatus.COMPLETED
        }
        assert engine.workflow_status(aid).overall_progress == 100.0

    def test_partial_coverage_keeps_stage_active(self, engine):
        aid = open_review(engine)
        finish_scope(engine, aid, "R1", S1_QUESTIONS)

        status = engine.workflow_status(aid)

        assert status.current_stage == "review"
        assert not status.is_completed
        assert dict(status.role_progress) == {"R1": 100.0, "R2": 0.0}
        assert status.overall_progress == 25.0

    def test_conflict_in_scope_blocks_completion(self, engine):
        aid = open_review(engine, assignments=(("R1", ("S1",)), ("R2", ("S1", "S2"))))
        finish_scope(engine, aid, "R1", S1_QUESTIONS, value=4)
        answer(engine, aid, "R2", "Q1", 0)
        finish_scope(engine, aid, "R2", S1_QUESTIONS[1:] + S2_QUESTIONS, value=4)

        assert statuses(engine, aid)["review"] is StageStatus.ACTIVE

        engine.resolve_conflict(aid, "Q1", LEAD, head_of(engine, aid), value=4)

        assert engine.workflow(aid).is_completed

    def test_default_workflow_without_roles_stays_pending(self, engine, hook):
        assessment = engine.create_assessment(make_structure(), COORDINATOR)
        aid = assessment.assessment_id

        status = engine.workflow_status(aid)

        assert status.current_stage == "assessment"
        assert set(statuses(engine, aid).values()) == {StageStatus.PENDING}
        assert status.overall_progress == 0.0
        assert hook.transitions == []

    def test_stages_without_roles_move_on_only_when_skipped(self, engine):
        assessment = engine.create_assessment(make_structure(), COORDINATOR)
        aid = assessment.assessment_id

        for stage_id in ("assessment", "review"):
            engine.skip_stage(aid, stage_id, COORDINATOR, head_of(engine, aid), reason="Not staffed")

        assert statuses(engine, aid)["approval"] is StageStatus.PENDING

        engine.skip_stage(aid, "approval", COORDINATOR, head_of(engine, aid), reason="Not staffed")

        assert engine.workflow(aid).is_completed

    def test_default_workflow_waits_for_approval(self, engine, hook):
        workflow = default_workflow(assessors=("R1", "R2"), approvers=("R1",))
        aid = open_review(engine, workflow=workflow)
        finish_scope(engine, aid, "R1", S1_QUESTIONS)
        finish_scope(engine, aid, "R2", S2_QUESTIONS)
        engine.skip_stage(aid, "review", COORDINATOR, head_of(engine, aid), reason="No reviewers")

        assert engine.workflow_status(aid).current_stage == "approval"
        assert [(s, st) for _, s, st in hook.transitions] == [
            ("assessment", StageStatus.ACTIVE),
            ("assessment", StageStatus.COMPLETED),
            ("review", StageStatus.SKIPPED),
            ("approval", StageStatus.ACTIVE),
        ]

        engine.record_approval(aid, "approval", LEAD, head_of(engine, aid), rationale="Signed off")

        assert engine.workflow(aid).is_completed


class TestApproval:

    @pytest.fixture
    def gated(self, engine):
        aid = open_review(engine, workflow=review_workflow(approval_required=True))
        finish_scope(engine, aid, "R1", S1_QUESTIONS)
        finish_scope(engine, aid, "R2", S2_QUESTIONS)
        return aid

    def test_covered_stage_waits_for_approval(self, engine, gated):
        assert statuses(engine, gated)["review"] is StageStatus.ACTIVE

    def test_approval_completes_stage(self, engine, gated):
        head = head_of(engine, gated)

        engine.record_approval(gated, "review", LEAD, head)

        assert engine.workflow(gated).is_completed
        assert head_of(engine, gated) == head

    def test_pending_stage_cannot_be_approved(self, engine):
        aid = open_review(engine, assignments=(), workflow=review_workflow(approval_required=True))

        with pytest.raises(InvalidTransitionError):
            engine.record_approval(aid, "review", LEAD, head_of(engine, aid))

    def test_reset_revokes_approval(self, engine, gated):
        engine.record_approval(gated, "review", LEAD, head_of(engine, gated))

        engine.reset_workflow(gated, "review", COORDINATOR, head_of(engine, gated), reason="Reopened")

        approvals = [c for c in engine.changes(gated) if c.field is ChangeField.APPROVAL]
        assert [c.new_value for c in approvals] == ["approved", None]
        assert statuses(engine, gated)["review"] is StageStatus.ACTIVE


class TestExplicitTransitions:

    def test_later_stage_cannot_activate(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidTransitionError):
            engine.activate_stage(aid, "completed", COORDINATOR, head_of(engine, aid))

    def test_activation_needs_a_required_role(self, engine):
        aid = open_review(engine, assignments=())

        with pytest.raises(InvalidTransitionError):
            engine.activate_stage(aid, "review", COORDINATOR, head_of(engine, aid))

    def test_skip_moves_on(self, engine):
        aid = open_review(engine)

        engine.skip_stage(aid, "review", COORDINATOR, head_of(engine, aid), reason="Not in scope this year")

        assert statuses(engine, aid) == {
            "review": StageStatus.SKIPPED, "completed": StageStatus.COMPLETED
        }
        assert engine.workflow(aid).is_completed

    def test_terminal_stage_cannot_be_skipped(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidTransitionError):
            engine.skip_stage(aid, "completed", COORDINATOR, head_of(engine, aid))

    def test_manual_workflow(self, engine):
        stages = review_workflow().stages
        aid = open_review(engine, workflow=ReviewWorkflow(stages=stages, enabled=False))

        assert statuses(engine, aid)["review"] is StageStatus.PENDING
        engine.activate_stage(aid, "review", COORDINATOR, head_of(engine, aid))
        with pytest.raises(InvalidTransitionError):
            engine.complete_stage(aid, "review", COORDINATOR, head_of(engine, aid))

        finish_scope(engine, aid, "R1", S1_QUESTIONS)
        finish_scope(engine, aid, "R2", S2_QUESTIONS)
        engine.complete_stage(aid, "review", COORDINATOR, head_of(engine, aid))
        engine.activate_stage(aid, "completed", COORDINATOR, head_of(engine, aid))
        engine.complete_stage(aid, "completed", COORDINATOR, head_of(engine, aid))

        assert engine.workflow(aid).is_completed


class TestReset:

    @pytest.fixture
    def finished(self, engine):
        aid = open_review(engine)
        finish_scope(engine, aid, "R1", S1_QUESTIONS)
        finish_scope(engine, aid, "R2", S2_QUESTIONS)
        return aid

    def test_reset_reopens_stage(self, engine, finished):
        engine.reset_workflow(finished, "review", COORDINATOR, head_of(engine, finished), reason="Audit finding")

        assert statuses(engine, finished) == {
            "review": StageStatus.ACTIVE, "completed": StageStatus.PENDING
        }
        resets = [
            c for c in engine.changes(finished)
            if isinstance(c.payload, StagePayload) and c.payload.reset
        ]
        assert [c.target.stage_id for c in resets] == ["review", "completed"]
        assert all(c.reason == "Audit finding" for c in resets)

    def test_progression_resumes_after_reset(self, engine, finished):
        engine.reset_workflow(finished, "review", COORDINATOR, head_of(engine, finished), reason="Audit finding")

        engine.record_note(finished, "Q1", "Rechecked", COORDINATOR, head_of(engine, finished))

        assert engine.workflow(finished).is_completed

    def test_reset_forward_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidTransitionError):
            engine.reset_workflow(aid, "completed", COORDINATOR, head_of(engine, aid), reason="x")

    def test_reset_to_current_stage_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidTransitionError):
            engine.reset_workflow(aid, "review", COORDINATOR, head_of(engine, aid), reason="x")


class TestAddStage:

    @pytest.fixture
    def spaced(self, engine):
        workflow = ReviewWorkflow(stages=(
            WorkflowStage(stage_id="review", kind=StageKind.REVIEW, name="Review",
                          required_roles=("R1", "R2"), order=0),
            WorkflowStage(stage_id="completed", kind=StageKind.COMPLETED, name="Completed", order=10),
        ))
        return open_review(engine, workflow=workflow)

    def test_added_stage_gates_completion(self, engine, spaced):
        legal = WorkflowStage(
            stage_id="legal", kind=StageKind.CUSTOM, name="Legal", required_roles=("R3",), order=5
        )
        engine.add_stage(spaced, legal, COORDINATOR, head_of(engine, spaced))
        finish_scope(engine, spaced, "R1", S1_QUESTIONS)
        finish_scope(engine, spaced, "R2", S2_QUESTIONS)

        assert statuses(engine, spaced)["legal"] is StageStatus.PENDING
        assert not engine.workflow(spaced).is_completed

        engine.assign_role(spaced, "R3", COORDINATOR, head_of(engine, spaced), sections=("S1",))

        assert statuses(engine, spaced)["legal"] is StageStatus.ACTIVE

    def test_duplicate_stage_rejected(self, engine, spaced):
        duplicate = WorkflowStage(stage_id="review", kind=StageKind.REVIEW, name="Again", order=5)

        with pytest.raises(InvalidTransitionError):
            engine.add_stage(spaced, duplicate, COORDINATOR, head_of(engine, spaced))

    def test_insert_before_started_stage_rejected(self, engine, spaced):
        early = WorkflowStage(stage_id="intake", kind=StageKind.CUSTOM, name="Intake", order=-1)

        with pytest.raises(InvalidTransitionError):
            engine.add_stage(spaced, early, COORDINATOR, head_of(engine, spaced))


class TestOverallProgress:

    def test_skipped_stages_are_excluded(self):
        machine = WorkflowStateMachine(ReviewWorkflow(stages=(
            WorkflowStage(stage_id="a", kind=StageKind.ASSESSMENT, name="A", order=0,
                          status=StageStatus.COMPLETED),
            WorkflowStage(stage_id="b", kind=StageKind.REVIEW, name="B", order=1,
                          status=StageStatus.SKIPPED),
            WorkflowStage(stage_id="c", kind=StageKind.COMPLETED, name="C", order=2),
        )))

        assert machine.overall_progress({}) == 50.0

    def test_weights_apply(self):
        machine = WorkflowStateMachine(ReviewWorkflow(stages=(
            WorkflowStage(stage_id="a", kind=StageKind.ASSESSMENT, name="A", order=0,
                          status=StageStatus.COMPLETED, weight=3.0),
            WorkflowStage(stage_id="b", kind=StageKind.COMPLETED, name="B", order=1),
        )))

        assert machine.overall_progress({}) == 75.0

    def test_active_stage_counts_role_progress(self):
        machine = WorkflowStateMachine(ReviewWorkflow(stages=(
            WorkflowStage(stage_id="a", kind=StageKind.REVIEW, name="A", order=0,
                          required_roles=("R1", "R2"), status=StageStatus.ACTIVE),
        )))

        assert machine.overall_progress({"R1": 100.0, "R2": 50.0}) == 75.0


class TestStagesWithoutRoles:

    def workflow(self, status=StageStatus.PENDING):
        return ReviewWorkflow(stages=(
            WorkflowStage(stage_id="legal", kind=StageKind.CUSTOM, name="Legal", order=0,
                          status=status),
            WorkflowStage(stage_id="completed", kind=StageKind.COMPLETED, name="Completed", order=1),
        ))

    def test_evaluate_leaves_stage_pending(self):
        machine = WorkflowStateMachine(self.workflow())

        assert machine.evaluate({}, frozenset({"R1"}), frozenset()) == []
        assert machine.activation_blocker("legal", frozenset({"R1"})) is not None

    def test_active_stage_never_completes(self):
        machine = WorkflowStateMachine(self.workflow(StageStatus.ACTIVE))

        assert machine.completion_blocker("legal", {}, frozenset()) is not None
        assert machine.evaluate({}, frozenset(), frozenset()) == []

    def test_terminal_stage_needs_no_roles(self):
        machine = WorkflowStateMachine(self.workflow(StageStatus.SKIPPED))

        assert machine.evaluate({}, frozenset(), frozenset()) == [
            ("completed", StageStatus.ACTIVE), ("completed", StageStatus.COMPLETED)
        ]
