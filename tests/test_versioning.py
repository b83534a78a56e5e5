"""
Version Store Tests
===================

INVARIANTS TESTED:
1. Exactly one baseline; the version graph stays acyclic
2. Versions only extend the head of their branch
3. Version content equals the fold of its changes
4. Merges take over one-sided edits and flag real disagreements
5. Approval updates never touch content or checksum
"""

import networkx as nx
import pytest

from review_engine.contracts.base import (
    ApprovalStatus, ChangeField, ErrorCode, MetadataKey, ReviewStatus, VersionType
)
from review_engine.contracts.errors import InvalidChangeError, NotFoundError, VersionConflictError
from review_engine.engine import EngineConfig
from review_engine.temporal import ChangeLog

from tests.fixtures import (
    COORDINATOR, LEAD, S1_QUESTIONS, answer, head_of, make_engine, make_structure, open_review
)


def version_graph(engine, assessment_id) -> nx.DiGraph:
    """Rebuild the DAG from the public history only."""
    graph = nx.DiGraph()
    for version in engine.history(assessment_id):
        graph.add_node(version.version_id)
        if version.parent_id:
            graph.add_edge(version.parent_id, version.version_id)
        for source in version.merged_from:
            if source != version.parent_id:
                graph.add_edge(source, version.version_id)
    return graph


@pytest.fixture
def manual():
    """Engine that only commits versions when asked."""
    return make_engine(config=EngineConfig(auto_version=False))


class TestBaseline:

    def test_baseline_is_the_single_root(self, engine):
        aid = open_review(engine, baseline={"Q1": 2})

        baseline = engine.head(aid)

        assert baseline.is_baseline
        assert baseline.version_number == 1
        assert baseline.version_type is VersionType.MAJOR
        assert baseline.approval_status is ApprovalStatus.DRAFT
        assert baseline.content.response_map() == {"Q1": 2}
        assert engine.verify(aid, baseline.version_id)

    def test_baseline_metadata(self, engine):
        aid = open_review(engine, baseline={"Q1": 2, "Q2": 4})

        metadata = engine.head(aid).metadata

        assert metadata.total_questions == 10
        assert metadata.answered_questions == 2
        assert metadata.completion_rate == 20
        assert metadata.overall_score == 75

    def test_baseline_with_unknown_question_rejected(self, engine):
        with pytest.raises(InvalidChangeError) as exc_info:
            engine.create_assessment(make_structure(), COORDINATOR, baseline={"Q42": 1})

        assert exc_info.value.code is ErrorCode.UNKNOWN_QUESTION

    def test_graph_stays_acyclic_with_one_root(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)
        answer(engine, aid, "R1", "Q1", 3)
        answer(engine, aid, "R2", "Q6", 1, branch="x")
        engine.merge(aid, [head_of(engine, aid), head_of(engine, aid, "x")], LEAD)

        graph = version_graph(engine, aid)

        assert nx.is_directed_acyclic_graph(graph)
        assert [n for n in graph.nodes if graph.in_degree(n) == 0] == [
            engine.lineage(aid, head_of(engine, aid))[0].version_id
        ]


class TestAutomaticVersions:

    def test_each_submission_moves_the_head(self, engine):
        aid = open_review(engine)
        before = engine.head(aid)

        answer(engine, aid, "R1", "Q1", 3)
        after = engine.head(aid)

        assert after.parent_id == before.version_id
        assert after.version_number == before.version_number + 1
        assert after.touched_questions == ("Q1",)
        assert after.change_range is not None

    def test_assignments_do_not_move_the_head(self, engine):
        aid = open_review(engine)
        head = head_of(engine, aid)

        engine.assign_role(aid, "R3", COORDINATOR, head, sections=("S1",))

        assert head_of(engine, aid) == head

    def test_history_is_newest_first_and_restartable(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)
        answer(engine, aid, "R1", "Q2", 1)

        first = [v.version_number for v in engine.history(aid)]
        second = [v.version_number for v in engine.history(aid)]

        assert first == [3, 2, 1]
        assert first == second

    def test_lineage_runs_from_baseline(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)
        answer(engine, aid, "R1", "Q2", 1)

        lineage = engine.lineage(aid, head_of(engine, aid))

        assert [v.version_number for v in lineage] == [1, 2, 3]
        assert lineage[0].is_baseline

    def test_time_spent_lands_in_metadata(self, engine):
        aid = open_review(engine)

        engine.record_time_spent(aid, 900, "user-R1", head_of(engine, aid))

        assert engine.head(aid).metadata.time_spent_seconds == 900

    def test_negative_time_spent_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidChangeError) as exc_info:
            engine.record_time_spent(aid, -1, "user-R1", head_of(engine, aid))

        assert exc_info.value.code is ErrorCode.INVALID_VALUE

    def test_notes_and_evidence_are_versioned(self, engine):
        aid = open_review(engine)
        engine.record_note(aid, "Q1", "Policy reviewed", "user-R1", head_of(engine, aid))
        engine.link_evidence(aid, "Q1", "ev-1", "user-R1", head_of(engine, aid))

        content = engine.head(aid).content

        assert content.note_map() == {"Q1": "Policy reviewed"}
        assert content.evidence_map() == {"Q1": ("ev-1",)}

    def test_double_link_rejected(self, engine):
        aid = open_review(engine)
        engine.link_evidence(aid, "Q1", "ev-1", "user-R1", head_of(engine, aid))

        with pytest.raises(InvalidChangeError):
            engine.link_evidence(aid, "Q1", "ev-1", "user-R1", head_of(engine, aid))

    def test_unlink_missing_evidence_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidChangeError) as exc_info:
            engine.unlink_evidence(aid, "Q1", "ev-1", "user-R1", head_of(engine, aid))

        assert exc_info.value.code is ErrorCode.NOT_FOUND


class TestExplicitVersions:

    def test_submissions_wait_for_a_snapshot(self, manual):
        aid = open_review(manual)
        baseline = head_of(manual, aid)
        answer(manual, aid, "R1", "Q1", 3)

        assert head_of(manual, aid) == baseline

        version = manual.create_version(aid, baseline, LEAD, description="Week 1")

        assert version.content.response_map() == {"Q1": 3}
        assert version.description == "Week 1"
        assert head_of(manual, aid) == version.version_id

    def test_stale_parent_rejected(self, manual):
        aid = open_review(manual)
        baseline = head_of(manual, aid)
        answer(manual, aid, "R1", "Q1", 3)
        manual.create_version(aid, baseline, LEAD)

        with pytest.raises(VersionConflictError) as exc_info:
            manual.create_version(aid, baseline, LEAD)

        assert exc_info.value.actual_head == head_of(manual, aid)

    def test_partial_range_snapshot(self, manual):
        aid = open_review(manual)
        baseline = head_of(manual, aid)
        answer(manual, aid, "R1", "Q1", 3)
        answer(manual, aid, "R1", "Q2", 1)
        content_seqs = [c.sequence for c in manual.changes(aid) if c.field.is_content]

        version = manual.create_version(aid, baseline, LEAD, change_range=(content_seqs[0], content_seqs[1]))

        assert version.content.response_map() == {"Q1": 3}

    def test_range_with_gap_rejected(self, manual):
        aid = open_review(manual)
        baseline = head_of(manual, aid)
        answer(manual, aid, "R1", "Q1", 3)
        answer(manual, aid, "R1", "Q2", 1)
        content_seqs = [c.sequence for c in manual.changes(aid) if c.field.is_content]

        with pytest.raises(InvalidChangeError) as exc_info:
            manual.create_version(aid, baseline, LEAD, change_range=(content_seqs[1], content_seqs[-1]))

        assert exc_info.value.code is ErrorCode.NON_CONTIGUOUS_RANGE

    def test_tags_are_kept(self, manual):
        aid = open_review(manual)

        version = manual.create_version(
            aid, head_of(manual, aid), LEAD, version_type=VersionType.MINOR, tags=("q1-close",)
        )

        assert version.tags == ("q1-close",)
        assert version.version_type is VersionType.MINOR


class TestReplayAndDiff:

    def test_replay_matches_head(self, engine):
        aid = open_review(engine, baseline={"Q3": 1})
        baseline = head_of(engine, aid)
        answer(engine, aid, "R1", "Q1", 3)
        answer(engine, aid, "R2", "Q6", 2)

        replayed = engine.replay(aid, baseline)

        assert replayed.response_map() == engine.head(aid).content.response_map()
        assert replayed.response_map() == {"Q1": 3, "Q3": 1, "Q6": 2}

    def test_replay_to_earlier_sequence(self, engine):
        aid = open_review(engine)
        baseline = head_of(engine, aid)
        answer(engine, aid, "R1", "Q1", 3)
        checkpoint = engine.changes(aid)[-1].sequence
        answer(engine, aid, "R1", "Q2", 1)

        replayed = engine.replay(aid, baseline, to_sequence=checkpoint)

        assert replayed.response_map() == {"Q1": 3}

    def test_diff_lists_content_changes(self, engine):
        aid = open_review(engine)
        baseline = head_of(engine, aid)
        answer(engine, aid, "R1", "Q1", 3)

        changes = engine.diff(aid, baseline, head_of(engine, aid))

        assert [c.field for c in changes] == [ChangeField.ROLE_RESPONSE, ChangeField.RESPONSE]
        assert changes[-1].automated


class TestBranches:

    def test_branch_keeps_content_and_source_head(self, engine):
        aid = open_review(engine, baseline={"Q1": 2})
        trunk_head = head_of(engine, aid)

        version = engine.branch(aid, trunk_head, "what-if", LEAD)

        assert version.branch_name == "what-if"
        assert version.parent_id == trunk_head
        assert version.content == engine.head(aid).content
        assert head_of(engine, aid) == trunk_head
        assert engine.heads(aid) == {"main": trunk_head, "what-if": version.version_id}

    def test_reserved_and_duplicate_names_rejected(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)

        with pytest.raises(InvalidChangeError):
            engine.branch(aid, head_of(engine, aid), "main", LEAD)
        with pytest.raises(InvalidChangeError):
            engine.branch(aid, head_of(engine, aid), "x", LEAD)

    def test_branch_edits_stay_on_branch(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)

        answer(engine, aid, "R1", "Q1", 4, branch="x")

        assert engine.head(aid, "x").content.response_map() == {"Q1": 4}
        assert engine.head(aid).content.response_map() == {}
        assert engine.role_response(aid, "Q1") is None

    def test_branch_head_guards_branch_writes(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)

        with pytest.raises(VersionConflictError):
            engine.submit_response(aid, "R1", "Q1", 4, "user-R1", head_of(engine, aid), branch="x")


class TestMerge:

    @pytest.fixture
    def forked(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)
        return aid

    def test_disjoint_edits_merge_cleanly(self, engine, forked):
        answer(engine, forked, "R1", "Q1", 3)
        answer(engine, forked, "R2", "Q6", 2, branch="x")
        sources = [head_of(engine, forked), head_of(engine, forked, "x")]

        version, conflicts = engine.merge(forked, sources, LEAD)

        assert conflicts == ()
        assert version.is_merge
        assert version.merged_from == tuple(sources)
        assert version.approval_status is ApprovalStatus.APPROVED
        assert version.content.response_map() == {"Q1": 3, "Q6": 2}
        assert engine.consensus(forked, "Q6") == 2
        assert head_of(engine, forked) == version.version_id

    def test_disagreement_becomes_a_conflict(self, engine, forked):
        answer(engine, forked, "R1", "Q1", 3)
        answer(engine, forked, "R1", "Q2", 2)
        answer(engine, forked, "R1", "Q1", 1, branch="x")
        answer(engine, forked, "R1", "Q2", 2, branch="x")
        trunk_head, branch_head = head_of(engine, forked), head_of(engine, forked, "x")

        version, conflicts = engine.merge(forked, [trunk_head, branch_head], LEAD)

        assert [c.question_id for c in conflicts] == ["Q1"]
        assert conflicts[0].base_value is None
        assert dict(conflicts[0].source_values) == {trunk_head: 3, branch_head: 1}
        assert version.approval_status is ApprovalStatus.PENDING
        assert version.content.response_map() == {"Q1": 3, "Q2": 2}

    def test_resolving_merge_conflict_commits_patch(self, engine, forked):
        answer(engine, forked, "R1", "Q1", 3)
        answer(engine, forked, "R1", "Q1", 1, branch="x")
        engine.merge(forked, [head_of(engine, forked), head_of(engine, forked, "x")], LEAD)

        version = engine.resolve_merge_conflict(
            forked, "Q1", 1, LEAD, head_of(engine, forked), rationale="Branch evidence is newer"
        )

        assert version.version_type is VersionType.PATCH
        assert version.approval_status is ApprovalStatus.APPROVED
        assert version.unresolved_conflicts == ()
        assert version.content.response_map() == {"Q1": 1}
        assert engine.consensus(forked, "Q1") == 1

    def test_resolving_unknown_merge_conflict_rejected(self, engine, forked):
        with pytest.raises(InvalidChangeError) as exc_info:
            engine.resolve_merge_conflict(forked, "Q1", 1, LEAD, head_of(engine, forked))

        assert exc_info.value.code is ErrorCode.NOT_FOUND

    def test_target_must_be_branch_head(self, engine, forked):
        stale = head_of(engine, forked)
        answer(engine, forked, "R1", "Q1", 3)

        with pytest.raises(VersionConflictError):
            engine.merge(forked, [stale, head_of(engine, forked, "x")], LEAD)

    def test_single_source_rejected(self, engine, forked):
        with pytest.raises(InvalidChangeError):
            engine.merge(forked, [head_of(engine, forked)], LEAD)

    def test_merge_reads_target_evidence_without_refolding(self, engine, forked, monkeypatch):
        engine.link_evidence(forked, "Q1", "ev-trunk", LEAD, head_of(engine, forked))
        engine.link_evidence(forked, "Q6", "ev-branch", LEAD, head_of(engine, forked, "x"), branch="x")
        for question_id in ("Q6", "Q7", "Q8"):
            answer(engine, forked, "R2", question_id, 2, branch="x")
        folds = []
        values_at = ChangeLog.values_at
        monkeypatch.setattr(
            ChangeLog, "values_at", lambda log, *args: folds.append(args) or values_at(log, *args)
        )

        version, conflicts = engine.merge(
            forked, [head_of(engine, forked), head_of(engine, forked, "x")], LEAD
        )

        assert conflicts == ()
        assert folds == []
        assert version.content.evidence_map() == {"Q1": ("ev-trunk",), "Q6": ("ev-branch",)}

    def test_touched_walk_stops_at_the_common_ancestor(self, engine, monkeypatch):
        aid = open_review(engine)
        for question_id in S1_QUESTIONS:
            answer(engine, aid, "R1", question_id, 3)
        ancestor = engine.head(aid)
        engine.branch(aid, ancestor.version_id, "x", LEAD)
        answer(engine, aid, "R2", "Q6", 1, branch="x")
        store = engine._state(aid).store
        visited = []
        predecessors = store._graph.predecessors
        monkeypatch.setattr(
            store._graph, "predecessors", lambda node: visited.append(node) or predecessors(node)
        )

        touched = store.touched_since(ancestor.version_id, head_of(engine, aid, "x"))

        assert touched == {"Q6"}
        assert visited
        assert all(
            engine.get_version(aid, v).version_number > ancestor.version_number for v in visited
        )

    def test_side_branch_merged_after_fork_counts_as_touched(self, engine):
        aid = open_review(engine)
        engine.branch(aid, head_of(engine, aid), "side", LEAD)
        answer(engine, aid, "R2", "Q6", 2, branch="side")
        answer(engine, aid, "R1", "Q1", 3)
        engine.branch(aid, head_of(engine, aid), "x", LEAD)
        engine.merge(aid, [head_of(engine, aid, "x"), head_of(engine, aid, "side")], LEAD)
        answer(engine, aid, "R1", "Q2", 3)

        version, conflicts = engine.merge(
            aid, [head_of(engine, aid), head_of(engine, aid, "x")], LEAD
        )

        assert conflicts == ()
        assert version.content.response_map() == {"Q1": 3, "Q2": 3, "Q6": 2}


class TestApproval:

    def test_approval_keeps_checksum(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)
        head = engine.head(aid)

        approved = engine.set_version_approval(aid, head.version_id, ApprovalStatus.APPROVED, LEAD)

        assert approved.approval_status is ApprovalStatus.APPROVED
        assert approved.approved_by == LEAD
        assert approved.approved_at is not None
        assert approved.checksum == head.checksum
        assert engine.verify(aid, head.version_id)

    def test_rejection_clears_approver(self, engine):
        aid = open_review(engine)
        head = head_of(engine, aid)
        engine.set_version_approval(aid, head, ApprovalStatus.APPROVED, LEAD)

        rejected = engine.set_version_approval(aid, head, ApprovalStatus.REJECTED, LEAD)

        assert rejected.approved_by is None
        assert rejected.approved_at is None

    def test_approval_updates_are_logged(self, engine):
        aid = open_review(engine)
        head = head_of(engine, aid)

        engine.set_version_approval(aid, head, ApprovalStatus.APPROVED, LEAD)
        engine.set_version_approval(aid, head, ApprovalStatus.REJECTED, COORDINATOR)

        logged = [
            c for c in engine.changes(aid)
            if c.field is ChangeField.APPROVAL and c.target.version_id == head
        ]
        assert [(c.old_value, c.new_value, c.actor) for c in logged] == [
            (None, "approved", LEAD),
            ("approved", "rejected", COORDINATOR),
        ]
        assert [c.review_status for c in logged] == [ReviewStatus.APPROVED, ReviewStatus.REJECTED]
        assert engine.get_version(aid, head).approval_status is ApprovalStatus.REJECTED
        assert engine.verify_log(aid)

    def test_version_approval_leaves_stage_approvals_alone(self, engine):
        aid = open_review(engine)
        head = head_of(engine, aid)

        before = engine.workflow(aid)

        engine.set_version_approval(aid, head, ApprovalStatus.APPROVED, LEAD)

        assert engine.head(aid).version_id == head
        assert engine._state(aid).approvals == set()
        assert engine.workflow(aid) == before

    def test_unknown_version_logs_nothing(self, engine):
        aid = open_review(engine)
        before = len(engine.changes(aid))

        with pytest.raises(NotFoundError):
            engine.set_version_approval(aid, "ver_missing", ApprovalStatus.APPROVED, LEAD)

        assert len(engine.changes(aid)) == before


def test_metadata_key_is_closed():
    assert MetadataKey("time_spent") is MetadataKey.TIME_SPENT
