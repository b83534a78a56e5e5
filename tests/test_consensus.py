"""
Consensus Tests
===============

INVARIANTS TESTED:
1. Consensus never depends on submission order
2. Spread above tolerance is a conflict, never a value
3. Average rounds to the nearest option, ties to the lower
4. Unanswered questions have no consensus
5. Resolutions settle conflicts; a new answer reopens them
"""

import pytest
from hypothesis import given, settings, strategies as st

from review_engine.consensus import ConsensusConfig, compute_consensus, nearest_option
from review_engine.contracts.base import ConsensusMethod, ConsensusStatus, ErrorCode
from review_engine.contracts.errors import ConsensusUnavailableError, InvalidChangeError
from review_engine.engine import EngineConfig

from tests.fixtures import LEAD, answer, head_of, make_engine, open_review


OPTIONS = (0, 1, 2, 3, 4)


class TestCalculator:

    def test_no_answers_is_unanswered(self):
        outcome = compute_consensus({}, ConsensusMethod.AVERAGE, 1, OPTIONS)

        assert outcome.status is ConsensusStatus.UNANSWERED
        assert outcome.value is None

    def test_single_answer_is_its_value(self):
        outcome = compute_consensus({"R1": 3}, ConsensusMethod.AVERAGE, 1, OPTIONS)

        assert outcome.status is ConsensusStatus.SINGLE
        assert outcome.value == 3

    def test_identical_answers_agree(self):
        outcome = compute_consensus({"R1": 2, "R2": 2, "R3": 2}, ConsensusMethod.MANUAL, 0, OPTIONS)

        assert outcome.status is ConsensusStatus.AGREED
        assert outcome.value == 2

    def test_spread_above_tolerance_conflicts(self):
        outcome = compute_consensus({"R1": 1, "R2": 3}, ConsensusMethod.AVERAGE, 1, OPTIONS)

        assert outcome.status is ConsensusStatus.CONFLICTED
        assert outcome.value is None
        assert outcome.spread == 2

    def test_average_tie_goes_to_lower_option(self):
        outcome = compute_consensus({"R1": 2, "R2": 3}, ConsensusMethod.AVERAGE, 1, OPTIONS)

        assert outcome.value == 2

    def test_average_rounds_to_nearest(self):
        outcome = compute_consensus({"R1": 2, "R2": 3, "R3": 3}, ConsensusMethod.AVERAGE, 1, OPTIONS)

        assert outcome.value == 3

    def test_highest_and_lowest(self):
        answers = {"R1": 2, "R2": 3}

        assert compute_consensus(answers, ConsensusMethod.HIGHEST, 1, OPTIONS).value == 3
        assert compute_consensus(answers, ConsensusMethod.LOWEST, 1, OPTIONS).value == 2

    def test_reviewer_decision_never_auto_resolves(self):
        outcome = compute_consensus({"R1": 2, "R2": 3}, ConsensusMethod.REVIEWER_DECISION, 1, OPTIONS)

        assert outcome.status is ConsensusStatus.CONFLICTED

    def test_nearest_option_on_sparse_scale(self):
        assert nearest_option(2.5, (0, 5, 10)) == 0
        assert nearest_option(2.6, (0, 5, 10)) == 5
        assert nearest_option(7.5, (0, 5, 10)) == 5

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            ConsensusConfig(tolerance=-1)

    @given(
        answers=st.dictionaries(
            st.sampled_from(["R1", "R2", "R3", "R4"]),
            st.sampled_from(OPTIONS),
            min_size=1,
        ),
        method=st.sampled_from([ConsensusMethod.AVERAGE, ConsensusMethod.HIGHEST, ConsensusMethod.LOWEST]),
        tolerance=st.integers(min_value=0, max_value=4),
    )
    def test_order_independent(self, answers, method, tolerance):
        forward = compute_consensus(answers, method, tolerance, OPTIONS)
        backward = compute_consensus(dict(reversed(list(answers.items()))), method, tolerance, OPTIONS)

        assert forward == backward
        if forward.value is not None:
            assert forward.value in OPTIONS
            assert min(answers.values()) <= forward.value <= max(answers.values())


class TestRoleResponses:

    def test_first_answer_creates_record(self, engine):
        aid = open_review(engine)

        record = answer(engine, aid, "R1", "Q1", 3)

        assert record.response_map() == {"R1": 3}
        assert record.status is ConsensusStatus.SINGLE
        assert engine.consensus(aid, "Q1") == 3
        assert engine.head(aid).content.response_map() == {"Q1": 3}

    def test_unanswered_question_has_no_consensus(self, engine):
        aid = open_review(engine)

        with pytest.raises(ConsensusUnavailableError) as exc_info:
            engine.consensus(aid, "Q1")

        assert exc_info.value.code is ErrorCode.CONSENSUS_UNAVAILABLE

    def test_out_of_scope_answer_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidChangeError) as exc_info:
            answer(engine, aid, "R1", "Q6", 3)

        assert exc_info.value.code is ErrorCode.OUT_OF_SCOPE

    def test_invalid_option_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidChangeError) as exc_info:
            answer(engine, aid, "R1", "Q1", 9)

        assert exc_info.value.code is ErrorCode.INVALID_VALUE
        assert engine.role_response(aid, "Q1") is None

    def test_unknown_question_rejected(self, engine):
        aid = open_review(engine)

        with pytest.raises(InvalidChangeError) as exc_info:
            answer(engine, aid, "R1", "Q99", 1)

        assert exc_info.value.code is ErrorCode.UNKNOWN_QUESTION

    def test_withdrawn_answer_clears_consensus(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)

        record = answer(engine, aid, "R1", "Q1", None)

        assert record.response_map() == {}
        assert record.status is ConsensusStatus.UNANSWERED
        assert "Q1" not in engine.head(aid).content.response_map()

    def test_stale_expected_value_rejected(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)

        with pytest.raises(InvalidChangeError) as exc_info:
            engine.submit_response(
                aid, "R1", "Q1", 4, "user-R1", head_of(engine, aid), expected_value=None
            )

        assert exc_info.value.code is ErrorCode.STALE_OLD_VALUE

    def test_progress_follows_answers(self, engine):
        aid = open_review(engine)
        answer(engine, aid, "R1", "Q1", 3)
        answer(engine, aid, "R1", "Q2", 3)

        roles = {r.role_id: r for r in engine.assignments(aid)}

        assert roles["R1"].progress == 40.0
        assert roles["R2"].progress == 0.0


class TestConflicts:

    @pytest.fixture
    def shared(self, engine):
        return open_review(engine, assignments=(("R1", ("S1",)), ("R2", ("S1",))))

    def test_within_tolerance_averages(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 2)
        record = answer(engine, shared, "R2", "Q1", 3)

        assert record.status is ConsensusStatus.AGREED
        assert record.consensus == 2

    def test_conflict_records_stub_and_clears_response(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        record = answer(engine, shared, "R2", "Q1", 1)

        assert record.is_conflicted
        assert record.consensus is None
        assert record.conflict_resolution.method is ConsensusMethod.REVIEWER_DECISION
        assert not record.conflict_resolution.is_resolved
        assert "Q1" not in engine.head(shared).content.response_map()

    def test_reviewer_decision_needs_value(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        answer(engine, shared, "R2", "Q1", 1)

        with pytest.raises(InvalidChangeError) as exc_info:
            engine.resolve_conflict(shared, "Q1", LEAD, head_of(engine, shared))

        assert exc_info.value.code is ErrorCode.INVALID_VALUE

    def test_reviewer_decision_sets_value(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        answer(engine, shared, "R2", "Q1", 1)

        record = engine.resolve_conflict(
            shared, "Q1", LEAD, head_of(engine, shared),
            value=3, rationale="Evidence supports 3",
        )

        assert record.status is ConsensusStatus.RESOLVED
        assert record.consensus == 3
        assert record.conflict_resolution.resolved_by == LEAD
        assert record.conflict_resolution.rationale == "Evidence supports 3"
        assert engine.head(shared).content.response_map()["Q1"] == 3

    def test_computed_resolution_ignores_tolerance(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        answer(engine, shared, "R2", "Q1", 0)

        record = engine.resolve_conflict(
            shared, "Q1", LEAD, head_of(engine, shared), method=ConsensusMethod.HIGHEST
        )

        assert record.consensus == 4

    def test_resolving_unconflicted_question_rejected(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 2)

        with pytest.raises(InvalidChangeError) as exc_info:
            engine.resolve_conflict(shared, "Q1", LEAD, head_of(engine, shared), value=2)

        assert exc_info.value.code is ErrorCode.NOT_FOUND

    def test_new_answer_supersedes_resolution(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        answer(engine, shared, "R2", "Q1", 1)
        engine.resolve_conflict(shared, "Q1", LEAD, head_of(engine, shared), value=3)

        record = answer(engine, shared, "R2", "Q1", 0)

        assert record.is_conflicted
        assert not record.conflict_resolution.is_resolved

    def test_conflict_metric_counted_once(self, engine, shared):
        answer(engine, shared, "R1", "Q1", 4)
        answer(engine, shared, "R2", "Q1", 1)
        answer(engine, shared, "R2", "Q1", 0)

        assert engine.observability.get_metrics().total("consensus_conflicts_total") == 1.0


class TestTolerance:

    def test_zero_tolerance_conflicts_on_any_difference(self):
        engine = make_engine(config=EngineConfig(consensus=ConsensusConfig(tolerance=0)))
        aid = open_review(engine, assignments=(("R1", ("S1",)), ("R2", ("S1",))))
        answer(engine, aid, "R1", "Q1", 2)

        record = answer(engine, aid, "R2", "Q1", 3)

        assert record.is_conflicted

    @settings(max_examples=25, deadline=None)
    @given(first=st.sampled_from(OPTIONS), second=st.sampled_from(OPTIONS))
    def test_conflicts_exactly_when_spread_exceeds_tolerance(self, first, second):
        engine = make_engine()
        aid = open_review(engine, assignments=(("R1", ("S1",)), ("R2", ("S1",))))
        answer(engine, aid, "R1", "Q1", first)

        record = answer(engine, aid, "R2", "Q1", second)

        assert record.is_conflicted == (abs(first - second) > 1)


