"""
Optimistic Concurrency Tests
============================

Two writers that observed the same head race; exactly one wins and the
other sees a VersionConflictError naming the new head.
"""

import threading

from review_engine.contracts.errors import VersionConflictError

from tests.fixtures import head_of, open_review


def race(engine, aid, submissions):
    head = head_of(engine, aid)
    barrier = threading.Barrier(len(submissions))
    outcomes = []
    lock = threading.Lock()

    def submit(role_id, question_id, value):
        barrier.wait()
        try:
            engine.submit_response(aid, role_id, question_id, value, f"user-{role_id}", head)
            outcome = "ok"
        except VersionConflictError as e:
            outcome = e
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=submit, args=s) for s in submissions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return head, outcomes


class TestConcurrentWriters:

    def test_one_writer_wins(self, engine):
        aid = open_review(engine)

        head, outcomes = race(engine, aid, [("R1", "Q1", 3), ("R2", "Q6", 1)])

        wins = [o for o in outcomes if o == "ok"]
        losses = [o for o in outcomes if isinstance(o, VersionConflictError)]
        assert len(wins) == 1
        assert len(losses) == 1
        context = dict(losses[0].error.context)
        assert context["expected_head"] == head
        assert context["actual_head"] == head_of(engine, aid)
        assert len(engine.head(aid).content.response_map()) == 1

    def test_loser_retries_against_new_head(self, engine):
        aid = open_review(engine)
        race(engine, aid, [("R1", "Q1", 3), ("R2", "Q6", 1)])

        for role_id, question_id, value in (("R1", "Q1", 3), ("R2", "Q6", 1)):
            if question_id not in engine.head(aid).content.response_map():
                engine.submit_response(
                    aid, role_id, question_id, value, f"user-{role_id}", head_of(engine, aid)
                )

        assert engine.head(aid).content.response_map() == {"Q1": 3, "Q6": 1}
        assert engine.verify_log(aid)

    def test_conflict_is_metered(self, engine):
        aid = open_review(engine)

        race(engine, aid, [("R1", "Q1", 3), ("R2", "Q6", 1)])

        assert engine.observability.get_metrics().total("version_conflicts_total") == 1.0
