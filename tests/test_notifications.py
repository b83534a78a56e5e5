"""
Notification Boundary Tests
===========================

INVARIANTS TESTED:
1. Hooks fire after the mutation is committed
2. A failing hook never rolls back or blocks the mutation
3. Delivery failures are metered and audited
"""

import threading

from review_engine.contracts.base import ErrorCode, StageStatus
from review_engine.notifications import (
    NotificationDispatcher, NotificationHook, NullNotificationHook, RecordingNotificationHook
)

from tests.fixtures import answer, make_engine, open_review


class ExplodingHook(NotificationHook):

    def on_blocker_raised(self, assessment_id, blocker):
        raise RuntimeError("smtp unreachable")

    def on_stage_transition(self, assessment_id, stage_id, new_status):
        raise RuntimeError("smtp unreachable")


class NotingHook(NotificationHook):
    """Writes a note back through the engine when the review stage opens."""

    def __init__(self):
        self.engine = None
        self.notes = []

    def on_blocker_raised(self, assessment_id, blocker):
        pass

    def on_stage_transition(self, assessment_id, stage_id, new_status):
        if stage_id != "review" or new_status is not StageStatus.ACTIVE:
            return
        head = self.engine.head(assessment_id).version_id
        self.notes.append(
            self.engine.record_note(assessment_id, "Q1", "Review opened", "bot", head)
        )


class TestDispatcher:

    def test_failures_become_results(self):
        recording = RecordingNotificationHook()
        dispatcher = NotificationDispatcher([recording, ExplodingHook()])

        results = dispatcher.stage_transition("asm_1", "review", StageStatus.ACTIVE)

        assert [r.delivered for r in results] == [True, False]
        assert results[1].hook == "ExplodingHook.on_stage_transition"
        assert results[1].error.code is ErrorCode.NOTIFICATION_FAILED
        assert recording.transitions == [("asm_1", "review", StageStatus.ACTIVE)]

    def test_registered_hooks_are_called(self):
        dispatcher = NotificationDispatcher()
        dispatcher.register(NullNotificationHook())

        assert len(dispatcher.hooks) == 1
        assert dispatcher.stage_transition("asm_1", "review", StageStatus.ACTIVE)[0].delivered


class TestEngineBoundary:

    def test_failing_hook_does_not_block_mutation(self):
        engine = make_engine(hook=ExplodingHook())
        aid = open_review(engine)

        record = answer(engine, aid, "R1", "Q1", 3)

        assert record.consensus == 3
        assert engine.head(aid).content.response_map() == {"Q1": 3}

    def test_failures_are_metered_and_audited(self):
        engine = make_engine(hook=ExplodingHook())
        open_review(engine)

        assert engine.observability.get_metrics().total("notification_failures_total") > 0
        entries = engine.observability.get_layer_log("notifications")
        assert entries
        assert all(e.get("outcome") == "failure" for e in entries)
        assert "smtp unreachable" in entries[0].get("details")

    def test_transitions_reported_in_order(self, engine, hook):
        aid = open_review(engine)

        assert [(a, s, st) for a, s, st in hook.transitions] == [
            (aid, "review", StageStatus.ACTIVE),
        ]

    def test_hook_can_call_back_into_engine(self):
        hook = NotingHook()
        engine = make_engine(hook=hook)
        hook.engine = engine
        opened = []

        worker = threading.Thread(target=lambda: opened.append(open_review(engine)), daemon=True)
        worker.start()
        worker.join(timeout=10)

        assert not worker.is_alive()
        aid = opened[0]
        assert [c.new_value for c in hook.notes] == ["Review opened"]
        assert engine.head(aid).content.note_map() == {"Q1": "Review opened"}
        assert engine.observability.get_metrics().total("notification_failures_total") == 0

    def test_hooks_run_outside_the_assessment_lock(self):
        engine = make_engine()
        seen = []

        class LockInspectingHook(NotificationHook):
            def on_blocker_raised(self, assessment_id, blocker):
                pass

            def on_stage_transition(self, assessment_id, stage_id, new_status):
                seen.append(engine._state(assessment_id).lock.locked())

        engine._notifier.register(LockInspectingHook())
        open_review(engine)

        assert seen == [False]
