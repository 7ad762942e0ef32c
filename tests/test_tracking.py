"""
Tests for status and action sinks.
"""

from types import SimpleNamespace

import pytest

from pressflow.tracking import (
    ActionSink,
    InMemoryActionSink,
    LoggingActionSink,
    RecordingStatusSink,
    safe_notify,
)


class TestSafeNotify:

    @pytest.mark.unit
    def test_passes_through_result(self):
        assert safe_notify(lambda a, b=0: a + b, 1, b=2) == 3
        assert safe_notify(None, 1) is None

    @pytest.mark.unit
    def test_swallows_sink_errors(self, caplog):
        def _broken(*args):
            raise RuntimeError("sink down")

        assert safe_notify(_broken, "x") is None
        assert "sink down" in caplog.text


class TestStatusSinks:

    @pytest.mark.unit
    def test_recording_sink(self):
        sink = RecordingStatusSink()
        run_a, run_b = SimpleNamespace(run_id="a"), SimpleNamespace(run_id="b")
        sink.on_transition(run_a, "pending", "generating")
        sink.on_transition(run_b, "pending", "failed")
        sink.on_transition(run_a, "generating", "done")
        assert sink.statuses_for("a") == ["generating", "done"]
        assert sink.transitions[1] == ("b", "pending", "failed")


class TestActionSinks:

    @pytest.mark.unit
    def test_base_sink_is_noop(self):
        sink = ActionSink()
        action_id = sink.start_action("Campaign: x")
        sink.set_progress(action_id, 1, 2)
        sink.complete_action(action_id, "done")
        assert len(action_id) == 32

    @pytest.mark.unit
    def test_in_memory_lifecycle(self):
        sink = InMemoryActionSink()
        action_id = sink.start_action("Translate: tech-es", category="translation", retryable=True)
        step_id = sink.add_step(action_id, "Fetch posts")
        sink.update_step(action_id, step_id, "completed", "12 posts")
        sink.set_progress(action_id, 3, 12)
        sink.update_action(action_id, "Translating")

        action = sink.actions[action_id]
        assert (action.category, action.retryable) == ("translation", True)
        assert (action.current, action.total, action.message) == (3, 12, "Translating")
        assert action.steps[0].status == "completed"
        assert action.steps[0].detail == "12 posts"

        sink.complete_action(action_id, "Translated 12/12 posts")
        assert action.status == "completed"
        assert action.finished_at is not None
        assert action.to_dict()["steps"][0]["label"] == "Fetch posts"

    @pytest.mark.unit
    def test_logging_sink_failure(self, caplog):
        sink = LoggingActionSink()
        action_id = sink.start_action("Campaign: finance")
        sink.fail_action(action_id, "kaput")
        assert sink.actions[action_id].status == "failed"
        assert sink.actions[action_id].message == "kaput"
        assert "Action failed" in caplog.text
