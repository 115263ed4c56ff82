"""Unit tests for the saga runner."""

import pytest

from ussd_wallet.errors import ExternalFailure, ExternalTimeout
from ussd_wallet.services.saga import SagaStage, run_saga


class Recorder:
    """Collects the order in which saga actions ran."""

    def __init__(self):
        self.events: list[str] = []

    def action(self, name: str, result=None, error: Exception | None = None):
        def run():
            self.events.append(name)
            if error is not None:
                raise error
            return result or name
        return run


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


class TestRunSaga:
    """Tests for run_saga."""

    def test_all_stages_succeed(self, recorder):
        """Should run stages in order and collect their results."""
        recorded = []
        outcome = run_saga(
            [
                SagaStage("burn", recorder.action("burn", "r1")),
                SagaStage("payout", recorder.action("payout", "r2")),
            ],
            on_stage_complete=lambda name, result: recorded.append((name, result)),
        )

        assert outcome.succeeded
        assert outcome.results == {"burn": "r1", "payout": "r2"}
        assert recorded == [("burn", "r1"), ("payout", "r2")]

    def test_failure_compensates_in_reverse(self, recorder):
        """Should undo completed stages last-first."""
        outcome = run_saga([
            SagaStage("a", recorder.action("a"), recorder.action("undo_a")),
            SagaStage("b", recorder.action("b"), recorder.action("undo_b")),
            SagaStage("c", recorder.action("c", error=ExternalFailure("down"))),
        ])

        assert outcome.failed_stage == "c"
        assert recorder.events == ["a", "b", "c", "undo_b", "undo_a"]
        assert outcome.compensated == ["b", "a"]
        assert not outcome.outcome_unknown

    def test_failed_stage_is_not_compensated(self, recorder):
        """Should only compensate stages that completed."""
        run_saga([
            SagaStage("a", recorder.action("a", error=ExternalFailure("down")), recorder.action("undo_a")),
        ])

        assert recorder.events == ["a"]

    def test_timeout_skips_compensation(self, recorder):
        """Should mark the outcome unknown and leave completed stages alone."""
        outcome = run_saga([
            SagaStage("burn", recorder.action("burn"), recorder.action("remint")),
            SagaStage("payout", recorder.action("payout", error=ExternalTimeout("slow"))),
        ])

        assert outcome.outcome_unknown
        assert outcome.failed_stage == "payout"
        assert outcome.compensated == []
        assert "remint" not in recorder.events

    def test_compensation_failure_is_recorded(self, recorder):
        """Should stop compensating and keep the compensation error."""
        outcome = run_saga([
            SagaStage("a", recorder.action("a"), recorder.action("undo_a")),
            SagaStage("b", recorder.action("b"), recorder.action("undo_b", error=ExternalFailure("stuck"))),
            SagaStage("c", recorder.action("c", error=ExternalFailure("down"))),
        ])

        assert outcome.compensation_failed
        assert "undo_a" not in recorder.events
        assert outcome.compensated == []

    def test_unexpected_error_compensates_and_raises(self, recorder):
        """Should compensate, then propagate programming errors."""
        with pytest.raises(KeyError):
            run_saga([
                SagaStage("a", recorder.action("a"), recorder.action("undo_a")),
                SagaStage("b", recorder.action("b", error=KeyError("bug"))),
            ])

        assert recorder.events == ["a", "b", "undo_a"]
