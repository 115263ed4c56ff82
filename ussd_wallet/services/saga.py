"""
Saga runner.

A money movement is a list of stages, each a forward action with an
optional compensating action. Stages run in order:
- ExternalFailure in stage N: compensate stages N-1..1 in reverse
- ExternalTimeout in stage N: stop; the outcome is unknown, so nothing is
  compensated speculatively (webhooks or a status query settle it later)
"""

from dataclasses import dataclass, field
from typing import Any, Callable

from ussd_wallet.errors import ExternalFailure, ExternalTimeout
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class SagaStage:
    """One step of a saga."""

    name: str
    forward: Callable[[], Any]
    compensate: Callable[[], Any] | None = None


@dataclass
class SagaOutcome:
    """What happened when a saga ran."""

    results: dict[str, Any] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: Exception | None = None
    outcome_unknown: bool = False
    compensated: list[str] = field(default_factory=list)
    compensation_error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_stage is None

    @property
    def compensation_failed(self) -> bool:
        return self.compensation_error is not None


def compensate(
    stages: list[SagaStage],
    completed: list[str],
    outcome: SagaOutcome,
) -> SagaOutcome:
    """
    Run compensations for completed stages in reverse order.

    Stops at the first compensation failure and records it; the remaining
    stages are left for out-of-band reconciliation.
    """
    by_name = {stage.name: stage for stage in stages}
    for name in reversed(completed):
        stage = by_name[name]
        if stage.compensate is None:
            continue
        try:
            stage.compensate()
        except Exception as e:
            logger.error("saga_compensation_failed", stage=name, error=str(e), exc_info=True)
            outcome.compensation_error = e
            return outcome
        outcome.compensated.append(name)
        logger.info("saga_stage_compensated", stage=name)
    return outcome


def run_saga(
    stages: list[SagaStage],
    on_stage_complete: Callable[[str, Any], None] | None = None,
) -> SagaOutcome:
    """
    Run stages in order.

    Args:
        stages: Stages to run
        on_stage_complete: Called after each successful stage; used to
            durably record progress before the next stage starts

    Returns:
        SagaOutcome. Errors other than ExternalFailure propagate after
        compensating, since they indicate a bug rather than a peer failure.
    """
    outcome = SagaOutcome()

    for stage in stages:
        try:
            result = stage.forward()
        except ExternalTimeout as e:
            logger.warning("saga_stage_outcome_unknown", stage=stage.name, error=str(e))
            outcome.failed_stage = stage.name
            outcome.error = e
            outcome.outcome_unknown = True
            return outcome
        except ExternalFailure as e:
            logger.warning("saga_stage_failed", stage=stage.name, error=str(e))
            outcome.failed_stage = stage.name
            outcome.error = e
            return compensate(stages, outcome.completed, outcome)
        except Exception as e:
            logger.error("saga_stage_error", stage=stage.name, error=str(e), exc_info=True)
            outcome.failed_stage = stage.name
            outcome.error = e
            compensate(stages, outcome.completed, outcome)
            raise

        outcome.results[stage.name] = result
        outcome.completed.append(stage.name)
        if on_stage_complete is not None:
            on_stage_complete(stage.name, result)

    return outcome
