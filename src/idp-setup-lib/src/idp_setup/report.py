"""
idp_setup.report — Per-step execution records for both pipelines.

Each step is timed and recorded whether it passes, is skipped, degrades to a
warning, or fails. A failed step is recorded before the error propagates.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from idp_setup.exceptions import SetupError

logger = logging.getLogger(__name__)

RECOVERABLE_ERRORS: tuple[type[Exception], ...] = (SetupError, ClientError, BotoCoreError)


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class StepStatus(StrEnum):
    PASSED = "passed"
    SKIPPED = "skipped"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    status: StepStatus
    details: dict[str, Any] = field(default_factory=dict)


def passed(**details: Any) -> StepOutcome:
    return StepOutcome(StepStatus.PASSED, details)


def skipped(reason: str, **details: Any) -> StepOutcome:
    logger.info("Skipping: %s", reason)
    return StepOutcome(StepStatus.SKIPPED, {"reason": reason, **details})


def warning(reason: str, **details: Any) -> StepOutcome:
    logger.warning("%s", reason)
    return StepOutcome(StepStatus.WARNING, {"reason": reason, **details})


@dataclass
class PipelineReport:
    workflow: str
    stack_name: str
    started_at: str = field(default_factory=utc_now_iso)
    steps: list[dict[str, Any]] = field(default_factory=list)

    def record(
        self,
        step: str,
        status: StepStatus,
        started_at: str,
        details: dict[str, Any],
    ) -> None:
        self.steps.append(
            {
                "step": step,
                "status": str(status),
                "startedAt": started_at,
                "completedAt": utc_now_iso(),
                "details": details,
            }
        )

    def status_of(self, step: str) -> StepStatus | None:
        for entry in reversed(self.steps):
            if entry["step"] == step:
                return StepStatus(entry["status"])
        return None

    def details_of(self, step: str) -> dict[str, Any]:
        for entry in reversed(self.steps):
            if entry["step"] == step:
                return dict(entry["details"])
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "stackName": self.stack_name,
            "startedAt": self.started_at,
            "updatedAt": utc_now_iso(),
            "steps": list(self.steps),
        }

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        logger.info("Wrote %s report: %s", self.workflow, path)
        return path


def run_step(
    report: PipelineReport,
    step: str,
    handler: Callable[[], StepOutcome],
    *,
    best_effort: bool = False,
) -> StepOutcome:
    """Execute one step and record it.

    With best_effort, SetupError and botocore failures are downgraded to a
    warning entry and the pipeline continues; otherwise they are recorded as
    failed and re-raised.
    """
    logger.info("==> Step: %s", step)
    started_at = utc_now_iso()
    try:
        outcome = handler()
    except RECOVERABLE_ERRORS as exc:
        details = {"errorType": exc.__class__.__name__, "errorMessage": str(exc)}
        if not best_effort:
            report.record(step, StepStatus.FAILED, started_at, details)
            raise
        logger.warning("Step %s failed, continuing: %s", step, exc)
        outcome = StepOutcome(StepStatus.WARNING, details)
    except Exception as exc:
        report.record(
            step,
            StepStatus.FAILED,
            started_at,
            {"errorType": exc.__class__.__name__, "errorMessage": str(exc)},
        )
        raise
    report.record(step, outcome.status, started_at, outcome.details)
    return outcome
