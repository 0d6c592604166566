"""Events published by the orchestrator on the event bus."""

from typing import Literal

from pydantic import BaseModel, Field

from spamguard.schemas.processing import ProcessingStats, RunState


class RunEvent(BaseModel):
    """Base for all run events."""

    run_id: str


class RunStatusChanged(RunEvent):
    kind: Literal["run-status-changed"] = "run-status-changed"
    state: RunState


class AccountStatsUpdated(RunEvent):
    kind: Literal["account-stats-updated"] = "account-stats-updated"
    account_id: str
    stats: ProcessingStats
    aggregate_stats: ProcessingStats


class ProgressUpdated(RunEvent):
    """``processed`` counts handled emails: processed, skipped or failed."""

    kind: Literal["progress"] = "progress"
    total: int
    processed: int
    percent: int = Field(ge=0, le=100)
    current_account: str | None = None


class RunCompleted(RunEvent):
    kind: Literal["run-completed"] = "run-completed"
    account_stats: dict[str, ProcessingStats]
    overall_stats: ProcessingStats


class RunFailed(RunEvent):
    kind: Literal["run-error"] = "run-error"
    error: str
