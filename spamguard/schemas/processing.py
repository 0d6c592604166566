"""Schemas for classification verdicts, run state and pipeline settings."""

from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

# --- Classification ---


class ClassificationResult(BaseModel):
    """LLM verdict for one email. Scores outside 0-10 fail validation."""

    score: int = Field(ge=0, le=10)
    reasoning: str = "No reasoning provided"

    def is_spam(self, threshold: int) -> bool:
        return self.score >= threshold


class ProcessedEmailResult(BaseModel):
    """Outcome of processing one email, as written to the audit log."""

    email_id: str
    account_id: str
    checksum: str
    is_spam: bool
    score: int = Field(ge=0, le=10)
    reasoning: str
    moved: bool = False


# --- Stats ---


class ProcessingStats(BaseModel):
    """Counters for one account (or the aggregate of several)."""

    total_emails: int = Field(default=0, ge=0)
    spam_emails: int = Field(default=0, ge=0)
    processed_emails: int = Field(default=0, ge=0)
    skipped_emails: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)

    @property
    def handled(self) -> int:
        return self.processed_emails + self.skipped_emails + self.errors

    @classmethod
    def aggregate(cls, stats: Iterable["ProcessingStats"]) -> "ProcessingStats":
        total = cls()
        for s in stats:
            total.total_emails += s.total_emails
            total.spam_emails += s.spam_emails
            total.processed_emails += s.processed_emails
            total.skipped_emails += s.skipped_emails
            total.errors += s.errors
        return total


# --- Run ---


class RunState(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ProcessingRun(BaseModel):
    """In-memory state of one orchestrator pass over the accounts."""

    run_id: str
    state: RunState = RunState.IDLE
    start_time: datetime
    finished_at: datetime | None = None
    accounts: list[str] = Field(default_factory=list)
    account_stats: dict[str, ProcessingStats] = Field(default_factory=dict)
    overall_stats: ProcessingStats = Field(default_factory=ProcessingStats)
    current_account: str | None = None
    failed_accounts: dict[str, str] = Field(default_factory=dict)  # account id -> error


class RunResult(BaseModel):
    """Return value of a processing run."""

    account_stats: dict[str, ProcessingStats] = Field(default_factory=dict)
    overall_stats: ProcessingStats = Field(default_factory=ProcessingStats)


# --- Settings ---


class SimplifyMode(StrEnum):
    AGGRESSIVE = "aggressive"
    STANDARD = "standard"


class ProcessingSettings(BaseModel):
    """User-tunable knobs for a run, loaded from the config layer."""

    sensitivity: int = Field(default=7, ge=1, le=10)
    max_age_days: int = Field(default=1, ge=1)
    simplify_content: bool = True
    simplify_mode: SimplifyMode = SimplifyMode.AGGRESSIVE
    use_custom_guidelines: bool = False
    custom_guidelines: str = ""
    memory_enabled: bool = False
    chat_model: str = ""
    embed_model: str = ""
    similarity_k: int = Field(default=5, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_wait_seconds: float = Field(default=0.0, ge=0.0)


# --- Audit ---


class EmailAuditEntry(BaseModel):
    """A record of a verdict or mailbox action taken by the pipeline."""

    timestamp: datetime
    action: Literal["classified", "moved_to_spam", "move_failed"]
    account_id: str
    email_id: str
    subject: str
    from_address: str
    checksum: str
    score: int = Field(ge=0, le=10)
    is_spam: bool
    moved: bool = False
