"""Run orchestrator: the spam triage pipeline over all active accounts.

Flow for each account, strictly sequential:
1. Fetch recent emails from the account's mail provider.
2. Skip emails older than the age limit or already checksummed.
3. For each remaining email: retrieve similar past verdicts, classify,
   move spam, record the checksum, remember the verdict, audit.
4. Publish stats and progress after every email.
"""

import asyncio
import logging
import math
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from spamguard.audit.email_logger import EmailAuditLog
from spamguard.dedup_cache import DedupCache, compute_checksum
from spamguard.errors import ConfigurationError, RunInProgressError
from spamguard.events import EventBus
from spamguard.executors.spam_classifier import (
    SpamClassifier,
    applicable_rules,
    resolve_guidelines,
)
from spamguard.integrations.factory import MailProviderRegistry
from spamguard.integrations.protocols import AIBackend, MailProvider
from spamguard.memory.store import SimilarityMemory, memory_text
from spamguard.schemas.email import Account, AccountStatus, Email, Rule
from spamguard.schemas.events import (
    AccountStatsUpdated,
    ProgressUpdated,
    RunCompleted,
    RunEvent,
    RunFailed,
    RunStatusChanged,
)
from spamguard.schemas.memory import SimilarEmail
from spamguard.schemas.processing import (
    ClassificationResult,
    ProcessedEmailResult,
    ProcessingRun,
    ProcessingSettings,
    ProcessingStats,
    RunResult,
    RunState,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def is_within_age(received_at: datetime, max_age_days: int, now: datetime | None = None) -> bool:
    """True if the email is at most ``max_age_days`` old, counting partial days as whole."""
    now = now or datetime.now(UTC)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)
    age_days = math.ceil(abs((now - received_at).total_seconds()) / SECONDS_PER_DAY)
    return age_days <= max_age_days


class CancellationToken:
    """Flag set by ``Orchestrator.stop()`` and checked between pipeline steps."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class Orchestrator:
    """Coordinates one processing run at a time.

    Usage::

        orchestrator = Orchestrator(
            mail_providers=MailProviderRegistry.default(),
            ai=backend,
            dedup=DedupCache(DEDUP_DB_PATH),
            events=bus,
            settings=load_settings(),
        )
        result = await orchestrator.start(accounts, rules)
    """

    def __init__(
        self,
        *,
        mail_providers: MailProviderRegistry,
        ai: AIBackend,
        dedup: DedupCache,
        events: EventBus,
        settings: ProcessingSettings,
        memory: SimilarityMemory | None = None,
        audit_log: EmailAuditLog | None = None,
        classifier: SpamClassifier | None = None,
    ) -> None:
        self._mail_providers = mail_providers
        self._dedup = dedup
        self._events = events
        self._settings = settings
        self._memory = memory
        self._audit_log = audit_log
        self._classifier = classifier or SpamClassifier.from_settings(ai, settings)
        self._guidelines = resolve_guidelines(settings)

        self._run: ProcessingRun | None = None
        self._token: CancellationToken | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._run is not None and self._run.state == RunState.PROCESSING

    @property
    def memory_enabled(self) -> bool:
        return self._settings.memory_enabled and self._memory is not None

    def current_state(self) -> ProcessingRun | None:
        """Snapshot of the current (or last) run, safe to hand to observers."""
        if self._run is None:
            return None
        return self._run.model_copy(deep=True)

    # --- Control ---

    async def start(
        self,
        accounts: Sequence[Account],
        rules: Sequence[Rule],
        max_age_days: int | None = None,
    ) -> RunResult:
        """Process all active accounts and return their stats.

        If ``stop()`` is called meanwhile, returns the stats gathered so far.

        Raises:
            RunInProgressError: If another run is processing.
            ConfigurationError: If a required model is not selected, or
                ``max_age_days`` is below 1.
        """
        if self.is_running:
            raise RunInProgressError(f"Run {self._run.run_id} is already processing")
        self._check_config()

        if max_age_days is None:
            max_age_days = self._settings.max_age_days
        if max_age_days < 1:
            raise ConfigurationError(f"max_age_days must be at least 1, got {max_age_days}")
        active = [a for a in accounts if a.status == AccountStatus.ACTIVE]
        for account in accounts:
            if account.status != AccountStatus.ACTIVE:
                logger.info("Skipping %s account %s", account.status.value, account.display_name)

        run = ProcessingRun(
            run_id=uuid.uuid4().hex,
            state=RunState.PROCESSING,
            start_time=datetime.now(UTC),
            accounts=[a.id for a in active],
        )
        token = CancellationToken()
        self._run, self._token = run, token
        logger.info(
            "Starting run %s: %d active account(s), max age %d day(s)",
            run.run_id,
            len(active),
            max_age_days,
        )
        self._publish(RunStatusChanged(run_id=run.run_id, state=RunState.PROCESSING))

        task = asyncio.create_task(self._execute(run, token, active, rules, max_age_days))
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                logger.info("Run %s stopped", run.run_id)
                return self._result(run)
            # Cancelled by our caller, not by stop().
            token.cancel()
            task.cancel()
            if run.state == RunState.PROCESSING:
                logger.warning("Run %s cancelled by caller", run.run_id)
                self._set_idle(run)
            raise
        finally:
            if self._task is task:
                self._task = None

    def stop(self) -> None:
        """Cancel the active run and force the state to idle."""
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._run is None:
            return
        self._set_idle(self._run)

    def _set_idle(self, run: ProcessingRun) -> None:
        run.state = RunState.IDLE
        run.current_account = None
        logger.info("Run %s set to idle", run.run_id)
        self._publish(RunStatusChanged(run_id=run.run_id, state=RunState.IDLE))

    def _check_config(self) -> None:
        if not self._classifier.model:
            raise ConfigurationError("No chat model selected")
        if self._settings.memory_enabled and not self._settings.embed_model:
            raise ConfigurationError("Similarity memory is enabled but no embedding model is selected")

    # --- Run ---

    async def _execute(
        self,
        run: ProcessingRun,
        token: CancellationToken,
        accounts: Sequence[Account],
        rules: Sequence[Rule],
        max_age_days: int,
    ) -> RunResult:
        try:
            for account in accounts:
                if token.cancelled:
                    break
                await self._process_account(run, token, account, rules, max_age_days)
        except Exception as exc:
            if not token.cancelled:
                run.state = RunState.ERROR
                run.finished_at = datetime.now(UTC)
                logger.exception("Run %s failed", run.run_id)
                self._publish(RunFailed(run_id=run.run_id, error=str(exc)))
            raise

        result = self._result(run)
        if token.cancelled:
            return result

        run.state = RunState.COMPLETED
        run.current_account = None
        run.finished_at = datetime.now(UTC)
        overall = result.overall_stats
        logger.info(
            "Run %s complete: %d email(s), %d processed, %d spam moved, %d skipped, %d error(s)",
            run.run_id,
            overall.total_emails,
            overall.processed_emails,
            overall.spam_emails,
            overall.skipped_emails,
            overall.errors,
        )
        self._publish(RunStatusChanged(run_id=run.run_id, state=RunState.COMPLETED))
        self._publish(
            RunCompleted(
                run_id=run.run_id,
                account_stats=result.account_stats,
                overall_stats=result.overall_stats,
            )
        )
        return result

    async def _process_account(
        self,
        run: ProcessingRun,
        token: CancellationToken,
        account: Account,
        rules: Sequence[Rule],
        max_age_days: int,
    ) -> None:
        stats = ProcessingStats()
        run.account_stats[account.id] = stats
        run.current_account = account.id
        logger.info("Processing account %s", account.display_name)

        try:
            provider = self._mail_providers.get(account.provider)
            emails = await provider.fetch_emails(
                account.connection, max_age_days, account_id=account.id
            )
        except Exception as exc:
            logger.exception("Failed to fetch emails for account %s", account.display_name)
            run.failed_accounts[account.id] = str(exc)
            self._publish_stats(run, account.id)
            return

        stats.total_emails = len(emails)
        logger.info("Fetched %d email(s) for %s", len(emails), account.display_name)

        now = datetime.now(UTC)
        candidates: list[tuple[Email, str]] = []
        for email in emails:
            if not is_within_age(email.received_at, max_age_days, now):
                logger.debug("Skipping old email %s (%s)", email.id, email.received_at)
                stats.skipped_emails += 1
                self._publish_stats(run, account.id)
                continue
            checksum = compute_checksum(email.subject, email.content)
            if self._dedup.has(checksum):
                logger.debug("Skipping already processed email %s", email.id)
                stats.skipped_emails += 1
                self._publish_stats(run, account.id)
                continue
            candidates.append((email, checksum))

        account_rules = applicable_rules(rules, account.id)
        for i, (email, checksum) in enumerate(candidates, 1):
            if token.cancelled:
                break
            logger.info("[%d/%d] %s: %s", i, len(candidates), account.display_name, email.subject)
            try:
                await self._process_email(provider, account, email, checksum, account_rules, stats)
            except Exception:
                stats.errors += 1
                logger.exception("Failed to process email %s (%s)", email.id, email.subject)
            self._publish_stats(run, account.id)

    async def _process_email(
        self,
        provider: MailProvider,
        account: Account,
        email: Email,
        checksum: str,
        rules: Sequence[Rule],
        stats: ProcessingStats,
    ) -> None:
        context = await self._similarity_context(email)
        result = await self._classifier.classify(email, rules, context, self._guidelines)
        is_spam = result.is_spam(self._settings.sensitivity)

        moved = False
        if is_spam:
            moved = await self._move_to_spam(provider, account, email)
            if moved:
                stats.spam_emails += 1

        self._dedup.add(checksum)
        stats.processed_emails += 1

        await self._remember(email, result, is_spam)
        self._audit(
            email,
            ProcessedEmailResult(
                email_id=email.id,
                account_id=account.id,
                checksum=checksum,
                is_spam=is_spam,
                score=result.score,
                reasoning=result.reasoning,
                moved=moved,
            ),
        )

    async def _similarity_context(self, email: Email) -> list[SimilarEmail]:
        if not self.memory_enabled or self._settings.similarity_k <= 0:
            return []
        try:
            return await self._memory.search(
                memory_text(email.subject, email.content), self._settings.similarity_k
            )
        except Exception:
            logger.exception("Similarity lookup failed for email %s", email.id)
            return []

    async def _move_to_spam(self, provider: MailProvider, account: Account, email: Email) -> bool:
        try:
            await provider.move_to_spam_folder(account.connection, email.uid)
        except Exception:
            logger.exception(
                "Failed to move email %s to %s", email.id, account.connection.spam_folder
            )
            return False
        logger.info("Moved email %s to %s", email.id, account.connection.spam_folder)
        return True

    async def _remember(self, email: Email, result: ClassificationResult, is_spam: bool) -> None:
        if not self.memory_enabled:
            return
        try:
            await self._memory.remember(email, result, is_spam=is_spam)
        except Exception:
            logger.exception("Failed to store email %s in similarity memory", email.id)

    def _audit(self, email: Email, result: ProcessedEmailResult) -> None:
        if self._audit_log is None:
            return
        try:
            self._audit_log.log_result(email, result)
        except Exception:
            logger.exception("Failed to write audit entry for email %s", email.id)

    # --- Events ---

    def _publish(self, event: RunEvent) -> None:
        self._events.publish(event)

    def _publish_stats(self, run: ProcessingRun, account_id: str) -> None:
        overall = ProcessingStats.aggregate(run.account_stats.values())
        run.overall_stats = overall
        self._publish(
            AccountStatsUpdated(
                run_id=run.run_id,
                account_id=account_id,
                stats=run.account_stats[account_id].model_copy(),
                aggregate_stats=overall.model_copy(),
            )
        )
        total = overall.total_emails
        percent = round(overall.handled / total * 100) if total else 0
        self._publish(
            ProgressUpdated(
                run_id=run.run_id,
                total=total,
                processed=overall.handled,
                percent=percent,
                current_account=account_id,
            )
        )

    @staticmethod
    def _result(run: ProcessingRun) -> RunResult:
        account_stats = {k: v.model_copy() for k, v in run.account_stats.items()}
        return RunResult(
            account_stats=account_stats,
            overall_stats=ProcessingStats.aggregate(account_stats.values()),
        )
