"""Tests for the run orchestrator (spamguard/orchestrator/processor.py).

Mail provider and AI backend are AsyncMocks; the dedup cache, audit log and
event bus are real, backed by tmp_path.
"""

import asyncio
import json
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from spamguard.audit.email_logger import EmailAuditLog
from spamguard.dedup_cache import DedupCache, compute_checksum
from spamguard.errors import (
    ConfigurationError,
    ProviderAuthError,
    RunInProgressError,
    SchemaMismatchError,
)
from spamguard.events import EventBus
from spamguard.integrations.factory import MailProviderRegistry
from spamguard.orchestrator.processor import Orchestrator, is_within_age
from spamguard.schemas.email import (
    Account,
    AccountStatus,
    Email,
    MailConnectionConfig,
    ProviderType,
    Rule,
)
from spamguard.schemas.events import (
    AccountStatsUpdated,
    ProgressUpdated,
    RunCompleted,
    RunFailed,
    RunStatusChanged,
)
from spamguard.schemas.processing import ProcessingSettings, RunState

SPAM = json.dumps({"score": 9, "reasoning": "Prize scam"})
HAM = json.dumps({"score": 1, "reasoning": "Personal mail"})


# --- Helpers ---


def _make_email(i: int, *, account_id: str = "acct-1", age_days: float = 0, subject: str | None = None) -> Email:
    return Email(
        id=f"<{account_id}-{i}@example.com>",
        uid=str(i),
        account_id=account_id,
        subject=subject or f"Email {i}",
        from_address=f"sender{i}@example.com",
        body=f"Body of email {i}",
        received_at=datetime.now(UTC) - timedelta(days=age_days),
    )


def _make_account(
    account_id: str = "acct-1",
    *,
    status: AccountStatus = AccountStatus.ACTIVE,
    provider: ProviderType = ProviderType.IMAP,
) -> Account:
    return Account(
        id=account_id,
        name=account_id.title(),
        provider=provider,
        status=status,
        connection=MailConnectionConfig(host="imap.example.com", username=f"{account_id}@example.com"),
    )


def _mail_provider(emails_by_account: dict[str, list[Email]]) -> AsyncMock:
    provider = AsyncMock()

    async def fetch(config, max_age_days, *, account_id=""):
        result = emails_by_account[account_id]
        if isinstance(result, Exception):
            raise result
        return list(result)

    provider.fetch_emails.side_effect = fetch
    return provider


def _backend(response: str = SPAM) -> AsyncMock:
    backend = AsyncMock()
    backend.send_message.return_value = response
    return backend


def _scored_backend() -> AsyncMock:
    """Backend whose score is taken from a 'score=N' marker in the subject."""
    backend = AsyncMock()

    async def send(prompt, model):
        match = re.search(r"Subject: .*score=(\d+)", prompt)
        if match is None:
            return "not json at all"
        return json.dumps({"score": int(match.group(1)), "reasoning": "scored"})

    backend.send_message.side_effect = send
    return backend


@pytest.fixture
def dedup(tmp_path):
    with DedupCache(tmp_path / "dedup.db") as cache:
        yield cache


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


def _orchestrator(provider, backend, dedup, bus, **kwargs) -> Orchestrator:
    settings = kwargs.pop("settings", None) or ProcessingSettings(chat_model="llama3")
    return Orchestrator(
        mail_providers=MailProviderRegistry({ProviderType.IMAP: provider}),
        ai=backend,
        dedup=dedup,
        events=bus,
        settings=settings,
        **kwargs,
    )


# --- Age rule ---


class TestIsWithinAge:
    def test_recent_email_kept(self):
        now = datetime(2025, 6, 2, 12, 0, tzinfo=UTC)
        assert is_within_age(now - timedelta(hours=5), 1, now) is True

    def test_partial_day_counts_as_whole(self):
        now = datetime(2025, 6, 2, 12, 0, tzinfo=UTC)
        assert is_within_age(now - timedelta(days=1, minutes=1), 1, now) is False
        assert is_within_age(now - timedelta(days=1, minutes=1), 2, now) is True

    def test_naive_datetime_treated_as_utc(self):
        now = datetime(2025, 6, 2, 12, 0, tzinfo=UTC)
        assert is_within_age(datetime(2025, 6, 2, 10, 0), 1, now) is True


# --- Filtering and stats ---


class TestFiltering:
    async def test_age_and_dedup_partition(self, dedup, bus):
        emails = [_make_email(i) for i in range(7)] + [_make_email(i, age_days=10) for i in range(7, 10)]
        for email in emails[:2]:
            dedup.add(compute_checksum(email.subject, email.content))
        backend = _backend(HAM)
        orchestrator = _orchestrator(_mail_provider({"acct-1": emails}), backend, dedup, bus)

        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.total_emails == 10
        assert stats.skipped_emails == 5
        assert stats.processed_emails == 5
        assert stats.errors == 0
        assert backend.send_message.await_count == 5

    async def test_inactive_accounts_not_fetched(self, dedup, bus):
        provider = _mail_provider({"acct-1": [_make_email(1)], "acct-2": [_make_email(2)]})
        orchestrator = _orchestrator(provider, _backend(HAM), dedup, bus)

        result = await orchestrator.start(
            [_make_account("acct-1"), _make_account("acct-2", status=AccountStatus.TROUBLE)], []
        )

        assert list(result.account_stats) == ["acct-1"]
        assert provider.fetch_emails.await_count == 1

    async def test_max_age_days_passed_to_provider(self, dedup, bus):
        provider = _mail_provider({"acct-1": []})
        orchestrator = _orchestrator(provider, _backend(), dedup, bus)

        await orchestrator.start([_make_account()], [], max_age_days=3)

        assert provider.fetch_emails.call_args.args[1] == 3

    async def test_default_max_age_from_settings(self, dedup, bus):
        provider = _mail_provider({"acct-1": []})
        settings = ProcessingSettings(chat_model="llama3", max_age_days=4)
        orchestrator = _orchestrator(provider, _backend(), dedup, bus, settings=settings)

        await orchestrator.start([_make_account()], [])

        assert provider.fetch_emails.call_args.args[1] == 4

    async def test_zero_max_age_rejected(self, dedup, bus):
        provider = _mail_provider({"acct-1": [_make_email(1)]})
        orchestrator = _orchestrator(provider, _backend(), dedup, bus)

        with pytest.raises(ConfigurationError):
            await orchestrator.start([_make_account()], [], max_age_days=0)

        provider.fetch_emails.assert_not_awaited()
        assert orchestrator.current_state() is None

    async def test_html_only_emails_with_same_subject_not_deduplicated(self, dedup, bus):
        first = _make_email(1, subject="Your invoice").model_copy(
            update={"body": "", "body_html": "<p>Invoice 1001 attached</p>"}
        )
        second = _make_email(2, subject="Your invoice").model_copy(
            update={"body": "", "body_html": "<p>Invoice 2002 attached</p>"}
        )
        emails = {"acct-1": [first]}
        backend = _backend(HAM)
        orchestrator = _orchestrator(_mail_provider(emails), backend, dedup, bus)

        await orchestrator.start([_make_account()], [])
        emails["acct-1"] = [second]
        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.processed_emails == 1
        assert stats.skipped_emails == 0
        assert backend.send_message.await_count == 2


class TestSpamDecision:
    async def test_threshold_decides_move(self, dedup, bus):
        emails = [
            _make_email(1, subject="Offer score=7"),
            _make_email(2, subject="Newsletter score=6"),
        ]
        provider = _mail_provider({"acct-1": emails})
        settings = ProcessingSettings(chat_model="llama3", sensitivity=7)
        orchestrator = _orchestrator(provider, _scored_backend(), dedup, bus, settings=settings)

        result = await orchestrator.start([_make_account()], [])

        provider.move_to_spam_folder.assert_awaited_once()
        assert provider.move_to_spam_folder.call_args.args[1] == "1"
        stats = result.account_stats["acct-1"]
        assert stats.spam_emails == 1
        assert stats.processed_emails == 2

    async def test_move_failure_counts_as_processed_not_spam(self, dedup, bus):
        email = _make_email(1)
        provider = _mail_provider({"acct-1": [email]})
        provider.move_to_spam_folder.side_effect = OSError("connection reset")
        orchestrator = _orchestrator(provider, _backend(SPAM), dedup, bus)

        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.spam_emails == 0
        assert stats.processed_emails == 1
        assert stats.errors == 0
        assert dedup.has(compute_checksum(email.subject, email.content))

    async def test_rules_scoped_to_account(self, dedup, bus):
        backend = _backend(HAM)
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), backend, dedup, bus)
        rules = [
            Rule(id="1", text="GLOBAL RULE"),
            Rule(id="2", text="OTHER ACCOUNT RULE", email_accounts=["acct-2"]),
        ]

        await orchestrator.start([_make_account()], rules)

        prompt = backend.send_message.call_args.args[0]
        assert "GLOBAL RULE" in prompt
        assert "OTHER ACCOUNT RULE" not in prompt


class TestClassificationFailure:
    async def test_failure_counted_and_not_checksummed(self, dedup, bus):
        good = _make_email(1, subject="Fine score=2")
        bad = _make_email(2, subject="Broken")
        backend = _scored_backend()
        orchestrator = _orchestrator(_mail_provider({"acct-1": [bad, good]}), backend, dedup, bus)

        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.errors == 1
        assert stats.processed_emails == 1
        assert backend.send_message.await_count == 3 + 1
        assert not dedup.has(compute_checksum(bad.subject, bad.content))
        assert dedup.has(compute_checksum(good.subject, good.content))

    async def test_failed_email_retried_next_run(self, dedup, bus):
        bad = _make_email(1, subject="Broken")
        backend = _scored_backend()
        orchestrator = _orchestrator(_mail_provider({"acct-1": [bad]}), backend, dedup, bus)

        await orchestrator.start([_make_account()], [])
        result = await orchestrator.start([_make_account()], [])

        assert result.account_stats["acct-1"].errors == 1
        assert backend.send_message.await_count == 6


class TestIdempotenceAndDurability:
    async def test_second_run_skips_everything(self, dedup, bus):
        emails = [_make_email(i) for i in range(4)]
        backend = _backend(HAM)
        orchestrator = _orchestrator(_mail_provider({"acct-1": emails}), backend, dedup, bus)

        await orchestrator.start([_make_account()], [])
        calls_after_first = backend.send_message.await_count
        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.skipped_emails == stats.total_emails == 4
        assert stats.processed_emails == 0
        assert backend.send_message.await_count == calls_after_first

    async def test_checksums_survive_restart(self, tmp_path, bus):
        emails = [_make_email(i) for i in range(3)]
        path = tmp_path / "restart.db"

        first = DedupCache(path)
        await _orchestrator(_mail_provider({"acct-1": emails}), _backend(HAM), first, bus).start(
            [_make_account()], []
        )
        first.close()

        backend = _backend(HAM)
        with DedupCache(path) as second:
            result = await _orchestrator(
                _mail_provider({"acct-1": emails}), backend, second, bus
            ).start([_make_account()], [])

        assert result.overall_stats.skipped_emails == 3
        backend.send_message.assert_not_awaited()


class TestMultipleAccounts:
    async def test_aggregate_matches_sum(self, dedup, bus):
        provider = _mail_provider(
            {
                "acct-1": [_make_email(i, account_id="acct-1") for i in range(3)],
                "acct-2": [_make_email(i, account_id="acct-2") for i in range(2)]
                + [_make_email(9, account_id="acct-2", age_days=30)],
            }
        )
        orchestrator = _orchestrator(provider, _backend(SPAM), dedup, bus)

        result = await orchestrator.start([_make_account("acct-1"), _make_account("acct-2")], [])

        overall = result.overall_stats
        per_account = result.account_stats.values()
        assert overall.processed_emails == sum(s.processed_emails for s in per_account) == 5
        assert overall.total_emails == sum(s.total_emails for s in per_account) == 6
        assert overall.skipped_emails == 1
        assert overall.spam_emails == 5

    async def test_fetch_failure_isolated(self, dedup, bus):
        provider = _mail_provider(
            {
                "acct-1": ProviderAuthError("invalid credentials"),
                "acct-2": [_make_email(1, account_id="acct-2")],
            }
        )
        orchestrator = _orchestrator(provider, _backend(HAM), dedup, bus)

        result = await orchestrator.start([_make_account("acct-1"), _make_account("acct-2")], [])

        assert result.account_stats["acct-1"].total_emails == 0
        assert result.account_stats["acct-2"].processed_emails == 1
        state = orchestrator.current_state()
        assert state.state == RunState.COMPLETED
        assert "invalid credentials" in state.failed_accounts["acct-1"]
        assert "acct-2" not in state.failed_accounts

    async def test_unregistered_provider_type_isolated(self, dedup, bus):
        provider = _mail_provider({"acct-1": [_make_email(1)]})
        orchestrator = _orchestrator(provider, _backend(HAM), dedup, bus)

        result = await orchestrator.start(
            [_make_account("gmail-1", provider=ProviderType.GMAIL), _make_account("acct-1")], []
        )

        assert result.account_stats["gmail-1"].total_emails == 0
        assert result.account_stats["acct-1"].processed_emails == 1
        assert "gmail-1" in orchestrator.current_state().failed_accounts


# --- Events ---


class TestEvents:
    async def test_event_sequence(self, dedup, bus, events):
        emails = [_make_email(1), _make_email(2), _make_email(3, age_days=5)]
        orchestrator = _orchestrator(_mail_provider({"acct-1": emails}), _backend(HAM), dedup, bus)

        await orchestrator.start([_make_account()], [])

        assert isinstance(events[0], RunStatusChanged)
        assert events[0].state == RunState.PROCESSING
        assert isinstance(events[-2], RunStatusChanged)
        assert events[-2].state == RunState.COMPLETED
        assert isinstance(events[-1], RunCompleted)
        assert events[-1].overall_stats.processed_emails == 2

        stats_events = [e for e in events if isinstance(e, AccountStatsUpdated)]
        progress_events = [e for e in events if isinstance(e, ProgressUpdated)]
        assert len(stats_events) == len(progress_events) == 3
        assert [p.processed for p in progress_events] == [1, 2, 3]
        assert progress_events[-1].percent == 100
        assert progress_events[0].percent == 33
        assert all(e.run_id == events[0].run_id for e in events)

    async def test_stats_events_are_snapshots(self, dedup, bus, events):
        emails = [_make_email(1), _make_email(2)]
        orchestrator = _orchestrator(_mail_provider({"acct-1": emails}), _backend(HAM), dedup, bus)

        await orchestrator.start([_make_account()], [])

        stats_events = [e for e in events if isinstance(e, AccountStatsUpdated)]
        assert [e.stats.processed_emails for e in stats_events] == [1, 2]
        assert stats_events[-1].aggregate_stats.processed_emails == 2

    async def test_empty_account_reports_zero_percent(self, dedup, bus, events):
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": ProviderAuthError("nope")}), _backend(), dedup, bus
        )

        await orchestrator.start([_make_account()], [])

        [progress] = [e for e in events if isinstance(e, ProgressUpdated)]
        assert progress.total == 0
        assert progress.percent == 0

    async def test_broken_observer_does_not_break_run(self, dedup, bus):
        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(broken)
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), _backend(HAM), dedup, bus)

        result = await orchestrator.start([_make_account()], [])

        assert result.overall_stats.processed_emails == 1


# --- Run lifecycle ---


def _blocking_backend() -> tuple[AsyncMock, asyncio.Event]:
    """Backend whose send_message never returns; the event is set once it is called."""
    started = asyncio.Event()
    backend = AsyncMock()

    async def send(prompt, model):
        started.set()
        await asyncio.Event().wait()

    backend.send_message.side_effect = send
    return backend, started


class TestRunLifecycle:
    async def test_configuration_error_before_run(self, dedup, bus, events):
        provider = _mail_provider({"acct-1": [_make_email(1)]})
        orchestrator = _orchestrator(
            provider, _backend(), dedup, bus, settings=ProcessingSettings(chat_model="")
        )

        with pytest.raises(ConfigurationError):
            await orchestrator.start([_make_account()], [])

        provider.fetch_emails.assert_not_awaited()
        assert orchestrator.current_state() is None
        assert events == []

    async def test_memory_without_embedding_model_rejected(self, dedup, bus):
        settings = ProcessingSettings(chat_model="llama3", memory_enabled=True)
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": []}), _backend(), dedup, bus, settings=settings, memory=MagicMock()
        )

        with pytest.raises(ConfigurationError):
            await orchestrator.start([_make_account()], [])

    async def test_start_while_processing_raises(self, dedup, bus):
        backend, started = _blocking_backend()
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": [_make_email(1), _make_email(2)]}), backend, dedup, bus
        )

        task = asyncio.create_task(orchestrator.start([_make_account()], []))
        await asyncio.wait_for(started.wait(), timeout=1)
        before = orchestrator.current_state()

        with pytest.raises(RunInProgressError):
            await orchestrator.start([_make_account()], [])

        after = orchestrator.current_state()
        assert after == before
        assert after.state == RunState.PROCESSING

        orchestrator.stop()
        await asyncio.wait_for(task, timeout=1)

    async def test_stop_aborts_in_flight_call(self, dedup, bus, events):
        backend, started = _blocking_backend()
        emails = [_make_email(1), _make_email(2)]
        orchestrator = _orchestrator(_mail_provider({"acct-1": emails}), backend, dedup, bus)

        task = asyncio.create_task(orchestrator.start([_make_account()], []))
        await asyncio.wait_for(started.wait(), timeout=1)
        orchestrator.stop()
        result = await asyncio.wait_for(task, timeout=1)

        assert orchestrator.current_state().state == RunState.IDLE
        assert result.account_stats["acct-1"].processed_emails == 0
        assert backend.send_message.await_count == 1
        assert not dedup.has(compute_checksum(emails[0].subject, emails[0].content))
        assert isinstance(events[-1], RunStatusChanged)
        assert events[-1].state == RunState.IDLE

    async def test_can_start_again_after_stop(self, dedup, bus):
        backend, started = _blocking_backend()
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), backend, dedup, bus)
        task = asyncio.create_task(orchestrator.start([_make_account()], []))
        await asyncio.wait_for(started.wait(), timeout=1)
        orchestrator.stop()
        await asyncio.wait_for(task, timeout=1)

        backend.send_message.side_effect = None
        backend.send_message.return_value = HAM
        result = await orchestrator.start([_make_account()], [])

        assert result.overall_stats.processed_emails == 1
        assert orchestrator.current_state().state == RunState.COMPLETED

    async def test_caller_timeout_returns_run_to_idle(self, dedup, bus, events):
        backend, started = _blocking_backend()
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), backend, dedup, bus)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.start([_make_account()], []), timeout=0.2)

        assert started.is_set()
        assert orchestrator.current_state().state == RunState.IDLE
        assert orchestrator.is_running is False
        assert isinstance(events[-1], RunStatusChanged)
        assert events[-1].state == RunState.IDLE

        backend.send_message.side_effect = None
        backend.send_message.return_value = HAM
        result = await orchestrator.start([_make_account()], [])

        assert result.overall_stats.processed_emails == 1
        assert orchestrator.current_state().state == RunState.COMPLETED

    async def test_unexpected_error_fails_run(self, bus, events):
        dedup = MagicMock()
        dedup.has.side_effect = RuntimeError("database is locked")
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), _backend(), dedup, bus)

        with pytest.raises(RuntimeError, match="database is locked"):
            await orchestrator.start([_make_account()], [])

        assert orchestrator.current_state().state == RunState.ERROR
        assert isinstance(events[-1], RunFailed)
        assert "database is locked" in events[-1].error

    async def test_current_state_is_a_copy(self, dedup, bus):
        orchestrator = _orchestrator(_mail_provider({"acct-1": [_make_email(1)]}), _backend(HAM), dedup, bus)
        await orchestrator.start([_make_account()], [])

        snapshot = orchestrator.current_state()
        snapshot.account_stats["acct-1"].processed_emails = 99

        assert orchestrator.current_state().account_stats["acct-1"].processed_emails == 1

    def test_current_state_before_any_run(self, dedup, bus):
        orchestrator = _orchestrator(_mail_provider({}), _backend(), dedup, bus)
        assert orchestrator.current_state() is None

    def test_stop_without_run_is_noop(self, dedup, bus, events):
        orchestrator = _orchestrator(_mail_provider({}), _backend(), dedup, bus)
        orchestrator.stop()
        assert events == []


# --- Memory and audit ---


class TestSimilarityMemoryIntegration:
    def _settings(self) -> ProcessingSettings:
        return ProcessingSettings(chat_model="llama3", embed_model="embed", memory_enabled=True, similarity_k=3)

    async def test_context_retrieved_and_verdict_remembered(self, dedup, bus):
        memory = MagicMock()
        memory.search = AsyncMock(return_value=[])
        memory.remember = AsyncMock()
        email = _make_email(1)
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": [email]}), _backend(SPAM), dedup, bus,
            settings=self._settings(), memory=memory,
        )

        await orchestrator.start([_make_account()], [])

        memory.search.assert_awaited_once()
        assert memory.search.call_args.args[1] == 3
        memory.remember.assert_awaited_once()
        assert memory.remember.call_args.kwargs["is_spam"] is True

    async def test_memory_failures_are_not_email_errors(self, dedup, bus):
        memory = MagicMock()
        memory.search = AsyncMock(side_effect=RuntimeError("index corrupt"))
        memory.remember = AsyncMock(side_effect=SchemaMismatchError("width 768 != 1024"))
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": [_make_email(1)]}), _backend(HAM), dedup, bus,
            settings=self._settings(), memory=memory,
        )

        result = await orchestrator.start([_make_account()], [])

        stats = result.account_stats["acct-1"]
        assert stats.errors == 0
        assert stats.processed_emails == 1

    async def test_memory_disabled_not_used(self, dedup, bus):
        memory = MagicMock()
        memory.search = AsyncMock(return_value=[])
        memory.remember = AsyncMock()
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": [_make_email(1)]}), _backend(HAM), dedup, bus, memory=memory
        )

        await orchestrator.start([_make_account()], [])

        memory.search.assert_not_awaited()
        memory.remember.assert_not_awaited()


class TestAuditLog:
    async def test_entries_written(self, tmp_path, dedup, bus):
        audit = EmailAuditLog(tmp_path / "audit.jsonl")
        emails = [_make_email(1, subject="Spam score=9"), _make_email(2, subject="Ham score=1")]
        orchestrator = _orchestrator(
            _mail_provider({"acct-1": emails}), _scored_backend(), dedup, bus, audit_log=audit
        )

        await orchestrator.start([_make_account()], [])

        entries = audit.read_entries()
        assert [e.action for e in entries] == ["moved_to_spam", "classified"]
        assert entries[0].score == 9
        assert entries[0].checksum == compute_checksum(emails[0].subject, emails[0].content)
