"""CLI entry point for the spamguard email triage pipeline.

Commands:
    spamguard run              classify recent mail and move spam (--every N to repeat)
    spamguard accounts         list configured accounts
    spamguard test-connection  check mailbox and AI backend connectivity
    spamguard models           list models offered by the AI backend
    spamguard generate-rule    draft a rule from a plain-language description
    spamguard history          show recent verdicts from the audit log
    spamguard cache ...        inspect or reset the processed-email cache
    spamguard memory ...       inspect, validate or rebuild the similarity memory
"""

import asyncio
import logging
import sys

import click

from spamguard.config import (
    ACCOUNTS_PATH,
    AI_SOURCE,
    AUDIT_LOG_PATH,
    DEDUP_DB_PATH,
    MEMORY_DB_PATH,
    OLLAMA_BASE_URL,
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
    RULES_PATH,
)
from spamguard.errors import ConfigurationError, SpamGuardError

logger = logging.getLogger("spamguard")


def _create_backend():
    """Build the configured AI backend, exiting on bad config."""
    from spamguard.integrations.factory import create_ai_backend

    try:
        return create_ai_backend(
            AI_SOURCE,
            ollama_base_url=OLLAMA_BASE_URL,
            openrouter_api_key=OPENROUTER_API_KEY,
            openrouter_base_url=OPENROUTER_BASE_URL,
        )
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        click.echo("Set these in secrets/internal.env or via SOPS.", err=True)
        sys.exit(1)


def _load_settings(**overrides):
    from spamguard.config import load_settings

    try:
        return load_settings(**overrides)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """spamguard: LLM spam triage for IMAP mailboxes."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ------------------------------------------------------------------
# spamguard run
# ------------------------------------------------------------------


@cli.command()
@click.option("--account", "-a", "account_key", default=None, help="Only process this account (id, name or username).")
@click.option("--max-age-days", "-d", type=int, default=None, help="Override EMAIL_AGE_DAYS.")
@click.option("--model", "-m", default=None, help="Chat model (overrides CHAT_MODEL).")
@click.option("--sensitivity", "-s", type=click.IntRange(1, 10), default=None, help="Spam threshold 1-10.")
@click.option(
    "--every",
    type=click.IntRange(min=1),
    default=None,
    metavar="MINUTES",
    help="Keep running, every MINUTES (overrides SCHEDULER_INTERVAL_MINUTES).",
)
def run(
    account_key: str | None,
    max_age_days: int | None,
    model: str | None,
    sensitivity: int | None,
    every: int | None,
) -> None:
    """Classify recent mail in all active accounts and move spam."""
    asyncio.run(_run_async(account_key, max_age_days, model, sensitivity, every))


def _print_results(orchestrator, result, names: dict[str, str]) -> None:
    state = orchestrator.current_state()
    click.echo("\nResults:")
    for account_id, stats in result.account_stats.items():
        click.echo(
            f"  {names.get(account_id, account_id)}: {stats.total_emails} email(s), "
            f"{stats.processed_emails} classified, {stats.spam_emails} moved to spam, "
            f"{stats.skipped_emails} skipped, {stats.errors} error(s)"
        )
        if state and account_id in state.failed_accounts:
            click.echo(f"    FAILED: {state.failed_accounts[account_id]}", err=True)

    overall = result.overall_stats
    click.echo(
        f"Total: {overall.total_emails} email(s), {overall.processed_emails} classified, "
        f"{overall.spam_emails} moved to spam, {overall.skipped_emails} skipped, "
        f"{overall.errors} error(s)"
    )


async def _run_async(
    account_key: str | None,
    max_age_days: int | None,
    model: str | None,
    sensitivity: int | None,
    every: int | None = None,
) -> None:
    from spamguard.accounts import find_account, load_accounts, load_rules
    from spamguard.audit.email_logger import EmailAuditLog
    from spamguard.config import scheduler_interval
    from spamguard.dedup_cache import DedupCache
    from spamguard.events import EventBus
    from spamguard.integrations.factory import MailProviderRegistry
    from spamguard.memory.embedding import Embedder
    from spamguard.memory.store import SimilarityMemory
    from spamguard.orchestrator.processor import Orchestrator
    from spamguard.orchestrator.scheduler import Scheduler
    from spamguard.schemas.events import AccountStatsUpdated, ProgressUpdated

    settings = _load_settings(chat_model=model, sensitivity=sensitivity)
    try:
        interval = scheduler_interval(every)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    def _load_inputs():
        accounts = load_accounts(ACCOUNTS_PATH)
        if account_key:
            account = find_account(accounts, account_key)
            accounts = [account] if account is not None else []
        return accounts, load_rules(RULES_PATH)

    accounts = load_accounts(ACCOUNTS_PATH)
    if account_key and find_account(accounts, account_key) is None:
        click.echo(f"Error: No account matching {account_key!r}.", err=True)
        sys.exit(1)
    accounts, rules = _load_inputs()
    if not accounts:
        click.echo("No accounts configured.")
        return
    names = {a.id: a.display_name for a in accounts}

    bus = EventBus()

    def _on_stats(event: AccountStatsUpdated) -> None:
        s = event.stats
        logger.debug(
            "%s: %d/%d handled, %d spam",
            event.account_id,
            s.handled,
            s.total_emails,
            s.spam_emails,
        )

    def _on_progress(event: ProgressUpdated) -> None:
        if event.total:
            click.echo(f"  [{event.processed}/{event.total}] {event.percent}%")

    bus.subscribe(_on_stats, AccountStatsUpdated)
    bus.subscribe(_on_progress, ProgressUpdated)

    async with _create_backend() as backend:
        if not settings.chat_model and hasattr(backend, "pick_instruct_model"):
            picked = await backend.pick_instruct_model()
            if picked:
                click.echo(f"Auto-selected model: {picked}")
                settings = settings.model_copy(update={"chat_model": picked})

        with DedupCache(DEDUP_DB_PATH) as dedup:
            memory = None
            if settings.memory_enabled and settings.embed_model:
                memory = SimilarityMemory(MEMORY_DB_PATH, Embedder(backend, settings.embed_model))

            try:
                orchestrator = Orchestrator(
                    mail_providers=MailProviderRegistry.default(),
                    ai=backend,
                    dedup=dedup,
                    memory=memory,
                    events=bus,
                    settings=settings,
                    audit_log=EmailAuditLog(AUDIT_LOG_PATH),
                )
                if interval:
                    scheduler = Scheduler(
                        orchestrator,
                        _load_inputs,
                        interval,
                        max_age_days=max_age_days,
                        on_result=lambda result: _print_results(orchestrator, result, names),
                    )
                    click.echo(f"Running every {interval} minute(s). Press Ctrl+C to stop.")
                    await scheduler.run()
                else:
                    result = await orchestrator.start(accounts, rules, max_age_days)
                    _print_results(orchestrator, result, names)
            except ConfigurationError as exc:
                click.echo(f"Error: {exc}", err=True)
                sys.exit(1)
            finally:
                if memory is not None:
                    memory.close()


# ------------------------------------------------------------------
# spamguard accounts
# ------------------------------------------------------------------


@cli.command()
def accounts() -> None:
    """List configured mail accounts."""
    from spamguard.accounts import load_accounts

    configured = load_accounts(ACCOUNTS_PATH)
    if not configured:
        click.echo(f"No accounts configured (looked in {ACCOUNTS_PATH}).")
        return

    for account in configured:
        conn = account.connection
        click.echo(
            f"  {account.id}  {account.display_name}  [{account.provider.value}, "
            f"{account.status.value}]  {conn.username}@{conn.host}:{conn.port} "
            f"-> {conn.spam_folder}"
        )


# ------------------------------------------------------------------
# spamguard test-connection
# ------------------------------------------------------------------


@cli.command("test-connection")
@click.argument("account_key", required=False)
@click.option("--ai/--no-ai", "check_ai", default=True, show_default=True, help="Also check the AI backend.")
def test_connection(account_key: str | None, check_ai: bool) -> None:
    """Check connectivity to mailboxes and the AI backend."""
    ok = asyncio.run(_test_connection_async(account_key, check_ai))
    if not ok:
        sys.exit(1)


async def _test_connection_async(account_key: str | None, check_ai: bool) -> bool:
    from spamguard.accounts import find_account, load_accounts
    from spamguard.integrations.factory import MailProviderRegistry

    configured = load_accounts(ACCOUNTS_PATH)
    if account_key:
        account = find_account(configured, account_key)
        if account is None:
            click.echo(f"Error: No account matching {account_key!r}.", err=True)
            return False
        configured = [account]

    ok = True
    registry = MailProviderRegistry.default()
    for account in configured:
        try:
            provider = registry.get(account.provider)
            result = await provider.test_connection(account.connection)
        except SpamGuardError as exc:
            click.echo(f"  {account.display_name}: FAILED ({exc})")
            ok = False
            continue
        if result.success:
            click.echo(f"  {account.display_name}: OK")
        else:
            click.echo(f"  {account.display_name}: FAILED ({result.error})")
            ok = False

    if check_ai:
        async with _create_backend() as backend:
            try:
                await backend.test_connection()
                click.echo(f"  AI backend ({AI_SOURCE}): OK")
            except SpamGuardError as exc:
                click.echo(f"  AI backend ({AI_SOURCE}): FAILED ({exc})")
                ok = False

    return ok


# ------------------------------------------------------------------
# spamguard models
# ------------------------------------------------------------------


@cli.command()
@click.option("--embedding", is_flag=True, help="List embedding models instead of chat models.")
def models(embedding: bool) -> None:
    """List models available on the AI backend."""
    asyncio.run(_models_async(embedding))


async def _models_async(embedding: bool = False) -> None:
    async with _create_backend() as backend:
        try:
            if embedding:
                names = await backend.list_embedding_models()
            else:
                names = await backend.list_models()
        except SpamGuardError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    if not names:
        click.echo("No models available.")
        return
    for name in names:
        click.echo(f"  {name}")


# ------------------------------------------------------------------
# spamguard generate-rule
# ------------------------------------------------------------------


@cli.command("generate-rule")
@click.argument("description")
@click.option("--model", "-m", default=None, help="Chat model (overrides CHAT_MODEL).")
def generate_rule(description: str, model: str | None) -> None:
    """Draft a spam rule from a plain-language DESCRIPTION."""
    asyncio.run(_generate_rule_async(description, model))


async def _generate_rule_async(description: str, model: str | None) -> None:
    from spamguard.executors.rule_generator import generate_rule_text

    settings = _load_settings(chat_model=model)
    async with _create_backend() as backend:
        try:
            rule_text = await generate_rule_text(
                description,
                backend=backend,
                model=settings.chat_model,
                max_attempts=settings.max_attempts,
            )
        except SpamGuardError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    click.echo(rule_text)


# ------------------------------------------------------------------
# spamguard history
# ------------------------------------------------------------------


@cli.command()
@click.option("--hours", default=24, show_default=True, help="Lookback period in hours.")
@click.option("--limit", "-n", default=50, show_default=True, help="Max entries to show.")
def history(hours: int, limit: int) -> None:
    """Show recent verdicts from the audit log."""
    from datetime import UTC, datetime, timedelta

    from spamguard.audit.email_logger import EmailAuditLog

    since = datetime.now(UTC) - timedelta(hours=hours)
    entries = EmailAuditLog(AUDIT_LOG_PATH).read_entries(since=since, limit=limit)
    if not entries:
        click.echo(f"No verdicts in the last {hours}h.")
        return

    for e in entries:
        click.echo(
            f"  {e.timestamp:%Y-%m-%d %H:%M}  {e.action:<14} score={e.score:<2} "
            f"{e.from_address}  {e.subject}"
        )
    moved = sum(1 for e in entries if e.action == "moved_to_spam")
    click.echo(f"\n{len(entries)} verdict(s), {moved} moved to spam.")


# ------------------------------------------------------------------
# spamguard cache
# ------------------------------------------------------------------


@cli.group()
def cache() -> None:
    """Inspect or reset the processed-email cache."""


@cache.command("count")
def cache_count() -> None:
    """Show how many emails are marked as processed."""
    from spamguard.dedup_cache import DedupCache

    with DedupCache(DEDUP_DB_PATH) as dedup:
        click.echo(f"{dedup.count()} processed email(s) cached.")


@cache.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
def cache_clear(yes: bool) -> None:
    """Forget processed emails so they are classified again."""
    from spamguard.dedup_cache import DedupCache

    if not yes:
        click.confirm("All cached emails will be classified again on the next run. Continue?", abort=True)
    with DedupCache(DEDUP_DB_PATH) as dedup:
        removed = dedup.clear()
    click.echo(f"Cleared {removed} cached email(s).")


# ------------------------------------------------------------------
# spamguard memory
# ------------------------------------------------------------------


@cli.group()
def memory() -> None:
    """Inspect, validate or rebuild the similarity memory."""


@memory.command("count")
def memory_count() -> None:
    """Show how many classified emails are remembered."""
    from spamguard.memory.store import SimilarityMemory

    with SimilarityMemory(MEMORY_DB_PATH) as store:
        click.echo(f"{store.count()} email(s) remembered.")
        if store.dimension is not None:
            click.echo(f"Embedding model: {store.embed_model or '?'} (dimension {store.dimension})")


@memory.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
def memory_clear(yes: bool) -> None:
    """Delete every remembered email."""
    from spamguard.memory.store import SimilarityMemory

    if not yes:
        click.confirm("All remembered emails will be deleted. Continue?", abort=True)
    with SimilarityMemory(MEMORY_DB_PATH) as store:
        deleted = store.clear_all()
    click.echo(f"Deleted {deleted} remembered email(s).")


@memory.command("rebuild")
@click.option("--model", "-m", default=None, help="Embedding model (overrides EMBED_MODEL).")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
def memory_rebuild(model: str | None, yes: bool) -> None:
    """Re-create the memory for a new embedding model (deletes all records)."""
    asyncio.run(_memory_rebuild_async(model, yes))


async def _memory_rebuild_async(model: str | None, yes: bool) -> None:
    from spamguard.memory.embedding import Embedder
    from spamguard.memory.store import SimilarityMemory

    settings = _load_settings(embed_model=model)
    if not settings.embed_model:
        click.echo("Error: No embedding model selected (set EMBED_MODEL or pass --model).", err=True)
        sys.exit(1)

    async with _create_backend() as backend:
        try:
            dimension = await Embedder(backend, settings.embed_model).dimension()
        except SpamGuardError as exc:
            click.echo(f"Error: Could not query {settings.embed_model}: {exc}", err=True)
            sys.exit(1)

    with SimilarityMemory(MEMORY_DB_PATH) as store:
        count = store.count()
        click.echo(
            f"Rebuilding for {settings.embed_model} (dimension {dimension}) "
            f"will delete {count} remembered email(s)."
        )
        confirmed = yes or click.confirm("Continue?", default=False)
        if not confirmed:
            click.echo("Aborted.")
            return
        deleted = store.rebuild(embed_model=settings.embed_model, dimension=dimension, confirm=True)
    click.echo(f"Rebuilt similarity memory, deleted {deleted} record(s).")


@memory.command("validate")
@click.argument("email_id")
@click.option(
    "--verdict",
    type=click.Choice(["spam", "ham", "unset"]),
    required=True,
    help="What the email actually was.",
)
def memory_validate(email_id: str, verdict: str) -> None:
    """Record whether a remembered email was really spam."""
    from spamguard.memory.store import SimilarityMemory
    from spamguard.schemas.memory import UserValidation

    validation = {
        "spam": UserValidation.CONFIRMED_SPAM,
        "ham": UserValidation.CONFIRMED_HAM,
        "unset": UserValidation.UNSET,
    }[verdict]
    with SimilarityMemory(MEMORY_DB_PATH) as store:
        updated = store.set_user_validation(email_id, validation)
    if not updated:
        click.echo(f"No remembered email with id {email_id!r}.", err=True)
        sys.exit(1)
    click.echo(f"Marked {email_id} as {validation.value} ({updated} record(s)).")
