"""Periodic re-runs of the triage pipeline.

Runs are strictly sequential: the next run is only scheduled once the
previous one has finished, so two runs never overlap. Run times are aligned
to wall-clock multiples of the interval (every 15 minutes means :00, :15,
:30, :45), the way a ``*/15 * * * *`` cron entry fires.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

from spamguard.errors import ConfigurationError, RunInProgressError
from spamguard.orchestrator.processor import Orchestrator
from spamguard.schemas.email import Account, Rule
from spamguard.schemas.processing import RunResult

logger = logging.getLogger(__name__)

LoadInputs = Callable[[], tuple[Sequence[Account], Sequence[Rule]]]


def next_run_delay(interval_minutes: int, now: datetime | None = None) -> float:
    """Seconds from ``now`` until the next interval boundary.

    Always positive: exactly on a boundary waits a full interval.
    """
    now = now or datetime.now(UTC)
    interval = interval_minutes * 60
    timestamp = now.timestamp()
    next_boundary = (math.floor(timestamp / interval) + 1) * interval
    return next_boundary - timestamp


class Scheduler:
    """Re-run ``orchestrator.start`` every ``interval_minutes``.

    Accounts and rules are re-read through ``load_inputs`` before every run
    so edits to the JSON files take effect without a restart.

    Usage::

        scheduler = Scheduler(orchestrator, load_inputs, interval_minutes=15)
        await scheduler.run()      # until scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        load_inputs: LoadInputs,
        interval_minutes: int,
        *,
        max_age_days: int | None = None,
        on_result: Callable[[RunResult], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_minutes < 1:
            raise ConfigurationError(f"Scheduler interval must be at least 1 minute, got {interval_minutes}")
        self._orchestrator = orchestrator
        self._load_inputs = load_inputs
        self._interval = interval_minutes
        self._max_age_days = max_age_days
        self._on_result = on_result
        self._sleep = sleep
        self._stopped = False
        self._waiting: asyncio.Future | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop the active run (if any) and end the loop."""
        self._stopped = True
        self._orchestrator.stop()
        if self._waiting is not None and not self._waiting.done():
            self._waiting.cancel()

    async def run(self, max_runs: int | None = None) -> int:
        """Run until stopped, or until ``max_runs`` runs have been attempted.

        A run that fails is logged and the loop carries on at the next
        interval. Configuration errors end the loop, since every later run
        would fail the same way.

        Returns:
            Number of runs attempted.

        Raises:
            ConfigurationError: If a run is rejected for bad configuration.
        """
        attempted = 0
        logger.info("Scheduler started: every %d minute(s)", self._interval)
        while not self._stopped:
            attempted += 1
            await self._run_once()
            if self._stopped or (max_runs is not None and attempted >= max_runs):
                break
            await self._wait()
        logger.info("Scheduler stopped after %d run(s)", attempted)
        return attempted

    async def _run_once(self) -> None:
        accounts, rules = self._load_inputs()
        try:
            result = await self._orchestrator.start(accounts, rules, self._max_age_days)
        except RunInProgressError:
            logger.warning("Scheduled run skipped: another run is still processing")
            return
        except ConfigurationError:
            raise
        except Exception:
            logger.exception("Scheduled run failed")
            return
        if self._on_result is not None:
            self._on_result(result)

    async def _wait(self) -> None:
        delay = next_run_delay(self._interval)
        logger.info("Next run in %.0f second(s)", delay)
        self._waiting = asyncio.ensure_future(self._sleep(delay))
        try:
            await self._waiting
        except asyncio.CancelledError:
            if not self._stopped:
                raise
        finally:
            self._waiting = None
