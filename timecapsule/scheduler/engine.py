"""DeliveryScheduler — APScheduler-driven delivery cycles and their control surface."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from timecapsule.config import settings
from timecapsule.scheduler.batch import BatchProcessor
from timecapsule.scheduler.state import CycleReport, RunState

if TYPE_CHECKING:
    from timecapsule.capsules.store import CapsuleStore
    from timecapsule.delivery.channels import DeliveryChannel

logger = logging.getLogger(__name__)

DELIVERY_JOB_ID = "capsule-delivery"
INITIAL_JOB_ID = "capsule-delivery-initial"


class DeliveryScheduler:
    """Periodically delivers due capsules; one instance owns all run state.

    Cycles are single-flight: a trigger that fires while a cycle is running
    is logged and skipped, never queued.

    Args:
        store: CapsuleStore to fetch due capsules from and record deliveries in.
        channel: DeliveryChannel used to send each capsule.
        cron: Crontab expression for the recurring check (default from settings).
        timezone: IANA timezone the crontab is evaluated in (default from settings).
        max_concurrent: Capsules delivered concurrently per chunk.
        chunk_delay: Seconds to pause between chunks.
        initial_run_delay: Seconds after ``start()`` before the first cycle.
    """

    def __init__(
        self,
        store: CapsuleStore,
        channel: DeliveryChannel,
        *,
        cron: str | None = None,
        timezone: str | None = None,
        max_concurrent: int | None = None,
        chunk_delay: float | None = None,
        initial_run_delay: float | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._cron = cron or settings.scheduler_cron
        self._timezone = timezone or settings.scheduler_timezone
        if chunk_delay is None:
            chunk_delay = settings.scheduler_chunk_delay_ms / 1000
        if initial_run_delay is None:
            initial_run_delay = settings.scheduler_initial_run_delay_s
        self._initial_run_delay = initial_run_delay
        self._processor = BatchProcessor(
            store,
            channel,
            max_concurrent=max_concurrent or settings.scheduler_max_concurrent,
            chunk_delay=chunk_delay,
        )
        self._state = RunState()
        self._scheduler: AsyncIOScheduler | None = None
        self._accepting = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def running(self) -> bool:
        """True while the recurring timer is registered."""
        return self._state.timer_active

    @property
    def processing(self) -> bool:
        """True while a delivery cycle is in flight."""
        return self._state.cycle_running

    # -- Control surface -------------------------------------------------------

    async def start(self) -> bool:
        """Register the recurring trigger and schedule an initial cycle.

        Returns False if already started or the crontab expression is invalid.
        """
        if self._state.timer_active:
            logger.warning("Delivery scheduler is already running")
            return False

        logger.info(
            "Starting delivery scheduler (cron=%r, tz=%s, max_concurrent=%d)",
            self._cron,
            self._timezone,
            self._processor.max_concurrent,
        )
        try:
            trigger = CronTrigger.from_crontab(self._cron, timezone=self._timezone)
        except (ValueError, LookupError):
            logger.exception("Invalid schedule: cron=%r tz=%s", self._cron, self._timezone)
            return False

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._scheduler.add_job(
            self._run_scheduled,
            trigger=trigger,
            id=DELIVERY_JOB_ID,
            name="Deliver due capsules",
            args=["timer"],
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._run_scheduled,
            trigger=DateTrigger(
                run_date=datetime.now(UTC) + timedelta(seconds=self._initial_run_delay),
            ),
            id=INITIAL_JOB_ID,
            name="Initial delivery check",
            args=["startup"],
            misfire_grace_time=None,
            replace_existing=True,
        )
        self._scheduler.start()
        self._accepting = True
        self._state.timer_active = True
        self._refresh_next_run()
        logger.info("Delivery scheduler started. Next run: %s", self._state.next_run_at)
        return True

    async def stop(self) -> bool:
        """Stop the timer after any in-flight cycle has finished.

        Returns False if the scheduler was not running.
        """
        if not self._state.timer_active:
            logger.warning("Delivery scheduler is not running")
            return False

        logger.info("Stopping delivery scheduler...")
        self._accepting = False
        if not self._idle.is_set():
            logger.info("Waiting for the in-flight delivery cycle to finish")
        while not self._idle.is_set():
            await self._idle.wait()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._state.timer_active = False
        self._state.next_run_at = None
        logger.info("Delivery scheduler stopped")
        return True

    async def run_once(self) -> CycleReport:
        """Run a delivery cycle now. Never raises; failures are in the report."""
        logger.info("Running delivery cycle manually")
        try:
            return await self._run_cycle("manual")
        except Exception as exc:
            logger.exception("Manual delivery cycle failed")
            return CycleReport(finished_at=datetime.now(UTC), error=str(exc))

    def status(self) -> dict[str, Any]:
        """Snapshot of run state, schedule and effective configuration."""
        snapshot = self._state.snapshot()
        snapshot.update(
            {
                "cron": self._cron,
                "timezone": self._timezone,
                "config": {
                    "max_concurrent": self._processor.max_concurrent,
                    "chunk_delay_ms": int(self._processor.chunk_delay * 1000),
                    "channel": self._channel.name,
                    "max_delivery_retries": getattr(self._channel, "max_retries", None),
                    "retry_delay_ms": _to_ms(getattr(self._channel, "retry_delay", None)),
                },
            }
        )
        return snapshot

    def reset_stats(self) -> None:
        """Clear cumulative counters and the last-run time."""
        logger.info("Resetting delivery scheduler statistics")
        self._state.reset_totals()

    # -- Cycle -----------------------------------------------------------------

    async def _run_scheduled(self, trigger: str) -> None:
        """Callback invoked by APScheduler."""
        if not self._accepting:
            logger.info("Scheduler is stopping, ignoring %s trigger", trigger)
            return
        await self._run_cycle(trigger)

    async def _run_cycle(self, trigger: str) -> CycleReport:
        if self._state.timer_active and not self._accepting:
            logger.warning("Delivery scheduler is stopping, skipping %s trigger", trigger)
            return CycleReport(finished_at=datetime.now(UTC), skipped=True)
        if self._state.cycle_running:
            logger.warning("Delivery cycle already in progress, skipping %s trigger", trigger)
            return CycleReport(finished_at=datetime.now(UTC), skipped=True)

        report = CycleReport()
        self._state.begin_cycle(report.started_at)
        self._idle.clear()
        logger.info("Checking for due capsules (%s)", trigger)
        try:
            capsules = await self._store.fetch_due()
            if not capsules:
                logger.info("No capsules due for delivery")
            else:
                logger.info("Found %d capsule(s) to deliver", len(capsules))
                self._state.current_batch_size = len(capsules)
                report.outcomes = await self._processor.process_batch(
                    capsules, on_outcome=self._state.record_outcome
                )
            self._state.last_run_at = report.started_at
        except Exception as exc:
            logger.exception("Delivery cycle aborted")
            self._state.total_errors += 1
            report.error = str(exc) or type(exc).__name__
        finally:
            report.finished_at = datetime.now(UTC)
            self._state.end_cycle()
            self._idle.set()
            self._refresh_next_run()

        if report.outcomes:
            logger.info(
                "Delivery cycle finished: %d sent, %d failed in %dms",
                report.sent_count,
                report.failed_count,
                report.duration_ms,
            )
        for outcome in report.outcomes:
            if not outcome.success:
                logger.error(
                    "Capsule %s (%s) not delivered: %s",
                    outcome.capsule_id,
                    outcome.email,
                    outcome.error,
                )
        return report

    def _refresh_next_run(self) -> None:
        if self._scheduler is None:
            return
        job = self._scheduler.get_job(DELIVERY_JOB_ID)
        self._state.next_run_at = job.next_run_time if job else None


def _to_ms(seconds: float | None) -> int | None:
    return None if seconds is None else int(seconds * 1000)
