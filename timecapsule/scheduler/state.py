"""Process-local run state and per-cycle reports for the delivery scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from timecapsule.scheduler.batch import Outcome


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class RunState:
    """What the scheduler is doing now and has done since the process started.

    This is a cache of recent activity, not an authoritative record: it is
    rebuilt empty on every restart.
    """

    timer_active: bool = False
    cycle_running: bool = False
    cycle_started_at: datetime | None = None
    cycle_processed: int = 0
    cycle_errors: int = 0
    current_batch_size: int = 0
    total_processed: int = 0
    total_errors: int = 0
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    def begin_cycle(self, now: datetime) -> None:
        self.cycle_running = True
        self.cycle_started_at = now
        self.cycle_processed = 0
        self.cycle_errors = 0
        self.current_batch_size = 0

    def end_cycle(self) -> None:
        self.cycle_running = False
        self.cycle_started_at = None
        self.current_batch_size = 0

    def record_outcome(self, outcome: Outcome) -> None:
        if outcome.success:
            self.cycle_processed += 1
            self.total_processed += 1
        else:
            self.cycle_errors += 1
            self.total_errors += 1

    def reset_totals(self) -> None:
        self.total_processed = 0
        self.total_errors = 0
        self.last_run_at = None

    def snapshot(self) -> dict[str, Any]:
        current = None
        if self.cycle_running:
            current = {
                "started_at": _iso(self.cycle_started_at),
                "processed": self.cycle_processed,
                "errors": self.cycle_errors,
                "batch_size": self.current_batch_size,
            }
        return {
            "timer_active": self.timer_active,
            "cycle_running": self.cycle_running,
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "total_processed": self.total_processed,
            "total_errors": self.total_errors,
            "current_cycle": current,
        }


@dataclass
class CycleReport:
    """Result of one delivery cycle, or of a trigger that was skipped."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    outcomes: list[Outcome] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None

    @property
    def sent_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def message(self) -> str:
        if self.skipped:
            return "A delivery cycle is already in progress; run skipped"
        if self.error is not None:
            return f"Delivery cycle failed: {self.error}"
        if not self.outcomes:
            return "No capsules due"
        return f"Delivered {self.sent_count}, failed {self.failed_count}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "skipped": self.skipped,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "sent": self.sent_count,
            "failed": self.failed_count,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
