"""Delivery scheduler — batch processing, run state and the recurring loop."""

from timecapsule.scheduler.batch import BatchProcessor, Outcome
from timecapsule.scheduler.engine import DeliveryScheduler
from timecapsule.scheduler.state import CycleReport, RunState

__all__ = [
    "BatchProcessor",
    "CycleReport",
    "DeliveryScheduler",
    "Outcome",
    "RunState",
]
