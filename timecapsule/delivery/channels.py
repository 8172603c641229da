"""DeliveryChannel protocol — interface for anything that can deliver a capsule."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from timecapsule.capsules.models import Capsule


@dataclass
class DeliveryResult:
    """Final outcome of delivering one capsule, after any internal retries."""

    ok: bool
    message_id: str | None = None
    error: str | None = None
    attempts: int = 0


@runtime_checkable
class DeliveryChannel(Protocol):
    """Protocol that all delivery channels must satisfy."""

    @property
    def name(self) -> str:
        """Unique channel identifier (e.g. 'email')."""
        ...

    async def deliver(self, capsule: Capsule) -> DeliveryResult:
        """Deliver one capsule. Reports failure in the result instead of raising."""
        ...
