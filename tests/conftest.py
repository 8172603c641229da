"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from timecapsule.capsules.models import NewCapsule
from timecapsule.capsules.store import CapsuleStore
from timecapsule.delivery.channels import DeliveryResult

if TYPE_CHECKING:
    from pathlib import Path

    from timecapsule.capsules.models import Capsule


class FakeChannel:
    """In-memory DeliveryChannel that records calls and overlap.

    Args:
        fail_ids: Capsule ids whose delivery reports failure.
        raise_ids: Capsule ids whose delivery raises RuntimeError.
        gate: If given, every delivery waits for this event before finishing.
        duration: Seconds each delivery takes.
    """

    def __init__(
        self,
        *,
        fail_ids: tuple[int, ...] = (),
        raise_ids: tuple[int, ...] = (),
        gate: asyncio.Event | None = None,
        duration: float = 0.01,
    ) -> None:
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.gate = gate
        self.duration = duration
        self.calls: list[int] = []
        self.events: list[tuple[str, int]] = []
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0

    @property
    def name(self) -> str:
        return "fake"

    async def deliver(self, capsule: Capsule) -> DeliveryResult:
        self.calls.append(capsule.id)
        self.events.append(("start", capsule.id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self.duration)
        finally:
            self.active -= 1
            self.events.append(("end", capsule.id))
        if capsule.id in self.raise_ids:
            msg = f"unexpected failure for {capsule.id}"
            raise RuntimeError(msg)
        if capsule.id in self.fail_ids:
            return DeliveryResult(ok=False, error="mailbox unavailable", attempts=3)
        return DeliveryResult(ok=True, message_id=f"<{capsule.id}@test>", attempts=1)


@pytest.fixture
def store(tmp_path: Path) -> CapsuleStore:
    """Create a CapsuleStore backed by a temp database."""
    return CapsuleStore(db_path=tmp_path / "test.db")


@pytest.fixture
def make_channel():
    """Factory for FakeChannel instances."""
    return FakeChannel


@pytest.fixture
def seed(store: CapsuleStore):
    """Insert a capsule directly, bypassing the future-date intake check.

    ``deliver_in`` is relative to now; negative values make the capsule due.
    """

    async def _seed(
        deliver_in: timedelta = timedelta(hours=-1),
        *,
        name: str = "Ada",
        email: str = "ada@example.com",
        message: str = "Hello, future me",
        image_path: str | None = None,
        created_ago: timedelta = timedelta(days=30),
    ) -> Capsule:
        now = datetime.now(UTC)
        new = NewCapsule.model_construct(
            name=name,
            email=email,
            message=message,
            deliver_at=now + deliver_in,
            image_path=image_path,
        )
        return await store.add_capsule(new, created_at=now - created_ago)

    return _seed
