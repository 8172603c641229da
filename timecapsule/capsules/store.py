"""CapsuleStore — aiosqlite persistence for time capsules."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite

from timecapsule.capsules.models import Capsule, CapsuleStatus, to_db_timestamp, to_utc
from timecapsule.config import settings

if TYPE_CHECKING:
    from pathlib import Path

    from timecapsule.capsules.models import NewCapsule

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS capsules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    message TEXT NOT NULL,
    image_path TEXT,
    deliver_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    sent_at TEXT
)
"""

_CREATE_DUE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_capsules_status_deliver_at
    ON capsules (status, deliver_at)
"""

_COLUMNS = "id, name, email, message, image_path, deliver_at, created_at, status, sent_at"


class CapsuleStoreError(Exception):
    """Base class for store-level failures on a single capsule."""

    def __init__(self, capsule_id: int, message: str) -> None:
        super().__init__(message)
        self.capsule_id = capsule_id


class CapsuleNotFoundError(CapsuleStoreError):
    def __init__(self, capsule_id: int) -> None:
        super().__init__(capsule_id, f"Capsule not found: {capsule_id}")


class CapsuleStateError(CapsuleStoreError):
    """The capsule exists but is no longer pending."""

    def __init__(self, capsule_id: int, status: CapsuleStatus) -> None:
        super().__init__(capsule_id, f"Capsule {capsule_id} is already {status}")
        self.status = status


@dataclass
class CapsulePage:
    """One page of a capsule listing."""

    items: list[Capsule] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


class CapsuleStore:
    """Persists capsules in SQLite.

    Singleton accessed via ``CapsuleStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).

    Every operation opens its own short-lived connection; the single-row
    status transitions are conditional updates, so concurrent callers never
    need an in-process lock.
    """

    _instance: CapsuleStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> CapsuleStore:
        """Return the shared CapsuleStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_DUE_INDEX)
            await db.commit()
            self._initialised = True
        return db

    @staticmethod
    async def _fetch_one(db: aiosqlite.Connection, capsule_id: int) -> Capsule | None:
        cursor = await db.execute(
            f"SELECT {_COLUMNS} FROM capsules WHERE id = ?", (capsule_id,)
        )
        row = await cursor.fetchone()
        return Capsule.from_row(row) if row else None

    async def _transition(
        self,
        capsule_id: int,
        status: CapsuleStatus,
        sent_at: str | None,
    ) -> Capsule:
        """Move a pending capsule to a terminal status in one conditional UPDATE."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "UPDATE capsules SET status = ?, sent_at = ? WHERE id = ? AND status = ?",
                (str(status), sent_at, capsule_id, str(CapsuleStatus.PENDING)),
            )
            await db.commit()
            capsule = await self._fetch_one(db, capsule_id)
            if cursor.rowcount == 0:
                if capsule is None:
                    raise CapsuleNotFoundError(capsule_id)
                raise CapsuleStateError(capsule_id, capsule.status)
            if capsule is None:
                raise CapsuleNotFoundError(capsule_id)
            return capsule
        finally:
            await db.close()

    # -- Scheduler operations --------------------------------------------------

    async def fetch_due(self, now: datetime | None = None) -> list[Capsule]:
        """Return pending capsules whose delivery date has arrived, earliest first."""
        cutoff = to_db_timestamp(now or datetime.now(UTC))
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM capsules
                WHERE status = ? AND deliver_at <= ?
                ORDER BY deliver_at ASC, id ASC
                """,
                (str(CapsuleStatus.PENDING), cutoff),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        capsules = [Capsule.from_row(row) for row in rows]
        logger.info("Found %d capsule(s) due for delivery", len(capsules))
        return capsules

    async def mark_sent(self, capsule_id: int, sent_at: datetime | None = None) -> Capsule:
        """Transition a capsule from pending to sent and stamp ``sent_at``.

        Raises:
            CapsuleNotFoundError: No capsule has this id.
            CapsuleStateError: The capsule is no longer pending (e.g. a
                second call for the same id).
        """
        ts = to_db_timestamp(sent_at or datetime.now(UTC))
        capsule = await self._transition(capsule_id, CapsuleStatus.SENT, ts)
        logger.info("Capsule marked as sent: %s", capsule_id)
        return capsule

    async def mark_failed(self, capsule_id: int) -> Capsule:
        """Transition a capsule from pending to failed (terminal)."""
        capsule = await self._transition(capsule_id, CapsuleStatus.FAILED, None)
        logger.info("Capsule marked as failed: %s", capsule_id)
        return capsule

    # -- Intake CRUD -----------------------------------------------------------

    async def add_capsule(self, new: NewCapsule, created_at: datetime | None = None) -> Capsule:
        """Insert a validated submission in pending state. Returns the stored capsule."""
        created = to_utc(created_at) if created_at else datetime.now(UTC)
        if new.deliver_at <= created:
            msg = "deliver_at must be after the creation time"
            raise ValueError(msg)
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                INSERT INTO capsules
                    (name, email, message, image_path, deliver_at, created_at, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new.name,
                    new.email,
                    new.message,
                    new.image_path,
                    to_db_timestamp(new.deliver_at),
                    to_db_timestamp(created),
                    str(CapsuleStatus.PENDING),
                ),
            )
            await db.commit()
            capsule = await self._fetch_one(db, cursor.lastrowid)
        finally:
            await db.close()
        logger.info("Added capsule %s for delivery at %s", capsule.id, capsule.deliver_at)
        return capsule

    async def get_capsule(self, capsule_id: int) -> Capsule | None:
        """Fetch a capsule by id, or None if not found."""
        db = await self._connect()
        try:
            return await self._fetch_one(db, capsule_id)
        finally:
            await db.close()

    async def list_capsules(
        self,
        *,
        status: CapsuleStatus | str | None = None,
        email: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> CapsulePage:
        """List capsules newest first, optionally filtered by status and email."""
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))

        where = ["1 = 1"]
        params: list[object] = []
        if status:
            where.append("status = ?")
            params.append(str(CapsuleStatus(status)))
        if email:
            where.append("email = ?")
            params.append(email.strip().lower())
        clause = " AND ".join(where)

        db = await self._connect()
        try:
            cursor = await db.execute(f"SELECT COUNT(*) FROM capsules WHERE {clause}", params)
            (total,) = await cursor.fetchone()
            cursor = await db.execute(
                f"""
                SELECT {_COLUMNS} FROM capsules WHERE {clause}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return CapsulePage(
            items=[Capsule.from_row(row) for row in rows],
            page=page,
            limit=limit,
            total=total,
        )

    async def stats(self, now: datetime | None = None) -> dict[str, int]:
        """Return capsule counts by status plus recent activity."""
        now = to_utc(now) if now else datetime.now(UTC)
        now_ts = to_db_timestamp(now)
        day_ago = to_db_timestamp(now - timedelta(hours=24))
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(status = 'pending'), 0),
                    COALESCE(SUM(status = 'sent'), 0),
                    COALESCE(SUM(status = 'failed'), 0),
                    COALESCE(SUM(status = 'pending' AND deliver_at <= ?), 0),
                    COALESCE(SUM(created_at >= ?), 0),
                    COALESCE(SUM(sent_at IS NOT NULL AND sent_at >= ?), 0)
                FROM capsules
                """,
                (now_ts, day_ago, day_ago),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        keys = (
            "total",
            "pending",
            "sent",
            "failed",
            "ready_to_send",
            "created_today",
            "sent_today",
        )
        return {key: int(value) for key, value in zip(keys, row, strict=True)}
