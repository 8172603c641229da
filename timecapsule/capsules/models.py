"""Capsule data model and intake validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import PurePath
from typing import Any

from pydantic import BaseModel, field_validator

from timecapsule.config import settings

NAME_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 140

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CapsuleStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def to_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime so that lexical order matches chronological order."""
    return to_utc(value).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))


@dataclass
class Capsule:
    """A stored submission awaiting (or having received) delivery.

    Attributes:
        id: Store-assigned integer identifier.
        name: Submitter's name.
        email: Address the capsule is delivered to.
        message: The message to send back.
        image_path: Path of the stored image, or None.
        deliver_at: When the capsule becomes due (aware, UTC).
        created_at: When the capsule was stored (aware, UTC).
        status: ``pending``, ``sent`` or ``failed``.
        sent_at: Set only once the capsule reaches ``sent``.
    """

    id: int
    name: str
    email: str
    message: str
    image_path: str | None
    deliver_at: datetime
    created_at: datetime
    status: CapsuleStatus = CapsuleStatus.PENDING
    sent_at: datetime | None = None

    # -- Convenience properties ------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self.status == CapsuleStatus.PENDING

    @property
    def image_url(self) -> str | None:
        """Public URL of the image as served by the intake API."""
        if not self.image_path:
            return None
        prefix = settings.uploads_url_prefix.rstrip("/")
        return f"{prefix}/{PurePath(self.image_path).name}"

    def is_due(self, now: datetime | None = None) -> bool:
        """A capsule is due when it is still pending and its date has arrived."""
        now = to_utc(now) if now else datetime.now(UTC)
        return self.is_pending and self.deliver_at <= now

    # -- Serialization ---------------------------------------------------------

    @classmethod
    def from_row(cls, row: tuple) -> Capsule:
        """Deserialize from a ``capsules`` row tuple."""
        return cls(
            id=row[0],
            name=row[1],
            email=row[2],
            message=row[3],
            image_path=row[4],
            deliver_at=from_db_timestamp(row[5]),
            created_at=from_db_timestamp(row[6]),
            status=CapsuleStatus(row[7]),
            sent_at=from_db_timestamp(row[8]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "message": self.message,
            "image_path": self.image_path,
            "image_url": self.image_url,
            "deliver_at": self.deliver_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "status": str(self.status),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


class NewCapsule(BaseModel):
    """A submission as received from the intake form, before it is stored."""

    name: str
    email: str
    message: str
    deliver_at: datetime
    image_path: str | None = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        if len(value) > NAME_MAX_LENGTH:
            raise ValueError(f"name must be at most {NAME_MAX_LENGTH} characters")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not _EMAIL_RE.match(value):
            raise ValueError("email must be a valid address")
        return value

    @field_validator("message")
    @classmethod
    def _check_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("message is required")
        if len(value) > MESSAGE_MAX_LENGTH:
            raise ValueError(f"message must be at most {MESSAGE_MAX_LENGTH} characters")
        return value

    @field_validator("deliver_at")
    @classmethod
    def _check_deliver_at(cls, value: datetime) -> datetime:
        value = to_utc(value)
        if value <= datetime.now(UTC):
            raise ValueError("deliver_at must be in the future")
        return value
