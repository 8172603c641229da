"""Capsule records — data model, intake validation and persistence."""

from timecapsule.capsules.models import Capsule, CapsuleStatus, NewCapsule
from timecapsule.capsules.store import (
    CapsuleNotFoundError,
    CapsulePage,
    CapsuleStateError,
    CapsuleStore,
    CapsuleStoreError,
)

__all__ = [
    "Capsule",
    "CapsuleNotFoundError",
    "CapsulePage",
    "CapsuleStateError",
    "CapsuleStatus",
    "CapsuleStore",
    "CapsuleStoreError",
    "NewCapsule",
]
