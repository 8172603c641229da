"""BatchProcessor — chunked, throttled concurrent delivery of due capsules."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from timecapsule.capsules.models import Capsule
    from timecapsule.capsules.store import CapsuleStore
    from timecapsule.delivery.channels import DeliveryChannel

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Per-capsule result of one delivery attempt within a cycle."""

    capsule_id: int
    email: str
    success: bool
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "capsule_id": self.capsule_id,
            "email": self.email,
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
        }


def chunked(items: Sequence[Capsule], size: int) -> list[list[Capsule]]:
    """Split *items* into consecutive chunks of at most *size*, keeping order."""
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchProcessor:
    """Delivers capsules in bounded concurrent chunks.

    A capsule counts as delivered only when the channel succeeded AND the
    store accepted the ``pending -> sent`` transition.  Failures of any single
    capsule are converted to a failed :class:`Outcome` and never affect its
    siblings.

    Args:
        store: CapsuleStore used to record successful deliveries.
        channel: DeliveryChannel that sends each capsule.
        max_concurrent: Capsules delivered concurrently per chunk.
        chunk_delay: Seconds to pause between chunks.
    """

    def __init__(
        self,
        store: CapsuleStore,
        channel: DeliveryChannel,
        *,
        max_concurrent: int = 3,
        chunk_delay: float = 2.0,
    ) -> None:
        if max_concurrent < 1:
            msg = "max_concurrent must be at least 1"
            raise ValueError(msg)
        self._store = store
        self._channel = channel
        self._max_concurrent = max_concurrent
        self._chunk_delay = chunk_delay

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def chunk_delay(self) -> float:
        return self._chunk_delay

    async def process_batch(
        self,
        capsules: Sequence[Capsule],
        on_outcome: Callable[[Outcome], None] | None = None,
    ) -> list[Outcome]:
        """Deliver *capsules* chunk by chunk. Outcomes follow input order."""
        chunks = chunked(capsules, self._max_concurrent)
        logger.info("Processing %d capsule(s) in %d chunk(s)", len(capsules), len(chunks))

        outcomes: list[Outcome] = []
        for index, chunk in enumerate(chunks):
            logger.debug(
                "Processing chunk %d/%d (%d capsule(s))", index + 1, len(chunks), len(chunk)
            )
            settled = await asyncio.gather(
                *(self._process_one(capsule) for capsule in chunk),
                return_exceptions=True,
            )
            for capsule, result in zip(chunk, settled, strict=True):
                if isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result
                if isinstance(result, Exception):
                    # _process_one already catches Exception; this is the last net.
                    logger.error(
                        "Unhandled error processing capsule %s: %r", capsule.id, result
                    )
                    result = Outcome(capsule.id, capsule.email, False, error=repr(result))
                outcomes.append(result)
                if on_outcome is not None:
                    on_outcome(result)

            if index < len(chunks) - 1 and self._chunk_delay > 0:
                await self._pause()
        return outcomes

    async def _pause(self) -> None:
        logger.debug("Waiting %.1fs before the next chunk", self._chunk_delay)
        await asyncio.sleep(self._chunk_delay)

    async def _process_one(self, capsule: Capsule) -> Outcome:
        logger.info("Processing capsule %s for %s", capsule.id, capsule.email)
        try:
            result = await self._channel.deliver(capsule)
        except Exception as exc:
            logger.exception("Delivery raised for capsule %s", capsule.id)
            return Outcome(capsule.id, capsule.email, False, error=str(exc) or repr(exc))

        if not result.ok:
            logger.error(
                "Delivery failed for capsule %s after %d attempt(s): %s",
                capsule.id,
                result.attempts,
                result.error,
            )
            error = result.error or "Delivery failed"
            return Outcome(capsule.id, capsule.email, False, error=error)

        try:
            await self._store.mark_sent(capsule.id)
        except Exception as exc:
            # The email went out but the store did not record it: a later cycle
            # may deliver this capsule again.
            logger.exception(
                "Capsule %s delivered to %s (message id %s) but not marked as sent",
                capsule.id,
                capsule.email,
                result.message_id,
            )
            return Outcome(
                capsule.id,
                capsule.email,
                False,
                message_id=result.message_id,
                error=f"Delivered but not recorded: {exc}",
            )

        logger.info("Capsule %s delivered", capsule.id)
        return Outcome(capsule.id, capsule.email, True, message_id=result.message_id)
