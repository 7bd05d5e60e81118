# infrastructure/security/delivery_ledger.py
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Tuple

from shared.logging import logger


@dataclass
class _Delivery:
    outcome: asyncio.Future
    recorded_at: float


class DeliveryLedger:
    """Remembers delivery identifiers so a redelivered webhook is not reprocessed.

    The first delivery of an id runs its handler; concurrent and later
    duplicates within the retention window await and share the first
    outcome. A handler that raises is forgotten so the sender may retry.
    """

    def __init__(self, retention_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._deliveries: Dict[str, _Delivery] = {}

    def __contains__(self, delivery_id: str) -> bool:
        return delivery_id in self._deliveries

    def __len__(self) -> int:
        return len(self._deliveries)

    async def run_once(self, delivery_id: str,
                       handler: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Return ``(outcome, replayed)`` for this delivery"""
        existing = self._deliveries.get(delivery_id)
        if existing is not None:
            logger.info("Duplicate delivery, replaying first outcome", delivery_id=delivery_id)
            return await asyncio.shield(existing.outcome), True

        outcome = asyncio.get_running_loop().create_future()
        self._deliveries[delivery_id] = _Delivery(outcome=outcome, recorded_at=self._clock())

        try:
            result = await handler()
        except asyncio.CancelledError:
            self._deliveries.pop(delivery_id, None)
            outcome.cancel()
            raise
        except Exception as e:
            self._deliveries.pop(delivery_id, None)
            outcome.set_exception(e)
            # Retrieved here so an unobserved failure is not reported twice
            outcome.exception()
            raise

        outcome.set_result(result)
        return result, False

    def prune(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        expired = [delivery_id for delivery_id, delivery in self._deliveries.items()
                   if delivery.outcome.done() and delivery.recorded_at < cutoff]
        for delivery_id in expired:
            del self._deliveries[delivery_id]
        return len(expired)
