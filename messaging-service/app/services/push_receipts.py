"""
Push receipt reconciliation.

Tickets returned by the push provider are queued in Redis; a background
task periodically fetches their receipts and logs every failure. This is a
diagnostic pass only: no retries, and message status is never touched,
because push is a notification channel and not the record of delivery.
"""

import asyncio
import logging
from typing import List, Optional

from app.core.redis_client import RedisClient
from app.services.push_provider import PushProvider, PushReceipt, PushTicket

logger = logging.getLogger(__name__)

PENDING_RECEIPTS_KEY = "push:pending_receipts"


class PushTicketQueue:
    """Outstanding ticket ids waiting for a receipt lookup"""

    def __init__(self, redis_client: RedisClient, key: str = PENDING_RECEIPTS_KEY):
        self.redis = redis_client
        self.key = key

    async def enqueue(self, tickets: List[PushTicket]) -> int:
        """Queue the ids of successfully submitted tickets."""
        ids = [t.id for t in tickets if t.ok and t.id]
        if not ids:
            return 0
        await self.redis.push_items(self.key, *ids)
        return len(ids)

    async def drain(self, max_items: int = 1000) -> List[str]:
        return await self.redis.pop_items(self.key, max_items)


class PushReceiptChecker:
    """Fetches receipts for a batch of tickets and logs the failures"""

    def __init__(self, provider: PushProvider):
        self.provider = provider
        self._task: Optional[asyncio.Task] = None

    async def check(self, ticket_ids: List[str]) -> List[PushReceipt]:
        """
        Look up receipts for the given ticket ids.

        Returns:
            The receipts whose status is "error"
        """
        if not ticket_ids:
            return []

        receipts = await self.provider.get_receipts(ticket_ids)

        failures = []
        for ticket_id, receipt in receipts.items():
            if receipt.status != "error":
                continue
            failures.append(receipt)
            logger.error(f"There was an error sending a notification: {receipt.message}")
            if receipt.error_code:
                logger.error(f"The error code is {receipt.error_code} (ticket {ticket_id})")

        logger.info(
            f"Checked {len(ticket_ids)} push ticket(s): "
            f"{len(receipts)} receipt(s), {len(failures)} failure(s)"
        )
        return failures

    async def run_once(self, queue: PushTicketQueue) -> List[PushReceipt]:
        ticket_ids = await queue.drain()
        return await self.check(ticket_ids)

    async def _loop(self, queue: PushTicketQueue, interval_seconds: float):
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_once(queue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Push receipt check failed: {e}", exc_info=True)

    def start(self, queue: PushTicketQueue, interval_seconds: float):
        """Start the periodic receipt check as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(queue, interval_seconds))
            logger.info(f"Push receipt checker started (every {interval_seconds}s)")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Push receipt checker stopped")
