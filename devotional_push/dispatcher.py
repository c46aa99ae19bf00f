from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel

from . import reconcile
from .blocking import limiter, to_thread
from .delivery import PushSender
from .errors import DeliveryError
from .metrics import DELIVERIES, PRUNED
from .payload import NotificationPayload
from .reconcile import Decision, DeliveryOutcome
from .store import SubscriptionRegistry
from .subscription import SubscriptionRecord

logger = logging.getLogger(__name__)


class DeliveryDetail(BaseModel):
    endpoint: str
    status: str
    outcome: str
    error: Optional[str] = None
    status_code: Optional[int] = None
    pruned: bool = False


class BroadcastSummary(BaseModel):
    sent: int
    failed: int
    details: List[DeliveryDetail]


class Dispatcher:
    """Fan one payload out to every registered subscriber.

    Deliveries are independent: each settles on its own and the broadcast
    waits for all of them. Gone endpoints are pruned as part of the same call.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        sender: PushSender,
        concurrency: int = 16,
    ) -> None:
        self.registry = registry
        self.sender = sender
        self._limiter = limiter(concurrency)

    async def _send(self, record: SubscriptionRecord, data: str) -> DeliveryOutcome:
        try:
            await to_thread(self.sender.send, record, data, limiter=self._limiter)
        except DeliveryError as exc:
            return DeliveryOutcome.from_failure(exc.reason, exc.status_code)
        except Exception as exc:  # noqa: BLE001
            logger.exception("unexpected error delivering to %s", record.endpoint[:60])
            return DeliveryOutcome.from_failure(repr(exc))
        return DeliveryOutcome.delivered()

    async def deliver(self, record: SubscriptionRecord, data: str) -> DeliveryDetail:
        outcome = await self._send(record, data)
        DELIVERIES.labels(outcome.kind.value).inc()

        decision = reconcile.classify(outcome)
        pruned = False
        if decision is Decision.PRUNE:
            await to_thread(reconcile.apply, self.registry, record.endpoint, decision)
            PRUNED.inc()
            pruned = True
            logger.info(
                "pruned dead subscription (%s): %s", outcome.status_code, record.endpoint[:60]
            )
        elif outcome.failed:
            logger.warning("push failed for %s: %s", record.endpoint[:60], outcome.reason)

        return DeliveryDetail(
            endpoint=record.endpoint,
            status="error" if outcome.failed else "success",
            outcome=outcome.kind.value,
            error=outcome.reason,
            status_code=outcome.status_code,
            pruned=pruned,
        )

    async def broadcast(self, payload: NotificationPayload) -> BroadcastSummary:
        records = await to_thread(lambda: list(self.registry.list()))
        data = payload.serialize()
        logger.info("broadcasting %r to %d subscribers", payload.title, len(records))

        results = await asyncio.gather(
            *(self.deliver(record, data) for record in records),
            return_exceptions=True,
        )

        details: list[DeliveryDetail] = []
        errors: list[BaseException] = []
        for result in results:
            if isinstance(result, BaseException):
                errors.append(result)
            else:
                details.append(result)
        if errors:
            raise errors[0]

        sent = sum(1 for d in details if d.status == "success")
        summary = BroadcastSummary(sent=sent, failed=len(details) - sent, details=details)
        logger.info("broadcast finished: sent=%d failed=%d", summary.sent, summary.failed)
        return summary
