"""Decide what happens to a subscription after one delivery attempt."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .store import RemoveResult, SubscriptionRegistry

logger = logging.getLogger(__name__)

GONE_STATUSES = frozenset({404, 410})


class OutcomeKind(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryOutcome:
    kind: OutcomeKind
    reason: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.kind is not OutcomeKind.DELIVERED

    @classmethod
    def delivered(cls) -> "DeliveryOutcome":
        return cls(OutcomeKind.DELIVERED)

    @classmethod
    def from_failure(cls, reason: str, status_code: Optional[int] = None) -> "DeliveryOutcome":
        kind = (
            OutcomeKind.PERMANENT_FAILURE
            if status_code in GONE_STATUSES
            else OutcomeKind.TRANSIENT_FAILURE
        )
        return cls(kind, reason, status_code)


class Decision(str, Enum):
    KEEP = "keep"
    PRUNE = "prune"


def classify(outcome: DeliveryOutcome) -> Decision:
    if outcome.kind is OutcomeKind.PERMANENT_FAILURE:
        return Decision.PRUNE
    return Decision.KEEP


def apply(
    registry: SubscriptionRegistry, endpoint: str, decision: Decision
) -> Optional[RemoveResult]:
    """Carry out ``decision``; returns the removal result when pruning.

    ``NOT_FOUND`` means a concurrent broadcast or an unsubscribe got there
    first, which is already the state we want.
    """
    if decision is not Decision.PRUNE:
        return None
    result = registry.remove(endpoint)
    if result is RemoveResult.NOT_FOUND:
        logger.debug("prune target already gone: %s", endpoint[:60])
    return result
