"""Web Push delivery via pywebpush."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

from .config import Settings
from .errors import DeliveryError
from .subscription import SubscriptionRecord

logger = logging.getLogger(__name__)


class PushSender(Protocol):
    def send(self, record: SubscriptionRecord, data: str) -> None: ...


class WebPushSender:
    """Encrypts, signs and posts one message per call.

    Raises :class:`DeliveryError` carrying the push service's status code so
    the dispatcher can tell a gone endpoint from a temporary failure.
    """

    def __init__(
        self,
        private_key: Optional[str],
        claim_email: str,
        ttl: int = 86400,
        timeout: float = 10.0,
    ) -> None:
        self.private_key = private_key
        self.claim_email = claim_email
        self.ttl = ttl
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.private_key)

    def _claims(self) -> dict[str, str]:
        sub = self.claim_email
        if not sub.startswith(("mailto:", "https://")):
            sub = f"mailto:{sub}"
        return {"sub": sub}

    def send(self, record: SubscriptionRecord, data: str) -> None:
        if not self.configured:
            raise DeliveryError("VAPID keys not configured")
        try:
            webpush(
                subscription_info=record.subscription_info(),
                data=data,
                vapid_private_key=self.private_key,
                vapid_claims=self._claims(),
                ttl=self.ttl,
                timeout=self.timeout,
            )
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            status = getattr(response, "status_code", None)
            raise DeliveryError(str(exc), status) from exc
        except requests.RequestException as exc:
            raise DeliveryError(f"push service unreachable: {exc}") from exc
        except (ValueError, TypeError) as exc:
            # http_ece rejects p256dh bytes that are not a P-256 point, py_vapid a bad key
            raise DeliveryError(f"could not encrypt or sign push message: {exc}") from exc


def build_sender(settings: Settings) -> WebPushSender:
    if settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY:
        logger.info("VAPID keys ready (public=%s...)", settings.VAPID_PUBLIC_KEY[:15])
    else:
        logger.warning("VAPID keys not configured; Web Push disabled")
    return WebPushSender(
        private_key=settings.VAPID_PRIVATE_KEY,
        claim_email=settings.VAPID_CLAIM_EMAIL,
        ttl=settings.PUSH_TTL_SECONDS,
        timeout=settings.PUSH_TIMEOUT_SECONDS,
    )
