from __future__ import annotations

import base64
import binascii
import re
from time import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidSubscription

P256DH_LENGTH = 65

_B64URL = re.compile(r"[A-Za-z0-9_-]*={0,2}")


def b64url_decode(value: str) -> bytes:
    if not _B64URL.fullmatch(value):
        raise ValueError("not base64url")
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


class SubscriptionKeys(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    p256dh: str
    auth: str

    @field_validator("p256dh")
    @classmethod
    def _p256dh_is_uncompressed_point(cls, value: str) -> str:
        try:
            raw = b64url_decode(value)
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise ValueError("p256dh is not valid base64url") from exc
        if len(raw) != P256DH_LENGTH:
            raise ValueError(
                f"p256dh must decode to {P256DH_LENGTH} bytes, got {len(raw)}"
            )
        return value

    @field_validator("auth")
    @classmethod
    def _auth_is_base64url(cls, value: str) -> str:
        try:
            raw = b64url_decode(value)
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise ValueError("auth is not valid base64url") from exc
        if not raw:
            raise ValueError("auth must not be empty")
        return value


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys
    created_at: int = Field(default_factory=lambda: int(time()))

    def subscription_info(self) -> dict[str, Any]:
        """Shape expected by ``pywebpush.webpush``."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.keys.p256dh, "auth": self.keys.auth},
        }


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts)


def parse_subscription(raw: Any) -> SubscriptionRecord:
    """Build a record from a browser ``PushSubscription`` JSON body.

    Accepts the bare object or one wrapped as ``{"subscription": {...}}``.
    Raises :class:`InvalidSubscription` before anything reaches storage.
    """
    if isinstance(raw, dict) and isinstance(raw.get("subscription"), dict):
        raw = raw["subscription"]
    if not isinstance(raw, dict):
        raise InvalidSubscription("subscription must be a JSON object")
    endpoint = raw.get("endpoint")
    if isinstance(endpoint, str):
        endpoint = endpoint.strip()
    try:
        return SubscriptionRecord(endpoint=endpoint, keys=raw.get("keys"))
    except ValidationError as exc:
        raise InvalidSubscription(_describe(exc)) from exc
