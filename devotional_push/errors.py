"""Error taxonomy shared by the registry, the dispatcher and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class DevotionalPushError(Exception):
    """Base class for errors the router renders as structured JSON."""

    status_code = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def code(self) -> str:
        return type(self).__name__


class InvalidSubscription(DevotionalPushError):
    status_code = 400


class AlreadyExists(DevotionalPushError):
    status_code = 409


class RegistryUnavailable(DevotionalPushError):
    status_code = 500


class ContentProviderFailure(DevotionalPushError):
    status_code = 500


class DeliveryError(Exception):
    """Raised by a push sender when one delivery did not go through.

    ``status_code`` is the push service's HTTP status when one was received,
    ``None`` for timeouts, connection errors and local misconfiguration.
    """

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
