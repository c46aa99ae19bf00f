import base64
import os
import threading
from contextlib import contextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from devotional_push import main as M
from devotional_push.config import settings
from devotional_push.content import Devotional
from devotional_push.scheduler import state as broadcast_state
from devotional_push.store import SubscriptionRegistry


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def p256dh_key(length: int = 65) -> str:
    return b64url(b"\x04" + os.urandom(length - 1))


def raw_subscription(endpoint: str, p256dh_len: int = 65) -> dict:
    return {
        "endpoint": endpoint,
        "expirationTime": None,
        "keys": {"p256dh": p256dh_key(p256dh_len), "auth": b64url(os.urandom(16))},
    }


class FakeSender:
    """Records every send; raises the configured error for an endpoint."""

    def __init__(self, failures: dict | None = None) -> None:
        self.failures = dict(failures or {})
        self.sent: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send(self, record, data: str) -> None:
        with self._lock:
            self.sent.append((record.endpoint, data))
        error = self.failures.get(record.endpoint)
        if error is not None:
            raise error

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.sent]


DEVOTIONAL = Devotional(
    title="Palabra del Día",
    content="Porque de tal manera amó Dios al mundo " * 10,
    date="2026-10-18",
    source="https://www.bibliaon.com/es/palabra_del_dia/",
)


@pytest.fixture
def registry(tmp_path: Path):
    reg = SubscriptionRegistry(tmp_path / "subscribers.db")
    reg.init()
    yield reg
    reg.dispose()


@pytest.fixture(autouse=True)
def _reset_broadcast_state():
    broadcast_state.reset()
    yield
    broadcast_state.reset()


@pytest.fixture
def make_client(tmp_path: Path, monkeypatch):
    """Start the app on a temp database with a fake push sender."""

    @contextmanager
    def _make(sender: FakeSender | None = None, devotional=DEVOTIONAL, **overrides):
        fake = sender or FakeSender()
        monkeypatch.setattr(settings, "SUBSCRIBERS_DB_PATH", str(tmp_path / "api.db"))
        monkeypatch.setattr(settings, "SEND_WELCOME_NOTIFICATION", False)
        for key, value in overrides.items():
            monkeypatch.setattr(settings, key, value)
        monkeypatch.setattr(M, "build_sender", lambda _settings: fake)

        def _fetch(*args, **kwargs):
            if isinstance(devotional, Exception):
                raise devotional
            return devotional

        monkeypatch.setattr(M, "fetch_devotional", _fetch)
        with TestClient(M.app) as client:
            yield client, fake

    return _make
