import asyncio
import json
import threading
from pathlib import Path

import pytest

from conftest import FakeSender, raw_subscription
from devotional_push.dispatcher import Dispatcher
from devotional_push.errors import DeliveryError, RegistryUnavailable
from devotional_push.payload import NotificationPayload
from devotional_push.store import SubscriptionRegistry
from devotional_push.subscription import parse_subscription

PAYLOAD = NotificationPayload(
    title="Palabra del Día", body="Lámpara es a mis pies tu palabra", icon="/i.png", url="/"
)


def _register(registry, *endpoints):
    for endpoint in endpoints:
        registry.register(parse_subscription(raw_subscription(endpoint)))


def _broadcast(registry, sender, concurrency=4):
    return asyncio.run(Dispatcher(registry, sender, concurrency).broadcast(PAYLOAD))


def _by_endpoint(summary):
    return {d.endpoint: d for d in summary.details}


def test_every_subscriber_receives_serialized_payload(registry):
    _register(registry, "https://push.example/a", "https://push.example/b")
    sender = FakeSender()

    summary = _broadcast(registry, sender)

    assert summary.sent == 2
    assert summary.failed == 0
    assert sorted(sender.endpoints()) == ["https://push.example/a", "https://push.example/b"]
    for _, data in sender.sent:
        assert json.loads(data) == PAYLOAD.model_dump()


def test_one_failure_does_not_stop_the_others(registry):
    _register(registry, "https://push.example/1", "https://push.example/2", "https://push.example/3")
    sender = FakeSender({"https://push.example/2": RuntimeError("boom")})

    summary = _broadcast(registry, sender)

    assert summary.sent == 2
    assert summary.failed == 1
    assert len(summary.details) == 3
    failed = _by_endpoint(summary)["https://push.example/2"]
    assert failed.status == "error"
    assert failed.outcome == "transient_failure"
    assert "boom" in failed.error
    assert registry.exists("https://push.example/2")


def test_gone_subscriber_is_pruned(registry):
    _register(registry, "https://push.example/alive", "https://push.example/gone")
    sender = FakeSender({"https://push.example/gone": DeliveryError("410 Gone", 410)})

    summary = _broadcast(registry, sender)

    gone = _by_endpoint(summary)["https://push.example/gone"]
    assert gone.status == "error"
    assert gone.outcome == "permanent_failure"
    assert gone.status_code == 410
    assert gone.pruned is True
    assert summary.sent == 1 and summary.failed == 1
    assert not registry.exists("https://push.example/gone")
    assert registry.exists("https://push.example/alive")


def test_not_found_subscriber_is_pruned(registry):
    _register(registry, "https://push.example/missing")
    sender = FakeSender({"https://push.example/missing": DeliveryError("404", 404)})

    _broadcast(registry, sender)

    assert registry.count() == 0


def test_transient_failure_keeps_subscriber(registry):
    _register(registry, "https://push.example/busy")
    sender = FakeSender({"https://push.example/busy": DeliveryError("503", 503)})

    summary = _broadcast(registry, sender)

    busy = _by_endpoint(summary)["https://push.example/busy"]
    assert busy.status == "error"
    assert busy.outcome == "transient_failure"
    assert busy.pruned is False
    assert summary.failed == 1
    assert registry.exists("https://push.example/busy")


def test_timeout_is_transient(registry):
    _register(registry, "https://push.example/slow")
    sender = FakeSender({"https://push.example/slow": DeliveryError("read timed out")})

    summary = _broadcast(registry, sender)

    assert summary.details[0].outcome == "transient_failure"
    assert registry.exists("https://push.example/slow")


def test_prune_of_already_removed_subscriber_is_not_an_error(registry):
    _register(registry, "https://push.example/raced")

    class RacingSender(FakeSender):
        def send(self, record, data):
            registry.remove(record.endpoint)
            raise DeliveryError("410 Gone", 410)

    summary = _broadcast(registry, RacingSender())

    assert summary.failed == 1
    assert summary.details[0].pruned is True
    assert registry.count() == 0


def test_empty_registry_broadcasts_nothing(registry):
    summary = _broadcast(registry, FakeSender())
    assert summary.sent == 0
    assert summary.failed == 0
    assert summary.details == []


def test_many_subscribers_with_small_concurrency(registry):
    endpoints = [f"https://push.example/{i}" for i in range(20)]
    _register(registry, *endpoints)
    sender = FakeSender({endpoints[3]: DeliveryError("410", 410)})

    summary = _broadcast(registry, sender, concurrency=2)

    assert summary.sent == 19
    assert summary.failed == 1
    assert registry.count() == 19


def test_registry_failure_aborts_broadcast(tmp_path: Path):
    broken = SubscriptionRegistry(tmp_path)
    with pytest.raises(RegistryUnavailable):
        _broadcast(broken, FakeSender())


def test_prune_failure_surfaces_after_every_delivery(registry, monkeypatch):
    endpoints = [f"https://push.example/{i}" for i in range(4)]
    _register(registry, *endpoints)
    sender = FakeSender({endpoints[1]: DeliveryError("410 Gone", 410)})

    def _store_down(endpoint):
        raise RegistryUnavailable("subscriber store unavailable: disk I/O error")

    monkeypatch.setattr(registry, "remove", _store_down)

    with pytest.raises(RegistryUnavailable):
        _broadcast(registry, sender)
    assert sorted(sender.endpoints()) == sorted(endpoints)


def test_slow_delivery_does_not_hold_up_the_others(registry):
    slow = "https://push.example/slow"
    others = [f"https://push.example/{i}" for i in range(3)]
    _register(registry, slow, *others)

    class GatedSender(FakeSender):
        def __init__(self):
            super().__init__()
            self.release = threading.Event()
            self.finished: list[str] = []
            self.waiting = set(others)

        def send(self, record, data):
            if record.endpoint == slow:
                self.release.wait(timeout=5)
            with self._lock:
                self.finished.append(record.endpoint)
                self.waiting.discard(record.endpoint)
                if not self.waiting:
                    self.release.set()

    sender = GatedSender()
    summary = _broadcast(registry, sender, concurrency=4)

    assert summary.sent == 4
    assert sender.finished[-1] == slow
    assert sorted(sender.finished[:3]) == sorted(others)
