import asyncio
import threading
import time

import pytest

from showjudge.models import Phase, Role, Track
from showjudge.notifications import NotificationHub, channel_for
from showjudge.phases import PhaseStore


class FakeSocket:

    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.received = []

    async def send_json(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket closed")
        self.received.append(data)


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestNotificationHub:

    def setup_method(self):
        self.hub = NotificationHub(send_timeout=0.2)

    def test_channel_names(self):
        assert channel_for(Role.JUDGE) == "role:judge"
        assert channel_for("all") == "role:all"

    def test_role_filter(self, loop):
        judge, user = FakeSocket(), FakeSocket()
        self.hub.subscribe(judge, Role.JUDGE, loop)
        self.hub.subscribe(user, Role.USER, loop)

        receipt = self.hub.broadcast(Role.JUDGE, "Judge Voting is open", "\U0001F513")
        assert receipt.recipients == 1
        assert receipt.wait(timeout=2) == 1
        assert judge.received == [{"type": "notification", "message": "Judge Voting is open", "icon": "\U0001F513"}]
        assert user.received == []

    def test_all_reaches_every_subscriber(self, loop):
        sockets = [FakeSocket() for _ in range(3)]
        for socket, role in zip(sockets, [Role.ADMIN, Role.VENDOR, Role.USER]):
            self.hub.subscribe(socket, role, loop)
        assert self.hub.broadcast(Role.ALL, "hello", "x").wait(timeout=2) == 3
        assert all(len(s.received) == 1 for s in sockets)

    def test_no_subscribers_is_fine(self):
        receipt = self.hub.broadcast(Role.REGISTRAR, "nobody home", "x")
        assert receipt.recipients == 0
        assert receipt.wait() == 0

    def test_cannot_subscribe_as_all(self, loop):
        with pytest.raises(ValueError):
            self.hub.subscribe(FakeSocket(), Role.ALL, loop)

    def test_failed_subscriber_is_dropped(self, loop):
        good, bad = FakeSocket(), FakeSocket(fail=True)
        self.hub.subscribe(good, Role.JUDGE, loop)
        self.hub.subscribe(bad, Role.JUDGE, loop)
        assert self.hub.broadcast(Role.JUDGE, "m", "i").wait(timeout=2) == 1
        assert self.hub.count(Role.JUDGE) == 1
        assert self.hub.broadcast(Role.JUDGE, "m", "i").recipients == 1

    def test_slow_subscriber_is_dropped(self, loop):
        slow = FakeSocket(delay=5)
        self.hub.subscribe(slow, Role.USER, loop)
        assert self.hub.broadcast(Role.ALL, "m", "i").wait(timeout=3) == 0
        assert self.hub.count() == 0

    def test_unsubscribe(self, loop):
        socket = FakeSocket()
        self.hub.subscribe(socket, Role.ADMIN, loop)
        self.hub.unsubscribe(socket)
        self.hub.unsubscribe(socket)
        assert self.hub.count(Role.ADMIN) == 0
        assert self.hub.broadcast(Role.ADMIN, "m", "i").recipients == 0

    def test_broadcast_does_not_wait_for_delivery(self, loop):
        self.hub.send_timeout = 5
        slow = FakeSocket(delay=0.5)
        self.hub.subscribe(slow, Role.USER, loop)
        started = time.monotonic()
        receipt = self.hub.broadcast(Role.USER, "m", "i")
        assert time.monotonic() - started < 0.4
        assert receipt.wait(timeout=3) == 1


class TestPhaseAnnouncements:

    def test_phase_change_reaches_connected_judges(self, loop, config_store):
        hub = NotificationHub()
        judge, vendor = FakeSocket(), FakeSocket()
        hub.subscribe(judge, Role.JUDGE, loop)
        hub.subscribe(vendor, Role.VENDOR, loop)
        phases = PhaseStore(config_store, config_store.load(), hub)

        phases.set_phase(Track.EXPERT, Phase.OPEN)
        assert wait_until(lambda: len(judge.received) == 1)
        assert judge.received[0]["message"] == "Judge Voting is open"
        assert vendor.received == []

        phases.set_phase(Track.SPECIALTY, Phase.OPEN)
        assert wait_until(lambda: len(vendor.received) == 1 and len(judge.received) == 2)
