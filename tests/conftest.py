"""Shared fixtures: a temporary SQLite store, recording fake transports and a settable clock."""
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from circle_checkin.dispatcher import MulticastDispatcher
from circle_checkin.models import Channel, DeviceEndpoint, DispatchResult, User
from circle_checkin.service import CheckinService
from circle_checkin.store import CheckinStore


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeWebPush:
    def __init__(self, fail_tokens=(), delay=0.0, error=None, max_batch_size=500):
        self.fail_tokens = set(fail_tokens)
        self.delay = delay
        self.error = error
        self.max_batch_size = max_batch_size
        self.calls = []

    def send_multicast(self, tokens, notification, link="/", high_priority=False):
        self.calls.append({"tokens": list(tokens), "notification": notification, "link": link,
                           "high_priority": high_priority})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        failed = sum(1 for t in tokens if t in self.fail_tokens)
        return DispatchResult(success_count=len(tokens) - failed, failure_count=failed)

    @property
    def sent_tokens(self):
        return [t for call in self.calls for t in call["tokens"]]


class FakeNativePush:
    def __init__(self, configured=True, fail_tokens=(), slow_tokens=(), error_tokens=(), delay=0.0):
        self.configured = configured
        self.fail_tokens = set(fail_tokens)
        self.slow_tokens = set(slow_tokens)
        self.error_tokens = set(error_tokens)
        self.delay = delay
        self.calls = []

    def is_configured(self):
        return self.configured

    def send(self, token, title, body):
        self.calls.append((token, title, body))
        if token in self.slow_tokens:
            time.sleep(self.delay)
        if token in self.error_tokens:
            raise ConnectionError(f"APNs connection reset for {token}")
        return token not in self.fail_tokens


class FakeEmail:
    def __init__(self, events, result=True, configured=True):
        self.events = events
        self.result = result
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    def send(self, destination, subject, body):
        self.events.append("email")
        self.calls.append((destination, subject, body))
        return self.result


class FakeSms:
    def __init__(self, events, result=True, configured=True):
        self.events = events
        self.result = result
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    def send(self, destination, message):
        self.events.append("sms")
        self.calls.append((destination, message))
        return self.result


@pytest.fixture
def clock():
    # a Tuesday
    return Clock(datetime(2024, 5, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    s = CheckinStore(str(tmp_path / "checkin.db"))
    s.init_db()
    return s


@pytest.fixture
def web_push():
    return FakeWebPush()


@pytest.fixture
def native_push():
    return FakeNativePush()


@pytest.fixture
def contact_events():
    return []


@pytest.fixture
def email(contact_events):
    return FakeEmail(contact_events)


@pytest.fixture
def sms(contact_events):
    return FakeSms(contact_events)


@pytest.fixture
def service(store, web_push, native_push, email, sms, clock):
    dispatcher = MulticastDispatcher(web_push, native_push, timeout=2.0, max_workers=4)
    svc = CheckinService(store, dispatcher, email=email, sms=sms, clock=clock,
                         notify_executor=ThreadPoolExecutor(max_workers=1))
    yield svc
    svc.close()


@pytest.fixture
def drain(service):
    """Wait until every queued post-check-in notification has run."""
    def _drain():
        # single worker: the no-op runs after everything queued before it
        service._notify_pool.submit(lambda: None).result(timeout=5)
    return _drain


@pytest.fixture
def add_user(store):
    def _add(user_id, **fields):
        fields.setdefault("display_name", user_id.title())
        return store.upsert_user(User(id=user_id, **fields))
    return _add


@pytest.fixture
def add_device(store):
    def _add(user_id, token=None, channel=Channel.WEB_PUSH):
        return store.register_endpoint(DeviceEndpoint(token=token or f"tok-{user_id}", user_id=user_id,
                                                      channel=channel))
    return _add


@pytest.fixture
def add_checkin(store):
    def _add(user_id, timestamp):
        with store.transaction() as tx:
            return tx.insert_checkin(user_id, timestamp)
    return _add
