"""Shared fixtures: an in-memory SQLite app with background jobs off and a recording push transport."""

import os

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['BOOTSTRAP_JOBS_ON_IMPORT'] = '0'
os.environ['ENABLE_NOTIFICATION_JOBS'] = '0'
os.environ['API_SHARED_KEY'] = 'test-shared-key'
os.environ['DEFAULT_TIMEZONE'] = 'UTC'

import threading

import pytest

import app as app_module
from delivery_ledger import DeliveryLedger, SqlLedgerStore
from entity_store import SqlEntityStore
from models import db, User
from push_transport import ChannelResult, STATUS_SENT
from scheduler_tick import SchedulerTick


class FakeTransport:
    """Records every send; per-endpoint statuses default to sent."""

    def __init__(self):
        self.sent = []
        self.statuses = {}
        self.raise_for = set()
        self._lock = threading.Lock()

    def send(self, channels, title, body, data=None):
        results = []
        for channel in channels:
            endpoint = channel['endpoint']
            if endpoint in self.raise_for:
                raise RuntimeError(f"transport down for {endpoint}")
            status = self.statuses.get(endpoint, STATUS_SENT)
            results.append(ChannelResult(endpoint, status, None if status == STATUS_SENT else 'fake error'))
        with self._lock:
            self.sent.append({'channels': list(channels), 'title': title, 'body': body, 'data': data})
        return results

    @property
    def keys(self):
        return [entry['data']['key'] for entry in self.sent]


class FixedClock:
    def __init__(self, value):
        self.value = value

    def now(self):
        return self.value

    def localize(self, value):
        return value.replace(tzinfo=None)


@pytest.fixture
def app_ctx():
    app_module.app.config['TESTING'] = True
    with app_module.app.app_context():
        db.drop_all()
        db.create_all()
        app_module.notification_tick = None
        yield app_module.app
        db.session.remove()
        db.drop_all()
    app_module.notification_tick = None


@pytest.fixture
def client(app_ctx):
    return app_ctx.test_client()


@pytest.fixture
def user(app_ctx):
    u = User(username='ana')
    db.session.add(u)
    db.session.commit()
    return u


@pytest.fixture
def auth_headers(user):
    return {'X-API-Key': 'test-shared-key', 'X-User-Id': str(user.id)}


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def install_tick(app_ctx, fake_transport):
    """Swap the app's tick for one using the fake transport and a fixed clock."""
    def _install(now, checkin_hours=(22, 23)):
        tick = SchedulerTick(
            SqlEntityStore(),
            DeliveryLedger(SqlLedgerStore()),
            fake_transport,
            clock=FixedClock(now),
            checkin_hours=checkin_hours,
        )
        app_module.notification_tick = tick
        return tick
    return _install
