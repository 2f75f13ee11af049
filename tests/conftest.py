import sys
import os
import pathlib
import tempfile
import uuid
import asyncio
import warnings
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Point the service at a throwaway sqlite file and keep the in-process scan
# loop off. wapiti.db reads DATABASE_URL at import time, so this must run
# before any wapiti import below.
_TMPDIR = tempfile.mkdtemp(prefix='wapiti-tests-')
os.environ['DATABASE_URL'] = f"sqlite+aiosqlite:///{os.path.join(_TMPDIR, 'test.db')}"
os.environ['REMINDER_SCAN_ENABLE'] = '0'
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sqlalchemy import delete as sqlalchemy_delete

from wapiti.main import app
from wapiti.api import get_dispatcher
from wapiti.db import init_db, async_session
from wapiti.models import User, Task, DeviceRegistration, UserPreferences
from wapiti.auth import hash_password
from wapiti.delivery import DeliveryAdapter, DeliveryResult, UnavailableChannelAdapter
from wapiti.dispatcher import NotificationDispatcher
from wapiti.utils import now_utc
from wapiti_device.platform import PushPlatform, PushSubscriptionHandle, PlatformError


class FakePushAdapter(DeliveryAdapter):
    """Records every deliver() call; outcome chosen per endpoint."""

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = dict(outcomes or {})
        self.delay = delay
        self.calls = []

    async def deliver(self, registration, payload):
        self.calls.append((registration.id, registration.endpoint, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.get(registration.endpoint, 'ok')
        if callable(outcome):
            outcome = await outcome(registration, payload)
        if outcome == 'ok':
            return DeliveryResult.ok(201)
        if outcome == 'gone':
            return DeliveryResult.gone('Push endpoint gone (HTTP 410)', 410)
        return DeliveryResult.transient('Push service error (HTTP 503)', 503)

    def endpoints_called(self):
        return [c[1] for c in self.calls]


class FakePlatform(PushPlatform):
    """In-memory push platform. rotate() simulates platform-issued key rotation."""

    def __init__(self, endpoint: str = None, subscribe_failures: int = 0):
        self.endpoint = endpoint or f'https://push.example.test/send/{uuid.uuid4().hex}'
        self.handle = None
        self.subscribe_failures = subscribe_failures
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0

    def _new_handle(self, endpoint=None):
        return PushSubscriptionHandle(
            endpoint=endpoint or self.endpoint,
            p256dh=f'p256-{uuid.uuid4().hex}',
            auth=f'auth-{uuid.uuid4().hex[:16]}',
        )

    def rotate(self):
        self.handle = self._new_handle(self.handle.endpoint if self.handle else None)

    async def get_subscription(self):
        return self.handle

    async def subscribe(self, application_server_key):
        self.subscribe_calls += 1
        if self.subscribe_failures:
            self.subscribe_failures -= 1
            raise PlatformError('permission denied')
        if self.handle is None or not self.handle.is_valid:
            self.endpoint = f'https://push.example.test/send/{uuid.uuid4().hex}'
            self.handle = self._new_handle(self.endpoint)
        return self.handle

    async def unsubscribe(self):
        self.unsubscribe_calls += 1
        self.handle = None


@pytest_asyncio.fixture(autouse=True)
async def ensure_db():
    await init_db()
    # users persist across tests (unique names); reminder state does not
    async with async_session() as sess:
        await sess.exec(sqlalchemy_delete(DeviceRegistration))
        await sess.exec(sqlalchemy_delete(Task))
        await sess.exec(sqlalchemy_delete(UserPreferences))
        await sess.commit()
    yield


@pytest.fixture
def make_user():
    async def _make(is_admin: bool = False, password: str = 'testpass'):
        async with async_session() as sess:
            u = User(username=f'user-{uuid.uuid4().hex[:10]}', password_hash=hash_password(password), is_admin=is_admin)
            sess.add(u)
            await sess.commit()
            await sess.refresh(u)
            return u
    return _make


@pytest.fixture
def make_task():
    async def _make(owner: User, text: str = 'Buy milk', minutes: float = -10, **kwargs):
        reminder_time = kwargs.pop('reminder_time', now_utc() + timedelta(minutes=minutes))
        async with async_session() as sess:
            t = Task(owner_id=owner.id, text=text, reminder_time=reminder_time, **kwargs)
            sess.add(t)
            await sess.commit()
            await sess.refresh(t)
            return t
    return _make


@pytest.fixture
def make_registration():
    async def _make(owner: User, endpoint: str = None, **kwargs):
        async with async_session() as sess:
            r = DeviceRegistration(
                owner_id=owner.id,
                endpoint=endpoint or f'https://push.example.test/send/{uuid.uuid4().hex}',
                p256dh=kwargs.pop('p256dh', 'p256-key'),
                auth=kwargs.pop('auth', 'auth-key'),
                **kwargs,
            )
            sess.add(r)
            await sess.commit()
            await sess.refresh(r)
            return r
    return _make


@pytest.fixture
def fake_push():
    return FakePushAdapter()


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def dispatcher(fake_push):
    """A dispatcher with fake adapters, also served to the API routes."""
    d = NotificationDispatcher(adapters={
        'push': fake_push,
        'sms': UnavailableChannelAdapter('sms'),
        'email': UnavailableChannelAdapter('email'),
    })
    app.dependency_overrides[get_dispatcher] = lambda: d
    yield d
    app.dependency_overrides.pop(get_dispatcher, None)


async def _login(ac: AsyncClient, user: User, password: str = 'testpass'):
    resp = await ac.post('/auth/token', json={'username': user.username, 'password': password})
    assert resp.status_code == 200
    ac.headers.update({'Authorization': f"Bearer {resp.json()['access_token']}"})


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user()


@pytest_asyncio.fixture
async def client(user):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        await _login(ac, user)
        ac.user = user
        yield ac


@pytest_asyncio.fixture
async def admin_client(make_user):
    admin = await make_user(is_admin=True)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        await _login(ac, admin)
        ac.user = admin
        yield ac


@pytest_asyncio.fixture
async def anon_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest_asyncio.fixture
async def asgi_http():
    """Factory for httpx clients bound to the app, for the device ApiClient."""
    clients = []

    def _make(**kwargs):
        ac = AsyncClient(transport=ASGITransport(app=app), base_url='http://test', **kwargs)
        clients.append(ac)
        return ac
    yield _make
    for ac in clients:
        await ac.aclose()


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so no connection outlives the session."""
    try:
        from wapiti import db as wapiti_db
        asyncio.run(wapiti_db.engine.dispose())
    except Exception:
        pass
