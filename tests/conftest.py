import os
import threading
import time

import pytest

# Settings are read at import time, so test defaults go in before any app import.
_ENV_DEFAULTS = {
    "DATABASE_URL": "sqlite://",
    "AUTO_CREATE_TABLES": "false",
    "JWT_SECRET": "test-secret",
    "PUSH_ENABLED": "false",
    "R2_BUCKET": "test-bucket",
}
for _key, _value in _ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _value)

from fastapi.testclient import TestClient
from jose import jwt
from sqlmodel import Session

from discrecovery.db.db import build_engine, get_session, init_db
from discrecovery.main import app
from discrecovery.models.disc import Disc
from discrecovery.models.profile import Profile
from discrecovery.models.qr_code import QRCode, QRCodeStatus
from discrecovery.models.recovery_event import RecoveryEvent, RecoveryStatus
from discrecovery.routers.recoveries import get_push_channel
from discrecovery.services.notifier import NotificationDispatcher
from discrecovery.services.push import PushResult, PushStatus
from discrecovery.services.recovery import RecoveryService


class FakePushChannel:
    """Records every push instead of calling Expo."""

    def __init__(self, status=PushStatus.SENT, error=None, delay=0):
        self.status = status
        self.error = error
        self.delay = delay
        self.started = threading.Event()
        self.sent = []

    def send(self, token, title, body, data=None):
        self.started.set()
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append({"to": token, "title": title, "body": body, "data": data or {}})
        return PushResult(self.status)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def other_session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def push_channel():
    return FakePushChannel()


@pytest.fixture
def service(session, push_channel):
    return RecoveryService(session, NotificationDispatcher(session, push_channel))


@pytest.fixture
def make_profile(session):
    counter = {"n": 0}

    def _make(username=None, full_name=None, push_token="ExponentPushToken[test]"):
        counter["n"] += 1
        profile = Profile(
            email=f"user{counter['n']}@example.com",
            username=username or f"user{counter['n']}",
            full_name=full_name,
            push_token=push_token,
        )
        session.add(profile)
        session.commit()
        session.refresh(profile)
        return profile

    return _make


@pytest.fixture
def make_disc(session):
    def _make(owner, name="Destroyer", short_code=None, qr_status=QRCodeStatus.ACTIVE):
        qr_code = None
        if short_code:
            qr_code = QRCode(
                short_code=short_code,
                status=qr_status,
                assigned_to=owner.id if owner else None,
            )
            session.add(qr_code)
            session.flush()

        disc = Disc(
            owner_id=owner.id if owner else None,
            qr_code_id=qr_code.id if qr_code else None,
            name=name,
            manufacturer="Innova",
        )
        session.add(disc)
        session.commit()
        session.refresh(disc)
        return disc

    return _make


@pytest.fixture
def make_event(session):
    def _make(disc, finder, status=RecoveryStatus.FOUND):
        event = RecoveryEvent(
            disc_id=disc.id,
            finder_id=finder.id,
            owner_id=disc.owner_id,
            status=status,
        )
        session.add(event)
        session.commit()
        session.refresh(event)
        return event

    return _make


@pytest.fixture
def owner(make_profile):
    return make_profile(username="owner", full_name="Olive Owner")


@pytest.fixture
def finder(make_profile):
    return make_profile(username="finder", full_name="Finn Finder")


@pytest.fixture
def stranger(make_profile):
    return make_profile(username="stranger")


@pytest.fixture
def disc(make_disc, owner):
    return make_disc(owner, short_code="ABC123")


@pytest.fixture
def auth_headers():
    def _headers(profile) -> dict:
        token = jwt.encode({"sub": str(profile.id)}, os.environ["JWT_SECRET"], algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def client(engine, push_channel):
    def _get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_push_channel] = lambda: push_channel

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
