from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from dateguard.auth import get_settings
from dateguard.config import Settings
from dateguard.database import get_session, init_db
from dateguard.directory import AuthorityContact
from dateguard.main import app, get_directory, get_messaging
from dateguard.messaging import SendReceipt
from dateguard.models import Guardian, GuardianGroup, GuardianGroupMember, User
from dateguard.sessions import set_safety_codes
from dateguard.status import GuardianStatus

SECRET = "test-secret"
API_KEY = "sweep-key"
SAFE, DECOY = "1234", "9876"
T0 = datetime(2025, 6, 1, 20, 0, 0)


class RecordingProvider:
    """Collects outgoing SMS; numbers in ``fail_for`` raise like a carrier rejection."""

    simulated = True

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send_sms(self, to, body):
        if to in self.fail_for:
            raise RuntimeError("carrier rejected")
        self.sent.append((to, body))
        return SendReceipt(to=to, message_id=f"SM{len(self.sent)}", simulated=True)

    def bodies_to(self, phone):
        return [b for to, b in self.sent if to == phone]


class FakeDirectory:
    def __init__(self, contact=None):
        self.calls = 0
        self.contact = contact

    def nearest(self, lat, lng):
        self.calls += 1
        return self.contact


@pytest.fixture
def cfg():
    return Settings(secret_key=SECRET, api_key=API_KEY, database_url="sqlite://")


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=eng)
    return eng


@pytest.fixture
def db(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def directory():
    return FakeDirectory(AuthorityContact(
        name="Central Precinct", address="1 Police Plaza", phone="(555) 010-0911",
        distance=0.8, distance_meters=1290, google_maps_link="https://maps.example/1",
        place_id="abc123",
    ))


@pytest.fixture
def client(db, cfg, provider, directory):
    app.dependency_overrides[get_session] = lambda: db
    app.dependency_overrides[get_settings] = lambda: cfg
    app.dependency_overrides[get_messaging] = lambda: provider
    app.dependency_overrides[get_directory] = lambda: directory
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email="owner@example.com", name="Ava", vai=None):
    u = User(email=email, name=name, phone="5550000000", vai_number=vai)
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def make_guardian(db, user, name, phone, active=True):
    g = Guardian(user_id=user.id, name=name, phone=phone, invitation_token=f"tok-{name}",
                 status=GuardianStatus.ACTIVE if active else GuardianStatus.PENDING)
    db.add(g)
    db.commit()
    db.refresh(g)
    return g


def make_group(db, user, name, members):
    grp = GuardianGroup(user_id=user.id, name=name)
    db.add(grp)
    db.commit()
    db.refresh(grp)
    for g in members:
        db.add(GuardianGroupMember(group_id=grp.id, guardian_id=g.id))
    db.commit()
    return grp


@pytest.fixture
def owner(db):
    u = make_user(db)
    set_safety_codes(db, u.id, SAFE, DECOY, SECRET)
    return u


@pytest.fixture
def guardians(db, owner):
    return [
        make_guardian(db, owner, "jordan", "+15550100101"),
        make_guardian(db, owner, "riley", "+15550100102"),
        make_guardian(db, owner, "pending", "+15550100103", active=False),
    ]


def headers(user):
    return {"X-User-Id": str(user.id)}
