import os
import uuid
from datetime import datetime, timedelta

# Configure the app before it is imported: in-memory database, fixed secrets,
# and an auth rate limit high enough not to interfere with ordinary tests.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["AUTH_RATE_LIMIT"] = "10000"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import pytest
from fastapi.testclient import TestClient

from teleclinic import rate_limiter
from teleclinic.clock import get_clock
from teleclinic.database import Base, SessionLocal, engine
from teleclinic.main import app
from teleclinic.models import ROLE_ADMIN, User
from teleclinic.rate_limiter import get_redis_provider
from teleclinic.security_utils import create_access_token, hash_password

PASSWORD = "correct-horse-battery"


class FakeClock:
    """Controllable replacement for SystemClock (naive UTC)"""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeRedis:
    """In-process stand-in for the Redis commands the app uses, with expiry driven by FakeClock"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.values: dict[str, str] = {}
        self.expiry: dict[str, datetime] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    def _purge(self, key):
        expires_at = self.expiry.get(key)
        if expires_at is not None and expires_at <= self.clock.now():
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    def ping(self):
        self._check()
        return True

    def info(self):
        self._check()
        return {"redis_version": "fake"}

    def get(self, key):
        self._check()
        self._purge(key)
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.values[key] = str(value)
        if ex is not None:
            self.expiry[key] = self.clock.now() + timedelta(seconds=ex)
        else:
            self.expiry.pop(key, None)
        return True

    def incr(self, key):
        self._check()
        self._purge(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    def expire(self, key, seconds):
        self._check()
        if key not in self.values:
            return False
        self.expiry[key] = self.clock.now() + timedelta(seconds=seconds)
        return True

    def ttl(self, key):
        self._check()
        self._purge(key)
        if key not in self.values:
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - self.clock.now()).total_seconds())


@pytest.fixture()
def fake_clock():
    # 15:00 UTC is noon in Buenos Aires
    return FakeClock(datetime(2026, 3, 10, 15, 0, 0))


@pytest.fixture()
def fake_redis(fake_clock):
    return FakeRedis(fake_clock)


@pytest.fixture()
def client(fake_clock, fake_redis):
    Base.metadata.create_all(bind=engine)
    rate_limiter.memory_cache.clear()
    app.dependency_overrides[get_clock] = lambda: fake_clock
    app.dependency_overrides[get_redis_provider] = lambda: (lambda: fake_redis)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(client):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def register_user(client: TestClient, role: str, email: str = None, display_name: str = None):
    email = email or f"{role}-{uuid.uuid4().hex[:8]}@example.com"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": PASSWORD, "role": role, "displayName": display_name},
    )
    assert response.status_code == 201, response.text
    body = response.json()
    return {
        "id": body["user"]["id"],
        "email": email,
        "role": role,
        "access_token": body["accessToken"],
        "refresh_token": body["refreshToken"],
        "headers": {"Authorization": f"Bearer {body['accessToken']}"},
    }


@pytest.fixture()
def doctor(client):
    return register_user(client, "doctor", display_name="Dr. House")


@pytest.fixture()
def patient(client):
    return register_user(client, "patient", display_name="Pat")


@pytest.fixture()
def other_patient(client):
    return register_user(client, "patient")


@pytest.fixture()
def other_doctor(client):
    return register_user(client, "doctor")


@pytest.fixture()
def admin(client):
    # Admins cannot self-register
    db = SessionLocal()
    try:
        user = User(email="admin@example.com", password_hash=hash_password(PASSWORD), role=ROLE_ADMIN)
        db.add(user)
        db.commit()
        token = create_access_token(user.id, user.role)
        return {
            "id": user.id,
            "role": ROLE_ADMIN,
            "access_token": token,
            "headers": {"Authorization": f"Bearer {token}"},
        }
    finally:
        db.close()


def open_thread(client: TestClient, actor: dict, other: dict) -> dict:
    response = client.get(f"/chats/threads/with/{other['id']}", headers=actor["headers"])
    assert response.status_code == 200, response.text
    return response.json()


def create_consultation(client: TestClient, doctor: dict, patient: dict) -> dict:
    response = client.post(
        "/consultations", json={"patientUserId": patient["id"]}, headers=doctor["headers"]
    )
    assert response.status_code == 201, response.text
    return response.json()


def start_consultation(client: TestClient, doctor: dict, patient: dict) -> dict:
    consultation = create_consultation(client, doctor, patient)
    response = client.post(f"/consultations/{consultation['id']}/start", headers=doctor["headers"])
    assert response.status_code == 200, response.text
    return response.json()


def close_consultation(client: TestClient, doctor: dict, consultation_id: str) -> dict:
    response = client.post(f"/consultations/{consultation_id}/close", headers=doctor["headers"])
    assert response.status_code == 200, response.text
    return response.json()


def send_message(client: TestClient, actor: dict, thread_id: str, text: str, client_message_id=None):
    payload = {"kind": "text", "text": text}
    if client_message_id:
        payload["clientMessageId"] = client_message_id
    return client.post(
        f"/chats/threads/{thread_id}/messages", json=payload, headers=actor["headers"]
    )
