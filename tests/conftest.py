import itertools
import os

# keep password hashing fast in tests
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app
from notifications import get_notifier
from rate_limit import RateLimiter, get_login_limiter, get_otp_verify_limiter

PASSWORD = "password123"
_phones = itertools.count(9000000000)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send_otp(self, channel, recipient, code):
        self.sent.append({"channel": channel, "recipient": recipient, "code": code})
        return True

    def last_code(self):
        return self.sent[-1]["code"]


@pytest.fixture
def db():
    return mongomock.MongoClient()["studentnest_test"]


@pytest.fixture
def login_limiter():
    return RateLimiter(100, 900)


@pytest.fixture
def otp_limiter():
    return RateLimiter(10, 60)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, login_limiter, otp_limiter, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_login_limiter] = lambda: login_limiter
    app.dependency_overrides[get_otp_verify_limiter] = lambda: otp_limiter
    app.dependency_overrides[get_notifier] = lambda: notifier
    # no context manager: startup would build indexes on the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {user['access_token']}"}


@pytest.fixture
def make_user(client, db):
    """Register a user through the API; `verified=True` also sets the email/phone flags."""

    def _make(role="student", verified=False, email=None, phone=None):
        phone = phone or f"+91{next(_phones)}"
        email = email or f"{role}{phone[-6:]}@example.com"
        res = client.post("/api/auth/register", json={
            "fullName": f"Test {role.title()}",
            "email": email,
            "phone": phone,
            "password": PASSWORD,
            "role": role,
        })
        assert res.status_code == 201, res.text
        data = res.json()["data"]
        if verified:
            db["user"].update_one({"email": email}, {"$set": {"is_email_verified": True, "is_phone_verified": True}})
        return {
            "id": data["user"]["id"],
            "email": email,
            "phone": phone,
            "access_token": data["access_token"],
            "refresh_token": data["refresh_token"],
        }

    return _make


@pytest.fixture
def make_property(client):
    def _make(owner, **overrides):
        body = {
            "title": "Sunny room near campus",
            "description": "Furnished single room, five minutes from the library",
            "price": 8000,
            "roomType": "single",
            "accommodationType": "pg",
            "location": {"address": "12 College Road", "city": "Pune", "pincode": "411001"},
            "totalRooms": 3,
        }
        body.update(overrides)
        res = client.post("/api/properties", json=body, headers=auth(owner))
        assert res.status_code == 201, res.text
        return res.json()["data"]

    return _make
