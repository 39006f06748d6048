import os
from datetime import datetime, timedelta

# Must be set before the application modules read their configuration
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("OTP_PROVIDER", "fake")

import mongomock
import pytest
from fastapi.testclient import TestClient

import events
import main
import users
from database import ensure_indexes, get_db
from otp_provider import FakeOtpProvider, get_otp_provider

OTP_CODE = "123456"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["marketplace_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def otp_provider():
    return FakeOtpProvider(fixed_code=OTP_CODE)


@pytest.fixture
def client(db, otp_provider):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_otp_provider] = lambda: otp_provider
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def future(days=30):
    return datetime.utcnow().replace(microsecond=0) + timedelta(days=days)


def event_payload(**overrides):
    payload = {
        "event_name": "Sharma Wedding Reception",
        "event_type": "Wedding",
        "location": "Chennai Trade Centre",
        "number_of_suppliers": 2,
        "event_date": future().isoformat(),
        "event_time": "18:30",
        "services_needed": ["Dinner", "Desserts"],
        "budget": 150000,
        "status": "Planning",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(user_type="organizer", services=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        extra = {"services": services or []} if user_type == "supplier" else {"company_name": "Vizhaa Events"}
        extra.update(fields)
        return users.create_user(
            db,
            "secret123",
            full_name=f"Test User {n}",
            email=f"user{n}@example.com",
            phone=f"98765{n:05d}",
            user_type=user_type,
            is_verified=True,
            **extra,
        )

    return _make


@pytest.fixture
def make_event(db):
    def _make(organizer, **overrides):
        fields = event_payload(**overrides)
        fields["event_date"] = datetime.fromisoformat(fields["event_date"])
        return events.create_event(db, str(organizer["_id"]), fields)

    return _make


def register(client, user_type="organizer", phone="9000000001", email=None, files=None, **form):
    """Run the OTP-gated signup flow through the API and return the response JSON."""
    sent = client.post("/api/auth/send-otp", json={"phone": phone, "user_type": user_type}).json()
    client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": OTP_CODE, "phone": phone})
    data = {
        "phone": phone,
        "session_id": sent["session_id"],
        "full_name": f"{user_type.title()} {phone}",
        "email": email or f"{phone}@example.com",
        "password": "secret123",
    }
    data.update(form)
    return client.post(f"/api/auth/{user_type}/signup", data=data, files=files).json()


@pytest.fixture
def organizer_token(client):
    return register(client, "organizer", phone="9000000001")["token"]


@pytest.fixture
def supplier_token(client):
    return register(client, "supplier", phone="9000000002", services="Dinner,Snacks")["token"]


def auth(token):
    return {"Authorization": f"Bearer {token}"}
