import os
from datetime import timedelta

import httpx
import pytest

import main
import otp_provider
from conftest import OTP_CODE, auth, register
from database import utcnow
from errors import ProviderError, ProviderTimeout
from otp_provider import FakeOtpProvider, TwoFactorProvider, build_otp_provider, format_phone


def test_signup_stores_only_a_hash(client, db):
    body = register(client, "organizer", phone="9123456780", company_name="Vizhaa Events")

    assert body["success"] is True
    assert body["token"]
    assert body["user"]["user_type"] == "organizer"
    assert body["user"]["company_name"] == "Vizhaa Events"
    assert "password_hash" not in body["user"]
    assert "services" not in body["user"]

    stored = db["users"].find_one({"phone": "9123456780"})
    assert stored["password_hash"] != "secret123"
    assert stored["password_hash"].startswith("$2")
    assert stored["is_verified"] is True
    # The session is consumed by the signup
    assert db["otp_sessions"].count_documents({"contact": "9123456780"}) == 0


def test_supplier_signup_splits_services(client):
    body = register(client, "supplier", phone="9123456781", services="Dinner, Snacks")
    assert body["user"]["services"] == ["Dinner", "Snacks"]
    assert body["user"]["is_approved"] is True
    assert "company_name" not in body["user"]


def test_session_cannot_be_reused(client):
    phone = "9123456782"
    sent = client.post("/api/auth/send-otp", json={"phone": phone}).json()
    client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": OTP_CODE, "phone": phone})
    form = {"phone": phone, "session_id": sent["session_id"], "full_name": "Asha Rao",
            "email": "asha@example.com", "password": "secret123"}

    assert client.post("/api/auth/organizer/signup", data=form).status_code == 201
    again = client.post("/api/auth/organizer/signup", data={**form, "email": "other@example.com"})
    assert again.status_code == 404


def test_signup_requires_verified_session(client):
    phone = "9123456783"
    sent = client.post("/api/auth/send-otp", json={"phone": phone}).json()
    res = client.post("/api/auth/organizer/signup", data={
        "phone": phone, "session_id": sent["session_id"], "full_name": "Asha Rao",
        "email": "asha@example.com", "password": "secret123",
    })
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Please verify your OTP first"}


def test_signup_role_must_match_session(client):
    phone = "9123456784"
    sent = client.post("/api/auth/send-otp", json={"phone": phone, "user_type": "supplier"}).json()
    client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": OTP_CODE, "phone": phone})
    res = client.post("/api/auth/organizer/signup", data={
        "phone": phone, "session_id": sent["session_id"], "full_name": "Asha Rao",
        "email": "asha@example.com", "password": "secret123",
    })
    assert res.status_code == 400


def test_duplicate_email_is_rejected(client):
    register(client, "organizer", phone="9123456785", email="same@example.com")
    body = register(client, "organizer", phone="9123456786", email="SAME@example.com")
    assert body == {"success": False, "message": "email already exists"}


def test_login(client):
    register(client, "organizer", phone="9123456787", email="login@example.com")

    by_phone = client.post("/api/auth/login", json={"phone": "9123456787", "password": "secret123"})
    assert by_phone.status_code == 200
    assert by_phone.json()["token"]
    by_email = client.post("/api/auth/login", json={"email": "login@example.com", "password": "secret123"})
    assert by_email.status_code == 200

    wrong = client.post("/api/auth/login", json={"phone": "9123456787", "password": "nope123"})
    unknown = client.post("/api/auth/login", json={"phone": "9999999999", "password": "secret123"})
    # Same answer, so callers cannot tell which accounts exist
    assert wrong.status_code == unknown.status_code == 400
    assert wrong.json() == unknown.json() == {"success": False, "message": "Invalid credentials"}


def test_login_rejects_deactivated_account(client, db):
    register(client, "organizer", phone="9123456788")
    db["users"].update_one({"phone": "9123456788"}, {"$set": {"is_active": False}})
    res = client.post("/api/auth/login", json={"phone": "9123456788", "password": "secret123"})
    assert res.status_code == 400
    assert "deactivated" in res.json()["message"]


def test_one_session_per_contact_and_purpose(client, db, otp_provider):
    phone = "9123456789"
    first = client.post("/api/auth/send-otp", json={"phone": phone}).json()
    second = client.post("/api/auth/resend-otp", json={"phone": phone}).json()

    assert first["session_id"] != second["session_id"]
    assert second["otp"] == OTP_CODE
    sessions = list(db["otp_sessions"].find({"contact": phone, "purpose": "registration"}))
    assert [s["session_id"] for s in sessions] == [second["session_id"]]
    assert len(otp_provider.sent) == 2


def test_send_otp_for_registered_phone(client):
    register(client, "organizer", phone="9123450001")
    res = client.post("/api/auth/send-otp", json={"phone": "9123450001"})
    assert res.status_code == 400
    assert res.json()["message"] == "Phone number already registered"


def test_send_otp_validates_phone(client):
    res = client.post("/api/auth/send-otp", json={"phone": "12345"})
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"
    assert res.json()["errors"][0]["field"] == "phone"


def test_wrong_code(client):
    sent = client.post("/api/auth/send-otp", json={"phone": "9123450002"}).json()
    res = client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": "000000",
                                                    "phone": "9123450002"})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid OTP"


def test_expired_session_is_deleted(client, db):
    phone = "9123450003"
    sent = client.post("/api/auth/send-otp", json={"phone": phone}).json()
    db["otp_sessions"].update_one({"contact": phone}, {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}})

    res = client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": OTP_CODE,
                                                    "phone": phone})
    assert res.status_code == 400
    assert "expired" in res.json()["message"]
    assert db["otp_sessions"].count_documents({"contact": phone}) == 0


def test_otp_status(client):
    phone = "9123450004"
    sent = client.post("/api/auth/send-otp", json={"phone": phone, "user_type": "supplier"}).json()
    before = client.post("/api/auth/otp-status", json={"session_id": sent["session_id"], "phone": phone}).json()
    assert before["data"]["is_verified"] is False
    assert before["data"]["is_expired"] is False
    assert before["data"]["user_type"] == "supplier"

    client.post("/api/auth/verify-otp", json={"session_id": sent["session_id"], "otp": OTP_CODE, "phone": phone})
    after = client.post("/api/auth/otp-status", json={"session_id": sent["session_id"], "phone": phone}).json()
    assert after["data"]["is_verified"] is True

    missing = client.post("/api/auth/otp-status", json={"session_id": "nope", "phone": phone})
    assert missing.status_code == 404


def test_password_reset_flow(client, db):
    register(client, "supplier", phone="9123450005", email="reset@example.com")

    sent = client.post("/api/auth/forgot-password", json={"email": "reset@example.com"}).json()
    assert sent["session_id"]
    verified = client.post("/api/auth/verify-reset-otp", json={
        "session_id": sent["session_id"], "otp": OTP_CODE, "email": "reset@example.com",
    })
    assert verified.status_code == 200

    reset = client.post("/api/auth/reset-password", json={
        "session_id": sent["session_id"], "new_password": "newsecret", "phone": "9123450005",
    })
    assert reset.status_code == 200

    assert client.post("/api/auth/login", json={"phone": "9123450005", "password": "secret123"}).status_code == 400
    assert client.post("/api/auth/login", json={"phone": "9123450005", "password": "newsecret"}).status_code == 200

    # The reset session is single use
    replay = client.post("/api/auth/reset-password", json={
        "session_id": sent["session_id"], "new_password": "another1", "phone": "9123450005",
    })
    assert replay.status_code == 404


def test_forgot_password_does_not_reveal_accounts(client, db):
    res = client.post("/api/auth/forgot-password", json={"phone": "9000099999"})
    assert res.status_code == 200
    assert "session_id" not in res.json()
    assert db["otp_sessions"].count_documents({}) == 0


def test_reset_requires_verified_code(client):
    register(client, "organizer", phone="9123450006")
    sent = client.post("/api/auth/forgot-password", json={"phone": "9123450006"}).json()
    res = client.post("/api/auth/reset-password", json={
        "session_id": sent["session_id"], "new_password": "newsecret", "phone": "9123450006",
    })
    assert res.status_code == 404


def test_protected_routes(client, organizer_token, supplier_token):
    assert client.get("/api/auth/profile").status_code == 401
    assert client.get("/api/auth/profile", headers=auth("not-a-token")).status_code == 401

    assert client.get("/api/events", headers=auth(supplier_token)).status_code == 403
    assert client.get("/api/events/available/events", headers=auth(organizer_token)).status_code == 403

    me = client.get("/api/auth/profile", headers=auth(supplier_token)).json()
    assert me["data"]["user_type"] == "supplier"
    assert me["data"]["services"] == ["Dinner", "Snacks"]


def test_profile_update(client, organizer_token):
    res = client.put("/api/auth/profile", headers=auth(organizer_token),
                     json={"full_name": "Renamed Organizer", "address": {"city": "Chennai"}})
    assert res.status_code == 200
    assert res.json()["data"]["full_name"] == "Renamed Organizer"
    assert res.json()["data"]["address"]["city"] == "Chennai"

    blocked = client.put("/api/auth/profile", headers=auth(organizer_token), json={"user_type": "supplier"})
    assert blocked.status_code == 400
    blocked = client.put("/api/auth/profile", headers=auth(organizer_token), json={"password": "hijacked"})
    assert blocked.status_code == 400


def test_fake_provider_is_refused_in_production(monkeypatch):
    assert isinstance(build_otp_provider("fake"), FakeOtpProvider)
    monkeypatch.setattr(otp_provider, "IS_PRODUCTION", True)
    with pytest.raises(RuntimeError):
        build_otp_provider("fake")
    with pytest.raises(RuntimeError):
        build_otp_provider("carrier-pigeon")


def test_format_phone():
    assert format_phone("98765 43210") == "919876543210"
    assert format_phone("+91 98765 43210") == "919876543210"


def _two_factor(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TwoFactorProvider("key", base_url="https://2factor.test/API/V1", client=client)


def test_two_factor_send_and_verify():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if "/VERIFY/" in request.url.path:
            matched = request.url.path.endswith("/123456")
            return httpx.Response(200, json={"Status": "Success" if matched else "Error", "Details": "OTP Matched"})
        return httpx.Response(200, json={"Status": "Success", "Details": "sess-1"})

    provider = _two_factor(handler)
    assert provider.send_code("9876543210", "registration").session_id == "sess-1"
    assert seen[0].startswith("/API/V1/key/SMS/919876543210/AUTOGEN/")
    assert provider.verify_code("sess-1", "123456") is True
    assert provider.verify_code("sess-1", "654321") is False


def test_two_factor_failures():
    failing = _two_factor(lambda request: httpx.Response(200, json={"Status": "Error", "Details": "Invalid key"}))
    with pytest.raises(ProviderError):
        failing.send_code("9876543210", "registration")

    broken = _two_factor(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))
    with pytest.raises(ProviderError):
        broken.send_code("9876543210", "registration")

    def slow(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderTimeout):
        _two_factor(slow).send_code("9876543210", "password_reset")


CARD = {"aadhar_card": ("card.png", b"\x89PNG\r\n\x1a\n", "image/png")}


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(main, "UPLOAD_DIR", str(path))
    return path


def test_aadhar_card_is_kept_for_a_new_account(client, db, upload_dir):
    register(client, "supplier", phone="9123450010", files=CARD)

    stored = db["users"].find_one({"phone": "9123450010"})["aadhar_card"]
    assert os.path.dirname(stored) == str(upload_dir)
    assert os.listdir(upload_dir) == [os.path.basename(stored)]


def test_refused_signup_leaves_no_upload(client, upload_dir):
    res = client.post("/api/auth/supplier/signup", files=CARD, data={
        "phone": "9123450011", "session_id": "bogus", "full_name": "Ravi Kumar",
        "email": "ravi@example.com", "password": "secret123",
    })
    assert res.status_code == 404
    assert not upload_dir.exists()

    register(client, "supplier", phone="9123450012", email="taken@example.com")
    body = register(client, "supplier", phone="9123450013", email="taken@example.com", files=CARD)
    assert body["message"] == "email already exists"
    assert os.listdir(upload_dir) == []


def test_profile_update_cannot_clear_required_fields(client, organizer_token):
    res = client.put("/api/auth/profile", headers=auth(organizer_token), json={"full_name": None, "email": None})
    assert res.status_code == 400
    assert {e["field"] for e in res.json()["errors"]} == {"email", "full_name"}

    me = client.get("/api/auth/profile", headers=auth(organizer_token)).json()["data"]
    assert me["full_name"] == "Organizer 9000000001"

    # Optional fields may still be cleared
    res = client.put("/api/auth/profile", headers=auth(organizer_token), json={"company_name": None})
    assert res.status_code == 200
    assert res.json()["data"]["company_name"] is None


def test_otp_routes_for_any_purpose(client, db):
    phone = "9123450014"
    sent = client.post("/api/otp/send", json={"phone": phone, "purpose": "password_reset"}).json()
    assert sent["otp"] == OTP_CODE
    assert db["otp_sessions"].find_one({"contact": phone})["purpose"] == "password_reset"

    other_purpose = client.post("/api/otp/verify", json={"session_id": sent["session_id"], "otp": OTP_CODE,
                                                         "phone": phone, "purpose": "registration"})
    assert other_purpose.status_code == 404

    verified = client.post("/api/otp/verify", json={"session_id": sent["session_id"], "otp": OTP_CODE,
                                                    "phone": phone, "purpose": "password_reset"})
    assert verified.status_code == 200
    assert db["otp_sessions"].find_one({"contact": phone})["is_verified"] is True
