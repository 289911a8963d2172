import smtplib
from datetime import datetime

from pymongo.errors import DuplicateKeyError

import mailer
import main


def test_signup_creates_unverified_user_and_sends_otp(client, mongo, outbox):
    res = client.post("/api/auth/signup", json={
        "email": "Ayesha@TravelMail.pk", "password": "secret123", "role": "tourist", "name": "Ayesha",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["message"] == "User registered successfully"
    assert body["token"]
    assert body["otp_sent"] is True
    assert body["user"]["email"] == "ayesha@travelmail.pk"
    assert body["user"]["email_verified"] is False
    assert "password" not in body["user"]

    stored = mongo["users"].find_one({"email": "ayesha@travelmail.pk"})
    assert stored["password"] != "secret123"
    assert outbox == [{"to": "ayesha@travelmail.pk", "otp": outbox[0]["otp"], "purpose": "signup"}]


def test_signup_duplicate_email_is_rejected(client, tourist):
    res = client.post("/api/auth/signup", json={
        "email": tourist["email"], "password": "another1", "role": "provider",
    })
    assert res.status_code == 409
    assert res.json() == {"error": "User already exists"}


def test_signup_missing_role_returns_400(client):
    res = client.post("/api/auth/signup", json={"email": "x@travelmail.pk", "password": "secret123"})
    assert res.status_code == 400
    body = res.json()
    assert body["error"] == "Missing required fields"
    assert {"field": "role", "message": "Field required"} in body["details"]


def test_login_and_me(client, tourist):
    res = client.post("/api/auth/login", json={"email": tourist["email"], "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["token"]
    assert res.json()["user"]["role"] == "tourist"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["id"] == tourist["id"]


def test_login_rejects_bad_credentials(client, tourist):
    wrong = client.post("/api/auth/login", json={"email": tourist["email"], "password": "nope-nope"})
    unknown = client.post("/api/auth/login", json={"email": "ghost@travelmail.pk", "password": "secret123"})
    assert wrong.status_code == 401
    assert unknown.status_code == 401
    assert wrong.json() == {"error": "Invalid credentials"}


def test_me_requires_valid_token(client):
    assert client.get("/api/auth/me").status_code == 401
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json() == {"error": "Invalid or expired token"}


def test_signup_otp_verifies_email(client, mongo, outbox, tourist):
    otp = outbox[-1]["otp"]
    res = client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": otp, "purpose": "signup"})
    assert res.status_code == 200
    assert mongo["users"].find_one({"email": tourist["email"]})["email_verified"] is True

    again = client.post("/api/auth/resend-otp", json={"email": tourist["email"], "purpose": "signup"})
    assert again.status_code == 400


def test_password_reset_flow(client, outbox, tourist):
    res = client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    assert res.status_code == 200
    assert res.json() == {"message": "OTP sent to your email"}
    otp = outbox[-1]["otp"]
    assert outbox[-1]["purpose"] == "password_reset"

    early = client.post("/api/auth/reset-password", json={"email": tourist["email"], "otp": otp, "password": "newpass1"})
    assert early.status_code == 400

    verified = client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": otp})
    assert verified.json() == {"message": "OTP verified"}

    reset = client.post("/api/auth/reset-password", json={"email": tourist["email"], "otp": otp, "password": "newpass1"})
    assert reset.status_code == 200

    replay = client.post("/api/auth/reset-password", json={"email": tourist["email"], "otp": otp, "password": "hijack1"})
    assert replay.status_code == 400
    assert replay.json() == {"error": "Invalid or expired OTP"}

    assert client.post("/api/auth/login", json={"email": tourist["email"], "password": "newpass1"}).status_code == 200
    assert client.post("/api/auth/login", json={"email": tourist["email"], "password": "secret123"}).status_code == 401


def test_forgot_password_unknown_email(client):
    res = client.post("/api/auth/forgot-password", json={"email": "ghost@travelmail.pk"})
    assert res.status_code == 404
    assert res.json() == {"error": "No user found with this email"}


def test_verify_otp_rejects_wrong_and_expired_codes(client, mongo, outbox, tourist):
    client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    otp = outbox[-1]["otp"]
    wrong = "000000" if otp != "000000" else "111111"

    res = client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": wrong})
    assert res.json() == {"error": "Invalid OTP"}

    mongo["emailOtps"].update_many({}, {"$set": {"expires_at": datetime(2000, 1, 1)}})
    res = client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": otp})
    assert res.status_code == 400
    assert res.json() == {"error": "OTP has expired"}


def test_new_otp_replaces_unverified_one(client, mongo, tourist):
    client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    pending = mongo["emailOtps"].count_documents(
        {"email": tourist["email"], "purpose": "password_reset", "used": False}
    )
    assert pending == 1


def test_forgot_password_mail_failure(client, monkeypatch, tourist):
    def broken(*args, **kwargs):
        raise smtplib.SMTPException("connection refused")

    monkeypatch.setattr(main, "send_otp_email", broken)
    res = client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    assert res.status_code == 500
    assert res.json() == {"error": "Failed to send OTP"}


def test_signup_race_on_unique_email_returns_409(client, monkeypatch):
    def duplicate(collection_name, data):
        raise DuplicateKeyError("E11000 duplicate key error collection: users index: email_1")

    monkeypatch.setattr(main, "create_document", duplicate)
    res = client.post("/api/auth/signup", json={
        "email": "late@travelmail.pk", "password": "secret123", "role": "tourist",
    })
    assert res.status_code == 409
    assert res.json() == {"error": "User already exists"}


def test_signup_succeeds_when_otp_delivery_fails(client, mongo, monkeypatch):
    def broken(*args, **kwargs):
        raise smtplib.SMTPException("connection refused")

    monkeypatch.setattr(main, "send_otp_email", broken)
    res = client.post("/api/auth/signup", json={
        "email": "offline@travelmail.pk", "password": "secret123", "role": "tourist",
    })
    assert res.status_code == 201
    assert res.json()["otp_sent"] is False
    assert mongo["users"].count_documents({"email": "offline@travelmail.pk"}) == 1


def test_resend_otp_for_password_reset(client, mongo, outbox, tourist):
    client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    first = outbox[-1]["otp"]

    res = client.post("/api/auth/resend-otp", json={"email": tourist["email"], "purpose": "password_reset"})
    assert res.status_code == 200
    assert outbox[-1]["purpose"] == "password_reset"
    assert mongo["emailOtps"].count_documents(
        {"email": tourist["email"], "purpose": "password_reset", "used": False}
    ) == 1

    fresh = outbox[-1]["otp"]
    if fresh != first:
        stale = client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": first})
        assert stale.json() == {"error": "Invalid OTP"}
    assert client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": fresh}).status_code == 200


def test_verified_reset_code_expires_after_one_lifetime(client, mongo, outbox, tourist):
    client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    otp = outbox[-1]["otp"]
    client.post("/api/auth/verify-otp", json={"email": tourist["email"], "otp": otp})

    mongo["emailOtps"].update_many({"otp": otp}, {"$set": {"verified_at": datetime(2000, 1, 1)}})
    res = client.post("/api/auth/reset-password", json={"email": tourist["email"], "otp": otp, "password": "newpass1"})
    assert res.status_code == 400
    assert res.json() == {"error": "Invalid or expired OTP"}
    assert client.post("/api/auth/login", json={"email": tourist["email"], "password": "secret123"}).status_code == 200


def test_forgot_password_without_mail_server(client, monkeypatch, tourist):
    monkeypatch.setattr(mailer, "EMAIL_HOST", None)
    monkeypatch.setattr(main, "send_otp_email", mailer.send_otp_email)

    res = client.post("/api/auth/forgot-password", json={"email": tourist["email"]})
    assert res.status_code == 500
    assert res.json() == {"error": "Failed to send OTP"}


def test_send_email_skips_when_unconfigured(monkeypatch):
    monkeypatch.setattr(mailer, "EMAIL_HOST", None)
    assert mailer.send_email("ayesha@travelmail.pk", "Hello", "text") is False
