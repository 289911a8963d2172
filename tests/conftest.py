import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["gbconnect_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to, otp, purpose, ttl_minutes):
        sent.append({"to": to, "otp": otp, "purpose": purpose})
        return True

    monkeypatch.setattr(main, "send_otp_email", fake_send)
    return sent


@pytest.fixture
def client(mongo, outbox):
    return TestClient(main.app, raise_server_exceptions=False)


@pytest.fixture
def make_user(client):
    def _make(email, role="tourist", name=None, password="secret123"):
        res = client.post("/api/auth/signup", json={
            "email": email, "password": password, "role": role, "name": name,
        })
        assert res.status_code == 201, res.text
        body = res.json()
        return {
            "id": body["user"]["id"],
            "email": email,
            "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }
    return _make


@pytest.fixture
def provider(make_user):
    return make_user("karim@hunzatours.pk", role="provider", name="Hunza Guides")


@pytest.fixture
def tourist(make_user):
    return make_user("ayesha@travelmail.pk", role="tourist", name="Ayesha")


@pytest.fixture
def make_service(client):
    def _make(owner, **overrides):
        payload = {
            "title": "Serena Hotel Gilgit",
            "description": "Lakeside rooms with mountain views",
            "price": 100,
            "category": "accommodation",
            "location": "Gilgit",
            "status": "active",
        }
        payload.update(overrides)
        res = client.post("/api/services", json=payload, headers=owner["headers"])
        assert res.status_code == 201, res.text
        return res.json()
    return _make
