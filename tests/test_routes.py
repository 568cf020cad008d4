import hashlib
import hmac
import json
import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DEV_AUTH_ALLOW", "1")

from src.backend.app.cache import cache_get, cache_set
from src.backend.app.db import get_db
from src.backend.app.main import app
from src.backend.app.models import Conversation, User


HEADERS = {"X-User-Id": "u1", "X-User-Email": "ana@example.com"}


@pytest.fixture
def client(db):
    def _override():
        yield db

    app.dependency_overrides[get_db] = _override
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def user(db):
    db.add(User(id="u1", email="ana@example.com", name="Ana"))
    db.commit()
    return "u1"


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    r = client.get("/cache/health")
    assert r.status_code == 200
    assert r.json()["redis"] == "disabled"
    assert "hits" in r.json()


def test_prometheus_metrics(client):
    r = client.get("/metrics/prometheus")
    assert r.status_code == 200
    assert "adhub_cache_hits_total" in r.text


def test_identity_required(client):
    r = client.get("/api/campaigns", params={"adAccountId": "act_1"})
    assert r.status_code == 401
    assert r.json()["detail"] == "unauthorized"


def test_bad_bearer_token(client):
    r = client.get("/api/team/config", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["detail"] == "invalid_token"


def test_listing_requires_account_ids(client, user):
    r = client.get("/api/campaigns", headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["detail"] == "adAccountId_required"


def test_listing_without_facebook_connection(client, user):
    r = client.get("/api/ads", params={"adAccountId": "act_1"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["detail"] == "facebook_not_connected"


def test_unknown_user(client):
    r = client.get("/api/team/ad-accounts", headers={"X-User-Id": "nobody"})
    assert r.status_code == 404
    assert r.json()["detail"] == "user_not_found"


def test_empty_pages_are_not_cached(client, user):
    r = client.get("/api/team/pages", headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"pages": [], "team_members_count": 0, "hint": "no_team_members"}
    assert cache_get("team:pages:u1:default") is None


def test_team_config_served_from_cache(client, user):
    cache_set("team:config:u1", {"accounts": [{"id": "act_1"}], "business_pages": [{"id": "p1"}]}, 3600)
    body = client.get("/api/team/config", headers=HEADERS).json()
    assert body["accounts"] == [{"id": "act_1"}]
    assert body["all_business_pages"] == [{"id": "p1"}]
    assert body["all_business_accounts_unfiltered"] == []


def test_cache_invalidate(client, user):
    cache_set("team:config:u1", {"accounts": []}, 3600)
    cache_set("team:ad-accounts:u1:default", {"accounts": []}, 3600)
    r = client.post("/api/cache/invalidate", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["deleted"] >= 1
    assert cache_get("team:ad-accounts:u1:default") is None


def test_webhook_handshake(client, monkeypatch):
    monkeypatch.setenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN", "verify-me")
    params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "abc123"}
    r = client.get("/api/webhooks/facebook", params=params)
    assert r.status_code == 200
    assert r.text == "abc123"
    r = client.get("/api/webhooks/facebook", params={**params, "hub.verify_token": "nope"})
    assert r.status_code == 403


def _payload():
    return json.dumps({"object": "page", "entry": [{"id": "page1", "messaging": [{
        "sender": {"id": "user1"},
        "recipient": {"id": "page1"},
        "timestamp": 1_700_000_000_000,
        "message": {"mid": "m1", "text": "Is this still available?"},
    }]}]}).encode()


def test_webhook_stores_message_and_lists_it(client, user, db):
    r = client.post("/api/webhooks/facebook", content=_payload(), headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.text == "OK"
    assert db.get(Conversation, "t_page1_user1").snippet == "Is this still available?"

    body = client.get("/api/inbox/conversations", params={"pageIds": "page1"}, headers=HEADERS).json()
    assert body["total"] == 1
    assert body["conversations"][0]["participant_id"] == "user1"


def test_webhook_signature(client, monkeypatch):
    monkeypatch.setenv("FACEBOOK_APP_SECRET", "app-secret")
    raw = _payload()
    r = client.post("/api/webhooks/facebook", content=raw, headers={"X-Hub-Signature-256": "sha256=bad"})
    assert r.status_code == 403
    good = "sha256=" + hmac.new(b"app-secret", raw, hashlib.sha256).hexdigest()
    r = client.post("/api/webhooks/facebook", content=raw, headers={"X-Hub-Signature-256": good})
    assert r.status_code == 200


def test_cache_invalidate_scope(client, user):
    cache_set("team:pages:u1:default", {"pages": [{"id": "p1"}]}, 3600)
    cache_set("meta:campaigns:v3:u1:act_1:all:full:all", {"campaigns": []}, 3600)
    r = client.post("/api/cache/invalidate", json={"scope": "meta"}, headers=HEADERS)
    assert r.json()["scope"] == "meta"
    assert cache_get("meta:campaigns:v3:u1:act_1:all:full:all") is None
    assert cache_get("team:pages:u1:default") == {"pages": [{"id": "p1"}]}
    assert client.post("/api/cache/invalidate", json={"scope": "everything"}, headers=HEADERS).status_code == 400
