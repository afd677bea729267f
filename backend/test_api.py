"""Route tests for main.py using FastAPI's TestClient.

Each test gets its own in-memory SQLite database via a get_db override.
"""
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jose import jwt

import auth
from main import app
from models import Base, Account, get_db
from plan_service import seed_default_plans


@pytest.fixture
def client_db():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False},
                        poolclass=StaticPool)
    Base.metadata.create_all(eng)
    Session = sessionmaker(bind=eng)
    db = Session()
    plans = {p.name: p.id for p in seed_default_plans(db)}
    account = Account(email="owner@x.com", name="Owner")
    db.add(account)
    db.commit()

    def _get_db():
        s = Session()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    # No context manager: skip lifespan (migrations/seeding on the real DB)
    yield TestClient(app), plans, account.id
    app.dependency_overrides.clear()
    db.close()


def _token(sub, ttl: int = 3600, **extra) -> str:
    claims = {"sub": str(sub), "exp": int(time.time()) + ttl, **extra}
    return jwt.encode(claims, auth.SECRET, algorithm=auth.ALGORITHM)


def _auth(account_id: int) -> dict:
    return {"Authorization": f"Bearer {_token(account_id)}"}


def _create(client, account_id, plan_id, buildings=2, managers=0):
    return client.post("/api/subscriptions", json={
        "account_id": account_id, "plan_id": plan_id,
        "building_count": buildings, "manager_count": managers,
    })


# ═══════════════════════════════════════════════════════════════════
# Plans & health
# ═══════════════════════════════════════════════════════════════════

def test_health(client_db):
    client, _plans, _aid = client_db
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_list_plans(client_db):
    client, _plans, _aid = client_db
    body = client.get("/api/plans").json()
    assert [p["name"] for p in body] == ["Free", "Pro"]
    pro = body[1]
    assert pro["building_price"] == 99.99
    assert pro["quota"]["max_buildings"] == 999


# ═══════════════════════════════════════════════════════════════════
# Subscriptions
# ═══════════════════════════════════════════════════════════════════

def test_create_and_duplicate(client_db):
    client, plans, aid = client_db

    r = _create(client, aid, plans["Pro"])
    assert r.status_code == 201
    sub = r.json()
    assert sub["total_amount"] == 199.98
    assert sub["status"] == "active"
    assert sub["plan"]["name"] == "Pro"

    r = _create(client, aid, plans["Free"])
    assert r.status_code == 409
    assert r.json()["detail"] == "Account already has an active subscription"


def test_create_validation_errors(client_db):
    client, plans, aid = client_db
    assert _create(client, aid + 100, plans["Pro"]).status_code == 404
    assert _create(client, aid, 9999).status_code == 404
    assert _create(client, aid, plans["Pro"], buildings=0).status_code == 422


def test_create_with_explicit_cycle_start(client_db):
    client, plans, aid = client_db
    r = client.post("/api/subscriptions", json={
        "account_id": aid, "plan_id": plans["Pro"], "building_count": 1,
        "manager_count": 0, "billing_cycle_start": "2024-02-29",
    })
    assert r.status_code == 201
    assert r.json()["billing_cycle_end"].startswith("2025-02-28")


def test_preview_then_upgrade(client_db):
    client, plans, aid = client_db
    sid = _create(client, aid, plans["Free"], buildings=1, managers=1).json()["id"]
    change = {"new_plan_id": plans["Pro"], "new_building_count": 3, "new_manager_count": 2}

    preview = client.post(f"/api/subscriptions/{sid}/calculate-upgrade", json=change)
    assert preview.status_code == 200
    p = preview.json()
    assert p["new_total"] == 359.95
    assert p["old_total"] == 0
    assert p["prorated_amount"] > 0

    r = client.post(f"/api/subscriptions/{sid}/upgrade", json=change)
    assert r.status_code == 200
    assert r.json()["subscription"]["plan"]["name"] == "Pro"
    assert r.json()["subscription"]["building_count"] == 3

    detail = client.get(f"/api/subscriptions/{sid}").json()
    assert [h["action"] for h in detail["history"]] == ["upgraded", "created"]


def test_cancel(client_db):
    client, plans, aid = client_db
    sid = _create(client, aid, plans["Pro"]).json()["id"]

    r = client.post(f"/api/subscriptions/{sid}/cancel", json={"note": "moving out"})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = client.post(f"/api/subscriptions/{sid}/cancel")
    assert r.status_code == 400
    assert client.get("/api/subscriptions/9999").status_code == 404


# ═══════════════════════════════════════════════════════════════════
# Self-service
# ═══════════════════════════════════════════════════════════════════

def test_me_requires_token(client_db):
    client, _plans, _aid = client_db
    assert client.get("/api/me/subscription").status_code == 401
    r = client.get("/api/me/subscription", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_me_free_then_change_plan(client_db):
    client, plans, aid = client_db
    headers = _auth(aid)

    assert client.get("/api/me/subscription", headers=headers).status_code == 404

    r = client.post("/api/me/subscription/free", headers=headers)
    assert r.status_code == 201
    assert r.json()["plan"]["name"] == "Free"
    assert client.post("/api/me/subscription/free", headers=headers).status_code == 409

    change = {"new_plan_id": plans["Pro"], "new_building_count": 2, "new_manager_count": 1}
    preview = client.post("/api/me/subscription/calculate-change", json=change, headers=headers)
    assert preview.status_code == 200
    assert preview.json()["new_total"] == 229.97

    r = client.post("/api/me/subscription/change-plan", json=change, headers=headers)
    assert r.status_code == 200
    assert r.json()["subscription"]["total_amount"] == 229.97

    mine = client.get("/api/me/subscription", headers=headers).json()
    assert mine["plan"]["name"] == "Pro"


def test_me_rejects_expired_and_malformed_tokens(client_db):
    client, _plans, aid = client_db

    r = client.get("/api/me/subscription",
                   headers={"Authorization": f"Bearer {_token(aid, ttl=-60)}"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Token expired"

    r = client.get("/api/me/subscription",
                   headers={"Authorization": f"Bearer {_token('not-a-number')}"})
    assert r.status_code == 401

    no_exp = jwt.encode({"sub": str(aid)}, auth.SECRET, algorithm=auth.ALGORITHM)
    r = client.get("/api/me/subscription", headers={"Authorization": f"Bearer {no_exp}"})
    assert r.status_code == 401

    forged = jwt.encode({"sub": str(aid), "exp": int(time.time()) + 60}, "other-secret",
                        algorithm=auth.ALGORITHM)
    r = client.get("/api/me/subscription", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401
