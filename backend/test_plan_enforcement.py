"""Unit tests for plan lookups, quota enforcement and the access gate in plan_service.py.

Tests run against an in-memory SQLite database — no server required.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from models import Base, Account, Plan, Subscription
from errors import PlanNotFound, SubscriptionNotFound
from plan_service import (
    DEFAULT_PLANS,
    can_access_feature,
    enforce_building_limit,
    enforce_manager_limit,
    enforce_unit_limit,
    get_active_subscription_for,
    get_plan,
    get_plan_quota,
    list_active_plans,
    require_active_subscription,
    require_feature,
    seed_default_plans,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _make_db() -> Session:
    """In-memory SQLite session with all tables created."""
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    return sessionmaker(bind=eng)()


def _seed_account(db: Session, plan_name: str | None = "Free", end: datetime | None = None):
    """Seed the default plans and an account, optionally subscribed to *plan_name*."""
    plans = {p.name: p for p in seed_default_plans(db)}
    account = Account(email="owner@x.com", name="Owner")
    db.add(account)
    db.flush()

    if plan_name:
        end = end or NOW + timedelta(days=200)
        db.add(Subscription(
            account_id=account.id, plan_id=plans[plan_name].id,
            building_count=1, manager_count=1, total_amount=Decimal("0"),
            billing_cycle_start=end - timedelta(days=365), billing_cycle_end=end,
            next_billing_date=end, status="active",
        ))
    db.commit()
    return account, plans


# ═══════════════════════════════════════════════════════════════════
# Catalog
# ═══════════════════════════════════════════════════════════════════

def test_seed_is_idempotent():
    db = _make_db()
    seed_default_plans(db)
    seed_default_plans(db)

    names = [p.name for p in list_active_plans(db)]
    assert names == sorted(DEFAULT_PLANS)
    assert db.query(Plan).count() == len(DEFAULT_PLANS)


def test_get_plan_missing_is_404():
    db = _make_db()
    with pytest.raises(PlanNotFound) as exc:
        get_plan(db, 42)
    assert exc.value.status_code == 404


def test_list_active_plans_hides_inactive():
    db = _make_db()
    _account, plans = _seed_account(db, plan_name=None)
    plans["Pro"].status = "inactive"
    db.commit()

    assert [p.name for p in list_active_plans(db)] == ["Free"]


def test_plan_quota_parsed_from_features():
    db = _make_db()
    _account, plans = _seed_account(db, plan_name=None)

    free = get_plan_quota(plans["Free"])
    assert free.max_buildings == 1
    assert free.max_units == 10
    assert free.max_managers == 1
    assert free.premium_features == ()

    pro = get_plan_quota(plans["Pro"])
    assert "advanced_reports" in pro.premium_features
    assert pro.support == "Priority Phone & Email"


def test_plan_quota_tolerates_bad_json():
    plan = Plan(name="Broken", features="not json")
    quota = get_plan_quota(plan)
    assert quota.max_buildings is None
    assert quota.premium_features == ()


def test_active_subscription_lookup():
    db = _make_db()
    account, plans = _seed_account(db, "Pro")

    sub = get_active_subscription_for(db, account.id)
    assert sub.plan_id == plans["Pro"].id

    with pytest.raises(SubscriptionNotFound) as exc:
        get_active_subscription_for(db, account.id + 1)
    assert exc.value.detail == "No active subscription found"


# ═══════════════════════════════════════════════════════════════════
# Quotas & features
# ═══════════════════════════════════════════════════════════════════

def test_free_building_limit_enforced():
    db = _make_db()
    account, _plans = _seed_account(db, "Free")

    quota = enforce_building_limit(db, account.id, 0)
    assert quota.max_buildings == 1

    with pytest.raises(HTTPException) as exc:
        enforce_building_limit(db, account.id, 1)
    assert exc.value.status_code == 403
    assert "Free" in exc.value.detail
    assert "1" in exc.value.detail


def test_free_unit_and_manager_limits():
    db = _make_db()
    account, _plans = _seed_account(db, "Free")

    enforce_unit_limit(db, account.id, 9)
    with pytest.raises(HTTPException):
        enforce_unit_limit(db, account.id, 10)

    enforce_manager_limit(db, account.id, 0)
    with pytest.raises(HTTPException):
        enforce_manager_limit(db, account.id, 1)


def test_pro_limits_are_high():
    db = _make_db()
    account, _plans = _seed_account(db, "Pro")

    enforce_building_limit(db, account.id, 500)
    enforce_unit_limit(db, account.id, 998)
    with pytest.raises(HTTPException):
        enforce_building_limit(db, account.id, 999)


def test_feature_access_by_plan():
    db = _make_db()
    account, _plans = _seed_account(db, "Free")
    assert can_access_feature(db, account.id, "advanced_reports") is False

    with pytest.raises(HTTPException) as exc:
        require_feature(db, account.id, "advanced_reports")
    assert exc.value.status_code == 403
    assert "advanced_reports" in exc.value.detail

    db2 = _make_db()
    pro_account, _ = _seed_account(db2, "Pro")
    assert can_access_feature(db2, pro_account.id, "hr_module") is True
    assert require_feature(db2, pro_account.id, "hr_module").max_buildings == 999


def test_quota_checks_need_a_subscription():
    db = _make_db()
    account, _plans = _seed_account(db, plan_name=None)

    with pytest.raises(HTTPException) as exc:
        enforce_building_limit(db, account.id, 0)
    assert exc.value.status_code == 403


# ═══════════════════════════════════════════════════════════════════
# Access gate
# ═══════════════════════════════════════════════════════════════════

def test_access_gate_passes_inside_cycle():
    db = _make_db()
    account, _plans = _seed_account(db, "Pro")
    sub = require_active_subscription(db, account.id, now=NOW)
    assert sub.status == "active"


def test_access_gate_expires_ended_cycle():
    db = _make_db()
    account, _plans = _seed_account(db, "Pro", end=NOW - timedelta(minutes=1))

    with pytest.raises(HTTPException) as exc:
        require_active_subscription(db, account.id, now=NOW)
    assert exc.value.status_code == 403
    assert "expired" in exc.value.detail.lower()

    db.expire_all()
    assert db.query(Subscription).one().status == "expired"

    # Second call: nothing active any more
    with pytest.raises(HTTPException) as exc:
        require_active_subscription(db, account.id, now=NOW)
    assert exc.value.status_code == 403


def test_access_gate_without_subscription():
    db = _make_db()
    account, _plans = _seed_account(db, plan_name=None)

    with pytest.raises(HTTPException) as exc:
        require_active_subscription(db, account.id, now=NOW)
    assert exc.value.status_code == 403
