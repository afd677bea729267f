"""
plan_service.py — Single source of truth for the plan catalog and quotas.

All plan lookups and limit checks are centralised here.  Route handlers
and the external quota enforcer should call these functions instead of
reading Plan.features inline.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from errors import (
    PlanNotFound, QuotaExceeded, SubscriptionExpired, SubscriptionNotFound,
    SubscriptionRequired,
)
from models import Plan, Subscription, as_utc, utcnow

log = logging.getLogger(__name__)


# ── Quota descriptor (frozen, no DB access) ──────────────────────

@dataclass(frozen=True)
class PlanQuota:
    max_buildings: Optional[int]  # None = unlimited
    max_units: Optional[int]      # per building
    max_managers: Optional[int]
    premium_features: tuple = field(default_factory=tuple)
    support: str = ""


def get_plan_quota(plan: Plan) -> PlanQuota:
    """Parse a plan's features JSON into a PlanQuota."""
    features = plan.get_features()
    return PlanQuota(
        max_buildings=features.get("max_buildings"),
        max_units=features.get("max_units"),
        max_managers=features.get("max_managers"),
        premium_features=tuple(features.get("premium_features") or ()),
        support=features.get("support", ""),
    )


DEFAULT_PLANS = {
    "Free": {
        "building_price": Decimal("0.00"),
        "manager_price": Decimal("0.00"),
        "features": {
            "max_buildings": 1,
            "max_managers": 1,
            "max_units": 10,
            "premium_features": [],
            "support": "Email",
        },
    },
    "Pro": {
        "building_price": Decimal("99.99"),
        "manager_price": Decimal("29.99"),
        "features": {
            "max_buildings": 999,
            "max_managers": 999,
            "max_units": 999,
            "premium_features": ["advanced_reports", "hr_module"],
            "support": "Priority Phone & Email",
        },
    },
}


def seed_default_plans(db: Session) -> list[Plan]:
    """Create the Free and Pro plans if missing.  Existing rows are left alone."""
    plans = []
    for name, defaults in DEFAULT_PLANS.items():
        plan = db.query(Plan).filter_by(name=name).first()
        if not plan:
            plan = Plan(
                name=name,
                building_price=defaults["building_price"],
                manager_price=defaults["manager_price"],
                status="active",
            )
            plan.set_features(defaults["features"])
            db.add(plan)
            log.info("Seeded plan %s", name)
        plans.append(plan)
    db.commit()
    return plans


# ── Catalog lookups ──────────────────────────────────────────────

def get_plan(db: Session, plan_id: int) -> Plan:
    """Return the Plan or raise PlanNotFound."""
    plan = db.query(Plan).filter_by(id=plan_id).first()
    if not plan:
        raise PlanNotFound()
    return plan


def list_active_plans(db: Session) -> list[Plan]:
    return (
        db.query(Plan)
        .filter(Plan.status == "active")
        .order_by(Plan.name)
        .all()
    )


def find_active_subscription(db: Session, account_id: int) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(
            Subscription.account_id == account_id,
            Subscription.status == "active",
        )
        .first()
    )


def get_active_subscription_for(db: Session, account_id: int) -> Subscription:
    """Return the account's active Subscription or raise SubscriptionNotFound."""
    sub = find_active_subscription(db, account_id)
    if not sub:
        raise SubscriptionNotFound("No active subscription found")
    return sub


# ── Access gate ──────────────────────────────────────────────────

def require_active_subscription(
    db: Session, account_id: int, now: Optional[datetime] = None,
) -> Subscription:
    """Return the active subscription, expiring it on the spot if its cycle ended.

    The expiry write is conditional on status='active', so racing the
    scheduler's expiry job is harmless.
    """
    now = as_utc(now) if now else utcnow()
    sub = find_active_subscription(db, account_id)
    if not sub:
        raise SubscriptionRequired()

    if as_utc(sub.billing_cycle_end) <= now:
        (
            db.query(Subscription)
            .filter(Subscription.id == sub.id, Subscription.status == "active")
            .update({"status": "expired"}, synchronize_session=False)
        )
        db.commit()
        log.info("Subscription %s expired at access time", sub.id)
        raise SubscriptionExpired()
    return sub


# ── Quota enforcement ────────────────────────────────────────────
# Counts come from the caller: buildings, units and managers live in
# tables this service does not own.

def _active_quota(db: Session, account_id: int) -> tuple[Plan, PlanQuota]:
    sub = find_active_subscription(db, account_id)
    if not sub:
        raise SubscriptionRequired()
    return sub.plan, get_plan_quota(sub.plan)


def _enforce(limit: Optional[int], current_count: int, what: str, plan_name: str):
    if limit is not None and current_count >= limit:
        raise QuotaExceeded(
            f"{what} limit reached. The {plan_name} plan allows {limit}. "
            f"Upgrade to add more."
        )


def enforce_building_limit(db: Session, account_id: int, current_count: int) -> PlanQuota:
    """Raise 403 if the account cannot add another building.

    Returns the PlanQuota on success.
    """
    plan, quota = _active_quota(db, account_id)
    _enforce(quota.max_buildings, current_count, "Building", plan.name)
    return quota


def enforce_unit_limit(db: Session, account_id: int, current_count: int) -> PlanQuota:
    """Raise 403 if a building already holds the plan's maximum of units."""
    plan, quota = _active_quota(db, account_id)
    _enforce(quota.max_units, current_count, "Unit", plan.name)
    return quota


def enforce_manager_limit(db: Session, account_id: int, current_count: int) -> PlanQuota:
    plan, quota = _active_quota(db, account_id)
    _enforce(quota.max_managers, current_count, "Manager", plan.name)
    return quota


def can_access_feature(db: Session, account_id: int, feature_name: str) -> bool:
    _plan, quota = _active_quota(db, account_id)
    return feature_name in quota.premium_features


def require_feature(db: Session, account_id: int, feature_name: str) -> PlanQuota:
    """Raise 403 if the account's plan lacks *feature_name*."""
    plan, quota = _active_quota(db, account_id)
    if feature_name not in quota.premium_features:
        raise QuotaExceeded(
            f"Feature '{feature_name}' requires a plan upgrade "
            f"(current: {plan.name})"
        )
    return quota
