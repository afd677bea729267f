"""
billing_service.py — Subscription pricing, billing cycles and proration.

All money math uses Decimal and stays unrounded until a value leaves the
service (ProrationResult.as_dict(), stored history amounts).  Create,
upgrade and cancel each write the subscription row and its history row
in one transaction: either both are committed or neither is.

Rules pinned here:
  * a billing cycle is one calendar year; Feb 29 rolls to Feb 28
  * day counts are ceil() of the exact elapsed time
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import (
    BillingCycleEnded, BillingError, DuplicateActiveSubscription,
    PlanInactive, PlanNotFound, SubscriptionNotActive, SubscriptionNotFound,
)
from models import Plan, Subscription, SubscriptionHistory, as_utc, utcnow
from plan_service import find_active_subscription, get_plan

log = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")
_ONE_DAY = timedelta(days=1)


# ── Pure helpers ─────────────────────────────────────────────────

def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_money(value) -> Decimal:
    """Round to cents, half up.  Only for values leaving the service."""
    return _dec(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def calculate_total(building_count: int, manager_count: int, plan: Plan) -> Decimal:
    """Yearly amount: buildings * building_price + managers * manager_price."""
    return (
        building_count * _dec(plan.building_price)
        + manager_count * _dec(plan.manager_price)
    )


def add_one_year(value: datetime) -> datetime:
    """Same month/day next year.  Feb 29 clamps to Feb 28."""
    try:
        return value.replace(year=value.year + 1)
    except ValueError:
        return value.replace(year=value.year + 1, day=28)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from *start* to *end*, rounded up.  Negative if end < start."""
    delta = as_utc(end) - as_utc(start)
    return -(-delta // _ONE_DAY)


def _as_cycle_start(value) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise BillingError("billing cycle start must be a date or datetime")


def _validate_counts(building_count: int, manager_count: int):
    if building_count < 1:
        raise BillingError("building_count must be at least 1")
    if manager_count < 0:
        raise BillingError("manager_count cannot be negative")


# ── Proration ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProrationResult:
    old_total: Decimal
    old_unused: Decimal
    new_total: Decimal
    new_cost: Decimal
    prorated_amount: Decimal   # negative = credit on downgrade
    days_remaining: int
    total_days: int

    def as_dict(self) -> dict:
        return {
            "old_total": to_money(self.old_total),
            "old_unused": to_money(self.old_unused),
            "new_total": to_money(self.new_total),
            "new_cost": to_money(self.new_cost),
            "prorated_amount": to_money(self.prorated_amount),
            "days_remaining": self.days_remaining,
            "total_days": self.total_days,
        }


@dataclass(frozen=True)
class UpgradeResult:
    subscription: Subscription
    proration: ProrationResult


def prorate(
    subscription: Subscription,
    new_plan: Plan,
    new_building_count: int,
    new_manager_count: int,
    now: datetime,
) -> ProrationResult:
    """Cost delta for switching *subscription* to *new_plan* at *now*.

    Raises BillingCycleEnded when no whole or partial day is left.
    """
    total_days = days_between(subscription.billing_cycle_start, subscription.billing_cycle_end)
    days_left = days_between(now, subscription.billing_cycle_end)
    if days_left <= 0 or total_days <= 0:
        raise BillingCycleEnded()

    old_total = _dec(subscription.total_amount)
    old_unused = old_total * days_left / total_days

    new_total = calculate_total(new_building_count, new_manager_count, new_plan)
    new_cost = new_total * days_left / total_days

    return ProrationResult(
        old_total=old_total,
        old_unused=old_unused,
        new_total=new_total,
        new_cost=new_cost,
        prorated_amount=new_cost - old_unused,
        days_remaining=days_left,
        total_days=total_days,
    )


def _load_for_change(
    db: Session, subscription_id: int, new_plan_id: int, lock: bool = False,
) -> tuple[Subscription, Plan]:
    q = db.query(Subscription).filter(Subscription.id == subscription_id)
    if lock:
        q = q.with_for_update()
    sub = q.first()
    if not sub:
        raise SubscriptionNotFound()
    if sub.status != "active":
        raise SubscriptionNotActive()

    new_plan = get_plan(db, new_plan_id)
    if new_plan.status != "active":
        raise PlanInactive("New plan is not active")
    return sub, new_plan


# ── Public operations ────────────────────────────────────────────

def create_subscription(
    db: Session,
    account_id: int,
    plan_id: int,
    building_count: int,
    manager_count: int,
    cycle_start,
) -> Subscription:
    """Open a one-year subscription and record it in the history.

    Raises PlanNotFound, PlanInactive or DuplicateActiveSubscription
    before anything is written.
    """
    _validate_counts(building_count, manager_count)
    plan = get_plan(db, plan_id)
    if plan.status != "active":
        raise PlanInactive()
    if find_active_subscription(db, account_id):
        raise DuplicateActiveSubscription()

    start = _as_cycle_start(cycle_start)
    end = add_one_year(start)
    sub = Subscription(
        account_id=account_id,
        plan_id=plan.id,
        building_count=building_count,
        manager_count=manager_count,
        total_amount=calculate_total(building_count, manager_count, plan),
        billing_cycle_start=start,
        billing_cycle_end=end,
        next_billing_date=end,
        status="active",
    )
    try:
        db.add(sub)
        db.flush()
        db.add(SubscriptionHistory(
            account_id=account_id,
            subscription_id=sub.id,
            action="created",
            new_plan_id=plan.id,
            new_building_count=building_count,
            new_manager_count=manager_count,
            notes=f"Subscribed to {plan.name}",
        ))
        db.commit()
    except IntegrityError:
        db.rollback()
        # A concurrent create won the partial unique index
        if find_active_subscription(db, account_id):
            raise DuplicateActiveSubscription()
        raise
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info("Created subscription %s for account %s on plan %s (%s)",
             sub.id, account_id, plan.name, sub.total_amount)
    return sub


def calculate_upgrade(
    db: Session,
    subscription_id: int,
    new_plan_id: int,
    new_building_count: int,
    new_manager_count: int,
    now: Optional[datetime] = None,
) -> ProrationResult:
    """Preview the proration for a plan/size change.  Writes nothing."""
    _validate_counts(new_building_count, new_manager_count)
    now = as_utc(now) if now else utcnow()
    sub, new_plan = _load_for_change(db, subscription_id, new_plan_id)
    return prorate(sub, new_plan, new_building_count, new_manager_count, now)


def upgrade_subscription(
    db: Session,
    subscription_id: int,
    new_plan_id: int,
    new_building_count: int,
    new_manager_count: int,
    now: Optional[datetime] = None,
) -> UpgradeResult:
    """Switch plan and counts mid-cycle.

    The billing cycle is left alone; only plan, counts and total change.
    Not idempotent: every call appends a history row, so callers must not
    resubmit blindly.
    """
    _validate_counts(new_building_count, new_manager_count)
    now = as_utc(now) if now else utcnow()
    sub, new_plan = _load_for_change(db, subscription_id, new_plan_id, lock=True)
    proration = prorate(sub, new_plan, new_building_count, new_manager_count, now)

    old_plan = sub.plan
    history = SubscriptionHistory(
        account_id=sub.account_id,
        subscription_id=sub.id,
        action="upgraded",
        old_plan_id=sub.plan_id,
        new_plan_id=new_plan.id,
        old_building_count=sub.building_count,
        new_building_count=new_building_count,
        old_manager_count=sub.manager_count,
        new_manager_count=new_manager_count,
        prorated_amount=to_money(proration.prorated_amount),
        notes=(
            f"Upgraded from {old_plan.name if old_plan else sub.plan_id} "
            f"to {new_plan.name}. Days remaining: {proration.days_remaining}"
        ),
    )
    try:
        sub.plan = new_plan
        sub.building_count = new_building_count
        sub.manager_count = new_manager_count
        sub.total_amount = proration.new_total
        db.add(history)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info("Upgraded subscription %s to plan %s (prorated %s over %s days)",
             sub.id, new_plan.name, to_money(proration.prorated_amount),
             proration.days_remaining)
    return UpgradeResult(subscription=sub, proration=proration)


def cancel_subscription(db: Session, subscription_id: int, note: Optional[str] = None) -> Subscription:
    """Move an active subscription to cancelled and log it in the history."""
    sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not sub:
        raise SubscriptionNotFound()
    if sub.status != "active":
        raise SubscriptionNotActive()

    try:
        sub.status = "cancelled"
        db.add(SubscriptionHistory(
            account_id=sub.account_id,
            subscription_id=sub.id,
            action="cancelled",
            old_plan_id=sub.plan_id,
            new_plan_id=sub.plan_id,
            old_building_count=sub.building_count,
            new_building_count=sub.building_count,
            old_manager_count=sub.manager_count,
            new_manager_count=sub.manager_count,
            notes=note or "Cancelled",
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info("Cancelled subscription %s", sub.id)
    return sub


def subscribe_free(db: Session, account_id: int, now: Optional[datetime] = None) -> Subscription:
    """Put the account on the Free plan (1 building, 1 manager) from *now*."""
    free = (
        db.query(Plan)
        .filter(Plan.name == "Free", Plan.status == "active")
        .first()
    )
    if not free:
        raise PlanNotFound("Free plan not available")
    return create_subscription(db, account_id, free.id, 1, 1, now or utcnow())


def get_subscription(db: Session, subscription_id: int) -> Subscription:
    sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if not sub:
        raise SubscriptionNotFound()
    return sub


def list_subscription_history(db: Session, subscription_id: int) -> list[SubscriptionHistory]:
    """Return the audit trail for a subscription, newest first."""
    get_subscription(db, subscription_id)
    return (
        db.query(SubscriptionHistory)
        .filter_by(subscription_id=subscription_id)
        .order_by(SubscriptionHistory.id.desc())
        .all()
    )
