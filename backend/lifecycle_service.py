"""
lifecycle_service.py — Time-based scans over subscriptions, leases and invoices.

Every scan has the same shape:
  1. select a bounded batch of rows matching a time predicate
  2. per row: conditional status write (committed on its own), then notify
  3. a failing row is rolled back, logged and counted; the batch goes on

Status writes are authoritative and notifications are best-effort: a
notification failure never undoes a transition.  Writes are conditional
(WHERE status = ...) so overlapping runs of the same scan can only
produce duplicate notifications, never conflicting state.  Nothing is
retried; a row that failed today still matches tomorrow.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from models import Invoice, Lease, Subscription, as_utc, utcnow
from notification_service import (
    EMAIL, NotificationEvent, NotificationKind, NotificationSink,
)

log = logging.getLogger(__name__)

SCAN_BATCH_LIMIT = int(os.getenv("SCAN_BATCH_LIMIT", "500"))
SUBSCRIPTION_EXPIRY_WARNING_DAYS = int(os.getenv("SUBSCRIPTION_EXPIRY_WARNING_DAYS", "7"))
LEASE_EXPIRY_WARNING_DAYS = int(os.getenv("LEASE_EXPIRY_WARNING_DAYS", "30"))
INVOICE_REMINDER_DAYS = int(os.getenv("INVOICE_REMINDER_DAYS", "5"))

OVERDUE_CANDIDATE_STATUSES = ("draft", "sent", "overdue")
REMINDER_STATUSES = ("draft", "sent")


@dataclass
class ScanResult:
    job: str
    selected: int = 0
    transitioned: int = 0
    notified: int = 0
    skipped: int = 0
    failed: int = 0          # status write / row processing failed
    notify_failed: int = 0   # transition kept, notification lost


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now else utcnow()


def _deliver(db: Session, sink: NotificationSink, event: NotificationEvent,
             result: ScanResult, what: str, row_id: int) -> None:
    try:
        if sink.notify(event):
            result.notified += 1
        else:
            result.skipped += 1
            log.warning("Nothing delivered for %s %s (%s)", what, row_id, event.kind.value)
    except Exception:
        db.rollback()
        result.notify_failed += 1
        log.exception("Failed to send %s notification for %s %s",
                      event.kind.value, what, row_id)


def _process(
    db: Session,
    sink: NotificationSink,
    result: ScanResult,
    model,
    ids: Iterable[int],
    what: str,
    build_event: Callable[[object], Optional[NotificationEvent]],
    transition: Optional[Callable[[object], bool]] = None,
    notify_unchanged: bool = False,
) -> ScanResult:
    """Run the per-row transition + notification loop with row isolation.

    Rows are loaded one at a time by id, so a row deleted or unreadable
    mid-scan only affects itself.
    """
    for row_id in ids:
        try:
            row = db.get(model, row_id)
            if row is None:
                result.skipped += 1
                log.warning("Skipping %s %s: no longer exists", what, row_id)
                continue
            event = build_event(row)
            if event is None:
                result.skipped += 1
                log.warning("Skipping %s %s: recipient not found", what, row_id)
                continue
            if transition is not None:
                if transition(row):
                    result.transitioned += 1
                elif not notify_unchanged:
                    # Another run already moved this row
                    result.skipped += 1
                    continue
        except Exception:
            db.rollback()
            result.failed += 1
            log.exception("Failed to process %s %s", what, row_id)
            continue

        _deliver(db, sink, event, result, what, row_id)

    log.info("%s: selected=%d transitioned=%d notified=%d skipped=%d failed=%d notify_failed=%d",
             result.job, result.selected, result.transitioned, result.notified,
             result.skipped, result.failed, result.notify_failed)
    return result


# ── Event builders ────────────────────────────────────────────────

def _subscription_event(sub: Subscription, kind: NotificationKind) -> Optional[NotificationEvent]:
    account = sub.account
    if account is None:
        return None
    return NotificationEvent(
        kind=kind,
        recipient_id=account.id,
        recipient_type="user",
        name=account.name,
        email=account.email,
        context={
            "plan_name": sub.plan.name if sub.plan else "",
            "end_date": as_utc(sub.billing_cycle_end),
        },
    )


def _lease_event(lease: Lease, kind: NotificationKind) -> Optional[NotificationEvent]:
    tenant = lease.tenant
    if tenant is None:
        return None
    return NotificationEvent(
        kind=kind,
        recipient_id=tenant.id,
        recipient_type="tenant",
        name=tenant.name,
        email=tenant.email,
        context={
            "unit_number": lease.unit.unit_number if lease.unit else "",
            "end_date": as_utc(lease.end_date),
        },
        channels=(EMAIL,),
    )


def _invoice_event(invoice: Invoice, kind: NotificationKind) -> Optional[NotificationEvent]:
    tenant = invoice.tenant
    if tenant is None:
        return None
    return NotificationEvent(
        kind=kind,
        recipient_id=tenant.id,
        recipient_type="tenant",
        name=tenant.name,
        email=tenant.email,
        context={
            "invoice_number": invoice.invoice_number,
            "amount": invoice.amount,
            "due_date": as_utc(invoice.due_date),
        },
    )


# ── Subscriptions ─────────────────────────────────────────────────

def check_expiring_subscriptions(db: Session, sink: NotificationSink,
                                 now: Optional[datetime] = None) -> ScanResult:
    """Warn owners whose cycle ends within the warning window.  No state change.

    Not deduplicated: an owner is warned on every daily run in the window.
    """
    now = _now(now)
    horizon = now + timedelta(days=SUBSCRIPTION_EXPIRY_WARNING_DAYS)
    ids = [r.id for r in (
        db.query(Subscription.id)
        .filter(
            Subscription.status == "active",
            Subscription.billing_cycle_end >= now,
            Subscription.billing_cycle_end <= horizon,
        )
        .order_by(Subscription.id)
        .limit(SCAN_BATCH_LIMIT)
    )]
    result = ScanResult("check_expiring_subscriptions", selected=len(ids))
    return _process(
        db, sink, result, Subscription, ids, "subscription",
        lambda s: _subscription_event(s, NotificationKind.subscription_expiring),
    )


def check_expired_subscriptions(db: Session, sink: NotificationSink,
                                now: Optional[datetime] = None) -> ScanResult:
    """Flip active subscriptions past their cycle end to expired, then notify."""
    now = _now(now)
    ids = [r.id for r in (
        db.query(Subscription.id)
        .filter(
            Subscription.status == "active",
            Subscription.billing_cycle_end < now,
        )
        .order_by(Subscription.id)
        .limit(SCAN_BATCH_LIMIT)
    )]

    def expire(sub: Subscription) -> bool:
        count = (
            db.query(Subscription)
            .filter(
                Subscription.id == sub.id,
                Subscription.status == "active",
                Subscription.billing_cycle_end < now,
            )
            .update({"status": "expired"}, synchronize_session=False)
        )
        db.commit()
        return count > 0

    result = ScanResult("check_expired_subscriptions", selected=len(ids))
    return _process(
        db, sink, result, Subscription, ids, "subscription",
        lambda s: _subscription_event(s, NotificationKind.subscription_expired),
        transition=expire,
    )


# ── Leases ────────────────────────────────────────────────────────

def check_expiring_leases(db: Session, sink: NotificationSink,
                          now: Optional[datetime] = None) -> ScanResult:
    """Email tenants whose lease ends within the warning window."""
    now = _now(now)
    horizon = now + timedelta(days=LEASE_EXPIRY_WARNING_DAYS)
    ids = [r.id for r in (
        db.query(Lease.id)
        .filter(
            Lease.status == "active",
            Lease.end_date >= now,
            Lease.end_date <= horizon,
        )
        .order_by(Lease.id)
        .limit(SCAN_BATCH_LIMIT)
    )]
    result = ScanResult("check_expiring_leases", selected=len(ids))
    return _process(
        db, sink, result, Lease, ids, "lease",
        lambda l: _lease_event(l, NotificationKind.lease_expiring),
    )


def check_expired_leases(db: Session, sink: NotificationSink,
                         now: Optional[datetime] = None) -> ScanResult:
    now = _now(now)
    ids = [r.id for r in (
        db.query(Lease.id)
        .filter(Lease.status == "active", Lease.end_date < now)
        .order_by(Lease.id)
        .limit(SCAN_BATCH_LIMIT)
    )]

    def expire(lease: Lease) -> bool:
        count = (
            db.query(Lease)
            .filter(
                Lease.id == lease.id,
                Lease.status == "active",
                Lease.end_date < now,
            )
            .update({"status": "expired"}, synchronize_session=False)
        )
        db.commit()
        return count > 0

    result = ScanResult("check_expired_leases", selected=len(ids))
    return _process(
        db, sink, result, Lease, ids, "lease",
        lambda l: _lease_event(l, NotificationKind.lease_expired),
        transition=expire,
    )


# ── Invoices ──────────────────────────────────────────────────────

def check_overdue_invoices(db: Session, sink: NotificationSink,
                           now: Optional[datetime] = None) -> ScanResult:
    """Mark past-due invoices overdue and notify the tenant.

    Invoices already overdue stay in the candidate set, so the tenant is
    notified again on every run until the invoice is paid.
    """
    now = _now(now)
    ids = [r.id for r in (
        db.query(Invoice.id)
        .filter(
            Invoice.status.in_(OVERDUE_CANDIDATE_STATUSES),
            Invoice.due_date < now,
        )
        .order_by(Invoice.id)
        .limit(SCAN_BATCH_LIMIT)
    )]

    def mark_overdue(invoice: Invoice) -> bool:
        if invoice.status == "overdue":
            return False
        count = (
            db.query(Invoice)
            .filter(
                Invoice.id == invoice.id,
                Invoice.status.in_(REMINDER_STATUSES),
                Invoice.due_date < now,
            )
            .update({"status": "overdue"}, synchronize_session=False)
        )
        db.commit()
        return count > 0

    result = ScanResult("check_overdue_invoices", selected=len(ids))
    return _process(
        db, sink, result, Invoice, ids, "invoice",
        lambda i: _invoice_event(i, NotificationKind.invoice_overdue),
        transition=mark_overdue,
        notify_unchanged=True,
    )


def send_invoice_reminders(db: Session, sink: NotificationSink,
                           now: Optional[datetime] = None) -> ScanResult:
    """Remind tenants of unpaid invoices falling due within the reminder window."""
    now = _now(now)
    horizon = now + timedelta(days=INVOICE_REMINDER_DAYS)
    ids = [r.id for r in (
        db.query(Invoice.id)
        .filter(
            Invoice.status.in_(REMINDER_STATUSES),
            Invoice.due_date >= now,
            Invoice.due_date <= horizon,
        )
        .order_by(Invoice.id)
        .limit(SCAN_BATCH_LIMIT)
    )]
    result = ScanResult("send_invoice_reminders", selected=len(ids))
    return _process(
        db, sink, result, Invoice, ids, "invoice",
        lambda i: _invoice_event(i, NotificationKind.invoice_reminder),
    )


SCANS: Dict[str, Callable[..., ScanResult]] = {
    "check_expiring_subscriptions": check_expiring_subscriptions,
    "check_expired_subscriptions": check_expired_subscriptions,
    "check_expiring_leases": check_expiring_leases,
    "check_expired_leases": check_expired_leases,
    "check_overdue_invoices": check_overdue_invoices,
    "send_invoice_reminders": send_invoice_reminders,
}
