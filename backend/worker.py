"""
worker.py — Arq background worker for Leaseline lifecycle jobs.

Start with:  cd backend && arq worker.WorkerSettings
Run one scan by hand:  cd backend && python worker.py check_expired_leases
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from urllib.parse import urlparse

from arq import cron
from arq.connections import RedisSettings

from lifecycle_service import SCANS, ScanResult
from models import SessionLocal
from notification_service import NotificationSink, get_email_sender

log = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")


def _parse_redis_url(url: str) -> RedisSettings:
    """Convert a redis:// URL into arq RedisSettings."""
    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0),
    )


def run_scan(name: str) -> ScanResult | None:
    """Run one lifecycle scan with its own session and notification sink.

    Blocking (sync SQLAlchemy + httpx); the cron wrappers run it in a
    worker thread so concurrent jobs do not stall the event loop.
    """
    scan = SCANS[name]
    db = SessionLocal()
    try:
        sink = NotificationSink(db, get_email_sender())
        return scan(db, sink)
    except Exception:
        # Selection itself failed; the next run picks the rows up again
        log.exception("%s failed", name)
        db.rollback()
        return None
    finally:
        db.close()


async def check_expiring_subscriptions(ctx: dict) -> None:
    """Cron: warn owners 7 days ahead of cycle end."""
    await asyncio.to_thread(run_scan, "check_expiring_subscriptions")


async def check_expired_subscriptions(ctx: dict) -> None:
    await asyncio.to_thread(run_scan, "check_expired_subscriptions")


async def check_expiring_leases(ctx: dict) -> None:
    await asyncio.to_thread(run_scan, "check_expiring_leases")


async def check_expired_leases(ctx: dict) -> None:
    await asyncio.to_thread(run_scan, "check_expired_leases")


async def check_overdue_invoices(ctx: dict) -> None:
    await asyncio.to_thread(run_scan, "check_overdue_invoices")


async def send_invoice_reminders(ctx: dict) -> None:
    await asyncio.to_thread(run_scan, "send_invoice_reminders")


class WorkerSettings:
    cron_jobs = [
        cron(check_expiring_subscriptions, hour=9, minute=0),
        cron(check_expired_subscriptions, hour=10, minute=0),
        cron(check_expiring_leases, hour=11, minute=0),
        cron(check_expired_leases, hour=0, minute=0),
        cron(check_overdue_invoices, hour=8, minute=0),
        cron(send_invoice_reminders, hour=9, minute=0),
    ]
    max_jobs = 4
    job_timeout = 600
    redis_settings = _parse_redis_url(REDIS_URL)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if len(sys.argv) != 2 or sys.argv[1] not in SCANS:
        print(f"usage: python worker.py <{'|'.join(SCANS)}>")
        sys.exit(2)
    sys.exit(0 if run_scan(sys.argv[1]) is not None else 1)
