"""Tests for the arq worker wiring in worker.py (no Redis needed)."""
import asyncio
import time
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import worker
from models import Base, Tenant, Unit, Lease, utcnow


class _Sender:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append(to)


def _session_factory():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False},
                        poolclass=StaticPool)
    Base.metadata.create_all(eng)
    return sessionmaker(bind=eng)


def test_parse_redis_url():
    s = worker._parse_redis_url("redis://:pw@cache.internal:6380/2")
    assert s.host == "cache.internal"
    assert s.port == 6380
    assert s.password == "pw"
    assert s.database == 2


def test_every_scan_has_a_cron_job():
    names = {job.name for job in worker.WorkerSettings.cron_jobs}
    assert names == {f"cron:{name}" for name in worker.SCANS}


def test_run_scan_uses_its_own_session(monkeypatch):
    factory = _session_factory()
    db = factory()
    tenant = Tenant(name="Ada", email="ada@x.com")
    unit = Unit(unit_number="12B")
    db.add_all([tenant, unit])
    db.flush()
    db.add(Lease(tenant_id=tenant.id, unit_id=unit.id,
                 start_date=utcnow() - timedelta(days=400),
                 end_date=utcnow() - timedelta(days=1)))
    db.commit()
    db.close()

    sender = _Sender()
    monkeypatch.setattr(worker, "SessionLocal", factory)
    monkeypatch.setattr(worker, "get_email_sender", lambda: sender)

    result = worker.run_scan("check_expired_leases")

    assert result.transitioned == 1
    assert sender.sent == ["ada@x.com"]


def test_run_scan_swallows_selection_failure(monkeypatch):
    def broken(db, sink):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(worker, "SessionLocal", _session_factory())
    monkeypatch.setitem(worker.SCANS, "check_expired_leases", broken)

    assert worker.run_scan("check_expired_leases") is None


def test_cron_jobs_run_scans_off_the_event_loop(monkeypatch):
    def slow_scan(name):
        time.sleep(0.3)

    monkeypatch.setattr(worker, "run_scan", slow_scan)

    async def both():
        await asyncio.gather(
            worker.check_expiring_subscriptions({}),
            worker.send_invoice_reminders({}),
        )

    started = time.monotonic()
    asyncio.run(both())
    assert time.monotonic() - started < 0.55


def test_worker_settings_only_schedule_cron_jobs():
    assert not hasattr(worker.WorkerSettings, "functions")
