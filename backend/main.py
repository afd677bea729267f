"""
main.py — Leaseline subscription billing API

Plan catalog, subscription create/upgrade/cancel and the self-service
routes for the logged-in account.  Lifecycle scans run in worker.py.
"""
from __future__ import annotations
import logging, os
from dataclasses import asdict
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional, Union
from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from models import DATABASE_URL, init_db, get_db, SessionLocal, Account, utcnow
from plan_service import (
    list_active_plans, get_plan_quota, get_active_subscription_for, seed_default_plans,
)
from billing_service import (
    to_money, create_subscription, calculate_upgrade, upgrade_subscription,
    cancel_subscription, subscribe_free, get_subscription, list_subscription_history,
)
from auth import get_account_id

log = logging.getLogger(__name__)

VERSION = "1.0.0"


def run_migrations() -> None:
    """Bootstrap / migrate the database on startup.

    * SQLite (dev/tests): uses init_db() (create_all) — fast, no Alembic overhead.
    * Postgres (production): runs Alembic upgrade head.
    """
    if DATABASE_URL.startswith("sqlite"):
        init_db()
        return

    from alembic import command
    from alembic.config import Config

    cfg = Config(os.path.join(os.path.dirname(__file__), "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
    log.info("Running Alembic upgrade head")
    command.upgrade(cfg, "head")


@asynccontextmanager
async def lifespan(app):
    run_migrations()
    db = SessionLocal()
    try:
        seed_default_plans(db)
    finally:
        db.close()
    yield

app = FastAPI(title="Leaseline Billing API", version=VERSION, lifespan=lifespan)

# CORS: restrict in production via ALLOWED_ORIGINS env var
_raw_origins = os.getenv("ALLOWED_ORIGINS", "")
if _raw_origins and _raw_origins != "*":
    _origins = [o.strip() for o in _raw_origins.split(",")]
    _credentials = True
elif DATABASE_URL.startswith("sqlite"):
    # Local dev: allow all origins, no credentials
    _origins = ["*"]
    _credentials = False
else:
    raise RuntimeError(
        "ALLOWED_ORIGINS must be set to explicit origins in production "
        "(e.g. 'https://app.example.com,https://admin.example.com'). "
        "Wildcard '*' with credentials is forbidden by the CORS spec."
    )
app.add_middleware(CORSMiddleware, allow_origins=_origins, allow_credentials=_credentials,
                   allow_methods=["*"], allow_headers=["*"])

# ── Request models ────────────────────────────────────────────────

class SubscriptionCreate(BaseModel):
    account_id: int
    plan_id: int
    building_count: int = Field(1, ge=1)
    manager_count: int = Field(0, ge=0)
    billing_cycle_start: Optional[Union[datetime, date]] = None

class PlanChange(BaseModel):
    new_plan_id: int
    new_building_count: int = Field(ge=1)
    new_manager_count: int = Field(ge=0)

class CancelReq(BaseModel):
    note: Optional[str] = None

# ── Serializers ───────────────────────────────────────────────────

def _plan_json(p):
    return {"id": p.id, "name": p.name,
            "building_price": to_money(p.building_price),
            "manager_price": to_money(p.manager_price),
            "features": p.get_features(), "status": p.status}

def _sub_json(s):
    return {"id": s.id, "account_id": s.account_id,
            "plan": _plan_json(s.plan) if s.plan else None,
            "building_count": s.building_count, "manager_count": s.manager_count,
            "total_amount": to_money(s.total_amount),
            "billing_cycle_start": s.billing_cycle_start.isoformat(),
            "billing_cycle_end": s.billing_cycle_end.isoformat(),
            "next_billing_date": s.next_billing_date.isoformat() if s.next_billing_date else None,
            "status": s.status}

def _history_json(h):
    return {"id": h.id, "action": h.action,
            "old_plan_id": h.old_plan_id, "new_plan_id": h.new_plan_id,
            "old_building_count": h.old_building_count, "new_building_count": h.new_building_count,
            "old_manager_count": h.old_manager_count, "new_manager_count": h.new_manager_count,
            "prorated_amount": to_money(h.prorated_amount) if h.prorated_amount is not None else None,
            "notes": h.notes,
            "created_at": h.created_at.isoformat() if h.created_at else None}

# ── Plans ─────────────────────────────────────────────────────────

@app.get("/api/plans")
def list_plans(db=Depends(get_db)):
    return [{**_plan_json(p), "quota": asdict(get_plan_quota(p))} for p in list_active_plans(db)]

# ── Subscriptions ─────────────────────────────────────────────────

@app.post("/api/subscriptions", status_code=201)
def create(req: SubscriptionCreate, db=Depends(get_db)):
    if not db.query(Account).filter_by(id=req.account_id).first():
        raise HTTPException(404, "Account not found")
    sub = create_subscription(db, req.account_id, req.plan_id,
                              req.building_count, req.manager_count,
                              req.billing_cycle_start or utcnow())
    return _sub_json(sub)

@app.get("/api/subscriptions/{sid}")
def get_one(sid: int, db=Depends(get_db)):
    sub = get_subscription(db, sid)
    return {**_sub_json(sub),
            "history": [_history_json(h) for h in list_subscription_history(db, sid)]}

@app.post("/api/subscriptions/{sid}/calculate-upgrade")
def preview_upgrade(sid: int, req: PlanChange, db=Depends(get_db)):
    result = calculate_upgrade(db, sid, req.new_plan_id,
                               req.new_building_count, req.new_manager_count)
    return result.as_dict()

@app.post("/api/subscriptions/{sid}/upgrade")
def upgrade(sid: int, req: PlanChange, db=Depends(get_db)):
    result = upgrade_subscription(db, sid, req.new_plan_id,
                                  req.new_building_count, req.new_manager_count)
    return {"subscription": _sub_json(result.subscription),
            "proration": result.proration.as_dict()}

@app.post("/api/subscriptions/{sid}/cancel")
def cancel(sid: int, req: Optional[CancelReq] = None, db=Depends(get_db)):
    sub = cancel_subscription(db, sid, req.note if req else None)
    return _sub_json(sub)

# ── Self-service ──────────────────────────────────────────────────

@app.get("/api/me/subscription")
def my_subscription(aid: int = Depends(get_account_id), db=Depends(get_db)):
    return _sub_json(get_active_subscription_for(db, aid))

@app.post("/api/me/subscription/calculate-change")
def my_calculate_change(req: PlanChange, aid: int = Depends(get_account_id), db=Depends(get_db)):
    sub = get_active_subscription_for(db, aid)
    result = calculate_upgrade(db, sub.id, req.new_plan_id,
                               req.new_building_count, req.new_manager_count)
    return result.as_dict()

@app.post("/api/me/subscription/change-plan")
def my_change_plan(req: PlanChange, aid: int = Depends(get_account_id), db=Depends(get_db)):
    sub = get_active_subscription_for(db, aid)
    result = upgrade_subscription(db, sub.id, req.new_plan_id,
                                  req.new_building_count, req.new_manager_count)
    return {"subscription": _sub_json(result.subscription),
            "proration": result.proration.as_dict()}

@app.post("/api/me/subscription/free", status_code=201)
def my_free(aid: int = Depends(get_account_id), db=Depends(get_db)):
    return _sub_json(subscribe_free(db, aid))

# ── Health ─────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    return {"status": "ok", "version": VERSION}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
