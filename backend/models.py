"""
models.py — Postgres-ready with SQLite fallback.

SQLite for local dev and tests, Postgres in production via DATABASE_URL.
Money columns are Numeric(12, 2); timestamps are stored as UTC.
"""
import enum as _enum
import json
import os
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, Column, Integer, String, Text, DateTime, Numeric,
    Boolean, ForeignKey, Index, text,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker, relationship


# ── Python enums (documentation/validation only, DB uses String(50)) ──

class PlanStatus(_enum.Enum):
    active = "active"
    inactive = "inactive"

class SubscriptionStatus(_enum.Enum):
    active = "active"
    expired = "expired"
    cancelled = "cancelled"

class HistoryAction(_enum.Enum):
    created = "created"
    upgraded = "upgraded"
    cancelled = "cancelled"

class LeaseStatus(_enum.Enum):
    active = "active"
    expired = "expired"
    terminated = "terminated"

class InvoiceStatus(_enum.Enum):
    draft = "draft"
    sent = "sent"
    paid = "paid"
    overdue = "overdue"


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///leaseline.db")

# Postgres on some PaaS uses postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(DATABASE_URL, echo=False,
                       pool_pre_ping=True)  # reconnect on stale connections
SessionLocal = sessionmaker(bind=engine)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    subscriptions = relationship("Subscription", back_populates="account")


class Plan(Base):
    __tablename__ = "subscription_plans"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    building_price = Column(Numeric(12, 2), nullable=False, default=0)
    manager_price = Column(Numeric(12, 2), nullable=False, default=0)
    features = Column(Text, default="{}")   # JSON: quota/feature descriptor
    status = Column(String(50), default="active")  # active | inactive
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def get_features(self) -> dict:
        try:
            return json.loads(self.features) or {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def set_features(self, features: dict):
        self.features = json.dumps(features)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    building_count = Column(Integer, nullable=False, default=1)
    manager_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    billing_cycle_start = Column(DateTime(timezone=True), nullable=False)
    billing_cycle_end = Column(DateTime(timezone=True), nullable=False)  # exclusive
    next_billing_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(50), default="active")  # active | expired | cancelled
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    account = relationship("Account", back_populates="subscriptions")
    plan = relationship("Plan")
    history = relationship(
        "SubscriptionHistory", back_populates="subscription",
        order_by="SubscriptionHistory.id",
    )
    __table_args__ = (
        # At most one active subscription per account
        Index(
            "uq_subscription_active_account", "account_id", unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_subscription_status_end", "status", "billing_cycle_end"),
    )


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False)
    action = Column(String(50), nullable=False)  # created | upgraded | cancelled
    old_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    new_plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=True)
    old_building_count = Column(Integer, nullable=True)
    new_building_count = Column(Integer, nullable=True)
    old_manager_count = Column(Integer, nullable=True)
    new_manager_count = Column(Integer, nullable=True)
    prorated_amount = Column(Numeric(12, 2), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    subscription = relationship("Subscription", back_populates="history")
    __table_args__ = (Index("ix_subhistory_sub", "subscription_id", "created_at"),)


class Tenant(Base):
    __tablename__ = "tenants"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Unit(Base):
    __tablename__ = "units"
    id = Column(Integer, primary_key=True, autoincrement=True)
    unit_number = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Lease(Base):
    __tablename__ = "leases"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(50), default="active")  # active | expired | terminated
    created_at = Column(DateTime(timezone=True), default=utcnow)
    tenant = relationship("Tenant")
    unit = relationship("Unit")
    __table_args__ = (Index("ix_lease_status_end", "status", "end_date"),)


class Invoice(Base):
    __tablename__ = "invoices"
    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String(64), unique=True, nullable=False)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(50), default="draft")  # draft | sent | paid | overdue
    created_at = Column(DateTime(timezone=True), default=utcnow)
    tenant = relationship("Tenant")
    __table_args__ = (Index("ix_invoice_status_due", "status", "due_date"),)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(Integer, nullable=False)
    recipient_type = Column(String(20), nullable=False)  # user | tenant
    type = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, default="")
    link = Column(String(500), nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    __table_args__ = (
        Index("ix_notification_recipient", "recipient_type", "recipient_id", "created_at"),
    )


def init_db():
    Base.metadata.create_all(engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
