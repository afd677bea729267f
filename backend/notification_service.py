"""
notification_service.py — Email + in-app delivery for lifecycle events.

The lifecycle jobs build a NotificationEvent and hand it to a
NotificationSink.  The sink renders the Jinja2 templates for the event
kind, sends the email through an EmailSender and stores an in-app
Notification row.  Any failure is raised to the caller; the scheduler
decides what to do with it (log and move on).
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx
from jinja2 import Environment
from sqlalchemy.orm import Session

from models import Notification

log = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Leaseline <notifications@leaseline.dev>")
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))

EMAIL = "email"
IN_APP = "in_app"


class NotificationKind(enum.Enum):
    subscription_expiring = "subscription_expiring"
    subscription_expired = "subscription_expired"
    lease_expiring = "lease_expiring"
    lease_expired = "lease_expired"
    invoice_overdue = "invoice_overdue"
    invoice_reminder = "invoice_reminder"


# ── Templates ─────────────────────────────────────────────────────
# subject/html go to email; title/message/link to the in-app feed.

TEMPLATES: Dict[NotificationKind, Dict[str, str]] = {
    NotificationKind.subscription_expiring: {
        "subject": "Subscription Expiring Soon",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>Your <strong>{{ plan_name }}</strong> subscription will expire on "
            "{{ end_date.strftime('%Y-%m-%d') }}.</p>"
            "<p>Renew now to keep managing your buildings without interruption.</p>"
        ),
        "title": "Subscription Expiring Soon",
        "message": "Your {{ plan_name }} subscription will expire on {{ end_date.strftime('%Y-%m-%d') }}",
        "link": "/dashboard/subscriptions",
    },
    NotificationKind.subscription_expired: {
        "subject": "Subscription Expired",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>Your <strong>{{ plan_name }}</strong> subscription has expired.</p>"
            "<p>Renew your subscription to regain access.</p>"
        ),
        "title": "Subscription Expired",
        "message": "Your {{ plan_name }} subscription has expired",
        "link": "/dashboard/subscriptions",
    },
    NotificationKind.lease_expiring: {
        "subject": "Lease Expiring Soon",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>Your lease for unit <strong>{{ unit_number }}</strong> will expire on "
            "{{ end_date.strftime('%Y-%m-%d') }}.</p>"
            "<p>Please contact your building manager about renewal.</p>"
        ),
        "title": "Lease Expiring Soon",
        "message": "Your lease for unit {{ unit_number }} expires on {{ end_date.strftime('%Y-%m-%d') }}",
        "link": "/tenant/lease",
    },
    NotificationKind.lease_expired: {
        "subject": "Lease Expired",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>Your lease for unit <strong>{{ unit_number }}</strong> has expired.</p>"
        ),
        "title": "Lease Expired",
        "message": "Your lease for unit {{ unit_number }} has expired",
        "link": "/tenant/lease",
    },
    NotificationKind.invoice_overdue: {
        "subject": "Payment Overdue",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>Your payment of <strong>${{ '%.2f' | format(amount) }}</strong> for invoice "
            "{{ invoice_number }} was due on {{ due_date.strftime('%Y-%m-%d') }} and is now overdue.</p>"
            "<p>Please pay as soon as possible.</p>"
        ),
        "title": "Payment Overdue",
        "message": "Your payment of ${{ '%.2f' | format(amount) }} is overdue. Invoice: {{ invoice_number }}",
        "link": "/tenant/payments",
    },
    NotificationKind.invoice_reminder: {
        "subject": "Payment Reminder",
        "html": (
            "<h1>Hello {{ name }},</h1>"
            "<p>A payment of <strong>${{ '%.2f' | format(amount) }}</strong> for invoice "
            "{{ invoice_number }} is due on {{ due_date.strftime('%Y-%m-%d') }}.</p>"
        ),
        "title": "Payment Reminder",
        "message": "Payment of ${{ '%.2f' | format(amount) }} is due soon. Invoice: {{ invoice_number }}",
        "link": "/tenant/payments",
    },
}

_env = Environment(autoescape=True)
_plain_env = Environment(autoescape=False)


@dataclass
class NotificationEvent:
    kind: NotificationKind
    recipient_id: int
    recipient_type: str            # user | tenant
    name: str
    email: Optional[str]
    context: Dict[str, Any] = field(default_factory=dict)
    channels: Tuple[str, ...] = (EMAIL, IN_APP)


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    html: str
    title: str
    message: str
    link: str


def render(event: NotificationEvent) -> RenderedNotification:
    tmpl = TEMPLATES[event.kind]
    ctx = {"name": event.name or "there", **event.context}
    return RenderedNotification(
        subject=tmpl["subject"],
        html=_env.from_string(tmpl["html"]).render(**ctx),
        title=tmpl["title"],
        message=_plain_env.from_string(tmpl["message"]).render(**ctx),
        link=tmpl["link"],
    )


# ── Email senders ─────────────────────────────────────────────────

class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> None: ...


class ResendEmailSender:
    """Send through the Resend HTTP API.  Each call is bounded by *timeout*."""

    def __init__(self, api_key: str, sender: str = EMAIL_FROM,
                 timeout: float = EMAIL_TIMEOUT_SECONDS, url: str = RESEND_API_URL):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self.url = url

    def send(self, to: str, subject: str, html: str) -> None:
        resp = httpx.post(
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"from": self.sender, "to": [to], "subject": subject, "html": html},
            timeout=self.timeout,
        )
        resp.raise_for_status()


class LogEmailSender:
    """Local dev: log the email instead of sending it."""

    def send(self, to: str, subject: str, html: str) -> None:
        log.info("Email not sent (RESEND_API_KEY unset): to=%s subject=%s", to, subject)


def get_email_sender() -> EmailSender:
    if RESEND_API_KEY:
        return ResendEmailSender(RESEND_API_KEY)
    return LogEmailSender()


# ── Sink ──────────────────────────────────────────────────────────

class NotificationSink:
    """Delivers lifecycle events: email first, then the in-app row."""

    def __init__(self, db: Session, email_sender: EmailSender):
        self.db = db
        self.email_sender = email_sender

    def notify(self, event: NotificationEvent) -> bool:
        """Deliver *event*.  Returns False when no channel could be used."""
        rendered = render(event)
        delivered = False

        if EMAIL in event.channels:
            if event.email:
                self.email_sender.send(event.email, rendered.subject, rendered.html)
                delivered = True
            else:
                log.warning("No email address for %s %s, skipping %s email",
                            event.recipient_type, event.recipient_id, event.kind.value)

        if IN_APP in event.channels:
            self.db.add(Notification(
                recipient_id=event.recipient_id,
                recipient_type=event.recipient_type,
                type=event.kind.value,
                title=rendered.title,
                message=rendered.message,
                link=rendered.link,
            ))
            self.db.commit()
            delivered = True

        return delivered
