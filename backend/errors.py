"""
errors.py — Caller-facing billing errors.

Services raise these directly (they are HTTPExceptions), so route
handlers just let them propagate.  None of them are retryable.
"""
from __future__ import annotations

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code = 400
    detail = "Billing error"

    def __init__(self, detail: str | None = None):
        super().__init__(self.status_code, detail or self.detail)


class PlanNotFound(BillingError):
    status_code = 404
    detail = "Plan not found"


class PlanInactive(BillingError):
    detail = "Plan is not active"


class DuplicateActiveSubscription(BillingError):
    status_code = 409
    detail = "Account already has an active subscription"


class SubscriptionNotFound(BillingError):
    status_code = 404
    detail = "Subscription not found"


class SubscriptionNotActive(BillingError):
    detail = "Can only change active subscriptions"


class BillingCycleEnded(BillingError):
    detail = "Subscription billing cycle has ended"


class QuotaExceeded(BillingError):
    status_code = 403
    detail = "Plan limit reached"


class SubscriptionRequired(BillingError):
    status_code = 403
    detail = "No active subscription found. Please subscribe to continue."


class SubscriptionExpired(BillingError):
    status_code = 403
    detail = "Your subscription has expired. Please renew to continue."
