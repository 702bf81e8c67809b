"""
storytime/models/entitlement.py

Entitlement record and subscription status vocabulary.

The record is what the rest of the app reads to gate story length and
feature access. Only the billing webhook engine writes its
subscription-derived fields.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    """
    Known billing-system subscription statuses.

    Anything the billing system sends that is not listed here parses to
    UNRECOGNIZED, which never grants an entitlement.
    """
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "SubscriptionStatus":
        if not raw:
            return cls.NONE
        try:
            return cls(raw)
        except ValueError:
            return cls.UNRECOGNIZED

    @property
    def is_entitled(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

    @property
    def is_recognized(self) -> bool:
        return self is not SubscriptionStatus.UNRECOGNIZED


class EntitlementRecord(BaseModel):
    """Read-only view of a user's row."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    billing_customer_id: Optional[str] = None
    subscription_status: str = SubscriptionStatus.NONE.value
    active_plan_id: Optional[str] = None
    period_end: Optional[datetime] = None
    minutes_limit: Optional[int] = None
    minutes_used: Optional[int] = 0

    @property
    def status(self) -> SubscriptionStatus:
        return SubscriptionStatus.parse(self.subscription_status)

    @property
    def is_subscriber(self) -> bool:
        return self.status.is_entitled

    @property
    def minutes_remaining(self) -> Optional[int]:
        if self.minutes_limit is None:
            return None
        return max(self.minutes_limit - (self.minutes_used or 0), 0)


# Record field name -> users column name
RECORD_COLUMNS = {
    "user_id": "id",
    "email": "email",
    "billing_customer_id": "stripe_customer_id",
    "subscription_status": "subscription_status",
    "active_plan_id": "active_plan_price_id",
    "period_end": "subscription_current_period_end",
    "minutes_limit": "monthly_minutes_limit",
    "minutes_used": "minutes_used_this_period",
}
