"""
storytime/features/usage/service.py

Usage ledger gate.

Story generation calls in here before producing audio: subscribers draw
minutes from their monthly allocation, everyone else is limited to short
free stories. The billing webhook is the only place usage is reset.
"""

import logging
from typing import Dict, Any, Optional

from storytime.core.errors import NotFoundError, QuotaExceededError, ValidationError
from storytime.features.billing.store import EntitlementStore
from storytime.models.entitlement import EntitlementRecord

logger = logging.getLogger("storytime")

# Story length available without a subscription
FREE_STORY_MINUTES = 3


def usage_summary(record: Optional[EntitlementRecord]) -> Dict[str, Any]:
    """
    Minutes used / allowed in the current period.

    Returns:
        {
            "subscription_status": str,
            "is_subscriber": bool,
            "minutes_used": int,
            "minutes_limit": int | None,
            "minutes_remaining": int | None,
            "period_end": datetime | None
        }
    """
    if record is None:
        return {
            "subscription_status": "none",
            "is_subscriber": False,
            "minutes_used": 0,
            "minutes_limit": None,
            "minutes_remaining": None,
            "period_end": None,
        }
    return {
        "subscription_status": record.subscription_status,
        "is_subscriber": record.is_subscriber,
        "minutes_used": record.minutes_used or 0,
        "minutes_limit": record.minutes_limit,
        "minutes_remaining": record.minutes_remaining,
        "period_end": record.period_end,
    }


def check_story_length(record: Optional[EntitlementRecord], minutes: int) -> None:
    """
    Raise unless the user may generate a story of this length.

    Non-subscribers may only create FREE_STORY_MINUTES stories; subscribers
    need enough minutes left in their allocation.
    """
    if minutes <= 0:
        raise ValidationError("Story length must be a positive number of minutes.")

    if record is None or not record.is_subscriber:
        if minutes != FREE_STORY_MINUTES:
            raise QuotaExceededError(
                f"Stories longer than {FREE_STORY_MINUTES} minutes require a subscription."
            )
        return

    remaining = record.minutes_remaining
    if remaining is None or minutes > remaining:
        raise QuotaExceededError(
            f"Not enough story minutes left this period ({remaining or 0} remaining)."
        )


def consume_minutes(store: EntitlementStore, user_id: str, minutes: int) -> EntitlementRecord:
    """
    Record minutes consumed by a subscriber.

    The increment is conditional in SQL, so concurrent requests cannot
    push usage past the limit.

    Raises:
        ValidationError: minutes not positive
        NotFoundError: no record for the user
        QuotaExceededError: not subscribed, or allocation exhausted
    """
    if minutes <= 0:
        raise ValidationError("Minutes must be a positive integer.")

    record = store.get(user_id)
    if record is None:
        raise NotFoundError(f"No account found for user {user_id}")
    if not record.is_subscriber:
        raise QuotaExceededError("An active subscription is required to use story minutes.")

    if not store.add_minutes_used(user_id, minutes):
        logger.info(
            f"Usage rejected for user {user_id}: {minutes} min requested, "
            f"{record.minutes_remaining} remaining",
            extra={"user_id": user_id, "error_code": "quota_exceeded"},
        )
        raise QuotaExceededError(
            f"Not enough story minutes left this period ({record.minutes_remaining or 0} remaining)."
        )

    return store.get(user_id)
