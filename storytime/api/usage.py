"""
Usage API routes.

- GET  /api/usage: Minutes used / remaining this period
- POST /api/usage/authorize: Check a story length before generating
- POST /api/usage/minutes: Record minutes consumed by a generated story
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from storytime.core.auth import AuthenticatedUser, get_current_user
from storytime.features.billing.service import BillingServices, get_billing_services
from storytime.features.usage.service import check_story_length, consume_minutes, usage_summary

router = APIRouter(prefix="/usage", tags=["usage"])


class MinutesRequest(BaseModel):
    minutes: int = Field(gt=0)


class UsageResponse(BaseModel):
    subscription_status: str
    is_subscriber: bool
    minutes_used: int
    minutes_limit: Optional[int]
    minutes_remaining: Optional[int]
    period_end: Optional[str]  # ISO8601


def _usage_response(record) -> dict:
    summary = usage_summary(record)
    period_end = summary["period_end"]
    summary["period_end"] = period_end.isoformat() if period_end else None
    return summary


@router.get("", response_model=UsageResponse)
async def get_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    services: BillingServices = Depends(get_billing_services),
):
    return _usage_response(services.store.get(user.user_id))


@router.post("/authorize")
async def authorize_story(
    request: MinutesRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Check whether the caller may generate a story of the requested length.

    Errors:
        403: quota_exceeded (longer than the free length without a
             subscription, or not enough minutes left)
    """
    check_story_length(services.store.get(user.user_id), request.minutes)
    return {"allowed": True, "minutes": request.minutes}


@router.post("/minutes", response_model=UsageResponse)
async def record_minutes(
    request: MinutesRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Add consumed minutes to the caller's current period.

    Errors:
        403: quota_exceeded
        404: not_found (no account row)
    """
    record = consume_minutes(services.store, user.user_id, request.minutes)
    return _usage_response(record)
