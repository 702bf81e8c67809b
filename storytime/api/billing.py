"""
Billing API routes.

Minimal surface:
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/status: Get user entitlement
- GET  /api/billing/plans: List plans
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from storytime.core.auth import AuthenticatedUser, get_current_user
from storytime.core.errors import AppError, AuthenticationError, ValidationError, WebhookProcessingError
from storytime.features.billing.checkout import start_checkout
from storytime.features.billing.engine import EntitlementWriteError
from storytime.features.billing.provider import BillingProviderError, BillingSignatureError, BillingWebhookError
from storytime.features.billing.service import BillingServices, get_billing_services
from storytime.features.usage.service import usage_summary

logger = logging.getLogger("storytime")

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    model_config = ConfigDict(populate_by_name=True)

    price_id: Optional[str] = Field(default=None, alias="priceId")


class CheckoutResponse(BaseModel):
    """Response with checkout session reference."""
    session_id: str
    url: Optional[str] = None


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    price_id: str
    monthly_minutes: int
    price_monthly: float


class BillingStatusResponse(BaseModel):
    """User entitlement state."""
    enabled: bool
    subscription_status: str
    is_subscriber: bool
    active_plan_id: Optional[str]
    period_end: Optional[str]  # ISO8601
    minutes_limit: Optional[int]
    minutes_used: Optional[int]


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Create Stripe checkout session.

    Returns:
        {"session_id": "cs_...", "url": "https://checkout.stripe.com/..."}

    Errors:
        401: Missing or invalid Bearer token
        400: Missing or unknown price_id
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        500: Stripe API or database error
    """
    provider = services.require_provider()

    try:
        session = start_checkout(
            user,
            request.price_id,
            provider=provider,
            store=services.store,
            catalog=services.catalog,
            site_url=services.site_url,
        )
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_provider_error", status_code=500)
    except SQLAlchemyError:
        logger.error(f"Database error during checkout for user {user.user_id}", exc_info=True)
        raise AppError("Database error fetching profile", code="database_error", status_code=500)

    return {"session_id": session.session_id, "url": session.url}


@router.post("/webhook")
async def handle_webhook(request: Request, services: BillingServices = Depends(get_billing_services)):
    """
    Handle Stripe webhook events.

    Verifies the signature before parsing, then applies the entitlement
    transition. Every verified event is acknowledged with 200, including
    unhandled types and events for unknown customers, so Stripe does not
    redeliver what can never succeed.

    Returns:
        {"received": true}

    Errors:
        401: Missing or invalid signature
        400: Malformed payload
        500: Entitlement could not be persisted (Stripe will redeliver)
        503: Billing disabled
    """
    engine = services.engine()

    # Raw body is required for signature verification
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = engine.provider.parse_webhook(body, signature)
    except BillingSignatureError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise AuthenticationError(f"Webhook signature verification failed: {e}", code="invalid_signature")
    except BillingWebhookError as e:
        raise ValidationError(str(e))
    except BillingProviderError as e:
        logger.error(f"Webhook cannot be verified: {e}")
        raise AppError(str(e), code="billing_misconfigured", status_code=500)

    try:
        outcome = engine.process(event)
    except (EntitlementWriteError, SQLAlchemyError) as e:
        logger.error(
            f"Webhook handler failed for event {event.event_id} ({event.event_type}): {e}",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        raise WebhookProcessingError(f"Webhook handler failed: {e}")

    response = {"received": True, "event_id": event.event_id}
    if outcome.action == "ignored":
        response["message"] = outcome.reason
    return response


@router.get("/status", response_model=BillingStatusResponse)
async def get_status(
    user: AuthenticatedUser = Depends(get_current_user),
    services: BillingServices = Depends(get_billing_services),
):
    """
    Get the caller's entitlement record.

    Users who never subscribed get status "none" and null limits.
    """
    record = services.store.get(user.user_id)
    summary = usage_summary(record)

    period_end = summary["period_end"]
    return {
        "enabled": services.enabled,
        "subscription_status": summary["subscription_status"],
        "is_subscriber": summary["is_subscriber"],
        "active_plan_id": record.active_plan_id if record else None,
        "period_end": period_end.isoformat() if period_end else None,
        "minutes_limit": summary["minutes_limit"],
        "minutes_used": record.minutes_used if record else 0,
    }


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(services: BillingServices = Depends(get_billing_services)):
    """Plans shown on the pricing page."""
    return [plan.model_dump() for plan in services.catalog]
