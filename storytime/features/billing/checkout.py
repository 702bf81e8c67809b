"""
Checkout session initiator.

Creates a Stripe-hosted subscription checkout for an authenticated user.
Entitlement fields are not touched here; they change only when the
resulting webhook events arrive.
"""
import logging
from typing import Optional

from storytime.core.auth import AuthenticatedUser
from storytime.core.errors import ValidationError
from storytime.features.billing.customers import resolve_customer
from storytime.features.billing.plans import PlanCatalog
from storytime.features.billing.provider import BillingProvider, CheckoutSession
from storytime.features.billing.store import EntitlementStore

logger = logging.getLogger("storytime")


def checkout_urls(site_url: str) -> tuple[str, str]:
    """Success and cancel redirect targets for the hosted checkout page."""
    base = site_url.rstrip("/")
    success_url = f"{base}/dashboard?checkout_success=true&session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = f"{base}/pricing?checkout_canceled=true"
    return success_url, cancel_url


def start_checkout(
    user: AuthenticatedUser,
    price_id: Optional[str],
    *,
    provider: BillingProvider,
    store: EntitlementStore,
    catalog: PlanCatalog,
    site_url: str,
) -> CheckoutSession:
    """
    Start a subscription checkout for a plan.

    Args:
        user: Verified caller identity
        price_id: Stripe price id of the plan being purchased

    Returns:
        CheckoutSession with the session id (and hosted URL)

    Raises:
        ValidationError: If price_id is missing or not a catalog plan
        BillingProviderError: If Stripe rejects the customer or session
    """
    if not isinstance(price_id, str) or not price_id.strip():
        raise ValidationError("Missing or invalid 'price_id' in request body.")
    price_id = price_id.strip()

    plan = catalog.plan_for_price(price_id)
    if plan is None:
        raise ValidationError(f"Unknown plan price: {price_id}")

    customer_id = resolve_customer(user, store, provider)

    success_url, cancel_url = checkout_urls(site_url)
    session = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        user_id=user.user_id,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    logger.info(
        f"Checkout session {session.session_id} created for user {user.user_id} "
        f"(plan={plan.plan_id}, customer={customer_id})",
        extra={"user_id": user.user_id},
    )
    return session
