"""
Customer resolver: find or create the Stripe customer for a user.

At most one customer is created per user in the common case. Two
near-simultaneous first purchases can still create two Stripe customers;
the loser's id is logged and discarded.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from storytime.core.auth import AuthenticatedUser
from storytime.features.billing.provider import BillingProvider
from storytime.features.billing.store import EntitlementStore

logger = logging.getLogger("storytime")


def resolve_customer(
    user: AuthenticatedUser,
    store: EntitlementStore,
    provider: BillingProvider,
) -> str:
    """
    Return the user's Stripe customer id, creating one if needed.

    Raises:
        BillingProviderError: If the customer cannot be created
        SQLAlchemyError: If the existing mapping cannot be read
    """
    record = store.ensure_user(user.user_id, user.email)
    if record and record.billing_customer_id:
        return record.billing_customer_id

    customer_id = provider.create_customer(user.user_id, user.email)
    logger.info(
        f"Created Stripe customer {customer_id} for user {user.user_id}",
        extra={"user_id": user.user_id},
    )

    try:
        stored = store.set_customer_id_if_absent(user.user_id, customer_id)
    except SQLAlchemyError:
        # Checkout can proceed, but Stripe now has a customer we never saved
        logger.error(
            f"Failed to persist Stripe customer {customer_id} for user {user.user_id}; "
            "billing and user records are inconsistent until an operator links them",
            exc_info=True,
            extra={"user_id": user.user_id, "error_code": "customer_persist_failed"},
        )
        return customer_id

    if stored:
        return customer_id

    existing = store.get_customer_id(user.user_id)
    if existing:
        logger.warning(
            f"Stripe customer {existing} was stored concurrently for user {user.user_id}; "
            f"orphaned customer {customer_id}",
            extra={"user_id": user.user_id, "error_code": "customer_race"},
        )
        return existing

    logger.error(
        f"No users row to attach Stripe customer {customer_id} for user {user.user_id}",
        extra={"user_id": user.user_id, "error_code": "customer_persist_failed"},
    )
    return customer_id
