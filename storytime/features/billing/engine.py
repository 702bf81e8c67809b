"""
Entitlement update engine.

Sole writer of the subscription-derived fields on a user's record.
Each verified Stripe event maps to one transition:

- checkout.session.completed: set plan, limit, period end; reset usage
- invoice.payment_succeeded (subscription_cycle / subscription_create):
  refresh status and period end; reset usage
- customer.subscription.updated: refresh status, plan, limit, period end;
  usage is NOT reset, so mid-period plan switches never grant fresh minutes
- customer.subscription.deleted: canceled; plan, limit, period end and
  usage cleared

Usage resets are triggered by event type and billing reason alone. Events
are not deduplicated or ordered: a redelivered period-start event zeroes
usage again, and a late event can overwrite newer state.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from storytime.core.logging import log_event
from storytime.features.billing.plans import PlanCatalog
from storytime.features.billing.provider import (
    BillingEvent,
    BillingProvider,
    BillingProviderError,
    SubscriptionSnapshot,
)
from storytime.features.billing.store import EntitlementStore
from storytime.features.billing.stripe_provider import object_id, parse_subscription
from storytime.models.entitlement import SubscriptionStatus

logger = logging.getLogger("storytime")

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Invoices that open a new billing period
PERIOD_START_BILLING_REASONS = frozenset({"subscription_cycle", "subscription_create"})


class EntitlementWriteError(Exception):
    """Persisting an entitlement update failed; the event should be redelivered."""


@dataclass
class EntitlementOutcome:
    """What the engine did with one event."""
    event_id: str
    event_type: str
    action: str  # updated | skipped | ignored | no_change
    user_id: Optional[str] = None
    updates: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


# A handler returns (user_id, updates, reason); empty updates means nothing to write
_HandlerResult = Tuple[Optional[str], Dict[str, Any], Optional[str]]


class EntitlementEngine:
    """Applies billing lifecycle events to entitlement records."""

    def __init__(self, provider: BillingProvider, store: EntitlementStore, catalog: PlanCatalog):
        self.provider = provider
        self.store = store
        self.catalog = catalog
        self._handlers: Dict[str, Callable[[BillingEvent], _HandlerResult]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
        }

    def process(self, event: BillingEvent) -> EntitlementOutcome:
        """
        Apply one verified event.

        Returns:
            EntitlementOutcome describing the transition taken

        Raises:
            EntitlementWriteError: If the database write fails
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            log_event("info", f"Unhandled event type: {event.event_type}",
                      event_id=event.event_id, event_type=event.event_type)
            return EntitlementOutcome(event.event_id, event.event_type, "ignored",
                                      reason=f"Unhandled event type: {event.event_type}")

        user_id, updates, reason = handler(event)

        if not updates:
            log_event("info", f"No entitlement update required: {reason}",
                      user_id=user_id, event_id=event.event_id, event_type=event.event_type)
            return EntitlementOutcome(event.event_id, event.event_type, "no_change",
                                      user_id=user_id, reason=reason)

        if not user_id:
            log_event("warning", f"Entitlement update skipped, no user resolved: {reason}",
                      event_id=event.event_id, event_type=event.event_type,
                      extra={"updates": updates})
            return EntitlementOutcome(event.event_id, event.event_type, "skipped",
                                      updates=updates, reason=reason)

        try:
            matched = self.store.apply_update(user_id, updates)
        except SQLAlchemyError as e:
            log_event("error", f"Failed to persist entitlement update for user {user_id}: {e}",
                      user_id=user_id, event_id=event.event_id, event_type=event.event_type,
                      error_code="entitlement_write_failed", extra={"updates": updates})
            raise EntitlementWriteError(f"Database update failed for user {user_id}") from e

        if not matched:
            log_event("warning", f"Update matched no users row for user {user_id}",
                      user_id=user_id, event_id=event.event_id, event_type=event.event_type)
            return EntitlementOutcome(event.event_id, event.event_type, "skipped",
                                      user_id=user_id, updates=updates, reason="user row not found")

        log_event("info", f"Entitlement updated for user {user_id}",
                  user_id=user_id, event_id=event.event_id, event_type=event.event_type,
                  extra={"updates": updates})
        return EntitlementOutcome(event.event_id, event.event_type, "updated",
                                  user_id=user_id, updates=updates, reason=reason)

    # -- transitions ---------------------------------------------------------

    def _on_checkout_completed(self, event: BillingEvent) -> _HandlerResult:
        session = event.data_object
        customer_id = object_id(session.get("customer"))
        if not customer_id:
            logger.error(f"Missing customer ID in checkout session {session.get('id')}")
            return None, {}, "checkout session has no customer"

        metadata = session.get("metadata") or {}
        user_id = (
            metadata.get("user_id")
            or session.get("client_reference_id")
            or self.store.find_user_by_customer(customer_id)
        )

        subscription_id = object_id(session.get("subscription"))
        if not subscription_id:
            logger.warning(f"Missing subscription ID in checkout {session.get('id')}; updating customer ID only")
            return user_id, {"billing_customer_id": customer_id}, "checkout without subscription"

        try:
            subscription = self.provider.retrieve_subscription(subscription_id)
        except BillingProviderError as e:
            logger.error(f"Error retrieving subscription {subscription_id}: {e}")
            return user_id, {"billing_customer_id": customer_id}, "subscription retrieval failed"

        updates = {"billing_customer_id": customer_id}
        updates.update(self._subscription_fields(subscription, include_plan=True))
        # New period starts now
        updates["minutes_used"] = 0
        return user_id, updates, "checkout completed"

    def _on_invoice_payment_succeeded(self, event: BillingEvent) -> _HandlerResult:
        invoice = event.data_object
        billing_reason = invoice.get("billing_reason")
        if billing_reason not in PERIOD_START_BILLING_REASONS:
            return None, {}, f"invoice reason {billing_reason} does not start a period"

        customer_id = object_id(invoice.get("customer"))
        subscription_id = object_id(invoice.get("subscription")) or self._invoice_parent_subscription(invoice)
        if not customer_id or not subscription_id:
            logger.error(f"Missing customer or subscription ID in invoice {invoice.get('id')}")
            return None, {}, "invoice has no customer or subscription"

        user_id = self._resolve_user(customer_id)
        if not user_id:
            return None, {}, f"no user for customer {customer_id}"

        try:
            subscription = self.provider.retrieve_subscription(subscription_id)
        except BillingProviderError as e:
            logger.error(f"Error retrieving subscription {subscription_id}: {e}")
            return user_id, {}, "subscription retrieval failed"

        updates = self._subscription_fields(subscription, include_plan=False)
        updates["minutes_used"] = 0
        return user_id, updates, f"payment succeeded ({billing_reason})"

    def _on_subscription_updated(self, event: BillingEvent) -> _HandlerResult:
        subscription = parse_subscription(event.data_object)
        if not subscription.customer_id:
            logger.error(f"Missing customer ID in subscription {subscription.subscription_id}")
            return None, {}, "subscription has no customer"

        user_id = self._resolve_user(subscription.customer_id)
        if not user_id:
            return None, {}, f"no user for customer {subscription.customer_id}"

        updates = self._subscription_fields(subscription, include_plan=True)
        if subscription.cancel_at_period_end:
            logger.info(
                f"Subscription {subscription.subscription_id} scheduled for cancellation at "
                f"period end ({subscription.current_period_end}); limit stays "
                f"{updates.get('minutes_limit')} until then",
                extra={"user_id": user_id},
            )
        return user_id, updates, "subscription updated"

    def _on_subscription_deleted(self, event: BillingEvent) -> _HandlerResult:
        customer_id = object_id(event.data_object.get("customer"))
        if not customer_id:
            logger.error(f"Missing customer ID in deleted subscription {event.data_object.get('id')}")
            return None, {}, "subscription has no customer"

        user_id = self._resolve_user(customer_id)
        if not user_id:
            return None, {}, f"no user for customer {customer_id}"

        updates = {
            "subscription_status": SubscriptionStatus.CANCELED.value,
            "active_plan_id": None,
            "period_end": None,
            "minutes_limit": None,
            "minutes_used": None,
        }
        return user_id, updates, "subscription deleted"

    # -- helpers -------------------------------------------------------------

    def _resolve_user(self, customer_id: str) -> Optional[str]:
        user_id = self.store.find_user_by_customer(customer_id)
        if not user_id:
            logger.warning(f"No user found for stripe_customer_id {customer_id}")
        return user_id

    @staticmethod
    def _invoice_parent_subscription(invoice: Dict[str, Any]) -> Optional[str]:
        # Newer API versions nest the subscription under invoice.parent
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        return object_id(details.get("subscription"))

    def _subscription_fields(self, subscription: SubscriptionSnapshot, *, include_plan: bool) -> Dict[str, Any]:
        status = SubscriptionStatus.parse(subscription.status)
        fields: Dict[str, Any] = {
            "subscription_status": subscription.status or SubscriptionStatus.NONE.value,
            "period_end": subscription.current_period_end,
        }

        if not status.is_recognized:
            logger.warning(
                f"Unrecognized subscription status '{subscription.status}' on "
                f"{subscription.subscription_id}; withholding plan and minute limit"
            )
            fields["active_plan_id"] = None
            fields["minutes_limit"] = None
            return fields

        if include_plan:
            minutes = self.catalog.minutes_for(subscription.price_id)
            if subscription.price_id and minutes is None:
                logger.warning(f"Price {subscription.price_id} is not in the plan catalog; minute limit cleared")
            fields["active_plan_id"] = subscription.price_id
            fields["minutes_limit"] = minutes
        return fields
