"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.

The API key and version are passed per request so several providers
(e.g. test and live keys) can coexist without touching `stripe.api_key`.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from storytime.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingSignatureError,
    BillingWebhookError,
    CheckoutSession,
    SubscriptionSnapshot,
)


def _field(obj: Any, key: str) -> Any:
    """Subscript access that works for dicts and StripeObjects alike."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def object_id(ref: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    return _field(ref, "id")


def timestamp_to_datetime(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def parse_subscription(data: Any) -> SubscriptionSnapshot:
    """Normalize a Stripe subscription (payload dict or API object)."""
    items = _field(_field(data, "items"), "data") or []
    first_item = items[0] if items else None
    price_id = object_id(_field(first_item, "price"))

    # Newer API versions moved the period onto subscription items
    period_end_ts = _field(data, "current_period_end") or _field(first_item, "current_period_end")

    return SubscriptionSnapshot(
        subscription_id=_field(data, "id"),
        customer_id=object_id(_field(data, "customer")),
        status=_field(data, "status"),
        price_id=price_id,
        current_period_end=timestamp_to_datetime(period_end_ts),
        cancel_at_period_end=bool(_field(data, "cancel_at_period_end")),
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        webhook_tolerance: int = 300,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            api_version: Pinned Stripe API version
            webhook_tolerance: Max age of a signed webhook in seconds
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.webhook_tolerance = webhook_tolerance

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.secret_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create Stripe customer tagged with the app user id."""
        customer_data: Dict[str, Any] = {
            "metadata": {"user_id": user_id}
        }
        if email:
            customer_data["email"] = email

        try:
            customer = stripe.Customer.create(**customer_data, **self._request_options())
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create Stripe subscription checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                subscription_data={"metadata": {"user_id": user_id}},
                customer_update={"address": "auto", "name": "auto"},
                allow_promotion_codes=True,
                **self._request_options(),
            )
            return CheckoutSession(session_id=session.id, url=_field(session, "url"))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id,
                expand=["items.data.price"],
                **self._request_options(),
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed for {subscription_id}: {e}")
        return parse_subscription(subscription)

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise BillingSignatureError("Missing Stripe-Signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise BillingSignatureError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingEvent:
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: event id and type are required")

        data_object = (event.get("data") or {}).get("object") or {}
        if not isinstance(data_object, dict):
            raise BillingWebhookError("Invalid payload: data.object must be an object")

        return BillingEvent(
            event_id=event["id"],
            event_type=event["type"],
            data_object=data_object,
        )
