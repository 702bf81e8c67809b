"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic,
and lets tests substitute a fake.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class BillingEvent:
    """A verified billing lifecycle event."""
    event_id: str
    event_type: str
    data_object: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription fields the entitlement engine cares about."""
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[str]
    price_id: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class CheckoutSession:
    """Opaque reference the frontend uses to redirect into checkout."""
    session_id: str
    url: Optional[str] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Subscription retrieval
    - Webhook signature verification and parsing
    """

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a billing customer tagged with the application user id.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session for a subscription.

        The user id is embedded in the subscription metadata so webhook
        events can be attributed without an extra lookup.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Fetch the authoritative subscription object.

        Raises:
            BillingProviderError: If the subscription cannot be retrieved
        """
        ...

    def parse_webhook(self, body: bytes, signature: Optional[str]) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingSignatureError: If the signature is missing or invalid
            BillingWebhookError: If the payload cannot be parsed
            BillingProviderError: If no webhook secret is configured
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass


class BillingSignatureError(BillingWebhookError):
    """Webhook signature missing or not matching the shared secret."""
    pass
