"""
Billing service wiring.

Builds the provider, store, catalog and engine once per process and hands
them to routes through FastAPI dependencies. Billing is disabled (routes
answer 503) when no Stripe secret key is configured.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from storytime.core.config import Settings
from storytime.core.errors import BillingDisabledError
from storytime.features.billing.engine import EntitlementEngine
from storytime.features.billing.plans import PlanCatalog
from storytime.features.billing.provider import BillingProvider, BillingProviderError
from storytime.features.billing.store import EntitlementStore
from storytime.features.billing.stripe_provider import StripeProvider

logger = logging.getLogger("storytime")


@dataclass
class BillingServices:
    store: EntitlementStore
    catalog: PlanCatalog
    provider: Optional[BillingProvider]
    site_url: str

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")
        return self.provider

    def engine(self) -> EntitlementEngine:
        return EntitlementEngine(self.require_provider(), self.store, self.catalog)


def build_provider(settings_obj: Settings) -> Optional[BillingProvider]:
    """Stripe provider, or None if billing is disabled."""
    if not settings_obj.STRIPE_SECRET_KEY:
        return None
    try:
        return StripeProvider(
            secret_key=settings_obj.STRIPE_SECRET_KEY,
            webhook_secret=settings_obj.STRIPE_WEBHOOK_SECRET,
            api_version=settings_obj.STRIPE_API_VERSION,
            webhook_tolerance=settings_obj.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except BillingProviderError as e:
        logger.warning(f"Billing disabled: {e}")
        return None


def build_billing_services(
    settings_obj: Settings,
    engine: Engine,
    provider: Optional[BillingProvider] = None,
    catalog: Optional[PlanCatalog] = None,
) -> BillingServices:
    return BillingServices(
        store=EntitlementStore(engine),
        catalog=catalog or PlanCatalog.from_settings(settings_obj),
        provider=provider if provider is not None else build_provider(settings_obj),
        site_url=settings_obj.SITE_URL,
    )


def get_billing_services(request: Request) -> BillingServices:
    """FastAPI dependency: the process-wide billing services."""
    return request.app.state.billing
