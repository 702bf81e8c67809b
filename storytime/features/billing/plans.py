"""
Plan catalog: Stripe price id -> monthly minute allocation.

Defined at deploy time from settings and immutable afterwards.
"""
from types import MappingProxyType
from typing import Iterable, Iterator, Optional

from storytime.models.plan import Plan


class PlanCatalog:
    """Static lookup table of plans keyed by Stripe price id."""

    def __init__(self, plans: Iterable[Plan]):
        by_price = {}
        by_id = {}
        for plan in plans:
            if plan.price_id in by_price:
                raise ValueError(f"Duplicate price id in plan catalog: {plan.price_id}")
            by_price[plan.price_id] = plan
            by_id[plan.plan_id] = plan
        self._by_price = MappingProxyType(by_price)
        self._by_id = MappingProxyType(by_id)

    @classmethod
    def from_settings(cls, settings_obj) -> "PlanCatalog":
        return cls([
            Plan(
                plan_id="starter",
                name="Starter StoryTime",
                price_id=settings_obj.STRIPE_PRICE_STARTER,
                monthly_minutes=15,
                price_monthly=4.99,
            ),
            Plan(
                plan_id="super",
                name="Super StoryTime",
                price_id=settings_obj.STRIPE_PRICE_SUPER,
                monthly_minutes=60,
                price_monthly=14.99,
            ),
            Plan(
                plan_id="studio",
                name="Studio StoryTime",
                price_id=settings_obj.STRIPE_PRICE_STUDIO,
                monthly_minutes=300,
                price_monthly=49.99,
            ),
        ])

    def minutes_for(self, price_id: Optional[str]) -> Optional[int]:
        """Minute allocation for a price id, or None when unknown."""
        plan = self.plan_for_price(price_id)
        return plan.monthly_minutes if plan else None

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def get(self, plan_id: str) -> Optional[Plan]:
        return self._by_id.get(plan_id)

    def __contains__(self, price_id: object) -> bool:
        return price_id in self._by_price

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._by_price.values())

    def __len__(self) -> int:
        return len(self._by_price)
