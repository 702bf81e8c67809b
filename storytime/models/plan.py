"""
storytime/models/plan.py

Subscription plan offered on the pricing page.
"""

from pydantic import BaseModel, ConfigDict, Field


class Plan(BaseModel):
    """
    Plan maps a Stripe price to a monthly story-minute allocation.

    Examples:
    - starter (15 minutes)
    - super (60 minutes)
    - studio (300 minutes)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_id: str
    monthly_minutes: int = Field(gt=0)
    price_monthly: float
