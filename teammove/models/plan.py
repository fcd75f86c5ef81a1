"""
teammove/models/plan.py

Plan model: a named subscription tier with price and usage limits.
"""

from enum import Enum
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingInterval(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NONE = "none"


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Limits are per quota period; ``None`` means unlimited.
    Plans with ``billing_interval == none`` and no price are free.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    display_name: str
    description: str = ""
    price_minor_units: int = Field(ge=0)
    currency: str = "eur"
    billing_interval: BillingInterval
    max_events_per_period: Optional[int] = Field(default=None, ge=0)
    max_invitations_per_period: Optional[int] = Field(default=None, ge=0)
    features: Tuple[str, ...] = ()
    provider_price_ref: Optional[str] = None
    validity_days: int = Field(default=365, gt=0)
    recommended: bool = False

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @property
    def is_free(self) -> bool:
        return self.billing_interval == BillingInterval.NONE and self.price_minor_units == 0

    @property
    def is_recurring(self) -> bool:
        return self.billing_interval in (BillingInterval.MONTHLY, BillingInterval.YEARLY)

    @property
    def checkout_mode(self) -> str:
        """Stripe checkout mode for this plan."""
        return "subscription" if self.is_recurring else "payment"
