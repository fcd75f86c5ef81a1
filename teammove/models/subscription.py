"""
teammove/models/subscription.py

Per-tenant subscription state and the limits derived from it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class TenantSubscription(BaseModel):
    """
    TenantSubscription is the billing state of one tenant.

    Constraint: exactly one row per tenant. ``plan_id`` is the displayed
    plan; enforced limits may be downgraded (see EffectiveLimits).
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    last_external_session_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    past_due_since: Optional[datetime] = None
    version: int = 0

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view handed to change listeners."""
        return self.model_dump(mode="json")


class EffectiveLimits(BaseModel):
    """
    Limits actually enforced for a tenant.

    ``displayed_plan_id`` is what the UI shows; ``enforced_plan_id`` is the
    plan whose limits apply (the free plan for past_due/expired/cancelled).
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    max_events: Optional[int]
    max_invitations: Optional[int]
    enforced_plan_id: str
    displayed_plan_id: str
    status: SubscriptionStatus

    @property
    def downgraded(self) -> bool:
        return self.enforced_plan_id != self.displayed_plan_id


class ExternalRefs(BaseModel):
    """Opaque payment provider identifiers for a paid transition."""
    model_config = ConfigDict(frozen=True)

    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    session_ref: Optional[str] = None
