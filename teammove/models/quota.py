"""
teammove/models/quota.py

Quota kinds, counters and consumption decisions.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class QuotaKind(str, Enum):
    """
    Quota kinds:
    - events: an event was created by the tenant
    - invitations: an invitation was sent by the tenant
    """
    EVENTS = "events"
    INVITATIONS = "invitations"

    @property
    def counter_column(self) -> str:
        return {"events": "events_created", "invitations": "invitations_sent"}[self.value]


class QuotaStatus(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class QuotaDecision(BaseModel):
    """Outcome of a consumption attempt. ``remaining``/``limit`` None = unlimited."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    quota_kind: QuotaKind
    status: QuotaStatus
    requested: int
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    period_key: str
    plan_id: str

    @property
    def allowed(self) -> bool:
        return self.status == QuotaStatus.ALLOWED


class QuotaCounters(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    period_key: str
    events_created: int = 0
    invitations_sent: int = 0

    def used(self, kind: QuotaKind) -> int:
        return getattr(self, kind.counter_column)
