"""
Tests for Plan and subscription models.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from teammove.models.plan import BillingInterval, Plan
from teammove.models.quota import QuotaKind
from teammove.models.subscription import EffectiveLimits, SubscriptionStatus, TenantSubscription


def _plan(**overrides):
    values = dict(
        plan_id="pro_club",
        display_name="Pro Club",
        price_minor_units=2900,
        billing_interval=BillingInterval.MONTHLY,
    )
    values.update(overrides)
    return Plan(**values)


def test_plan_model_frozen():
    plan = _plan()
    with pytest.raises(PydanticValidationError):
        plan.display_name = "Modified"


def test_plan_kinds():
    assert _plan().is_recurring
    assert _plan().checkout_mode == "subscription"
    single = _plan(plan_id="event_single", billing_interval=BillingInterval.ONE_TIME)
    assert not single.is_recurring
    assert single.checkout_mode == "payment"
    free = _plan(plan_id="free", price_minor_units=0, billing_interval=BillingInterval.NONE)
    assert free.is_free


def test_plan_currency_normalized():
    assert _plan(currency="EUR").currency == "eur"


def test_plan_rejects_negative_values():
    with pytest.raises(PydanticValidationError):
        _plan(price_minor_units=-1)
    with pytest.raises(PydanticValidationError):
        _plan(max_events_per_period=-5)


def test_subscription_snapshot_is_json_ready():
    sub = TenantSubscription(tenant_id="club_lyon", plan_id="free", status=SubscriptionStatus.ACTIVE)
    snapshot = sub.snapshot()
    assert snapshot["status"] == "active"
    assert snapshot["period_end"] is None
    assert snapshot["version"] == 0


def test_effective_limits_downgraded_flag():
    limits = EffectiveLimits(
        tenant_id="club_lyon",
        max_events=1,
        max_invitations=20,
        enforced_plan_id="free",
        displayed_plan_id="pro_club",
        status=SubscriptionStatus.PAST_DUE,
    )
    assert limits.downgraded


def test_quota_kind_counter_columns():
    assert QuotaKind.EVENTS.counter_column == "events_created"
    assert QuotaKind("invitations").counter_column == "invitations_sent"
