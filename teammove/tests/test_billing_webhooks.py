"""
Test webhook reconciliation.

Payloads are signed with the real Stripe scheme so verification runs
unmocked; only the database is local.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from teammove.core.database import get_db_session, processed_webhook_events
from teammove.core.errors import InvalidSignatureError, ReconciliationFailedError
from teammove.core.metrics import webhook_events_total
from teammove.features.billing import webhooks
from teammove.features.billing.stripe_provider import StripeProvider
from teammove.features.billing.webhooks import (
    WebhookEventKind,
    handle_webhook,
    purge_processed_webhook_events,
)
from teammove.features.quota.service import get_usage, rollover_quota_period, try_consume
from teammove.features.subscriptions.service import (
    get_effective_limits,
    get_subscription,
    register_tenant,
)
from teammove.models.quota import QuotaKind
from teammove.models.subscription import SubscriptionStatus

SECRET = "whsec_reconcile_test"
NOW = datetime(2025, 5, 2, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def provider():
    return StripeProvider(secret_key="sk_test_123", webhook_secret=SECRET)


def _signed(event: dict):
    payload = json.dumps(event)
    t = int(time.time())
    sig = hmac.new(SECRET.encode(), f"{t}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload.encode(), f"t={t},v1={sig}"


def deliver(provider, catalog, event: dict, now=NOW):
    body, header = _signed(event)
    return handle_webhook(body, header, now, provider=provider, catalog=catalog)


def checkout_completed(event_id, tenant_id, plan_id, mode="subscription", subscription="sub_lyon"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": f"cs_{event_id}",
            "object": "checkout.session",
            "mode": mode,
            "customer": "cus_lyon",
            "subscription": subscription if mode == "subscription" else None,
            "payment_status": "paid",
            "metadata": {"tenant_id": tenant_id, "plan_id": plan_id},
        }},
    }


def invoice_event(event_id, event_type, subscription="sub_lyon", billing_reason="subscription_cycle", period_end=None):
    invoice = {
        "id": f"in_{event_id}",
        "object": "invoice",
        "customer": "cus_lyon",
        "subscription": subscription,
        "billing_reason": billing_reason,
        "lines": {"data": []},
    }
    if period_end:
        invoice["lines"]["data"].append({"period": {"end": int(period_end.timestamp())}})
    return {"id": event_id, "type": event_type, "data": {"object": invoice}}


def subscription_event(event_id, event_type, subscription="sub_lyon", **fields):
    obj = {"id": subscription, "object": "subscription", "customer": "cus_lyon", "metadata": {}}
    obj.update(fields)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _processed_count():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(processed_webhook_events)).scalar()


def test_event_kind_normalization():
    assert WebhookEventKind.from_event_type("invoice.payment_failed") == WebhookEventKind.INVOICE_PAYMENT_FAILED
    assert WebhookEventKind.from_event_type("charge.refunded") == WebhookEventKind.OTHER


def test_subscription_checkout_activates_paid_plan(provider, catalog, tenant, captured_changes):
    outcome = deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))

    assert outcome.accepted and not outcome.duplicate
    sub = get_subscription(tenant)
    assert sub.plan_id == "pro_club"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.external_subscription_ref == "sub_lyon"
    assert sub.external_customer_ref == "cus_lyon"
    assert sub.last_external_session_ref == "cs_evt_1"
    assert sub.period_end == NOW + timedelta(days=30)
    assert get_effective_limits(tenant, catalog=catalog).max_events is None
    assert len(captured_changes) == 1


def test_payment_checkout_grants_twelve_month_pack(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_pack", tenant, "event_pack10", mode="payment"))

    sub = get_subscription(tenant)
    assert sub.plan_id == "event_pack10"
    assert sub.period_end == NOW + timedelta(days=365)
    assert sub.external_subscription_ref is None
    assert get_effective_limits(tenant, catalog=catalog).max_events == 10


def test_pack_bought_after_free_usage_grants_its_own_events(provider, catalog, tenant):
    assert try_consume(tenant, QuotaKind.EVENTS, now=NOW, catalog=catalog).allowed
    assert not try_consume(tenant, QuotaKind.EVENTS, now=NOW, catalog=catalog).allowed

    deliver(provider, catalog, checkout_completed("evt_single", tenant, "event_single", mode="payment"))

    decision = try_consume(tenant, QuotaKind.EVENTS, now=NOW, catalog=catalog)
    assert decision.allowed
    assert decision.plan_id == "event_single"
    assert decision.period_key.startswith("pack:")
    assert not try_consume(tenant, QuotaKind.EVENTS, now=NOW, catalog=catalog).allowed
    assert get_usage(tenant, catalog=catalog)["events"] == {"used": 1, "limit": 1, "remaining": 0}


def test_pack_of_ten_is_not_refilled_by_rollovers(provider, catalog, tenant):
    rollover_quota_period(NOW)
    deliver(provider, catalog, checkout_completed("evt_pack", tenant, "event_pack10", mode="payment"))

    granted = 0
    for month in range(5, 13):
        rollover_quota_period(datetime(2025, month, 1, 0, 5, tzinfo=timezone.utc))
        granted += sum(
            try_consume(tenant, QuotaKind.EVENTS, catalog=catalog).allowed for _ in range(3)
        )

    assert granted == 10


def test_checkout_over_live_subscription_is_logged(provider, catalog, tenant, caplog):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))

    with caplog.at_level(logging.WARNING, logger="teammove"):
        deliver(provider, catalog, checkout_completed("evt_pack", tenant, "event_pack10", mode="payment"))

    warnings = [r for r in caplog.records if r.getMessage() == "[webhook] checkout superseded a live subscription"]
    assert len(warnings) == 1
    assert warnings[0].subscription_ref == "sub_lyon"


def test_duplicate_event_is_accepted_without_effects(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    renewal = invoice_event("evt_renew", "invoice.payment_succeeded")

    deliver(provider, catalog, renewal)
    after_first = get_subscription(tenant)
    outcome = deliver(provider, catalog, renewal, now=NOW + timedelta(days=3))

    assert outcome.accepted
    assert outcome.duplicate
    assert get_subscription(tenant) == after_first
    assert after_first.period_end == NOW + timedelta(days=60)
    assert _processed_count() == 2
    assert webhook_events_total.value({"kind": "invoice.payment_succeeded", "outcome": "duplicate"}) == 1


def test_initial_invoice_is_a_no_op(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    outcome = deliver(
        provider, catalog,
        invoice_event("evt_first_invoice", "invoice.payment_succeeded", billing_reason="subscription_create"),
    )
    assert outcome.reason == "initial_invoice"
    assert get_subscription(tenant).period_end == NOW + timedelta(days=30)


def test_renewal_uses_invoice_period_end(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    line_end = NOW + timedelta(days=31)
    deliver(provider, catalog, invoice_event("evt_renew", "invoice.payment_succeeded", period_end=line_end))
    assert get_subscription(tenant).period_end == line_end


def test_payment_failure_then_recovery(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))

    deliver(provider, catalog, invoice_event("evt_fail", "invoice.payment_failed"), now=NOW + timedelta(days=30))
    sub = get_subscription(tenant)
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.plan_id == "pro_club"
    assert get_effective_limits(tenant, catalog=catalog).enforced_plan_id == "free"

    deliver(provider, catalog, invoice_event("evt_paid", "invoice.payment_succeeded"), now=NOW + timedelta(days=31))
    sub = get_subscription(tenant)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.past_due_since is None
    assert get_effective_limits(tenant, catalog=catalog).enforced_plan_id == "pro_club"


def test_subscription_deleted_expires_immediately(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    deliver(provider, catalog, subscription_event("evt_del", "customer.subscription.deleted"))

    sub = get_subscription(tenant)
    assert sub.status == SubscriptionStatus.EXPIRED
    assert get_effective_limits(tenant, catalog=catalog).max_events == 1


def test_subscription_updated_syncs_cancel_flag(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    later_end = NOW + timedelta(days=32)
    deliver(provider, catalog, subscription_event(
        "evt_upd", "customer.subscription.updated",
        cancel_at_period_end=True, current_period_end=int(later_end.timestamp()),
    ))

    sub = get_subscription(tenant)
    assert sub.cancel_at_period_end is True
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.period_end == later_end


def test_events_for_replaced_subscription_are_stale(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club", subscription="sub_old"))
    deliver(provider, catalog, checkout_completed("evt_2", tenant, "pro_pme", subscription="sub_new"))

    outcome = deliver(provider, catalog, subscription_event("evt_del_old", "customer.subscription.deleted", subscription="sub_old"))

    assert outcome.accepted
    assert outcome.reason == "stale_subscription"
    sub = get_subscription(tenant)
    assert sub.plan_id == "pro_pme"
    assert sub.status == SubscriptionStatus.ACTIVE


def test_out_of_order_failure_after_deletion_is_ignored(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    deliver(provider, catalog, subscription_event("evt_del", "customer.subscription.deleted"))
    outcome = deliver(provider, catalog, invoice_event("evt_fail_late", "invoice.payment_failed"))

    assert outcome.reason == "no_change"
    assert get_subscription(tenant).status == SubscriptionStatus.EXPIRED


def test_unknown_event_type_recorded_as_no_op(provider, catalog, tenant):
    outcome = deliver(provider, catalog, {"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})
    assert outcome.accepted
    assert outcome.reason == "ignored_event_type"
    assert _processed_count() == 1


def test_invalid_signature_rejected_and_not_recorded(provider, catalog, tenant):
    body, _ = _signed(checkout_completed("evt_1", tenant, "pro_club"))
    with pytest.raises(InvalidSignatureError):
        handle_webhook(body, "t=1,v1=deadbeef", NOW, provider=provider, catalog=catalog)
    assert _processed_count() == 0
    assert get_subscription(tenant).plan_id == "free"


def test_unresolvable_tenant_fails_and_is_not_recorded(provider, catalog):
    event = checkout_completed("evt_orphan", "tenant_missing", "pro_club")
    with pytest.raises(ReconciliationFailedError):
        deliver(provider, catalog, event)
    assert _processed_count() == 0

    # Redelivery after the tenant exists succeeds
    register_tenant("tenant_missing", email="late@example.com", catalog=catalog)
    outcome = deliver(provider, catalog, event)
    assert outcome.accepted and not outcome.duplicate
    assert get_subscription("tenant_missing").plan_id == "pro_club"


def test_unknown_plan_in_metadata_fails(provider, catalog, tenant):
    with pytest.raises(ReconciliationFailedError):
        deliver(provider, catalog, checkout_completed("evt_bad_plan", tenant, "gold"))
    assert get_subscription(tenant).plan_id == "free"


def test_tenant_resolved_from_stored_subscription_ref(provider, catalog, tenant):
    deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))
    event = invoice_event("evt_fail", "invoice.payment_failed")
    event["data"]["object"]["customer"] = "cus_unknown"

    deliver(provider, catalog, event)

    assert get_subscription(tenant).status == SubscriptionStatus.PAST_DUE


def test_effects_roll_back_when_recording_fails(provider, catalog, tenant):
    def fail_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    with patch.object(webhooks, "insert", side_effect=fail_insert):
        with pytest.raises(RuntimeError):
            deliver(provider, catalog, checkout_completed("evt_1", tenant, "pro_club"))

    assert get_subscription(tenant).plan_id == "free"
    assert _processed_count() == 0


def test_purge_removes_only_old_records(provider, catalog, tenant):
    deliver(provider, catalog, {"id": "evt_old", "type": "ping", "data": {"object": {}}}, now=NOW - timedelta(days=40))
    deliver(provider, catalog, {"id": "evt_new", "type": "ping", "data": {"object": {}}}, now=NOW - timedelta(days=5))

    assert purge_processed_webhook_events(NOW, retention_days=30) == 1
    assert _processed_count() == 1
