"""
teammove/features/billing/webhooks.py

Webhook reconciler.

Turns verified Stripe notifications into subscription transitions:

1. Verify signature (before parsing)
2. Skip event ids already processed (duplicates are successes)
3. Dispatch on event type
4. Apply effects and record the event id in ONE transaction
5. Emit change notifications after commit

Stripe may deliver events late, twice, or out of order. Events about a
subscription that is no longer the tenant's current one are accepted as
no-ops.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from teammove.core.config import settings
from teammove.core.database import get_db_session, processed_webhook_events, tenants
from teammove.core.errors import (
    BillingDisabledError,
    InvalidSignatureError,
    ReconciliationFailedError,
)
from teammove.core.metrics import webhook_events_total
from teammove.core.timeutil import from_timestamp, normalize_now
from teammove.features.billing.provider import PaymentProvider, ProviderEvent
from teammove.features.billing.service import get_provider, has_live_subscription
from teammove.features.plans.catalog import PlanCatalog, resolve_catalog
from teammove.features.subscriptions.service import (
    SubscriptionChange,
    change_plan_in_session,
    extend_period,
    find_tenant_by_customer_ref,
    find_tenant_by_subscription_ref,
    mark_expired,
    mark_past_due,
    notify_change,
    set_cancel_at_period_end,
)
from teammove.models.subscription import ExternalRefs


logger = logging.getLogger("teammove")


class WebhookEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    OTHER = "other"

    @classmethod
    def from_event_type(cls, event_type: str) -> "WebhookEventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.OTHER


@dataclass
class WebhookOutcome:
    accepted: bool
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    duplicate: bool = False
    reason: str = ""
    tenant_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "reason": self.reason,
            "event_id": self.event_id,
            "event_type": self.event_type,
        }


@dataclass
class _Context:
    session: Session
    event: ProviderEvent
    now: datetime
    catalog: PlanCatalog

    @property
    def data(self) -> Dict[str, Any]:
        return self.event.data


@dataclass
class _HandlerResult:
    reason: str
    tenant_id: Optional[str] = None
    changes: List[SubscriptionChange] = field(default_factory=list)


# Payload helpers

def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _metadata_tenant(data: Dict[str, Any]) -> Optional[str]:
    candidates = [
        _get(data, "metadata", "tenant_id"),
        _get(data, "subscription_details", "metadata", "tenant_id"),
        _get(data, "parent", "subscription_details", "metadata", "tenant_id"),
    ]
    lines = _get(data, "lines", "data") or []
    if lines:
        candidates.append(_get(lines[0], "metadata", "tenant_id"))
    return next((c for c in candidates if c), None)


def _invoice_subscription_ref(data: Dict[str, Any]) -> Optional[str]:
    ref = data.get("subscription") or _get(data, "parent", "subscription_details", "subscription")
    if isinstance(ref, dict):
        ref = ref.get("id")
    return ref


def _invoice_period_end(data: Dict[str, Any]) -> Optional[datetime]:
    lines = _get(data, "lines", "data") or []
    ends = [_get(line, "period", "end") for line in lines]
    ends = [e for e in ends if e]
    return from_timestamp(max(ends)) if ends else None


def _subscription_period_end(data: Dict[str, Any]) -> Optional[datetime]:
    ts = data.get("current_period_end")
    if not ts:
        items = _get(data, "items", "data") or []
        if items:
            ts = items[0].get("current_period_end")
    return from_timestamp(ts) if ts else None


def _resolve_tenant(
    ctx: _Context,
    subscription_ref: Optional[str] = None,
) -> str:
    """
    Find the tenant an event belongs to: metadata first, then stored
    subscription ref, then stored customer ref.

    Raises:
        ReconciliationFailedError: If no registered tenant matches
    """
    data = ctx.data
    tenant_id = (
        _metadata_tenant(data)
        or data.get("client_reference_id")
        or find_tenant_by_subscription_ref(ctx.session, subscription_ref)
        or find_tenant_by_customer_ref(ctx.session, data.get("customer"))
    )
    if not tenant_id:
        raise ReconciliationFailedError(
            f"Cannot resolve tenant for event {ctx.event.event_id} ({ctx.event.event_type})"
        )

    exists = ctx.session.execute(
        select(tenants.c.tenant_id).where(tenants.c.tenant_id == tenant_id)
    ).first()
    if exists is None:
        raise ReconciliationFailedError(
            f"Event {ctx.event.event_id} references unknown tenant {tenant_id}"
        )
    return tenant_id


def _outcome_reason(change: SubscriptionChange, subscription_ref: Optional[str]) -> str:
    if change.applied:
        return "applied"
    if subscription_ref and change.old.external_subscription_ref != subscription_ref:
        return "stale_subscription"
    return "no_change"


# Handlers (dispatch table below)

def _handle_checkout_completed(ctx: _Context) -> _HandlerResult:
    data = ctx.data
    if data.get("payment_status") == "unpaid":
        return _HandlerResult(reason="payment_pending")

    plan_id = _get(data, "metadata", "plan_id")
    plan = ctx.catalog.get(plan_id)
    if plan is None or plan.is_free:
        raise ReconciliationFailedError(
            f"Checkout {data.get('id')} carries unknown paid plan {plan_id!r}"
        )

    tenant_id = _resolve_tenant(ctx)
    subscription_ref = data.get("subscription") if data.get("mode") == "subscription" else None
    if isinstance(subscription_ref, dict):
        subscription_ref = subscription_ref.get("id")
    refs = ExternalRefs(
        customer_ref=data.get("customer"),
        subscription_ref=subscription_ref,
        session_ref=data.get("id"),
    )
    change = change_plan_in_session(
        ctx.session,
        tenant_id,
        plan,
        refs,
        ctx.now,
        reason="checkout_completed",
        catalog=ctx.catalog,
    )
    superseded = change.old.external_subscription_ref
    if has_live_subscription(change.old) and superseded != change.new.external_subscription_ref:
        # Checkout pages opened before the live subscription existed can still complete
        logger.warning(
            "[webhook] checkout superseded a live subscription",
            extra={"tenant_id": tenant_id, "subscription_ref": superseded, "plan_id": plan.plan_id},
        )
    return _HandlerResult(reason="applied", tenant_id=tenant_id, changes=[change])


def _handle_invoice_paid(ctx: _Context) -> _HandlerResult:
    data = ctx.data
    # The first invoice is covered by checkout.session.completed
    if data.get("billing_reason") == "subscription_create":
        return _HandlerResult(reason="initial_invoice")

    subscription_ref = _invoice_subscription_ref(data)
    if not subscription_ref:
        return _HandlerResult(reason="not_a_subscription_invoice")

    tenant_id = _resolve_tenant(ctx, subscription_ref)
    change = extend_period(
        ctx.session,
        tenant_id,
        subscription_ref,
        ctx.now,
        period_end=_invoice_period_end(data),
        catalog=ctx.catalog,
    )
    return _HandlerResult(reason=_outcome_reason(change, subscription_ref), tenant_id=tenant_id, changes=[change])


def _handle_invoice_failed(ctx: _Context) -> _HandlerResult:
    subscription_ref = _invoice_subscription_ref(ctx.data)
    if not subscription_ref:
        return _HandlerResult(reason="not_a_subscription_invoice")

    tenant_id = _resolve_tenant(ctx, subscription_ref)
    change = mark_past_due(ctx.session, tenant_id, subscription_ref, ctx.now, catalog=ctx.catalog)
    return _HandlerResult(reason=_outcome_reason(change, subscription_ref), tenant_id=tenant_id, changes=[change])


def _handle_subscription_deleted(ctx: _Context) -> _HandlerResult:
    subscription_ref = ctx.data.get("id")
    tenant_id = _resolve_tenant(ctx, subscription_ref)
    change = mark_expired(ctx.session, tenant_id, subscription_ref, catalog=ctx.catalog)
    return _HandlerResult(reason=_outcome_reason(change, subscription_ref), tenant_id=tenant_id, changes=[change])


def _handle_subscription_updated(ctx: _Context) -> _HandlerResult:
    data = ctx.data
    subscription_ref = data.get("id")
    tenant_id = _resolve_tenant(ctx, subscription_ref)
    change = set_cancel_at_period_end(
        ctx.session,
        tenant_id,
        subscription_ref,
        bool(data.get("cancel_at_period_end")),
        current_period_end=_subscription_period_end(data),
        catalog=ctx.catalog,
    )
    return _HandlerResult(reason=_outcome_reason(change, subscription_ref), tenant_id=tenant_id, changes=[change])


def _handle_other(ctx: _Context) -> _HandlerResult:
    return _HandlerResult(reason="ignored_event_type")


HANDLERS: Dict[WebhookEventKind, Callable[[_Context], _HandlerResult]] = {
    WebhookEventKind.CHECKOUT_COMPLETED: _handle_checkout_completed,
    WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_paid,
    WebhookEventKind.INVOICE_PAYMENT_FAILED: _handle_invoice_failed,
    WebhookEventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    WebhookEventKind.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    WebhookEventKind.OTHER: _handle_other,
}


def _already_processed(session: Session, event_id: str) -> bool:
    row = session.execute(
        select(processed_webhook_events.c.event_id).where(
            processed_webhook_events.c.event_id == event_id
        )
    ).first()
    return row is not None


def is_event_processed(event_id: str) -> bool:
    with get_db_session() as session:
        return _already_processed(session, event_id)


def handle_webhook(
    raw_payload: bytes,
    signature_header: Optional[str],
    now: Optional[datetime] = None,
    *,
    provider: Optional[PaymentProvider] = None,
    catalog: Optional[PlanCatalog] = None,
) -> WebhookOutcome:
    """
    Verify and apply one Stripe webhook delivery.

    Returns:
        WebhookOutcome; duplicates are accepted with duplicate=True.

    Raises:
        InvalidSignatureError: Signature missing/invalid (HTTP 400, not recorded)
        ReconciliationFailedError: Tenant or plan unresolvable (HTTP 500,
            not recorded so the provider redelivers)
        BillingDisabledError: Billing not configured
    """
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    catalog = resolve_catalog(catalog)
    now = normalize_now(now)

    try:
        event = provider.verify_event(raw_payload, signature_header)
    except InvalidSignatureError:
        webhook_events_total.inc({"kind": "unknown", "outcome": "invalid_signature"})
        logger.warning("[webhook] signature rejected")
        raise

    kind = WebhookEventKind.from_event_type(event.event_type)
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}
    payload_hash = hashlib.sha256(raw_payload).hexdigest()

    try:
        with get_db_session() as session:
            if _already_processed(session, event.event_id):
                result = None
            else:
                ctx = _Context(session=session, event=event, now=now, catalog=catalog)
                result = HANDLERS[kind](ctx)
                session.execute(
                    insert(processed_webhook_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=payload_hash,
                        tenant_id=result.tenant_id,
                        processed_at=now,
                    )
                )
                session.flush()
    except ReconciliationFailedError as e:
        webhook_events_total.inc({"kind": kind.value, "outcome": "failed"})
        logger.error("[webhook] reconciliation failed", extra={**log_extra, "error": e.message})
        raise
    except IntegrityError:
        # A concurrent delivery of the same event committed first
        if not is_event_processed(event.event_id):
            webhook_events_total.inc({"kind": kind.value, "outcome": "failed"})
            logger.error("[webhook] integrity error", exc_info=True, extra=log_extra)
            raise ReconciliationFailedError(f"Could not apply event {event.event_id}")
        result = None

    if result is None:
        webhook_events_total.inc({"kind": kind.value, "outcome": "duplicate"})
        logger.info("[webhook] duplicate event", extra=log_extra)
        return WebhookOutcome(
            accepted=True,
            duplicate=True,
            reason="already_processed",
            event_id=event.event_id,
            event_type=event.event_type,
        )

    for change in result.changes:
        notify_change(change)

    webhook_events_total.inc({"kind": kind.value, "outcome": result.reason})
    logger.info(
        "[webhook] processed",
        extra={**log_extra, "tenant_id": result.tenant_id, "reason": result.reason},
    )
    return WebhookOutcome(
        accepted=True,
        reason=result.reason,
        event_id=event.event_id,
        event_type=event.event_type,
        tenant_id=result.tenant_id,
    )


def purge_processed_webhook_events(
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> int:
    """Delete idempotency records older than the redelivery window."""
    now = normalize_now(now)
    days = settings.WEBHOOK_EVENT_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = now - timedelta(days=days)

    with get_db_session() as session:
        result = session.execute(
            delete(processed_webhook_events).where(processed_webhook_events.c.processed_at < cutoff)
        )
        purged = result.rowcount or 0

    logger.info("[webhook] purged processed events", extra={"purged": purged, "retention_days": days})
    return purged
