"""
teammove/features/subscriptions/service.py

Subscription state store.

Handles:
- Tenant registration (tenant row + default free subscription)
- Subscription reads and effective (enforced) limits
- Plan changes and webhook-driven lifecycle transitions
- Expiration sweep

Every mutation is a read-modify-write on the tenant's row under
SELECT ... FOR UPDATE, committed with a version compare-and-swap.
Change events are emitted only after the transaction commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from teammove.core.config import settings
from teammove.core.database import (
    get_db_session,
    insert_ignore,
    tenant_subscriptions,
    tenants,
)
from teammove.core.errors import (
    ConcurrentUpdateError,
    UnknownTenantError,
    ValidationError,
)
from teammove.core.metrics import subscription_transitions_total
from teammove.core.timeutil import ensure_utc, normalize_now
from teammove.features.notifications.emitter import SubscriptionChangeEvent, emit
from teammove.features.plans.catalog import PlanCatalog, resolve_catalog
from teammove.models.plan import BillingInterval, Plan
from teammove.models.subscription import (
    EffectiveLimits,
    ExternalRefs,
    SubscriptionStatus,
    TenantSubscription,
)


logger = logging.getLogger("teammove")

MAX_CAS_ATTEMPTS = 3

Mutator = Callable[[TenantSubscription], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class SubscriptionChange:
    """Before/after pair produced by one mutation."""
    old: TenantSubscription
    new: TenantSubscription
    reason: str

    @property
    def applied(self) -> bool:
        return self.new.version != self.old.version

    @property
    def notable(self) -> bool:
        return self.old.status != self.new.status or self.old.plan_id != self.new.plan_id


def period_length(plan: Plan) -> timedelta:
    """Length of one paid period for the plan."""
    if plan.billing_interval == BillingInterval.MONTHLY:
        return timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)
    if plan.billing_interval == BillingInterval.YEARLY:
        return timedelta(days=settings.YEARLY_PERIOD_DAYS)
    return timedelta(days=plan.validity_days)


def _row_to_subscription(row) -> TenantSubscription:
    return TenantSubscription(
        tenant_id=row["tenant_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        external_customer_ref=row["external_customer_ref"],
        external_subscription_ref=row["external_subscription_ref"],
        last_external_session_ref=row["last_external_session_ref"],
        period_start=ensure_utc(row["period_start"]),
        period_end=ensure_utc(row["period_end"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        past_due_since=ensure_utc(row["past_due_since"]),
        version=row["version"],
    )


def _default_subscription(tenant_id: str, catalog: PlanCatalog) -> TenantSubscription:
    return TenantSubscription(
        tenant_id=tenant_id,
        plan_id=catalog.free_plan.plan_id,
        status=SubscriptionStatus.ACTIVE,
    )


def _tenant_exists(session: Session, tenant_id: str) -> bool:
    row = session.execute(
        select(tenants.c.tenant_id).where(tenants.c.tenant_id == tenant_id)
    ).first()
    return row is not None


def _ensure_subscription_row(session: Session, tenant_id: str, catalog: PlanCatalog) -> bool:
    return insert_ignore(
        session,
        tenant_subscriptions,
        {
            "tenant_id": tenant_id,
            "plan_id": catalog.free_plan.plan_id,
            "status": SubscriptionStatus.ACTIVE.value,
            "cancel_at_period_end": False,
            "version": 0,
        },
        ["tenant_id"],
    )


def register_tenant(
    tenant_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    *,
    catalog: Optional[PlanCatalog] = None,
) -> TenantSubscription:
    """
    Register a tenant with the default free subscription.

    Idempotent: re-registering keeps the existing subscription and only
    fills in a missing email/name.
    """
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    catalog = resolve_catalog(catalog)

    with get_db_session() as session:
        created = insert_ignore(
            session,
            tenants,
            {"tenant_id": tenant_id, "email": email, "name": name},
            ["tenant_id"],
        )
        if not created and (email or name):
            values = {}
            if email:
                values["email"] = email
            if name:
                values["name"] = name
            session.execute(
                update(tenants).where(tenants.c.tenant_id == tenant_id).values(**values)
            )
        _ensure_subscription_row(session, tenant_id, catalog)

    if created:
        logger.info("[subscriptions] tenant registered", extra={"tenant_id": tenant_id})
    return get_subscription(tenant_id, catalog=catalog)


def get_tenant(tenant_id: str) -> Dict[str, Any]:
    """Tenant contact details (email keys the payment customer)."""
    with get_db_session() as session:
        row = session.execute(
            select(tenants).where(tenants.c.tenant_id == tenant_id)
        ).mappings().first()
    if row is None:
        raise UnknownTenantError(tenant_id)
    return dict(row)


def load_subscription(
    session: Session,
    tenant_id: str,
    catalog: Optional[PlanCatalog] = None,
) -> TenantSubscription:
    catalog = resolve_catalog(catalog)
    row = session.execute(
        select(tenant_subscriptions).where(tenant_subscriptions.c.tenant_id == tenant_id)
    ).mappings().first()
    if row is not None:
        return _row_to_subscription(row)
    if not _tenant_exists(session, tenant_id):
        raise UnknownTenantError(tenant_id)
    return _default_subscription(tenant_id, catalog)


def get_subscription(tenant_id: str, *, catalog: Optional[PlanCatalog] = None) -> TenantSubscription:
    """
    Current subscription of a tenant.

    Raises:
        UnknownTenantError: If the tenant is not registered
    """
    with get_db_session() as session:
        return load_subscription(session, tenant_id, catalog)


def find_tenant_by_customer_ref(session: Session, customer_ref: Optional[str]) -> Optional[str]:
    if not customer_ref:
        return None
    row = session.execute(
        select(tenant_subscriptions.c.tenant_id).where(
            tenant_subscriptions.c.external_customer_ref == customer_ref
        )
    ).first()
    return row[0] if row else None


def find_tenant_by_subscription_ref(session: Session, subscription_ref: Optional[str]) -> Optional[str]:
    if not subscription_ref:
        return None
    row = session.execute(
        select(tenant_subscriptions.c.tenant_id).where(
            tenant_subscriptions.c.external_subscription_ref == subscription_ref
        )
    ).first()
    return row[0] if row else None


def resolve_enforced_plan(
    subscription: TenantSubscription,
    catalog: Optional[PlanCatalog] = None,
) -> Plan:
    """
    Plan whose limits apply right now.

    Only an active subscription gets its own plan's limits; past_due,
    cancelled and expired tenants fall back to the free plan.

    Raises:
        UnknownTenantError: If an active subscription references a plan
            missing from the catalog
    """
    catalog = resolve_catalog(catalog)
    if subscription.status != SubscriptionStatus.ACTIVE:
        return catalog.free_plan
    plan = catalog.get(subscription.plan_id)
    if plan is None:
        raise UnknownTenantError(
            subscription.tenant_id,
            f"Tenant {subscription.tenant_id} is on unknown plan {subscription.plan_id}",
        )
    return plan


def limits_for(subscription: TenantSubscription, catalog: Optional[PlanCatalog] = None) -> EffectiveLimits:
    plan = resolve_enforced_plan(subscription, catalog)
    return EffectiveLimits(
        tenant_id=subscription.tenant_id,
        max_events=plan.max_events_per_period,
        max_invitations=plan.max_invitations_per_period,
        enforced_plan_id=plan.plan_id,
        displayed_plan_id=subscription.plan_id,
        status=subscription.status,
    )


def get_effective_limits(tenant_id: str, *, catalog: Optional[PlanCatalog] = None) -> EffectiveLimits:
    return limits_for(get_subscription(tenant_id, catalog=catalog), catalog)


def _lock_subscription(session: Session, tenant_id: str, catalog: PlanCatalog) -> TenantSubscription:
    if not _tenant_exists(session, tenant_id):
        raise UnknownTenantError(tenant_id)
    _ensure_subscription_row(session, tenant_id, catalog)
    row = session.execute(
        select(tenant_subscriptions)
        .where(tenant_subscriptions.c.tenant_id == tenant_id)
        .with_for_update()
    ).mappings().first()
    return _row_to_subscription(row)


def _compare_and_swap(
    session: Session,
    current: TenantSubscription,
    changes: Dict[str, Any],
) -> Optional[TenantSubscription]:
    values = dict(changes)
    if "status" in values:
        values["status"] = SubscriptionStatus(values["status"]).value
    values["version"] = current.version + 1
    result = session.execute(
        update(tenant_subscriptions)
        .where(
            and_(
                tenant_subscriptions.c.tenant_id == current.tenant_id,
                tenant_subscriptions.c.version == current.version,
            )
        )
        .values(**values)
    )
    if result.rowcount != 1:
        return None
    updated = dict(changes)
    updated["version"] = values["version"]
    if "status" in updated:
        updated["status"] = SubscriptionStatus(updated["status"])
    return current.model_copy(update=updated)


def mutate_subscription(
    session: Session,
    tenant_id: str,
    mutator: Mutator,
    *,
    reason: str,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    """
    Apply ``mutator`` to the locked row inside ``session``.

    The mutator returns the column changes, or None for a no-op. On a
    version mismatch the row is re-read and the mutator re-run.

    Raises:
        UnknownTenantError: If the tenant is not registered
        ConcurrentUpdateError: If the row kept changing underneath us
    """
    catalog = resolve_catalog(catalog)
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        current = _lock_subscription(session, tenant_id, catalog)
        changes = mutator(current)
        if not changes:
            return SubscriptionChange(old=current, new=current, reason=reason)
        updated = _compare_and_swap(session, current, changes)
        if updated is not None:
            return SubscriptionChange(old=current, new=updated, reason=reason)
        logger.warning(
            "[subscriptions] version conflict",
            extra={"tenant_id": tenant_id, "attempt": attempt, "reason": reason},
        )
    raise ConcurrentUpdateError(f"Subscription for tenant {tenant_id} changed concurrently")


def notify_change(change: SubscriptionChange) -> None:
    """Record and publish a committed change when status or plan moved."""
    if not change.applied:
        return
    if change.old.status != change.new.status:
        subscription_transitions_total.inc(
            {"from_status": change.old.status.value, "to_status": change.new.status.value}
        )
    if not change.notable:
        return
    logger.info(
        "[subscriptions] changed",
        extra={
            "tenant_id": change.new.tenant_id,
            "plan_id": change.new.plan_id,
            "status": change.new.status.value,
            "reason": change.reason,
        },
    )
    emit(
        SubscriptionChangeEvent(
            tenant_id=change.new.tenant_id,
            old_state=change.old.snapshot(),
            new_state=change.new.snapshot(),
            reason=change.reason,
        )
    )


def _plan_change_values(
    plan: Plan,
    external_refs: Optional[ExternalRefs],
    now: datetime,
    current: TenantSubscription,
) -> Dict[str, Any]:
    if plan.is_free:
        return {
            "plan_id": plan.plan_id,
            "status": SubscriptionStatus.ACTIVE,
            "external_customer_ref": None,
            "external_subscription_ref": None,
            "last_external_session_ref": None,
            "period_start": now,
            "period_end": None,
            "cancel_at_period_end": False,
            "past_due_since": None,
        }

    refs = external_refs or ExternalRefs()
    return {
        "plan_id": plan.plan_id,
        "status": SubscriptionStatus.ACTIVE,
        "external_customer_ref": current.external_customer_ref or refs.customer_ref,
        # One-time packages have no provider subscription to track
        "external_subscription_ref": refs.subscription_ref if plan.is_recurring else None,
        "last_external_session_ref": refs.session_ref or current.last_external_session_ref,
        "period_start": now,
        "period_end": now + period_length(plan),
        "cancel_at_period_end": False,
        "past_due_since": None,
    }


def change_plan_in_session(
    session: Session,
    tenant_id: str,
    plan: Plan,
    external_refs: Optional[ExternalRefs],
    now: datetime,
    *,
    reason: str,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    return mutate_subscription(
        session,
        tenant_id,
        lambda current: _plan_change_values(plan, external_refs, now, current),
        reason=reason,
        catalog=catalog,
    )


def apply_plan_change(
    tenant_id: str,
    new_plan_id: str,
    external_refs: Optional[ExternalRefs] = None,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> TenantSubscription:
    """
    Move a tenant to ``new_plan_id``.

    The free plan is applied locally and clears provider references.
    Paid plans require the provider references of the confirmed payment.

    Raises:
        InvalidPlanError: If the plan is not in the catalog
        ValidationError: If a paid plan is applied without references
        UnknownTenantError: If the tenant is not registered
    """
    catalog = resolve_catalog(catalog)
    plan = catalog.require(new_plan_id)
    if not plan.is_free and external_refs is None:
        raise ValidationError("Paid plan changes require payment provider references")
    now = normalize_now(now)

    with get_db_session() as session:
        change = change_plan_in_session(
            session,
            tenant_id,
            plan,
            external_refs,
            now,
            reason="free_plan_selected" if plan.is_free else "plan_changed",
            catalog=catalog,
        )
    notify_change(change)
    return change.new


def record_customer_ref(
    tenant_id: str,
    customer_ref: str,
    *,
    catalog: Optional[PlanCatalog] = None,
) -> str:
    """Store the provider customer id unless one is already set; returns the stored id."""
    with get_db_session() as session:
        change = mutate_subscription(
            session,
            tenant_id,
            lambda current: None if current.external_customer_ref else {"external_customer_ref": customer_ref},
            reason="customer_linked",
            catalog=catalog,
        )
    return change.new.external_customer_ref


def _is_stale(current: TenantSubscription, subscription_ref: Optional[str]) -> bool:
    return bool(subscription_ref) and current.external_subscription_ref != subscription_ref


def extend_period(
    session: Session,
    tenant_id: str,
    subscription_ref: Optional[str],
    now: datetime,
    *,
    period_end: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    """
    Renewal paid: push period_end forward and clear past_due.

    Uses the provider's period end when given, otherwise one interval past
    the later of now and the current period_end. Never shortens the period.
    """
    catalog = resolve_catalog(catalog)

    def mutator(current: TenantSubscription) -> Optional[Dict[str, Any]]:
        if _is_stale(current, subscription_ref):
            return None
        plan = catalog.get(current.plan_id)
        if plan is None or plan.is_free:
            return None
        base = max(current.period_end, now) if current.period_end else now
        target = ensure_utc(period_end) or base + period_length(plan)
        if current.period_end and target < current.period_end:
            target = current.period_end
        return {
            "status": SubscriptionStatus.ACTIVE,
            "period_end": target,
            "past_due_since": None,
        }

    return mutate_subscription(session, tenant_id, mutator, reason="renewal_paid", catalog=catalog)


def mark_past_due(
    session: Session,
    tenant_id: str,
    subscription_ref: Optional[str],
    now: datetime,
    *,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    def mutator(current: TenantSubscription) -> Optional[Dict[str, Any]]:
        if _is_stale(current, subscription_ref):
            return None
        if current.status != SubscriptionStatus.ACTIVE:
            return None
        return {"status": SubscriptionStatus.PAST_DUE, "past_due_since": now}

    return mutate_subscription(session, tenant_id, mutator, reason="payment_failed", catalog=catalog)


def mark_expired(
    session: Session,
    tenant_id: str,
    subscription_ref: Optional[str],
    *,
    reason: str = "subscription_deleted",
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    def mutator(current: TenantSubscription) -> Optional[Dict[str, Any]]:
        if _is_stale(current, subscription_ref):
            return None
        if current.status == SubscriptionStatus.EXPIRED:
            return None
        return {"status": SubscriptionStatus.EXPIRED, "cancel_at_period_end": False}

    return mutate_subscription(session, tenant_id, mutator, reason=reason, catalog=catalog)


def set_cancel_at_period_end(
    session: Session,
    tenant_id: str,
    subscription_ref: Optional[str],
    cancel_at_period_end: bool,
    *,
    current_period_end: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> SubscriptionChange:
    def mutator(current: TenantSubscription) -> Optional[Dict[str, Any]]:
        if _is_stale(current, subscription_ref):
            return None
        changes: Dict[str, Any] = {}
        if current.cancel_at_period_end != cancel_at_period_end:
            changes["cancel_at_period_end"] = cancel_at_period_end
        period_end = ensure_utc(current_period_end)
        if period_end and (current.period_end is None or period_end > current.period_end):
            changes["period_end"] = period_end
        return changes or None

    return mutate_subscription(
        session, tenant_id, mutator, reason="subscription_updated", catalog=catalog
    )


def _sweep_decision(
    current: TenantSubscription,
    plan: Optional[Plan],
    now: datetime,
    grace: timedelta,
) -> Optional[SubscriptionStatus]:
    if current.status == SubscriptionStatus.PAST_DUE:
        if current.past_due_since and current.past_due_since + grace <= now:
            return SubscriptionStatus.EXPIRED
        return None
    if current.status != SubscriptionStatus.ACTIVE or current.period_end is None:
        return None
    if current.cancel_at_period_end and current.period_end <= now:
        return SubscriptionStatus.CANCELLED
    if plan is not None and plan.billing_interval == BillingInterval.ONE_TIME and current.period_end <= now:
        return SubscriptionStatus.EXPIRED
    if current.period_end + grace <= now:
        return SubscriptionStatus.EXPIRED
    return None


def sweep_expirations(
    now: Optional[datetime] = None,
    *,
    grace_days: Optional[int] = None,
    catalog: Optional[PlanCatalog] = None,
) -> Dict[str, int]:
    """
    Move elapsed subscriptions to their terminal status.

    - cancel_at_period_end and period_end passed -> cancelled
    - one-time package past period_end -> expired
    - past_due longer than the grace period -> expired
    - recurring plan not renewed within period_end + grace -> expired

    Each tenant is handled in its own transaction. Safe to re-run.
    """
    now = normalize_now(now)
    catalog = resolve_catalog(catalog)
    grace = timedelta(days=settings.PAST_DUE_GRACE_DAYS if grace_days is None else grace_days)

    with get_db_session() as session:
        candidates: List[str] = [
            row[0]
            for row in session.execute(
                select(tenant_subscriptions.c.tenant_id).where(
                    or_(
                        and_(
                            tenant_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                            tenant_subscriptions.c.period_end.isnot(None),
                            tenant_subscriptions.c.period_end <= now,
                        ),
                        and_(
                            tenant_subscriptions.c.status == SubscriptionStatus.PAST_DUE.value,
                            tenant_subscriptions.c.past_due_since <= now - grace,
                        ),
                    )
                )
            ).fetchall()
        ]

    stats = {"scanned": len(candidates), "cancelled": 0, "expired": 0, "errors": 0}

    for tenant_id in candidates:

        def mutator(current: TenantSubscription) -> Optional[Dict[str, Any]]:
            target = _sweep_decision(current, catalog.get(current.plan_id), now, grace)
            if target is None:
                return None
            return {"status": target, "cancel_at_period_end": False}

        try:
            with get_db_session() as session:
                change = mutate_subscription(
                    session, tenant_id, mutator, reason="sweep", catalog=catalog
                )
        except ConcurrentUpdateError:
            stats["errors"] += 1
            logger.warning("[sweep] skipped after concurrent updates", extra={"tenant_id": tenant_id})
            continue

        if change.applied:
            if change.new.status == SubscriptionStatus.CANCELLED:
                stats["cancelled"] += 1
            else:
                stats["expired"] += 1
            notify_change(change)

    logger.info("[sweep] completed", extra=stats)
    return stats
