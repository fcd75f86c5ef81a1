"""
teammove/features/quota/service.py

Quota ledger.

Handles:
- Atomic consumption of per-period allowances (events, invitations)
- Usage reporting for the status screen
- Period rollover (scheduled)

Consumption is a single conditional UPDATE on the counter row, so the
limit check and the increment cannot be separated by a concurrent request.

Free and recurring plans count per calendar month (the global cursor).
One-time packages hold a single allowance for their whole validity
window, counted under a key tied to the purchase, so usage from before
the purchase does not carry over and rollovers never refill the pack.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from teammove.core.database import (
    get_db_session,
    insert_ignore,
    quota_counters,
    quota_periods,
)
from teammove.core.errors import QuotaExceededError, ValidationError
from teammove.core.metrics import quota_decisions_total
from teammove.core.timeutil import normalize_now
from teammove.features.plans.catalog import PlanCatalog
from teammove.features.subscriptions.service import get_subscription, limits_for, resolve_enforced_plan
from teammove.models.plan import BillingInterval, Plan
from teammove.models.quota import QuotaCounters, QuotaDecision, QuotaKind, QuotaStatus
from teammove.models.subscription import EffectiveLimits, TenantSubscription


logger = logging.getLogger("teammove")

QUOTA_CADENCE = "monthly"
PACK_KEY_PREFIX = "pack:"


def period_key_for(now: datetime) -> str:
    """Calendar month in UTC, e.g. 2025-03."""
    return normalize_now(now).strftime("%Y-%m")


def _coerce_kind(quota_kind: Union[QuotaKind, str]) -> QuotaKind:
    try:
        return QuotaKind(quota_kind)
    except ValueError:
        raise ValidationError(f"Unknown quota kind: {quota_kind}")


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    return amount


def _limit_for(limits: EffectiveLimits, kind: QuotaKind) -> Optional[int]:
    if kind == QuotaKind.EVENTS:
        return limits.max_events
    return limits.max_invitations


def _read_cursor(session: Session) -> Optional[str]:
    return session.execute(
        select(quota_periods.c.period_key).where(quota_periods.c.cadence == QUOTA_CADENCE)
    ).scalar_one_or_none()


def active_period_key(session: Session, now: Optional[datetime] = None) -> str:
    """
    Period currently being counted.

    The cursor row is created on first use; afterwards only
    rollover_quota_period moves it.
    """
    period_key = _read_cursor(session)
    if period_key is not None:
        return period_key

    now = normalize_now(now)
    insert_ignore(
        session,
        quota_periods,
        {"cadence": QUOTA_CADENCE, "period_key": period_key_for(now), "advanced_at": now},
        ["cadence"],
    )
    return _read_cursor(session)


def current_period_key(now: Optional[datetime] = None) -> str:
    with get_db_session() as session:
        return active_period_key(session, now)


def pack_period_key(subscription: TenantSubscription, plan: Plan) -> Optional[str]:
    """Counter key of a one-time package purchase, None for other plans."""
    if plan.billing_interval != BillingInterval.ONE_TIME or subscription.period_start is None:
        return None
    return f"{PACK_KEY_PREFIX}{subscription.period_start:%Y%m%dT%H%M%S%f}"


def _counter_filter(tenant_id: str, period_key: str):
    return and_(
        quota_counters.c.tenant_id == tenant_id,
        quota_counters.c.period_key == period_key,
    )


def try_consume(
    tenant_id: str,
    quota_kind: Union[QuotaKind, str],
    amount: int = 1,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> QuotaDecision:
    """
    Consume ``amount`` units of a quota if the tenant's limit allows it.

    Args:
        tenant_id: Tenant consuming the quota
        quota_kind: "events" or "invitations"
        amount: Units to consume (positive)
        now: Clock override, used only to seed the first period

    Returns:
        QuotaDecision (ALLOWED or DENIED). A denied attempt consumes nothing.

    Raises:
        UnknownTenantError: If the tenant or its plan cannot be resolved
        ValidationError: If quota_kind or amount is invalid
    """
    kind = _coerce_kind(quota_kind)
    amount = _validate_amount(amount)

    subscription = get_subscription(tenant_id, catalog=catalog)
    limits = limits_for(subscription, catalog)
    limit = _limit_for(limits, kind)
    column = quota_counters.c[kind.counter_column]
    pack_key = pack_period_key(subscription, resolve_enforced_plan(subscription, catalog))

    with get_db_session() as session:
        period_key = pack_key or active_period_key(session, now)
        insert_ignore(
            session,
            quota_counters,
            {
                "tenant_id": tenant_id,
                "period_key": period_key,
                "events_created": 0,
                "invitations_sent": 0,
            },
            ["tenant_id", "period_key"],
        )

        stmt = (
            update(quota_counters)
            .where(_counter_filter(tenant_id, period_key))
            .values({column: column + amount})
        )
        if limit is not None:
            stmt = stmt.where(column + amount <= limit)
        result = session.execute(stmt)
        allowed = result.rowcount == 1

        used = session.execute(
            select(column).where(_counter_filter(tenant_id, period_key))
        ).scalar_one()

    status = QuotaStatus.ALLOWED if allowed else QuotaStatus.DENIED
    decision = QuotaDecision(
        tenant_id=tenant_id,
        quota_kind=kind,
        status=status,
        requested=amount,
        used=used,
        limit=limit,
        remaining=None if limit is None else max(limit - used, 0),
        period_key=period_key,
        plan_id=limits.enforced_plan_id,
    )

    quota_decisions_total.inc({"kind": kind.value, "status": status.value})
    log_extra = {
        "tenant_id": tenant_id,
        "quota_kind": kind.value,
        "plan_id": limits.enforced_plan_id,
        "status": status.value,
        "used": used,
        "limit": limit,
    }
    if allowed:
        logger.debug("[quota] consumed", extra=log_extra)
    else:
        logger.info("[quota] denied", extra=log_extra)
    return decision


def enforce_quota(
    tenant_id: str,
    quota_kind: Union[QuotaKind, str],
    amount: int = 1,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> QuotaDecision:
    """try_consume for request handlers: raises QuotaExceededError on denial."""
    decision = try_consume(tenant_id, quota_kind, amount, now=now, catalog=catalog)
    if not decision.allowed:
        raise QuotaExceededError(
            f"{decision.quota_kind.value.capitalize()} limit reached for plan {decision.plan_id}",
            quota_kind=decision.quota_kind.value,
            remaining=decision.remaining or 0,
            limit=decision.limit,
        )
    return decision


def get_counters(tenant_id: str, period_key: str) -> QuotaCounters:
    with get_db_session() as session:
        row = session.execute(
            select(quota_counters).where(_counter_filter(tenant_id, period_key))
        ).mappings().first()
    if row is None:
        return QuotaCounters(tenant_id=tenant_id, period_key=period_key)
    return QuotaCounters(
        tenant_id=tenant_id,
        period_key=period_key,
        events_created=row["events_created"],
        invitations_sent=row["invitations_sent"],
    )


def _allowance(used: int, limit: Optional[int]) -> Dict[str, Any]:
    return {
        "used": used,
        "limit": limit,
        "remaining": None if limit is None else max(limit - used, 0),
    }


def get_usage(
    tenant_id: str,
    *,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalog] = None,
) -> Dict[str, Any]:
    """
    Current-period usage with remaining allowances (None = unlimited).

    Raises:
        UnknownTenantError: If the tenant or its plan cannot be resolved
    """
    subscription = get_subscription(tenant_id, catalog=catalog)
    limits = limits_for(subscription, catalog)
    period_key = pack_period_key(subscription, resolve_enforced_plan(subscription, catalog))
    if period_key is None:
        with get_db_session() as session:
            period_key = _read_cursor(session) or period_key_for(normalize_now(now))
    counters = get_counters(tenant_id, period_key)
    return {
        "tenant_id": tenant_id,
        "period_key": period_key,
        "plan_id": limits.displayed_plan_id,
        "enforced_plan_id": limits.enforced_plan_id,
        "status": limits.status.value,
        "events": _allowance(counters.events_created, limits.max_events),
        "invitations": _allowance(counters.invitations_sent, limits.max_invitations),
    }


def rollover_quota_period(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Advance the quota period cursor to the calendar month of ``now``.

    Counters are keyed by period, so advancing the cursor resets every
    tenant's usage. Idempotent; never moves the cursor backwards.
    """
    now = normalize_now(now)
    target = period_key_for(now)

    with get_db_session() as session:
        previous = session.execute(
            select(quota_periods.c.period_key)
            .where(quota_periods.c.cadence == QUOTA_CADENCE)
            .with_for_update()
        ).scalar_one_or_none()

        advanced = False
        if previous is None:
            advanced = insert_ignore(
                session,
                quota_periods,
                {"cadence": QUOTA_CADENCE, "period_key": target, "advanced_at": now},
                ["cadence"],
            )
            if not advanced:
                # Seeded concurrently by a first consume
                previous = _read_cursor(session)
        if previous is not None and target > previous:
            session.execute(
                update(quota_periods)
                .where(
                    and_(
                        quota_periods.c.cadence == QUOTA_CADENCE,
                        quota_periods.c.period_key == previous,
                    )
                )
                .values(period_key=target, advanced_at=now)
            )
            advanced = True

    result = {"previous": previous, "current": target if advanced else previous, "advanced": advanced}
    if advanced:
        logger.info("[quota] period advanced", extra=result)
    return result
