"""
Billing service orchestrator.

Coordinates:
- Plan selection (free plan locally, paid plans through checkout)
- Customer management
- Customer portal and cancellation requests
- Billing status for the UI

All Stripe-specific code is in stripe_provider.py. Paid plans are only
applied by the webhook reconciler once the provider confirms payment.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

from teammove.core.config import settings
from teammove.core.errors import BillingDisabledError, ConflictError, ValidationError
from teammove.core.metrics import checkout_started_total
from teammove.features.billing.provider import (
    CheckoutSessionRequest,
    PaymentProvider,
)
from teammove.features.billing.stripe_provider import StripeProvider
from teammove.features.plans.catalog import PlanCatalog, resolve_catalog
from teammove.features.quota.service import get_usage
from teammove.features.subscriptions.service import (
    apply_plan_change,
    get_subscription,
    get_tenant,
    limits_for,
    record_customer_ref,
)
from teammove.models.subscription import SubscriptionStatus, TenantSubscription


logger = logging.getLogger("teammove")


@dataclass(frozen=True)
class FreePlanApplied:
    subscription: TenantSubscription
    kind: str = "free_plan_applied"


@dataclass(frozen=True)
class ExternalRedirect:
    url: str
    external_session_ref: str
    kind: str = "redirect"


CheckoutResult = Union[FreePlanApplied, ExternalRedirect]


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[PaymentProvider]:
    """Get payment provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _require_provider(provider: Optional[PaymentProvider]) -> PaymentProvider:
    provider = provider or get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def default_success_url() -> str:
    return f"{settings.APP_URL}/payment/success?mode=upgrade&session_id={{CHECKOUT_SESSION_ID}}"


def default_cancel_url() -> str:
    return f"{settings.APP_URL}/payment/cancel?mode=upgrade"


def ensure_customer_for_tenant(
    tenant_id: str,
    provider: Optional[PaymentProvider] = None,
) -> str:
    """
    Ensure a payment customer exists for the tenant.

    Returns:
        Provider customer id (the stored one if another request won the race)

    Raises:
        UnknownTenantError: If the tenant is not registered
        BillingDisabledError: If billing is not configured
        PaymentProviderError: If customer creation fails
    """
    subscription = get_subscription(tenant_id)
    if subscription.external_customer_ref:
        return subscription.external_customer_ref

    provider = _require_provider(provider)
    tenant = get_tenant(tenant_id)
    customer_ref = provider.ensure_customer(tenant_id, tenant.get("email"), tenant.get("name"))

    stored = record_customer_ref(tenant_id, customer_ref)
    if stored != customer_ref:
        logger.warning(
            "[billing] customer ref already linked",
            extra={"tenant_id": tenant_id, "kept": stored, "discarded": customer_ref},
        )
    return stored


def has_live_subscription(subscription: TenantSubscription) -> bool:
    """A recurring provider subscription that will keep charging."""
    return (
        subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
        and bool(subscription.external_subscription_ref)
        and not subscription.cancel_at_period_end
    )


def start_checkout(
    tenant_id: str,
    plan_id: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    *,
    provider: Optional[PaymentProvider] = None,
    catalog: Optional[PlanCatalog] = None,
) -> CheckoutResult:
    """
    Start a plan change.

    Args:
        tenant_id: Tenant selecting the plan
        plan_id: Catalog plan id
        success_url: Redirect URL on success (defaults under APP_URL)
        cancel_url: Redirect URL on cancel (defaults under APP_URL)

    Returns:
        FreePlanApplied for the free plan (applied immediately), otherwise
        ExternalRedirect to the hosted checkout page.

    Raises:
        InvalidPlanError: If plan_id is not in the catalog
        UnknownTenantError: If the tenant is not registered
        BillingDisabledError: If a paid plan is selected without Stripe configured
        ConflictError: If a recurring subscription is still billing the tenant
        PaymentProviderError: If the provider call fails
    """
    catalog = resolve_catalog(catalog)
    plan = catalog.require(plan_id)

    if plan.is_free:
        subscription = apply_plan_change(tenant_id, plan.plan_id, catalog=catalog)
        checkout_started_total.inc({"mode": "free"})
        logger.info("[billing] free plan applied", extra={"tenant_id": tenant_id, "plan_id": plan.plan_id})
        return FreePlanApplied(subscription=subscription)

    provider = _require_provider(provider)
    current = get_subscription(tenant_id, catalog=catalog)
    if has_live_subscription(current):
        logger.info(
            "[billing] checkout refused, live subscription",
            extra={"tenant_id": tenant_id, "plan_id": plan.plan_id, "current_plan_id": current.plan_id},
        )
        raise ConflictError(
            "Tenant already has an active subscription; manage it from the billing portal or cancel it first"
        )

    customer_ref = ensure_customer_for_tenant(tenant_id, provider)
    session = provider.create_checkout_session(
        CheckoutSessionRequest(
            tenant_id=tenant_id,
            customer_ref=customer_ref,
            plan=plan,
            success_url=success_url or default_success_url(),
            cancel_url=cancel_url or default_cancel_url(),
        )
    )

    checkout_started_total.inc({"mode": plan.checkout_mode})
    logger.info(
        "[billing] checkout started",
        extra={"tenant_id": tenant_id, "plan_id": plan.plan_id, "session_ref": session.session_ref},
    )
    return ExternalRedirect(url=session.url, external_session_ref=session.session_ref)


def start_portal(
    tenant_id: str,
    return_url: Optional[str] = None,
    *,
    provider: Optional[PaymentProvider] = None,
) -> str:
    """
    Start customer portal session for self-service.

    Raises:
        ValidationError: If the tenant has never paid (no customer)
        BillingDisabledError: If billing is not configured
    """
    provider = _require_provider(provider)
    subscription = get_subscription(tenant_id)
    if not subscription.external_customer_ref:
        raise ValidationError("No billing account for this tenant")

    return provider.create_portal_session(
        subscription.external_customer_ref,
        return_url or f"{settings.APP_URL}/dashboard",
    )


def request_cancellation(
    tenant_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
) -> TenantSubscription:
    """
    Ask the provider to cancel the subscription at period end.

    The local cancel_at_period_end flag is set when the provider's
    subscription.updated webhook arrives.

    Raises:
        ValidationError: If there is no active recurring subscription
    """
    subscription = get_subscription(tenant_id)
    if subscription.cancel_at_period_end:
        return subscription
    if subscription.status != SubscriptionStatus.ACTIVE or not subscription.external_subscription_ref:
        raise ValidationError("No active subscription to cancel")

    provider = _require_provider(provider)
    provider.cancel_subscription_at_period_end(subscription.external_subscription_ref)
    logger.info(
        "[billing] cancellation requested",
        extra={"tenant_id": tenant_id, "plan_id": subscription.plan_id},
    )
    return subscription


def get_billing_status(
    tenant_id: str,
    *,
    catalog: Optional[PlanCatalog] = None,
) -> Dict[str, Any]:
    """
    Get tenant's billing status.

    Returns:
        {
            "enabled": bool,
            "subscription": {...},
            "plan": {...},
            "limits": {...},
            "usage": {...}
        }
    """
    catalog = resolve_catalog(catalog)
    subscription = get_subscription(tenant_id, catalog=catalog)
    limits = limits_for(subscription, catalog)
    plan = catalog.get(subscription.plan_id)

    return {
        "enabled": billing_enabled(),
        "subscription": subscription.model_dump(mode="json"),
        "plan": plan.model_dump(mode="json") if plan else None,
        "limits": {**limits.model_dump(mode="json"), "downgraded": limits.downgraded},
        "usage": get_usage(tenant_id, catalog=catalog),
    }
