"""
Billing API routes.

Surface:
- GET  /api/billing/plans: Plan catalog
- POST /api/billing/checkout: Select a plan (free applied now, paid via Stripe)
- POST /api/billing/portal: Stripe customer portal
- POST /api/billing/cancel: Cancel subscription at period end
- POST /api/billing/webhook: Stripe webhooks
- GET  /api/billing/status: Subscription, limits and usage
- GET  /api/billing/usage: Current-period usage
- POST /api/billing/quota/{quota_kind}/consume: Consume quota (403 when exhausted)

Errors are raised as AppError subclasses and rendered by the shared handlers.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from teammove.core.auth import get_current_tenant_id
from teammove.features.billing import service as billing_service
from teammove.features.billing.provider import PaymentProvider
from teammove.features.billing.service import ExternalRedirect
from teammove.features.billing.webhooks import handle_webhook
from teammove.features.plans.catalog import PlanCatalog, get_plan_catalog
from teammove.features.quota.service import enforce_quota, get_usage
from teammove.models.quota import QuotaKind


router = APIRouter(prefix="/billing", tags=["billing"])


def get_payment_provider() -> Optional[PaymentProvider]:
    return billing_service.get_provider()


def get_catalog() -> PlanCatalog:
    return get_plan_catalog()


class CheckoutRequest(BaseModel):
    """Request to select a plan."""
    plan_id: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    kind: str  # free_plan_applied | redirect
    url: Optional[str] = None
    session_id: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, gt=0)


@router.get("/plans")
def list_plans(catalog: PlanCatalog = Depends(get_catalog)) -> List[Dict[str, Any]]:
    """Plans in catalog order, free plan first."""
    return [plan.model_dump(mode="json") for plan in catalog]


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Select a plan.

    Returns:
        {"kind": "free_plan_applied", "subscription": {...}} or
        {"kind": "redirect", "url": "https://checkout.stripe.com/...", "session_id": "cs_..."}

    Errors:
        400: Invalid plan_id
        502/503: Stripe error / unavailable
        503: Billing disabled (paid plans only)
    """
    result = billing_service.start_checkout(
        tenant_id,
        request.plan_id,
        request.success_url,
        request.cancel_url,
        provider=provider,
        catalog=catalog,
    )
    if isinstance(result, ExternalRedirect):
        return CheckoutResponse(kind=result.kind, url=result.url, session_id=result.external_session_ref)
    return CheckoutResponse(kind=result.kind, subscription=result.subscription.model_dump(mode="json"))


@router.post("/portal", response_model=PortalResponse)
def create_portal(
    request: PortalRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    url = billing_service.start_portal(tenant_id, request.return_url, provider=provider)
    return {"url": url}


@router.post("/cancel")
def cancel_subscription(
    tenant_id: str = Depends(get_current_tenant_id),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
):
    """Request cancellation at period end; paid limits stay until then."""
    subscription = billing_service.request_cancellation(tenant_id, provider=provider)
    return {"cancel_requested": True, "subscription": subscription.model_dump(mode="json")}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    provider: Optional[PaymentProvider] = Depends(get_payment_provider),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Handle Stripe webhook events.

    Returns:
        {"received": true, "duplicate": bool, ...}

    Errors:
        400: Invalid signature or payload
        500: Event could not be reconciled (Stripe will redeliver)
        503: Billing disabled
    """
    body = await request.body()
    outcome = await run_in_threadpool(
        handle_webhook, body, stripe_signature, provider=provider, catalog=catalog
    )
    return {"received": True, **outcome.as_dict()}


@router.get("/status")
def billing_status(
    tenant_id: str = Depends(get_current_tenant_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return billing_service.get_billing_status(tenant_id, catalog=catalog)


@router.get("/usage")
def usage(
    tenant_id: str = Depends(get_current_tenant_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return get_usage(tenant_id, catalog=catalog)


@router.post("/quota/{quota_kind}/consume")
def consume_quota(
    quota_kind: QuotaKind,
    request: Optional[ConsumeRequest] = None,
    tenant_id: str = Depends(get_current_tenant_id),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Consume quota for an event creation / invitation send; 403 when exhausted."""
    amount = request.amount if request else 1
    decision = enforce_quota(tenant_id, quota_kind, amount, catalog=catalog)
    return decision.model_dump(mode="json")
