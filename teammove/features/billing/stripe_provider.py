"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe API.
Handles webhook signature verification and error translation.
"""
import json
import logging
from typing import Dict, Any, Optional
import stripe

from teammove.core.config import settings
from teammove.core.errors import (
    BillingDisabledError,
    InvalidSignatureError,
    PaymentProviderError,
    PaymentProviderUnavailableError,
    ValidationError,
)
from teammove.features.billing.provider import (
    CheckoutSession,
    CheckoutSessionRequest,
    ProviderEvent,
)
from teammove.models.plan import BillingInterval, Plan


logger = logging.getLogger("teammove")

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _translate_error(exc: stripe.StripeError, action: str) -> PaymentProviderError:
    """Map a Stripe SDK error onto the billing error taxonomy."""
    status = getattr(exc, "http_status", None)
    transient = isinstance(exc, _TRANSIENT_ERRORS) or (status is not None and status >= 500)
    logger.warning(
        "[billing] stripe call failed",
        extra={"action": action, "error_type": type(exc).__name__, "http_status": status},
    )
    if transient:
        return PaymentProviderUnavailableError(f"Payment provider unavailable during {action}")
    return PaymentProviderError(f"Payment provider rejected {action}: {exc.user_message or exc}")


def _metadata_value(obj: Any, key: str) -> Optional[str]:
    try:
        return obj["metadata"][key]
    except (KeyError, TypeError):
        return None


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance_seconds: Max webhook timestamp age (defaults to STRIPE_WEBHOOK_TOLERANCE_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

        if not self.secret_key:
            raise BillingDisabledError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, tenant_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Find the Stripe customer tagged with tenant_id or create it."""
        try:
            if email:
                customers = stripe.Customer.list(email=email, limit=10)
                for customer in customers.data:
                    if _metadata_value(customer, "tenant_id") == tenant_id:
                        return customer["id"]

            customer_data: Dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            # Deterministic key: a retried request returns the same customer
            customer = stripe.Customer.create(
                **customer_data,
                idempotency_key=f"tenant-customer-{tenant_id}",
            )
            return customer["id"]
        except stripe.StripeError as e:
            raise _translate_error(e, "customer creation")

    def _line_item(self, plan: Plan) -> Dict[str, Any]:
        if plan.provider_price_ref:
            return {"price": plan.provider_price_ref, "quantity": 1}

        price_data: Dict[str, Any] = {
            "currency": plan.currency,
            "product_data": {"name": plan.display_name, "description": plan.description or plan.display_name},
            "unit_amount": plan.price_minor_units,
        }
        if plan.is_recurring:
            interval = "year" if plan.billing_interval == BillingInterval.YEARLY else "month"
            price_data["recurring"] = {"interval": interval}
        return {"price_data": price_data, "quantity": 1}

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        """Create Stripe checkout session."""
        mode = request.plan.checkout_mode
        metadata = request.metadata
        params: Dict[str, Any] = {
            "customer": request.customer_ref,
            "mode": mode,
            "payment_method_types": ["card"],
            "line_items": [self._line_item(request.plan)],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": request.tenant_id,
            "metadata": metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            raise _translate_error(e, "checkout session creation")
        return CheckoutSession(url=session["url"], session_ref=session["id"])

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_ref,
                return_url=return_url,
            )
            return session["url"]
        except stripe.StripeError as e:
            raise _translate_error(e, "portal session creation")

    def cancel_subscription_at_period_end(self, subscription_ref: str) -> None:
        try:
            stripe.Subscription.modify(subscription_ref, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise _translate_error(e, "subscription cancellation")

    def verify_event(self, payload: bytes, signature_header: Optional[str]) -> ProviderEvent:
        """Verify Stripe webhook signature, then parse the event."""
        if not self.webhook_secret:
            raise BillingDisabledError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignatureError("Webhook payload is not UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignatureError(f"Invalid signature: {e}")

        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook payload is not valid JSON")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload is not a Stripe event")

        data = (event.get("data") or {}).get("object") or {}
        return ProviderEvent(
            event_id=event["id"],
            event_type=event["type"],
            data=data,
            created=event.get("created"),
        )
