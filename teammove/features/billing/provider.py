"""
Payment provider protocol.

Defines the interface the billing service needs from a payment provider
(Stripe in production, mocks in tests). Business logic never imports the
provider SDK directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field

from teammove.models.plan import Plan


@dataclass
class CheckoutSessionRequest:
    """Everything needed to open a hosted checkout for one plan."""
    tenant_id: str
    customer_ref: str
    plan: Plan
    success_url: str
    cancel_url: str

    @property
    def metadata(self) -> Dict[str, str]:
        return {"tenant_id": self.tenant_id, "plan_id": self.plan.plan_id}


@dataclass
class CheckoutSession:
    url: str
    session_ref: str


@dataclass
class ProviderEvent:
    """A verified webhook notification."""
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)  # event.data.object
    created: Optional[int] = None


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Customer lookup/creation (idempotent per tenant)
    - Checkout and portal session creation
    - Subscription cancellation at period end
    - Webhook signature verification and parsing

    Errors are reported as PaymentProviderUnavailableError (transient,
    retryable) or PaymentProviderError (permanent).
    """

    def ensure_customer(self, tenant_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Find the customer tagged with ``tenant_id`` or create it.

        Returns:
            Provider customer id
        """
        ...

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        """
        Create a checkout session (payment mode for one-time plans,
        subscription mode for recurring plans).
        """
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a self-service portal session and return its URL."""
        ...

    def cancel_subscription_at_period_end(self, subscription_ref: str) -> None:
        ...

    def verify_event(self, payload: bytes, signature_header: Optional[str]) -> ProviderEvent:
        """
        Verify the webhook signature, then parse the payload.

        Raises:
            InvalidSignatureError: If the signature is missing, stale or wrong
            ValidationError: If the signed payload is not a valid event
        """
        ...
