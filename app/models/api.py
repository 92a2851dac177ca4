"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from app.models.domain import (
    CreatedIntent,
    CustomerContact,
    IntentStatus,
    OrderStatus,
    PaymentRequest,
    Provider,
    ReconciliationAction,
)

# ============================================================================
# Intent Models
# ============================================================================


class CustomerContactModel(BaseModel):
    """Customer contact details - explicit fields, no dict."""

    email: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, max_length=32)


class CreateIntentRequest(BaseModel):
    """POST /v1/payments/intents request body."""

    provider: Provider
    order_ref: str = Field(..., max_length=128)
    # Major units; validated and converted to minor units server-side
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    customer: CustomerContactModel
    description: str = Field(default="", max_length=500)
    actor_id: str | None = Field(None, max_length=255, description="Who initiated the payment")
    purpose: str = Field(
        default="order", max_length=50, description="e.g. shipment, buy4me, driver_commission"
    )
    payment_method: str | None = Field(
        None, max_length=50, description="Card rail payment method type, e.g. card or fpx"
    )
    return_url: str | None = Field(None, max_length=2048)

    def to_domain(self) -> PaymentRequest:
        """Convert to the domain request passed down the checkout chain."""
        return PaymentRequest(
            provider=self.provider,
            order_ref=self.order_ref,
            amount=self.amount,
            currency=self.currency,
            customer=CustomerContact(
                email=self.customer.email,
                name=self.customer.name,
                phone=self.customer.phone,
            ),
            description=self.description,
            actor_id=self.actor_id,
            purpose=self.purpose,
            payment_method=self.payment_method,
            return_url=self.return_url,
        )


class CreateIntentResponse(BaseModel):
    """POST /v1/payments/intents response."""

    intent_id: str
    provider: Provider
    order_ref: str
    status: IntentStatus
    amount_minor: int
    currency: str
    client_secret: str | None = None
    redirect_url: str | None = None
    publishable_key: str | None = None

    @classmethod
    def from_created(
        cls, created: CreatedIntent, publishable_key: str | None = None
    ) -> "CreateIntentResponse":
        """Build a response from a created intent."""
        intent = created.intent
        return cls(
            intent_id=intent.id,
            provider=intent.provider,
            order_ref=intent.order_ref,
            status=intent.status,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            client_secret=created.client_secret,
            redirect_url=created.redirect_url,
            publishable_key=publishable_key,
        )


# ============================================================================
# Status Models
# ============================================================================


class PaymentStatusResponse(BaseModel):
    """GET /v1/payments/{provider}/{provider_ref}/status response."""

    provider: Provider
    provider_ref: str
    status: IntentStatus
    reported_status: str
    terminal: bool
    order_ref: str | None = None
    order_status: OrderStatus | None = None


class VerifyPaymentResponse(BaseModel):
    """POST /v1/payments/{provider}/{provider_ref}/verify response."""

    status: Literal["verified", "verification_incomplete"]
    provider: Provider
    provider_ref: str
    payment_status: IntentStatus | None = None
    terminal: bool = False
    waited_seconds: float = 0.0


class UpdatePaymentMethodRequest(BaseModel):
    """PATCH /v1/payments/card_rail/{payment_id}/payment-method request body."""

    payment_method_id: str | None = Field(None, max_length=255)
    fpx_bank: str | None = Field(None, max_length=64, description="FPX bank code")

    @model_validator(mode="after")
    def require_change(self) -> "UpdatePaymentMethodRequest":
        """At least one of payment_method_id / fpx_bank must be given."""
        if not self.payment_method_id and not self.fpx_bank:
            raise ValueError("payment_method_id or fpx_bank is required")
        return self


class UpdatePaymentMethodResponse(BaseModel):
    """PATCH /v1/payments/card_rail/{payment_id}/payment-method response."""

    payment_id: str
    client_secret: str
    status: IntentStatus


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook acknowledgement."""

    status: Literal["accepted"] = "accepted"
    reconciliation: ReconciliationAction | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    providers: list[Provider]
    timestamp: str
