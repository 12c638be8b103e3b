"""
Pydantic schemas for API request/response models.
"""
import base64
import binascii
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from tokenpay.core.kyc import KycFormData


class UpdateProfileRequest(BaseModel):
    """Request schema for changing profile fields; omitted fields are kept."""

    username: Optional[str] = Field(default=None, description="3-30 characters of a-z, 0-9, _")
    full_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)


class CompleteOnboardingRequest(BaseModel):
    """Request schema for finishing onboarding."""

    username: str = Field(..., description="3-30 characters of a-z, 0-9, _")
    full_name: str = Field(..., min_length=1, max_length=255)

    model_config = {
        "json_schema_extra": {"examples": [{"username": "ada_l", "full_name": "Ada Lovelace"}]}
    }


class ProfileResponse(BaseModel):
    """Response schema for a profile."""

    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    onboarding_complete: bool
    onboarding_required: bool
    is_contractor: bool
    stripe_customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_period_end: Optional[int] = None
    total_tokens: int
    tokens_remaining: int
    tokens_used: int
    total_purchases: int
    total_spent_cents: int
    last_purchase_at: Optional[str] = None
    created_at: str
    updated_at: str


class OnboardingStatusResponse(BaseModel):
    """Response schema for the onboarding check."""

    onboarding_required: bool
    missing_fields: List[str]
    profile_exists: bool


class UsernameAvailabilityResponse(BaseModel):
    username: str
    available: bool


class CreatePurchaseRequest(BaseModel):
    """Request schema for buying a token package."""

    stripe_price_id: str = Field(..., min_length=1, description="Catalog price to buy")
    payment_method_id: Optional[str] = Field(
        default=None, description="Stored card to charge now (local id or Stripe id)"
    )
    request_id: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client request id; retries with the same id return the first response",
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "stripe_price_id": "price_1PkAbc",
                    "payment_method_id": "pm_1PkDef",
                    "request_id": "6f1c2d0e-buy-500",
                }
            ]
        }
    }


class PurchaseIntentResponse(BaseModel):
    """Response schema for purchase creation."""

    purchase_id: str
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str
    amount_cents: int
    currency: str
    stripe_price_id: str
    token_amount: int


class CompletePurchaseRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, description="Stripe PaymentIntent ID")


class RefundRequest(BaseModel):
    """Request schema for an admin refund."""

    amount_cents: Optional[int] = Field(default=None, gt=0, description="Partial refund amount")
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None


class TokenBalanceResponse(BaseModel):
    total_tokens: int
    tokens_remaining: int
    tokens_used: int


class ConsumeTokensRequest(BaseModel):
    """Request schema for spending tokens."""

    amount: int = Field(..., gt=0, description="Tokens to spend")
    description: Optional[str] = Field(default=None, max_length=500)
    metadata: Optional[Dict[str, Any]] = None


class AdjustTokensRequest(BaseModel):
    """Request schema for an admin balance adjustment."""

    delta: int = Field(..., description="Tokens to add (positive) or remove (negative)")
    reason: str = Field(..., min_length=1, max_length=500)
    transaction_type: Literal["admin_adjustment", "bonus"] = "admin_adjustment"

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        """Zero adjustments are not recorded."""
        if v == 0:
            raise ValueError("delta must not be zero")
        return v


class CreateSubscriptionRequest(BaseModel):
    stripe_price_id: str = Field(..., min_length=1, description="Subscription plan price")


class StorePaymentMethodRequest(BaseModel):
    """Request schema for registering a card saved through a SetupIntent."""

    stripe_payment_method_id: str = Field(..., min_length=1)
    make_default: bool = False


class ValidateStepRequest(BaseModel):
    step: int = Field(..., ge=1, le=4)
    form: KycFormData


class ValidateStepResponse(BaseModel):
    step: int
    valid: bool
    errors: List[str]


class DocumentUploadRequest(BaseModel):
    """Request schema for a KYC document, content base64 encoded."""

    document_type: str
    purpose: str = "identity_document"
    file_name: str = Field(..., min_length=1, max_length=255)
    mime_type: str
    content_base64: str = Field(..., min_length=1)

    @field_validator("content_base64")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Reject content that is not valid base64."""
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("content_base64 is not valid base64") from e
        return v

    def content(self) -> bytes:
        return base64.b64decode(self.content_base64)


class KycTransitionRequest(BaseModel):
    """Request schema for an admin KYC status change."""

    status: Literal["submitted", "under_review", "approved", "rejected", "expired"]
    reason: Optional[str] = Field(default=None, max_length=2000)


class DocumentReviewRequest(BaseModel):
    status: Literal["verified", "rejected", "requires_action"]
    notes: Optional[str] = Field(default=None, max_length=2000)


class SyncPricesRequest(BaseModel):
    stripe_product_id: str = Field(..., min_length=1)


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate or no_handler")
    event_id: str
    event_type: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
