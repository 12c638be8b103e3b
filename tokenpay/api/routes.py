"""
API routes.

Service errors are not caught here; the application-level handler turns
them into `{"error": {...}}` responses with the error's HTTP status.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.core.kyc import (
    BeneficialOwnerInput,
    KycFormData,
    RepresentativeInput,
    serialize_contractor,
    serialize_document,
    serialize_person,
    validate_step,
)
from tokenpay.core.onboarding import serialize_profile
from tokenpay.core.payment_methods import serialize_payment_method
from tokenpay.database.connection import get_db
from tokenpay.database.models import Profile

from .dependencies import (
    Services,
    get_current_user,
    get_services,
    require_admin,
    require_onboarded_user,
)
from .schemas import (
    AdjustTokensRequest,
    CompleteOnboardingRequest,
    CompletePurchaseRequest,
    ConsumeTokensRequest,
    CreatePurchaseRequest,
    CreateSubscriptionRequest,
    DocumentReviewRequest,
    DocumentUploadRequest,
    HealthCheckResponse,
    KycTransitionRequest,
    OnboardingStatusResponse,
    ProfileResponse,
    PurchaseIntentResponse,
    RefundRequest,
    StorePaymentMethodRequest,
    SyncPricesRequest,
    TokenBalanceResponse,
    UpdateProfileRequest,
    UsernameAvailabilityResponse,
    ValidateStepRequest,
    ValidateStepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

profile_router = APIRouter(prefix="/profile", tags=["profile"])
catalog_router = APIRouter(prefix="/catalog", tags=["catalog"])
purchase_router = APIRouter(prefix="/purchases", tags=["purchases"])
token_router = APIRouter(prefix="/tokens", tags=["tokens"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
payment_method_router = APIRouter(prefix="/payment-methods", tags=["payment methods"])
kyc_router = APIRouter(prefix="/kyc", tags=["kyc"])
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


# Profile and onboarding


@profile_router.get("", response_model=ProfileResponse, summary="Get own profile")
async def get_profile(profile: Profile = Depends(get_current_user)) -> Dict[str, Any]:
    return serialize_profile(profile)


@profile_router.patch("", response_model=ProfileResponse, summary="Update own profile")
async def update_profile(
    request: UpdateProfileRequest,
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    updated = await services.onboarding.update_profile(
        profile.id,
        db,
        username=request.username,
        full_name=request.full_name,
        avatar_url=request.avatar_url,
    )
    return serialize_profile(updated)


@profile_router.get(
    "/onboarding",
    response_model=OnboardingStatusResponse,
    summary="Onboarding status",
    description="Whether the caller still has to set a full name and username",
)
async def onboarding_status(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.onboarding.get_onboarding_status(profile.id, db)


@profile_router.post("/onboarding", response_model=ProfileResponse, summary="Complete onboarding")
async def complete_onboarding(
    request: CompleteOnboardingRequest,
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    completed = await services.onboarding.complete_onboarding(
        profile.id, request.username, request.full_name, db
    )
    return serialize_profile(completed)


@profile_router.get(
    "/username-availability",
    response_model=UsernameAvailabilityResponse,
    summary="Check whether a username is free",
)
async def username_availability(
    username: str = Query(..., min_length=1, max_length=64),
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    available = await services.onboarding.check_username_availability(
        username, db, exclude_user_id=profile.id
    )
    return {"username": username.strip().lower(), "available": available}


# Catalog


@catalog_router.get("/packages", summary="Token packages with their active prices")
async def list_packages(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.catalog.list_packages(db)


@catalog_router.get("/subscription-plans", summary="Subscription plans with their active prices")
async def list_subscription_plans(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.catalog.list_subscription_plans(db)


@catalog_router.get("/config", summary="Client payment configuration")
async def payment_config(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {"publishable_key": services.catalog.get_publishable_key()}


# Purchases


@purchase_router.post(
    "",
    response_model=PurchaseIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy a token package",
    description="Create a PaymentIntent for a package price with idempotency guarantees",
)
async def create_purchase(
    request: CreatePurchaseRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Start a purchase.

    Retries with the same `request_id` return the first response.
    """
    return await services.purchases.create_purchase_intent(
        profile.id,
        request.stripe_price_id,
        db,
        payment_method_id=request.payment_method_id,
        request_id=request.request_id,
    )


@purchase_router.post("/complete", summary="Confirm a paid purchase and credit its tokens")
async def complete_purchase(
    request: CompletePurchaseRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.purchases.complete_purchase(
        request.payment_intent_id, db, user_id=profile.id
    )


@purchase_router.get("", summary="Own purchases, newest first")
async def list_purchases(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.purchases.list_purchases(profile.id, db, limit=limit, offset=offset)


@purchase_router.get("/summary", summary="Purchase counts and totals")
async def purchase_summary(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.purchases.get_purchase_summary(profile.id, db)


# Tokens


@token_router.get("/balance", response_model=TokenBalanceResponse, summary="Token balance")
async def token_balance(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.ledger.get_balance(profile.id, db)


@token_router.post(
    "/consume",
    summary="Spend tokens",
    description="Fails with 402 insufficient_tokens without writing anything when the balance is short",
)
async def consume_tokens(
    request: ConsumeTokensRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.ledger.consume(
        profile.id,
        request.amount,
        db,
        description=request.description,
        metadata=request.metadata,
    )


@token_router.get("/transactions", summary="Ledger history, newest first")
async def token_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.ledger.list_transactions(profile.id, db, limit=limit, offset=offset)


# Subscriptions


@subscription_router.get("", summary="Own subscription")
async def get_subscription(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Optional[Dict[str, Any]]:
    return await services.subscriptions.get_subscription(profile.id, db)


@subscription_router.post("", status_code=status.HTTP_201_CREATED, summary="Subscribe to a plan")
async def create_subscription(
    request: CreateSubscriptionRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.subscriptions.create_subscription(profile.id, request.stripe_price_id, db)


@subscription_router.post("/cancel", summary="Cancel at the end of the current period")
async def cancel_subscription(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.subscriptions.cancel_subscription(profile.id, db)


@subscription_router.post("/sync", summary="Re-read own subscription from Stripe")
async def sync_subscription(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Optional[Dict[str, Any]]:
    return await services.subscriptions.sync_subscription(profile.id, db)


# Payment methods


@payment_method_router.post("/setup-intent", summary="Start saving a card")
async def create_setup_intent(
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.payment_methods.create_setup_intent(profile.id, db)


@payment_method_router.post("", status_code=status.HTTP_201_CREATED, summary="Register a saved card")
async def store_payment_method(
    request: StorePaymentMethodRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    method = await services.payment_methods.store_payment_method(
        profile.id, request.stripe_payment_method_id, db, make_default=request.make_default
    )
    return serialize_payment_method(method)


@payment_method_router.get("", summary="Saved cards, default first")
async def list_payment_methods(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    methods = await services.payment_methods.list_payment_methods(profile.id, db)
    return [serialize_payment_method(m) for m in methods]


@payment_method_router.post("/{method_id}/default", summary="Make a card the default")
async def set_default_payment_method(
    method_id: str,
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    method = await services.payment_methods.set_default_payment_method(profile.id, method_id, db)
    return serialize_payment_method(method)


@payment_method_router.delete("/{method_id}", summary="Remove a card")
async def delete_payment_method(
    method_id: str,
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.payment_methods.delete_payment_method(profile.id, method_id, db)


# KYC


@kyc_router.get("/status", summary="Own contractor application")
async def kyc_status(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.kyc.get_kyc_status(profile.id, db)


@kyc_router.get("/draft", summary="Load the auto-saved form")
async def load_draft(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    form = await services.kyc.load_form_draft(profile.id, db)
    return {"draft": form.model_dump(by_alias=True) if form else None}


@kyc_router.put("/draft", summary="Auto-save the form")
async def save_draft(
    form: KycFormData,
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return {"draft": await services.kyc.save_form_draft(profile.id, form, db)}


@kyc_router.delete("/draft", summary="Discard the auto-saved form")
async def discard_draft(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return {"discarded": await services.kyc.discard_form_draft(profile.id, db)}


@kyc_router.post("/validate-step", response_model=ValidateStepResponse, summary="Check one form step")
async def validate_form_step(
    request: ValidateStepRequest,
    profile: Profile = Depends(get_current_user),
) -> Dict[str, Any]:
    errors = validate_step(request.form, request.step)
    return {"step": request.step, "valid": not errors, "errors": errors}


@kyc_router.post("/submit", status_code=status.HTTP_201_CREATED, summary="Apply as a contractor")
async def submit_kyc(
    form: KycFormData,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    contractor = await services.kyc.submit(profile.id, form, db)
    return serialize_contractor(contractor)


@kyc_router.post("/resubmit", summary="Resubmit a rejected or expired application")
async def resubmit_kyc(
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    contractor = await services.kyc.resubmit(profile.id, db)
    return serialize_contractor(contractor)


@kyc_router.post("/beneficial-owners", status_code=status.HTTP_201_CREATED)
async def add_beneficial_owner(
    request: BeneficialOwnerInput,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    owner = await services.kyc.add_beneficial_owner(profile.id, request, db)
    return serialize_person(owner)


@kyc_router.get("/beneficial-owners")
async def list_beneficial_owners(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [serialize_person(o) for o in await services.kyc.list_beneficial_owners(profile.id, db)]


@kyc_router.post("/representatives", status_code=status.HTTP_201_CREATED)
async def add_representative(
    request: RepresentativeInput,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    representative = await services.kyc.add_representative(profile.id, request, db)
    return serialize_person(representative)


@kyc_router.get("/representatives")
async def list_representatives(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [serialize_person(r) for r in await services.kyc.list_representatives(profile.id, db)]


@kyc_router.post("/documents", status_code=status.HTTP_201_CREATED, summary="Upload a KYC document")
async def upload_document(
    request: DocumentUploadRequest,
    profile: Profile = Depends(require_onboarded_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    document = await services.kyc.upload_document(
        profile.id,
        request.document_type,
        request.purpose,
        request.file_name,
        request.mime_type,
        request.content(),
        db,
    )
    return serialize_document(document)


@kyc_router.get("/documents")
async def list_documents(
    profile: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [serialize_document(d) for d in await services.kyc.list_documents(profile.id, db)]


# Admin


@admin_router.post("/purchases/{purchase_id}/refund", summary="Refund a purchase")
async def refund_purchase(
    purchase_id: uuid.UUID,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.purchases.refund_purchase(
        purchase_id, db, amount_cents=request.amount_cents, reason=request.reason
    )


@admin_router.post("/users/{user_id}/tokens/adjust", summary="Adjust a token balance")
async def adjust_tokens(
    user_id: str,
    request: AdjustTokensRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.ledger.adjust(
        user_id, request.delta, request.reason, db, transaction_type=request.transaction_type
    )


@admin_router.post("/catalog/sync", summary="Mirror a Stripe product's prices")
async def sync_catalog(
    request: SyncPricesRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.catalog.sync_package_prices(request.stripe_product_id, db)


@admin_router.post("/subscriptions/sync", summary="Re-read all live subscriptions")
async def sync_subscriptions(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.subscriptions.sync_all_subscriptions(db)


@admin_router.post("/contractors/{contractor_id}/kyc-status", summary="Move a KYC status")
async def transition_kyc_status(
    contractor_id: uuid.UUID,
    request: KycTransitionRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    contractor = await services.kyc.transition_status(
        contractor_id, request.status, db, reason=request.reason
    )
    return serialize_contractor(contractor)


@admin_router.post("/documents/{document_id}/review", summary="Record a document review")
async def review_document(
    document_id: uuid.UUID,
    request: DocumentReviewRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    document = await services.kyc.review_document(document_id, request.status, db, notes=request.notes)
    return serialize_document(document)


# Webhooks


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and process Stripe events with deduplication",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    body = await request.body()
    event = services.webhooks.verify_signature(body, request.headers.get("Stripe-Signature"))
    return await services.webhooks.process_event(event, db)


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database, Redis and Stripe",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse, summary="Liveness probe")
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse, summary="Readiness probe")
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
