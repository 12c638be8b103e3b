"""
Contractor KYC.

A user applies as a contractor through a four step form (type and
email, personal or business details, address, review). The form is
auto-saved as a draft; submission creates the Stripe Connect account and
the contractor record. Review is manual: an admin moves `kyc_status`
along the allowed transitions and verifies the uploaded documents.
"""
import hashlib
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.config import get_settings
from tokenpay.core.errors import ConflictError, NotFoundError, ValidationError
from tokenpay.core.onboarding import onboarding_required
from tokenpay.database.models import (
    Contractor,
    ContractorAddress,
    ContractorBankAccount,
    ContractorBeneficialOwner,
    ContractorDocumentUpload,
    ContractorRepresentative,
    KycFormDraft,
    Profile,
)
from tokenpay.integrations.stripe_client import StripeClient, StripeClientError, stripe_value
from tokenpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOTAL_STEPS = 4
MINIMUM_AGE = 18
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
COUNTRY_RE = re.compile(r"^[A-Za-z]{2}$")

ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    "pending": ("submitted",),
    "submitted": ("under_review", "approved", "rejected"),
    "under_review": ("approved", "rejected"),
    "rejected": ("submitted",),
    "approved": ("expired",),
    "expired": ("submitted",),
}

ALLOWED_MIME_TYPES = ("application/pdf", "image/jpeg", "image/png")
DOCUMENT_TYPES = (
    "identity_document",
    "address_verification",
    "business_registration",
    "tax_document",
    "bank_statement",
    "other",
)
DOCUMENT_PURPOSES = ("identity_document", "additional_verification", "account_requirement")
REVIEW_STATUSES = ("verified", "rejected", "requires_action")

REQUIRED_DOCUMENTS = {
    "individual": ("identity_document", "address_verification"),
    "business": ("identity_document", "address_verification", "business_registration"),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class KycAddress(_CamelModel):
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "AU"


class KycBankAccount(_CamelModel):
    account_holder_name: str
    account_number: str
    routing_number: Optional[str] = None
    bank_name: Optional[str] = None
    account_type: Optional[Literal["checking", "savings"]] = None


class KycFormData(_CamelModel):
    """The contractor application form; every field may be blank in a draft."""

    contractor_type: str = "individual"
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    date_of_birth: str = ""
    address: KycAddress = Field(default_factory=KycAddress)
    business_name: str = ""
    business_tax_id: str = ""
    business_url: str = ""
    business_description: str = ""
    industry_mcc_code: str = ""
    company_structure: str = ""
    bank_account: Optional[KycBankAccount] = None


class PersonInput(_CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date
    email: Optional[str] = None
    phone_number: Optional[str] = None
    street_address: str = Field(..., min_length=1)
    street_address_2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state_province: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2)
    national_id_number: Optional[str] = None
    national_id_type: Optional[str] = None


class BeneficialOwnerInput(PersonInput):
    # Stored as NUMERIC(5, 2)
    ownership_percentage: Decimal = Field(..., max_digits=5, decimal_places=2)
    title: Optional[str] = None


class RepresentativeInput(PersonInput):
    title: str = Field(..., min_length=1, max_length=100)
    is_authorized_signatory: bool = False


def _parse_date(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def _age_on(born: date, today: date) -> int:
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def validate_step(form: KycFormData, step: int) -> List[str]:
    """
    Fields that are missing or invalid for one form step.

    Step 4 (review) re-checks steps 1-3.

    Args:
        form: Form data
        step: Step number, 1-4

    Returns:
        List[str]: Field names, empty when the step is valid
    """
    if step == TOTAL_STEPS:
        errors: List[str] = []
        for previous in range(1, TOTAL_STEPS):
            errors.extend(validate_step(form, previous))
        return errors

    errors = []
    if step == 1:
        if form.contractor_type not in ("individual", "business"):
            errors.append("contractorType")
        if not EMAIL_RE.match(form.email.strip()):
            errors.append("email")
    elif step == 2:
        if form.contractor_type == "business":
            for field, value in (
                ("businessName", form.business_name),
                ("businessTaxId", form.business_tax_id),
                ("businessUrl", form.business_url),
            ):
                if not value.strip():
                    errors.append(field)
        else:
            for field, value in (
                ("firstName", form.first_name),
                ("lastName", form.last_name),
                ("phone", form.phone),
            ):
                if not value.strip():
                    errors.append(field)
            born = _parse_date(form.date_of_birth)
            if born is None or _age_on(born, date.today()) < MINIMUM_AGE:
                errors.append("dateOfBirth")
    elif step == 3:
        address = form.address
        for field, value in (
            ("address.line1", address.line1),
            ("address.city", address.city),
            ("address.state", address.state),
            ("address.postalCode", address.postal_code),
        ):
            if not value.strip():
                errors.append(field)
        if not COUNTRY_RE.match(address.country.strip()):
            errors.append("address.country")
    else:
        raise ValidationError(f"Unknown form step {step}", step=step)
    return errors


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_contractor(contractor: Contractor) -> Dict[str, Any]:
    """Convert a contractor to a response dict."""
    return {
        "id": str(contractor.id),
        "user_id": contractor.user_id,
        "contractor_type": contractor.contractor_type,
        "kyc_status": contractor.kyc_status,
        "is_active": contractor.is_active,
        "email": contractor.email,
        "stripe_connect_account_id": contractor.stripe_connect_account_id,
        "stripe_connect_account_status": contractor.stripe_connect_account_status,
        "stripe_connect_requirements_completed": contractor.stripe_connect_requirements_completed,
        "kyc_submitted_at": _iso(contractor.kyc_submitted_at),
        "kyc_approved_at": _iso(contractor.kyc_approved_at),
        "kyc_rejected_at": _iso(contractor.kyc_rejected_at),
        "kyc_rejection_reason": contractor.kyc_rejection_reason,
        "kyc_expires_at": _iso(contractor.kyc_expires_at),
        "business_name": contractor.business_name,
        "first_name": contractor.first_name,
        "last_name": contractor.last_name,
    }


def serialize_person(person: ContractorBeneficialOwner | ContractorRepresentative) -> Dict[str, Any]:
    """Owner or representative without the national id number."""
    data = {
        "id": str(person.id),
        "first_name": person.first_name,
        "last_name": person.last_name,
        "date_of_birth": person.date_of_birth.isoformat(),
        "email": person.email,
        "country": person.country,
        "title": person.title,
        "is_verified": person.is_verified,
    }
    if isinstance(person, ContractorBeneficialOwner):
        data["ownership_percentage"] = str(person.ownership_percentage)
    else:
        data["is_authorized_signatory"] = person.is_authorized_signatory
    return data


def serialize_document(document: ContractorDocumentUpload) -> Dict[str, Any]:
    """Convert a document upload to a response dict."""
    return {
        "id": str(document.id),
        "document_type": document.document_type,
        "document_purpose": document.document_purpose,
        "file_name": document.file_name,
        "file_size": document.file_size,
        "mime_type": document.mime_type,
        "file_hash": document.file_hash,
        "stripe_file_id": document.stripe_file_id,
        "stripe_upload_status": document.stripe_upload_status,
        "stripe_upload_error": document.stripe_upload_error,
        "verification_status": document.verification_status,
        "verification_notes": document.verification_notes,
        "verified_at": _iso(document.verified_at),
        "created_at": _iso(document.created_at),
    }


def document_requirements_complete(
    contractor_type: str, documents: List[ContractorDocumentUpload]
) -> bool:
    """Whether every document type the contractor type needs has a verified upload."""
    verified = {d.document_type for d in documents if d.verification_status == "verified"}
    required = REQUIRED_DOCUMENTS.get(contractor_type, REQUIRED_DOCUMENTS["individual"])
    return all(doc_type in verified for doc_type in required)


def connect_account_status(account: Any) -> Dict[str, Any]:
    """Local status fields for a Stripe Connect account."""
    requirements = stripe_value(account, "requirements") or {}
    outstanding = list(stripe_value(requirements, "currently_due") or []) + list(
        stripe_value(requirements, "past_due") or []
    )
    if stripe_value(account, "charges_enabled") and stripe_value(account, "payouts_enabled"):
        status = "active"
    elif stripe_value(requirements, "disabled_reason"):
        status = "restricted"
    else:
        status = "pending"
    return {"status": status, "requirements_completed": not outstanding}


class KycService:
    """Contractor application, review and documents."""

    def __init__(self, stripe_client: Optional[StripeClient] = None) -> None:
        """
        Initialize KYC service.

        Args:
            stripe_client: Optional Stripe client
        """
        self.settings = get_settings()
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    # Drafts

    async def save_form_draft(
        self, user_id: str, form: KycFormData, db: AsyncSession
    ) -> Dict[str, Any]:
        """Upsert the auto-saved draft, stored with camelCase keys."""
        data = form.model_dump(by_alias=True)
        draft = await db.scalar(select(KycFormDraft).where(KycFormDraft.user_id == user_id))
        if draft is None:
            db.add(KycFormDraft(user_id=user_id, kyc_data=data))
        else:
            draft.kyc_data = data
        await db.commit()
        return data

    async def load_form_draft(self, user_id: str, db: AsyncSession) -> Optional[KycFormData]:
        draft = await db.scalar(select(KycFormDraft).where(KycFormDraft.user_id == user_id))
        return KycFormData.model_validate(draft.kyc_data) if draft else None

    async def discard_form_draft(self, user_id: str, db: AsyncSession) -> bool:
        draft = await db.scalar(select(KycFormDraft).where(KycFormDraft.user_id == user_id))
        if draft is None:
            return False
        await db.delete(draft)
        await db.commit()
        return True

    # Contractor

    async def get_contractor(self, user_id: str, db: AsyncSession) -> Optional[Contractor]:
        result = await db.execute(
            select(Contractor)
            .where(Contractor.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_contractor(self, user_id: str, db: AsyncSession) -> Contractor:
        """
        Contractor of a user.

        Raises:
            NotFoundError: If the user has not applied
        """
        contractor = await self.get_contractor(user_id, db)
        if contractor is None:
            raise NotFoundError("Contractor profile not found", user_id=user_id)
        return contractor

    async def submit(self, user_id: str, form: KycFormData, db: AsyncSession) -> Contractor:
        """
        Submit the contractor application.

        Args:
            user_id: Applicant
            form: Complete form data
            db: Database session

        Returns:
            Contractor: The new contractor, status `submitted`

        Raises:
            ValidationError: If a form step is invalid or onboarding is incomplete
            ConflictError: If the user already has a contractor profile
        """
        errors = validate_step(form, TOTAL_STEPS)
        if errors:
            raise ValidationError("KYC form is incomplete", fields=errors)

        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFoundError("Profile not found", user_id=user_id)
        if onboarding_required(profile):
            raise ValidationError("Complete onboarding before applying as a contractor")
        if await self.get_contractor(user_id, db) is not None:
            raise ConflictError("Contractor profile already exists")

        is_business = form.contractor_type == "business"
        country = form.address.country.strip().upper()
        account = await self.stripe_client.create_connect_account(
            email=form.email.strip(),
            country=country or self.settings.connect_default_country,
            business_type="company" if is_business else "individual",
            metadata={"user_id": user_id, "contractor_type": form.contractor_type},
            idempotency_key=f"connect:{user_id}",
        )
        account_status = connect_account_status(account)

        now = datetime.now(timezone.utc)
        contractor = Contractor(
            user_id=user_id,
            contractor_type=form.contractor_type,
            kyc_status="submitted",
            kyc_submitted_at=now,
            email=form.email.strip(),
            stripe_connect_account_id=stripe_value(account, "id"),
            stripe_connect_account_status=account_status["status"],
            stripe_connect_requirements_completed=account_status["requirements_completed"],
            addresses=[],
            bank_accounts=[],
            beneficial_owners=[],
            representatives=[],
            documents=[],
        )
        if is_business:
            contractor.business_name = form.business_name.strip()
            contractor.business_tax_id = form.business_tax_id.strip()
            contractor.business_website_url = form.business_url.strip()
            contractor.business_description = form.business_description.strip() or None
            contractor.industry_mcc_code = form.industry_mcc_code.strip() or None
            contractor.company_structure = form.company_structure.strip() or None
        else:
            contractor.first_name = form.first_name.strip()
            contractor.last_name = form.last_name.strip()
            contractor.phone_number = form.phone.strip()
            contractor.date_of_birth = _parse_date(form.date_of_birth)

        contractor.addresses.append(
            ContractorAddress(
                address_type="business" if is_business else "residential",
                street_address=form.address.line1.strip(),
                street_address_2=form.address.line2.strip() or None,
                city=form.address.city.strip(),
                state_province=form.address.state.strip(),
                postal_code=form.address.postal_code.strip(),
                country=country,
            )
        )
        if form.bank_account is not None:
            bank = form.bank_account
            contractor.bank_accounts.append(
                ContractorBankAccount(
                    account_holder_name=bank.account_holder_name,
                    account_number_last4=bank.account_number[-4:],
                    routing_number=bank.routing_number,
                    bank_name=bank.bank_name,
                    account_type=bank.account_type,
                )
            )

        db.add(contractor)
        profile.is_contractor = True
        draft = await db.scalar(select(KycFormDraft).where(KycFormDraft.user_id == user_id))
        if draft is not None:
            await db.delete(draft)
        await db.commit()

        metrics.record_kyc_submission(form.contractor_type)
        logger.info(
            "kyc_submitted",
            user_id=user_id,
            contractor_id=str(contractor.id),
            contractor_type=form.contractor_type,
            connect_account_id=contractor.stripe_connect_account_id,
        )
        return contractor

    async def resubmit(self, user_id: str, db: AsyncSession) -> Contractor:
        """Send a rejected or expired application back for review."""
        contractor = await self.require_contractor(user_id, db)
        return await self.transition_status(contractor.id, "submitted", db)

    async def transition_status(
        self,
        contractor_id: Any,
        new_status: str,
        db: AsyncSession,
        reason: Optional[str] = None,
    ) -> Contractor:
        """
        Move a contractor's KYC status (admin).

        The update is conditional on the status read, so two reviewers
        cannot both apply a transition from the same state.

        Args:
            contractor_id: Contractor id
            new_status: Target status
            db: Database session
            reason: Rejection reason, required when rejecting

        Raises:
            NotFoundError: If the contractor does not exist
            ValidationError: If a rejection has no reason
            ConflictError: If the transition is not allowed
        """
        contractor = await db.get(Contractor, contractor_id)
        if contractor is None:
            raise NotFoundError("Contractor not found", contractor_id=str(contractor_id))

        current = contractor.kyc_status
        if new_status not in ALLOWED_TRANSITIONS.get(current, ()):
            raise ConflictError(
                f"Cannot move KYC status from {current} to {new_status}",
                from_status=current,
                to_status=new_status,
            )
        if new_status == "rejected" and not (reason or "").strip():
            raise ValidationError("A rejection reason is required", field="reason")

        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {"kyc_status": new_status, "updated_at": now}
        if new_status == "submitted":
            values.update(kyc_submitted_at=now, kyc_rejection_reason=None)
        elif new_status == "approved":
            values.update(
                kyc_approved_at=now,
                kyc_expires_at=now + timedelta(days=self.settings.kyc_approval_valid_days),
                kyc_rejection_reason=None,
            )
        elif new_status == "rejected":
            values.update(kyc_rejected_at=now, kyc_rejection_reason=reason.strip())

        result = await db.execute(
            update(Contractor)
            .where(Contractor.id == contractor.id, Contractor.kyc_status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise ConflictError("KYC status changed concurrently", from_status=current)
        await db.commit()
        await db.refresh(contractor)

        metrics.record_kyc_status_change(current, new_status)
        logger.info(
            "kyc_status_changed",
            contractor_id=str(contractor.id),
            from_status=current,
            to_status=new_status,
        )
        return contractor

    async def apply_connect_account(self, account: Any, db: AsyncSession) -> Optional[Contractor]:
        """Mirror a Connect account update onto its contractor."""
        account_id = stripe_value(account, "id")
        contractor = await db.scalar(
            select(Contractor).where(Contractor.stripe_connect_account_id == account_id)
        )
        if contractor is None:
            logger.warning("connect_account_unknown", account_id=account_id)
            return None

        account_status = connect_account_status(account)
        contractor.stripe_connect_account_status = account_status["status"]
        contractor.stripe_connect_requirements_completed = account_status["requirements_completed"]
        await db.commit()
        logger.info(
            "connect_account_applied",
            contractor_id=str(contractor.id),
            status=account_status["status"],
            requirements_completed=account_status["requirements_completed"],
        )
        return contractor

    # Owners and representatives

    async def _require_business(self, user_id: str, db: AsyncSession) -> Contractor:
        contractor = await self.require_contractor(user_id, db)
        if contractor.contractor_type != "business":
            raise ValidationError("Only business contractors have owners and representatives")
        return contractor

    async def add_beneficial_owner(
        self, user_id: str, owner: BeneficialOwnerInput, db: AsyncSession
    ) -> ContractorBeneficialOwner:
        """
        Record a beneficial owner of a business contractor.

        Raises:
            ValidationError: If the contractor is not a business, the
                percentage is outside (0, 100] or owners would exceed 100%
        """
        contractor = await self._require_business(user_id, db)
        percentage = Decimal(owner.ownership_percentage)
        if percentage <= 0 or percentage > 100:
            raise ValidationError(
                "Ownership percentage must be greater than 0 and at most 100",
                field="ownership_percentage",
            )

        # Serializes concurrent adds for the same contractor
        await db.execute(
            select(Contractor.id).where(Contractor.id == contractor.id).with_for_update()
        )
        existing = await db.scalar(
            select(func.coalesce(func.sum(ContractorBeneficialOwner.ownership_percentage), 0)).where(
                ContractorBeneficialOwner.contractor_id == contractor.id
            )
        )
        total = Decimal(str(existing)) + percentage
        if total > 100:
            raise ValidationError(
                "Total ownership would exceed 100%",
                field="ownership_percentage",
                total=str(total),
            )

        record = ContractorBeneficialOwner(
            contractor_id=contractor.id,
            **owner.model_dump(exclude={"ownership_percentage"}),
            ownership_percentage=percentage,
        )
        db.add(record)
        await db.commit()
        logger.info("beneficial_owner_added", contractor_id=str(contractor.id))
        return record

    async def list_beneficial_owners(
        self, user_id: str, db: AsyncSession
    ) -> List[ContractorBeneficialOwner]:
        contractor = await self.require_contractor(user_id, db)
        result = await db.execute(
            select(ContractorBeneficialOwner)
            .where(ContractorBeneficialOwner.contractor_id == contractor.id)
            .order_by(ContractorBeneficialOwner.created_at)
        )
        return list(result.scalars())

    async def add_representative(
        self, user_id: str, representative: RepresentativeInput, db: AsyncSession
    ) -> ContractorRepresentative:
        """Record a representative of a business contractor."""
        contractor = await self._require_business(user_id, db)
        record = ContractorRepresentative(
            contractor_id=contractor.id, **representative.model_dump()
        )
        db.add(record)
        await db.commit()
        logger.info("representative_added", contractor_id=str(contractor.id))
        return record

    async def list_representatives(
        self, user_id: str, db: AsyncSession
    ) -> List[ContractorRepresentative]:
        contractor = await self.require_contractor(user_id, db)
        result = await db.execute(
            select(ContractorRepresentative)
            .where(ContractorRepresentative.contractor_id == contractor.id)
            .order_by(ContractorRepresentative.created_at)
        )
        return list(result.scalars())

    # Documents

    async def upload_document(
        self,
        user_id: str,
        document_type: str,
        purpose: str,
        file_name: str,
        mime_type: str,
        content: bytes,
        db: AsyncSession,
    ) -> ContractorDocumentUpload:
        """
        Store a KYC document and forward it to Stripe.

        A Stripe failure does not reject the upload; the row is kept with
        `stripe_upload_status = failed` and the error message.

        Raises:
            ValidationError: If the type, purpose, format or size is not accepted
        """
        contractor = await self.require_contractor(user_id, db)
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError(f"Unknown document type {document_type!r}", field="document_type")
        if purpose not in DOCUMENT_PURPOSES:
            raise ValidationError(f"Unknown document purpose {purpose!r}", field="purpose")
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError("Documents must be PDF, JPEG or PNG", field="mime_type")
        if not content:
            raise ValidationError("Document is empty", field="content")
        if len(content) > self.settings.kyc_document_max_bytes:
            raise ValidationError(
                "Document is too large",
                field="content",
                max_bytes=self.settings.kyc_document_max_bytes,
            )

        document = ContractorDocumentUpload(
            contractor_id=contractor.id,
            document_type=document_type,
            document_purpose=purpose,
            file_name=file_name,
            file_size=len(content),
            mime_type=mime_type,
            file_hash=hashlib.sha256(content).hexdigest(),
            stripe_upload_status="pending",
            verification_status="pending",
            required_for_capability=[],
        )
        try:
            stripe_file = await self.stripe_client.upload_file(purpose, file_name, content)
            document.stripe_file_id = stripe_value(stripe_file, "id")
            document.stripe_upload_status = "uploaded"
        except StripeClientError as e:
            document.stripe_upload_status = "failed"
            document.stripe_upload_error = e.message
            logger.warning(
                "kyc_document_stripe_upload_failed",
                contractor_id=str(contractor.id),
                error=e.message,
            )

        db.add(document)
        await db.commit()
        metrics.record_document_upload(document_type, document.stripe_upload_status)
        logger.info(
            "kyc_document_uploaded",
            contractor_id=str(contractor.id),
            document_type=document_type,
            stripe_upload_status=document.stripe_upload_status,
        )
        return document

    async def list_documents(self, user_id: str, db: AsyncSession) -> List[ContractorDocumentUpload]:
        contractor = await self.require_contractor(user_id, db)
        result = await db.execute(
            select(ContractorDocumentUpload)
            .where(ContractorDocumentUpload.contractor_id == contractor.id)
            .order_by(ContractorDocumentUpload.created_at)
        )
        return list(result.scalars())

    async def review_document(
        self,
        document_id: Any,
        status: str,
        db: AsyncSession,
        notes: Optional[str] = None,
    ) -> ContractorDocumentUpload:
        """Set a document's verification result (admin)."""
        if status not in REVIEW_STATUSES:
            raise ValidationError(f"Unknown review status {status!r}", field="status")
        document = await db.get(ContractorDocumentUpload, document_id)
        if document is None:
            raise NotFoundError("Document not found", document_id=str(document_id))

        document.verification_status = status
        document.verification_notes = notes
        document.verified_at = datetime.now(timezone.utc) if status == "verified" else None
        await db.commit()
        logger.info("kyc_document_reviewed", document_id=str(document.id), status=status)
        return document

    async def get_kyc_status(self, user_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Summary of the caller's application.

        Returns:
            Dict[str, Any]: `contractor` (None before applying), per-record
                total/verified counts and `requirements_complete`
        """
        contractor = await self.get_contractor(user_id, db)
        if contractor is None:
            return {"contractor": None, "requirements_complete": False, "counts": {}}

        def counts(items: List[Any], verified: Any) -> Dict[str, int]:
            return {"total": len(items), "verified": sum(1 for i in items if verified(i))}

        documents = list(contractor.documents)
        return {
            "contractor": serialize_contractor(contractor),
            "requirements_complete": document_requirements_complete(
                contractor.contractor_type, documents
            ),
            "counts": {
                "documents": counts(documents, lambda d: d.verification_status == "verified"),
                "beneficial_owners": counts(list(contractor.beneficial_owners), lambda o: o.is_verified),
                "representatives": counts(list(contractor.representatives), lambda r: r.is_verified),
                "addresses": counts(list(contractor.addresses), lambda a: a.is_verified),
                "bank_accounts": counts(list(contractor.bank_accounts), lambda b: b.is_verified),
            },
        }
