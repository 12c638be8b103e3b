"""
Unit tests for contractor KYC.
"""
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from pydantic import ValidationError as PydanticValidationError

from tokenpay.core.errors import ConflictError, NotFoundError, ValidationError
from tokenpay.core.kyc import (
    BeneficialOwnerInput,
    KycAddress,
    KycBankAccount,
    KycFormData,
    KycService,
    RepresentativeInput,
    connect_account_status,
    validate_step,
)
from tokenpay.database.models import Profile
from tokenpay.integrations.stripe_client import StripeClientError, StripeErrorType


def _individual_form(**overrides: Any) -> KycFormData:
    data: Dict[str, Any] = {
        "contractor_type": "individual",
        "email": "alice@example.com",
        "first_name": "Alice",
        "last_name": "Example",
        "phone": "+61400000000",
        "date_of_birth": "1990-05-01",
        "address": KycAddress(
            line1="1 George St", city="Sydney", state="NSW", postal_code="2000", country="AU"
        ),
    }
    data.update(overrides)
    return KycFormData(**data)


def _business_form(**overrides: Any) -> KycFormData:
    data: Dict[str, Any] = {
        "contractor_type": "business",
        "email": "ops@acme.example",
        "business_name": "Acme Pty Ltd",
        "business_tax_id": "51824753556",
        "business_url": "https://acme.example",
        "address": KycAddress(
            line1="2 Market St", city="Melbourne", state="VIC", postal_code="3000", country="au"
        ),
    }
    data.update(overrides)
    return KycFormData(**data)


def _account(
    id: str = "acct_1",
    charges_enabled: bool = False,
    payouts_enabled: bool = False,
    currently_due: List[str] | None = None,
    disabled_reason: str | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=id,
        charges_enabled=charges_enabled,
        payouts_enabled=payouts_enabled,
        requirements={
            "currently_due": currently_due or [],
            "past_due": [],
            "disabled_reason": disabled_reason,
        },
    )


def _owner(percentage: str, first_name: str = "Olivia") -> BeneficialOwnerInput:
    return BeneficialOwnerInput(
        first_name=first_name,
        last_name="Owner",
        date_of_birth=date(1980, 1, 1),
        street_address="2 Market St",
        city="Melbourne",
        postal_code="3000",
        country="AU",
        ownership_percentage=Decimal(percentage),
    )


@pytest.fixture
def service(stripe_client: Any) -> KycService:
    stripe_client.create_connect_account.return_value = _account(currently_due=["external_account"])
    return KycService(stripe_client)


class TestValidateStep:
    """Test suite for per-step form validation."""

    @pytest.mark.unit
    def test_complete_individual_form(self) -> None:
        form = _individual_form()
        for step in range(1, 5):
            assert validate_step(form, step) == []

    @pytest.mark.unit
    def test_step_one_fields(self) -> None:
        form = _individual_form(contractor_type="sole_trader", email="not-an-email")
        assert validate_step(form, 1) == ["contractorType", "email"]

    @pytest.mark.unit
    def test_individual_details(self) -> None:
        """Test names, phone and birth date are required for individuals."""
        form = _individual_form(first_name=" ", phone="", date_of_birth="01/05/1990")
        assert validate_step(form, 2) == ["firstName", "phone", "dateOfBirth"]

    @pytest.mark.unit
    def test_applicant_must_be_adult(self) -> None:
        minor = _individual_form(date_of_birth=f"{date.today().year - 17}-01-01")
        assert validate_step(minor, 2) == ["dateOfBirth"]

    @pytest.mark.unit
    def test_business_details(self) -> None:
        form = _business_form(business_tax_id="", business_url="")
        assert validate_step(form, 2) == ["businessTaxId", "businessUrl"]

    @pytest.mark.unit
    def test_address_fields(self) -> None:
        form = _individual_form(address=KycAddress(line1="1 George St", country="Australia"))
        assert validate_step(form, 3) == [
            "address.city",
            "address.state",
            "address.postalCode",
            "address.country",
        ]

    @pytest.mark.unit
    def test_review_step_collects_all_errors(self) -> None:
        form = KycFormData()
        errors = validate_step(form, 4)
        assert "email" in errors
        assert "firstName" in errors
        assert "address.line1" in errors

    @pytest.mark.unit
    @pytest.mark.parametrize("step", [0, 5])
    def test_unknown_step(self, step: int) -> None:
        with pytest.raises(ValidationError):
            validate_step(KycFormData(), step)

    @pytest.mark.unit
    def test_accepts_camel_case_payload(self) -> None:
        """Test the client's camelCase keys map onto the form."""
        form = KycFormData.model_validate(
            {
                "contractorType": "business",
                "businessName": "Acme",
                "businessTaxId": "123",
                "businessUrl": "https://acme.example",
                "address": {"postalCode": "3000"},
                "bankAccount": {"accountHolderName": "Acme", "accountNumber": "000123456"},
            }
        )
        assert form.business_name == "Acme"
        assert form.address.postal_code == "3000"
        assert form.bank_account.account_number == "000123456"
        assert validate_step(form, 2) == []


class TestConnectAccountStatus:
    """Test suite for Connect account status mapping."""

    @pytest.mark.unit
    def test_active(self) -> None:
        status = connect_account_status(_account(charges_enabled=True, payouts_enabled=True))
        assert status == {"status": "active", "requirements_completed": True}

    @pytest.mark.unit
    def test_restricted(self) -> None:
        account = _account(currently_due=["individual.id_number"], disabled_reason="requirements.past_due")
        assert connect_account_status(account) == {"status": "restricted", "requirements_completed": False}

    @pytest.mark.unit
    def test_pending_from_dict_payload(self) -> None:
        account = {"id": "acct_2", "charges_enabled": True, "payouts_enabled": False, "requirements": {}}
        assert connect_account_status(account) == {"status": "pending", "requirements_completed": True}


class TestKycDrafts:
    """Test suite for auto-saved drafts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_save_load_discard(self, service: KycService, test_db: Any, profile: Any) -> None:
        saved = await service.save_form_draft(profile.id, _individual_form(first_name=""), test_db)
        assert saved["contractorType"] == "individual"
        assert saved["address"]["postalCode"] == "2000"

        await service.save_form_draft(profile.id, _individual_form(), test_db)
        loaded = await service.load_form_draft(profile.id, test_db)
        assert loaded.first_name == "Alice"

        assert await service.discard_form_draft(profile.id, test_db) is True
        assert await service.discard_form_draft(profile.id, test_db) is False
        assert await service.load_form_draft(profile.id, test_db) is None


class TestKycSubmission:
    """Test suite for submitting the application."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_individual(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        """Test submission creates the Connect account and the contractor."""
        await service.save_form_draft(profile.id, _individual_form(), test_db)
        form = _individual_form(
            bank_account=KycBankAccount(account_holder_name="Alice Example", account_number="000123456")
        )

        contractor = await service.submit(profile.id, form, test_db)

        assert contractor.kyc_status == "submitted"
        assert contractor.kyc_submitted_at is not None
        assert contractor.stripe_connect_account_id == "acct_1"
        assert contractor.stripe_connect_account_status == "pending"
        assert contractor.stripe_connect_requirements_completed is False
        assert contractor.first_name == "Alice"
        assert contractor.date_of_birth == date(1990, 5, 1)
        assert contractor.addresses[0].address_type == "residential"
        assert contractor.bank_accounts[0].account_number_last4 == "3456"

        kwargs = stripe_client.create_connect_account.call_args.kwargs
        assert kwargs["business_type"] == "individual"
        assert kwargs["idempotency_key"] == "connect:user_alice"

        stored = await test_db.get(Profile, profile.id, populate_existing=True)
        assert stored.is_contractor is True
        assert await service.load_form_draft(profile.id, test_db) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_business(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        contractor = await service.submit(profile.id, _business_form(), test_db)

        assert contractor.contractor_type == "business"
        assert contractor.business_name == "Acme Pty Ltd"
        assert contractor.addresses[0].address_type == "business"
        assert contractor.addresses[0].country == "AU"
        assert stripe_client.create_connect_account.call_args.kwargs["business_type"] == "company"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_incomplete_form_lists_fields(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.submit(profile.id, _individual_form(email=""), test_db)

        assert exc_info.value.details["fields"] == ["email"]
        stripe_client.create_connect_account.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_onboarding(self, service: KycService, test_db: Any) -> None:
        test_db.add(Profile(id="user_new", email="new@example.com"))
        await test_db.commit()

        with pytest.raises(ValidationError):
            await service.submit("user_new", _individual_form(), test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_submission_conflicts(
        self, service: KycService, test_db: Any, profile: Any
    ) -> None:
        await service.submit(profile.id, _individual_form(), test_db)

        with pytest.raises(ConflictError):
            await service.submit(profile.id, _individual_form(), test_db)


class TestKycStatusTransitions:
    """Test suite for the review state machine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve(self, service: KycService, test_db: Any, profile: Any) -> None:
        contractor = await service.submit(profile.id, _individual_form(), test_db)

        await service.transition_status(contractor.id, "under_review", test_db)
        approved = await service.transition_status(contractor.id, "approved", test_db)

        assert approved.kyc_status == "approved"
        assert approved.kyc_approved_at is not None
        assert (approved.kyc_expires_at - approved.kyc_approved_at).days == 365

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reject_needs_reason(self, service: KycService, test_db: Any, profile: Any) -> None:
        contractor = await service.submit(profile.id, _individual_form(), test_db)

        with pytest.raises(ValidationError):
            await service.transition_status(contractor.id, "rejected", test_db, reason="  ")

        rejected = await service.transition_status(
            contractor.id, "rejected", test_db, reason="Document unreadable"
        )
        assert rejected.kyc_rejection_reason == "Document unreadable"

        resubmitted = await service.resubmit(profile.id, test_db)
        assert resubmitted.kyc_status == "submitted"
        assert resubmitted.kyc_rejection_reason is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["pending", "expired", "submitted"])
    async def test_illegal_transitions(
        self, service: KycService, test_db: Any, profile: Any, target: str
    ) -> None:
        contractor = await service.submit(profile.id, _individual_form(), test_db)

        with pytest.raises(ConflictError):
            await service.transition_status(contractor.id, target, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_contractor(self, service: KycService, test_db: Any) -> None:
        import uuid

        with pytest.raises(NotFoundError):
            await service.transition_status(uuid.uuid4(), "approved", test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_apply_connect_account(self, service: KycService, test_db: Any, profile: Any) -> None:
        """Test account.updated payloads update the contractor."""
        await service.submit(profile.id, _individual_form(), test_db)

        contractor = await service.apply_connect_account(
            _account(charges_enabled=True, payouts_enabled=True), test_db
        )

        assert contractor.stripe_connect_account_status == "active"
        assert contractor.stripe_connect_requirements_completed is True
        assert await service.apply_connect_account(_account(id="acct_other"), test_db) is None


class TestBusinessPeople:
    """Test suite for beneficial owners and representatives."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ownership_cannot_exceed_100(
        self, service: KycService, test_db: Any, profile: Any
    ) -> None:
        """Test owners are accepted up to a 100% total."""
        await service.submit(profile.id, _business_form(), test_db)

        await service.add_beneficial_owner(profile.id, _owner("60"), test_db)
        await service.add_beneficial_owner(profile.id, _owner("40", first_name="Oscar"), test_db)

        with pytest.raises(ValidationError):
            await service.add_beneficial_owner(profile.id, _owner("0.01", first_name="Extra"), test_db)

        owners = await service.list_beneficial_owners(profile.id, test_db)
        assert sorted(o.first_name for o in owners) == ["Olivia", "Oscar"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("percentage", ["0", "-5", "100.5"])
    async def test_percentage_bounds(
        self, service: KycService, test_db: Any, profile: Any, percentage: str
    ) -> None:
        await service.submit(profile.id, _business_form(), test_db)

        with pytest.raises(ValidationError):
            await service.add_beneficial_owner(profile.id, _owner(percentage), test_db)

    @pytest.mark.unit
    @pytest.mark.parametrize("percentage", ["0.001", "33.335"])
    def test_percentage_precision(self, percentage: str) -> None:
        """Test shares finer than the stored two decimals are rejected up front."""
        with pytest.raises(PydanticValidationError):
            _owner(percentage)
        assert _owner("12.50").ownership_percentage == Decimal("12.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ownership_sum_locks_contractor(
        self, service: KycService, test_db: Any, profile: Any, mocker: Any
    ) -> None:
        await service.submit(profile.id, _business_form(), test_db)
        execute = mocker.spy(test_db, "execute")

        await service.add_beneficial_owner(profile.id, _owner("25"), test_db)

        locked = [
            call.args[0]
            for call in execute.call_args_list
            if getattr(call.args[0], "_for_update_arg", None) is not None
        ]
        assert len(locked) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_individuals_have_no_owners(
        self, service: KycService, test_db: Any, profile: Any
    ) -> None:
        await service.submit(profile.id, _individual_form(), test_db)

        with pytest.raises(ValidationError):
            await service.add_beneficial_owner(profile.id, _owner("50"), test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_representative(self, service: KycService, test_db: Any, profile: Any) -> None:
        await service.submit(profile.id, _business_form(), test_db)
        representative = RepresentativeInput(
            first_name="Rita",
            last_name="Rep",
            date_of_birth=date(1975, 6, 30),
            street_address="2 Market St",
            city="Melbourne",
            postal_code="3000",
            country="AU",
            title="Director",
            is_authorized_signatory=True,
        )

        await service.add_representative(profile.id, representative, test_db)

        listed = await service.list_representatives(profile.id, test_db)
        assert len(listed) == 1
        assert listed[0].title == "Director"
        assert listed[0].is_authorized_signatory is True


class TestKycDocuments:
    """Test suite for document uploads and review."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_forwards_to_stripe(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        await service.submit(profile.id, _individual_form(), test_db)
        stripe_client.upload_file.return_value = SimpleNamespace(id="file_1")

        document = await service.upload_document(
            profile.id, "identity_document", "identity_document", "passport.png", "image/png", b"png-bytes", test_db
        )

        assert document.stripe_upload_status == "uploaded"
        assert document.stripe_file_id == "file_1"
        assert document.file_size == 9
        assert len(document.file_hash) == 64
        stripe_client.upload_file.assert_awaited_once_with("identity_document", "passport.png", b"png-bytes")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_failure_keeps_document(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        """Test a Stripe outage marks the upload failed instead of losing it."""
        await service.submit(profile.id, _individual_form(), test_db)
        stripe_client.upload_file.side_effect = StripeClientError("boom", StripeErrorType.PERMANENT)

        document = await service.upload_document(
            profile.id, "identity_document", "identity_document", "id.pdf", "application/pdf", b"%PDF", test_db
        )

        assert document.stripe_upload_status == "failed"
        assert document.stripe_upload_error == "boom"
        assert len(await service.list_documents(profile.id, test_db)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "document_type,purpose,mime_type,content",
        [
            ("selfie", "identity_document", "image/png", b"x"),
            ("identity_document", "fun", "image/png", b"x"),
            ("identity_document", "identity_document", "image/gif", b"x"),
            ("identity_document", "identity_document", "image/png", b""),
        ],
    )
    async def test_upload_validation(
        self,
        service: KycService,
        stripe_client: Any,
        test_db: Any,
        profile: Any,
        document_type: str,
        purpose: str,
        mime_type: str,
        content: bytes,
    ) -> None:
        await service.submit(profile.id, _individual_form(), test_db)

        with pytest.raises(ValidationError):
            await service.upload_document(
                profile.id, document_type, purpose, "file", mime_type, content, test_db
            )
        stripe_client.upload_file.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_size_limit(
        self, service: KycService, test_db: Any, profile: Any, mocker: Any
    ) -> None:
        await service.submit(profile.id, _individual_form(), test_db)
        mocker.patch.object(service.settings, "kyc_document_max_bytes", 4)

        with pytest.raises(ValidationError):
            await service.upload_document(
                profile.id, "identity_document", "identity_document", "a.png", "image/png", b"12345", test_db
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upload_needs_contractor(self, service: KycService, test_db: Any, profile: Any) -> None:
        with pytest.raises(NotFoundError):
            await service.upload_document(
                profile.id, "identity_document", "identity_document", "a.png", "image/png", b"1", test_db
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_counts_and_requirements(
        self, service: KycService, stripe_client: Any, test_db: Any, profile: Any
    ) -> None:
        """Test requirements complete once identity and address documents are verified."""
        await service.submit(profile.id, _individual_form(), test_db)
        stripe_client.upload_file.return_value = SimpleNamespace(id="file_1")
        identity = await service.upload_document(
            profile.id, "identity_document", "identity_document", "id.png", "image/png", b"1", test_db
        )
        address = await service.upload_document(
            profile.id, "address_verification", "additional_verification", "bill.pdf", "application/pdf", b"2", test_db
        )

        before = await service.get_kyc_status(profile.id, test_db)
        assert before["requirements_complete"] is False
        assert before["counts"]["documents"] == {"total": 2, "verified": 0}
        assert before["counts"]["addresses"] == {"total": 1, "verified": 0}

        await service.review_document(identity.id, "verified", test_db)
        reviewed = await service.review_document(address.id, "verified", test_db, notes="Utility bill")
        assert reviewed.verified_at is not None

        after = await service.get_kyc_status(profile.id, test_db)
        assert after["requirements_complete"] is True
        assert after["counts"]["documents"] == {"total": 2, "verified": 2}
        assert after["contractor"]["kyc_status"] == "submitted"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_before_applying(self, service: KycService, test_db: Any, profile: Any) -> None:
        status = await service.get_kyc_status(profile.id, test_db)
        assert status == {"contractor": None, "requirements_complete": False, "counts": {}}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_review_validation(self, service: KycService, test_db: Any) -> None:
        import uuid

        with pytest.raises(ValidationError):
            await service.review_document(uuid.uuid4(), "maybe", test_db)
        with pytest.raises(NotFoundError):
            await service.review_document(uuid.uuid4(), "verified", test_db)
