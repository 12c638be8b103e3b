"""Database package for tokenpay."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Contractor,
    ContractorAddress,
    ContractorBankAccount,
    ContractorBeneficialOwner,
    ContractorDocumentUpload,
    ContractorRepresentative,
    KycFormDraft,
    Package,
    PackagePrice,
    PaymentMethod,
    Profile,
    Purchase,
    Subscription,
    SubscriptionPlan,
    SubscriptionPrice,
    TokenTransaction,
)

__all__ = [
    "Base",
    "Contractor",
    "ContractorAddress",
    "ContractorBankAccount",
    "ContractorBeneficialOwner",
    "ContractorDocumentUpload",
    "ContractorRepresentative",
    "KycFormDraft",
    "Package",
    "PackagePrice",
    "PaymentMethod",
    "Profile",
    "Purchase",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionPrice",
    "TokenTransaction",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
