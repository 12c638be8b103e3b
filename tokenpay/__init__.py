"""Onboarding, KYC, token-package and subscription backend."""

__version__ = "0.1.0"
