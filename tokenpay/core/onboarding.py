"""
Profiles and onboarding.

A profile is created the first time a verified identity reaches the API
and stays "onboarding required" until it has both a full name and a
username.
"""
import re
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenpay.core.errors import ConflictError, NotFoundError, ValidationError
from tokenpay.database.models import Profile
from tokenpay.integrations.identity import IdentityClaims

logger = structlog.get_logger(__name__)

USERNAME_RE = re.compile(r"^[a-z0-9_]{3,30}$")
FULL_NAME_MAX_LENGTH = 255


def normalize_username(username: str) -> str:
    """
    Lowercase and validate a username.

    Raises:
        ValidationError: If it is not 3-30 characters of a-z, 0-9 and underscore
    """
    candidate = (username or "").strip().lower()
    if not USERNAME_RE.match(candidate):
        raise ValidationError(
            "Username must be 3-30 characters: letters, numbers and underscores",
            field="username",
        )
    return candidate


def onboarding_required(profile: Optional[Profile]) -> bool:
    """True until a profile with a non-blank full name and username exists."""
    if profile is None:
        return True
    return not (profile.full_name or "").strip() or not (profile.username or "").strip()


def serialize_profile(profile: Profile) -> Dict[str, Any]:
    """Convert a profile to a response dict."""
    return {
        "id": profile.id,
        "email": profile.email,
        "username": profile.username,
        "full_name": profile.full_name,
        "avatar_url": profile.avatar_url,
        "onboarding_complete": profile.onboarding_complete,
        "onboarding_required": onboarding_required(profile),
        "is_contractor": profile.is_contractor,
        "stripe_customer_id": profile.stripe_customer_id,
        "subscription_id": profile.subscription_id,
        "subscription_status": profile.subscription_status,
        "subscription_period_end": profile.subscription_period_end,
        "total_tokens": profile.total_tokens,
        "tokens_remaining": profile.tokens_remaining,
        "tokens_used": profile.tokens_used,
        "total_purchases": profile.total_purchases,
        "total_spent_cents": profile.total_spent_cents,
        "last_purchase_at": profile.last_purchase_at.isoformat() if profile.last_purchase_at else None,
        "created_at": profile.created_at.isoformat(),
        "updated_at": profile.updated_at.isoformat(),
    }


class OnboardingService:
    """Profile lifecycle and onboarding rules."""

    async def get_profile(self, user_id: str, db: AsyncSession) -> Optional[Profile]:
        """Profile by id, re-read from the database."""
        result = await db.execute(
            select(Profile)
            .where(Profile.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_profile(self, user_id: str, db: AsyncSession) -> Profile:
        """
        Profile by id.

        Raises:
            NotFoundError: If the profile does not exist
        """
        profile = await self.get_profile(user_id, db)
        if profile is None:
            raise NotFoundError("Profile not found", user_id=user_id)
        return profile

    async def ensure_profile(self, claims: IdentityClaims, db: AsyncSession) -> Profile:
        """
        Get the caller's profile, creating it on first sight.

        New profiles are seeded with the name, email and picture the
        identity provider reported.

        Args:
            claims: Verified identity claims
            db: Database session

        Returns:
            Profile: Existing or newly created profile
        """
        profile = await self.get_profile(claims.user_id, db)
        if profile is not None:
            if claims.email and profile.email != claims.email:
                profile.email = claims.email
                await db.commit()
            return profile

        profile = Profile(
            id=claims.user_id,
            email=claims.email,
            full_name=(claims.name or "").strip()[:FULL_NAME_MAX_LENGTH] or None,
            avatar_url=claims.picture,
        )
        db.add(profile)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent first request created it
            await db.rollback()
            return await self.require_profile(claims.user_id, db)

        logger.info("profile_created", user_id=claims.user_id)
        return profile

    async def check_username_availability(
        self,
        username: str,
        db: AsyncSession,
        exclude_user_id: Optional[str] = None,
    ) -> bool:
        """
        Whether a username is free, ignoring case.

        Args:
            username: Candidate username (validated first)
            db: Database session
            exclude_user_id: The caller, whose own username counts as free

        Returns:
            bool: True if nobody else holds the username

        Raises:
            ValidationError: If the username is malformed
        """
        candidate = normalize_username(username)
        stmt = select(Profile.id).where(func.lower(Profile.username) == candidate)
        if exclude_user_id is not None:
            stmt = stmt.where(Profile.id != exclude_user_id)
        taken = await db.scalar(stmt.limit(1))
        return taken is None

    async def update_profile(
        self,
        user_id: str,
        db: AsyncSession,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        """
        Change profile fields; omitted fields stay as they are.

        Raises:
            NotFoundError: If the profile does not exist
            ValidationError: If a field is malformed
            ConflictError: If the username is taken
        """
        profile = await self.require_profile(user_id, db)

        if username is not None:
            candidate = normalize_username(username)
            if not await self.check_username_availability(candidate, db, exclude_user_id=user_id):
                raise ConflictError("Username is already taken", field="username")
            profile.username = candidate

        if full_name is not None:
            cleaned = full_name.strip()
            if not cleaned:
                raise ValidationError("Full name must not be empty", field="full_name")
            if len(cleaned) > FULL_NAME_MAX_LENGTH:
                raise ValidationError("Full name is too long", field="full_name")
            profile.full_name = cleaned

        if avatar_url is not None:
            profile.avatar_url = avatar_url.strip() or None

        profile.onboarding_complete = not onboarding_required(profile)
        await self._commit_profile(db, user_id)
        logger.info("profile_updated", user_id=user_id)
        return profile

    async def complete_onboarding(
        self, user_id: str, username: str, full_name: str, db: AsyncSession
    ) -> Profile:
        """
        Set username and full name and mark onboarding complete.

        Raises:
            ValidationError: If either field is missing or malformed
            ConflictError: If the username is taken
        """
        if not (full_name or "").strip():
            raise ValidationError("Full name is required", field="full_name")
        if not (username or "").strip():
            raise ValidationError("Username is required", field="username")

        profile = await self.update_profile(user_id, db, username=username, full_name=full_name)
        logger.info("onboarding_completed", user_id=user_id)
        return profile

    async def get_onboarding_status(self, user_id: str, db: AsyncSession) -> Dict[str, Any]:
        """Whether the caller still has to onboard, and what is missing."""
        profile = await self.get_profile(user_id, db)
        missing = []
        if profile is None or not (profile.full_name or "").strip():
            missing.append("full_name")
        if profile is None or not (profile.username or "").strip():
            missing.append("username")
        return {
            "onboarding_required": onboarding_required(profile),
            "missing_fields": missing,
            "profile_exists": profile is not None,
        }

    @staticmethod
    async def _commit_profile(db: AsyncSession, user_id: str) -> None:
        try:
            await db.commit()
        except IntegrityError as e:
            # Unique username index lost a race
            await db.rollback()
            logger.warning("profile_update_conflict", user_id=user_id, error=str(e.orig))
            raise ConflictError("Username is already taken", field="username") from e
