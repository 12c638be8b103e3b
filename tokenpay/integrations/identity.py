"""
Identity-provider ID token verification.

Tokens are RS256 JWTs signed with keys published as x509 certificates at
`identity_certs_url`, keyed by `kid`. Certificates are cached for the
lifetime the provider advertises in `Cache-Control: max-age` and are
refetched early when a token names an unknown `kid`, at most once a minute.
"""
import asyncio
import re
import time
from typing import Any, Dict, Optional

import httpx
import jwt
import structlog
from cryptography import x509
from pydantic import BaseModel

from tokenpay.config import get_settings
from tokenpay.core.errors import AuthenticationError, ExternalServiceError

logger = structlog.get_logger(__name__)

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")
_DEFAULT_CERT_TTL = 3600
# Fresh certificates are refetched for an unknown kid at most this often
_MIN_REFETCH_SECONDS = 60


class IdentityClaims(BaseModel):
    """Claims of a verified ID token that the backend uses."""

    user_id: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    picture: Optional[str] = None
    auth_time: Optional[int] = None


class IdentityVerifier:
    """Verifies ID tokens against the provider's published certificates."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Initialize verifier.

        Args:
            http_client: Optional HTTP client (one is created per fetch if omitted)
        """
        self.settings = get_settings()
        self._http_client = http_client
        self._public_keys: Dict[str, Any] = {}
        self._keys_expire_at = 0.0
        self._fetched_at = 0.0
        self._refresh_lock = asyncio.Lock()

    async def _fetch_certificates(self) -> None:
        """
        Download and parse the signing certificates.

        Raises:
            ExternalServiceError: If the certificate endpoint cannot be read
        """
        try:
            if self._http_client is not None:
                response = await self._http_client.get(self.settings.identity_certs_url)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.get(self.settings.identity_certs_url)
            response.raise_for_status()
            certificates: Dict[str, str] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("identity_certificates_fetch_failed", error=str(e))
            raise ExternalServiceError("Unable to reach the identity provider") from e

        keys = {}
        for kid, pem in certificates.items():
            certificate = x509.load_pem_x509_certificate(pem.encode("utf-8"))
            keys[kid] = certificate.public_key()

        match = _MAX_AGE_RE.search(response.headers.get("cache-control", ""))
        ttl = int(match.group(1)) if match else _DEFAULT_CERT_TTL

        now = time.time()
        self._public_keys = keys
        self._keys_expire_at = now + ttl
        self._fetched_at = now
        logger.info("identity_certificates_refreshed", key_count=len(keys), ttl_seconds=ttl)

    async def ensure_certificates(self) -> int:
        """Refresh stale certificates; returns the number of cached keys."""
        if not self._public_keys or time.time() >= self._keys_expire_at:
            async with self._refresh_lock:
                if not self._public_keys or time.time() >= self._keys_expire_at:
                    await self._fetch_certificates()
        return len(self._public_keys)

    def _needs_refetch(self, kid: str) -> bool:
        now = time.time()
        if not self._public_keys or now >= self._keys_expire_at:
            return True
        return kid not in self._public_keys and now - self._fetched_at >= _MIN_REFETCH_SECONDS

    async def _get_public_key(self, kid: str) -> Any:
        if self._needs_refetch(kid):
            async with self._refresh_lock:
                # Another request may have refreshed while we waited
                if self._needs_refetch(kid):
                    await self._fetch_certificates()

        key = self._public_keys.get(kid)
        if key is None:
            logger.warning("identity_token_unknown_kid", kid=kid)
            raise AuthenticationError("Token signed with an unknown key")
        return key

    async def verify(self, token: str) -> IdentityClaims:
        """
        Verify an ID token and return its claims.

        Args:
            token: Raw JWT from the Authorization header

        Returns:
            IdentityClaims: Verified claims

        Raises:
            AuthenticationError: If the token is malformed, expired, or not
                issued for this project
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise AuthenticationError("Malformed identity token") from e

        if header.get("alg") != "RS256":
            raise AuthenticationError("Unsupported token algorithm")
        kid = header.get("kid")
        if not kid:
            raise AuthenticationError("Token has no key id")

        public_key = await self._get_public_key(kid)

        try:
            payload = jwt.decode(
                token,
                key=public_key,
                algorithms=["RS256"],
                audience=self.settings.identity_project_id,
                issuer=self.settings.identity_issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Identity token expired", error_code="token_expired") from e
        except jwt.PyJWTError as e:
            logger.warning("identity_token_rejected", error=str(e))
            raise AuthenticationError("Invalid identity token") from e

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject.strip():
            raise AuthenticationError("Identity token has no subject")

        return IdentityClaims(
            user_id=subject,
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", False)),
            name=payload.get("name"),
            picture=payload.get("picture"),
            auth_time=payload.get("auth_time"),
        )
