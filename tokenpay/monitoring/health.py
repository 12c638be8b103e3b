"""
Health checks for liveness/readiness probes.

Readiness needs the database and Redis. Stripe and the identity provider
are reported by the full check but do not take the instance out of
rotation: their outages surface per request as 502s.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import text

from tokenpay.config import get_settings
from tokenpay.database.connection import get_session_factory
from tokenpay.integrations.identity import IdentityVerifier

logger = structlog.get_logger(__name__)

Probe = Callable[[], Awaitable[Dict[str, Any]]]


class HealthCheck:
    """Probes the database, Redis, Stripe and the identity provider."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        identity: Optional[IdentityVerifier] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            redis_client: Shared Redis client; a short-lived one is opened per check if omitted
            identity: Verifier whose certificate cache is probed
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self.identity = identity

    async def check_database(self) -> Dict[str, Any]:
        session_factory = get_session_factory()
        async with session_factory() as db:
            await db.scalar(text("SELECT 1"))
        return {"message": "Database connection successful"}

    async def check_redis(self) -> Dict[str, Any]:
        if self.redis_client is not None:
            await self.redis_client.ping()
        else:
            client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            try:
                await client.ping()
            finally:
                await client.aclose()
        return {"message": "Redis connection successful"}

    async def check_stripe(self) -> Dict[str, Any]:
        stripe.api_key = self.settings.stripe_secret_key
        # Smallest authenticated call available
        await asyncio.to_thread(stripe.Balance.retrieve)
        return {"message": "Stripe API connection successful", "test_mode": self.settings.is_test_mode}

    async def check_identity(self) -> Dict[str, Any]:
        if self.identity is None:
            return {"message": "Identity verifier not configured"}
        key_count = await self.identity.ensure_certificates()
        return {"message": "Identity certificates available", "key_count": key_count}

    async def _probe(self, name: str, probe: Probe) -> Tuple[bool, Dict[str, Any]]:
        """Run one probe, timing it and turning failures into an unhealthy entry."""
        started = time.perf_counter()
        try:
            result = await probe()
        except Exception as e:
            logger.error("health_check_failed", service=name, error=str(e))
            return False, {
                "status": "unhealthy",
                "service": name,
                "error": f"{name} health check failed: {e}",
            }
        result.update(
            status="healthy",
            service=name,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return True, result

    async def _run(self, probes: Dict[str, Probe]) -> Dict[str, Any]:
        outcomes = await asyncio.gather(
            *(self._probe(name, probe) for name, probe in probes.items())
        )
        checks = {name: result for name, (_, result) in zip(probes, outcomes)}
        healthy = all(ok for ok, _ in outcomes)
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def check_all(self) -> Dict[str, Any]:
        """Every dependency, run concurrently."""
        return await self._run(
            {
                "database": self.check_database,
                "redis": self.check_redis,
                "stripe": self.check_stripe,
                "identity": self.check_identity,
            }
        )

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. No dependency checks."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: the database and Redis answer."""
        return await self._run({"database": self.check_database, "redis": self.check_redis})
