"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when the distributed ledger is in use)
- Circuit breaker states
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from billing_sync.core.idempotency import IdempotencyLedger, RedisIdempotencyLedger

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Circuit breaker check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: IdempotencyLedger,
        breakers: CircuitBreakerRegistry,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.breakers = breakers

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Optional[Dict[str, Any]]:
        """
        Check Redis connectivity.

        Returns:
            None when the in-memory ledger is configured

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not isinstance(self.ledger, RedisIdempotencyLedger):
            return None

        try:
            await self.ledger.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

    def check_circuit_breakers(self) -> Dict[str, Any]:
        """Report breaker states; any open breaker marks the service degraded."""
        snapshot = self.breakers.snapshot()
        open_breakers = [
            name for name, state in snapshot.items() if state["state"] == CircuitState.OPEN.value
        ]
        return {
            "status": "degraded" if open_breakers else "healthy",
            "service": "circuit_breakers",
            "open": open_breakers,
            "breakers": snapshot,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            redis_status = await self.check_redis()
            if redis_status is not None:
                checks["redis"] = redis_status
        except HealthCheckError as e:
            checks["redis"] = {
                "status": "unhealthy",
                "service": "redis",
                "error": str(e),
            }
            all_healthy = False

        checks["circuit_breakers"] = self.check_circuit_breakers()

        if not all_healthy:
            status = "unhealthy"
        elif checks["circuit_breakers"]["status"] == "degraded":
            status = "degraded"
        else:
            status = "healthy"

        return {"status": status, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        An open breaker does not make the service unready; webhooks are
        still accepted.
        """
        return await self.check_all()
