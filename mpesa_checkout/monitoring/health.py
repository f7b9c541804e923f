"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Daraja OAuth reachability
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_checkout.config import get_settings
from mpesa_checkout.database.connection import get_session_factory
from mpesa_checkout.integrations.daraja_client import DarajaClient, DarajaError

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Daraja token acquisition check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[DarajaClient] = None,
    ) -> None:
        """Initialize health check service."""
        self.settings = get_settings()
        self._session_factory = session_factory
        self._gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
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

    async def check_daraja(self) -> Dict[str, Any]:
        """
        Check that Daraja issues an access token with the configured credentials.

        Raises:
            HealthCheckError: If no token could be obtained
        """
        gateway = self._gateway or DarajaClient(self.settings)
        try:
            await gateway.acquire_access_token()
        except DarajaError as e:
            logger.error("daraja_health_check_failed", error=str(e))
            raise HealthCheckError(f"Daraja health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "daraja",
            "message": "Daraja OAuth token acquired",
            "environment": self.settings.mpesa_environment,
            "sandbox": self.settings.is_sandbox,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("daraja", self.check_daraja)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

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
        """Readiness probe: all dependencies must be reachable."""
        return await self.check_all()
