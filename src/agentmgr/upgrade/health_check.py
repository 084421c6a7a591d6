"""
Post-restart verification.

After a service is (re)started the pipeline polls the supervisor a bounded
number of times with a short fixed delay. Components may additionally
declare a ``health_url``, which must answer HTTP 200.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from agentmgr.errors import FailedPreconditionError
from agentmgr.logging import get_logger
from agentmgr.upgrade.supervisor import ServiceStatus, ServiceSupervisor

logger = get_logger(__name__)


class HealthCheckResult:
    """Result of a health check."""

    def __init__(
        self,
        name: str,
        passed: bool,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the health check result.

        Args:
            name: Name of the health check.
            passed: Whether the check passed.
            message: Optional message describing the result.
            details: Optional additional details.
        """
        self.name = name
        self.passed = passed
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


class HealthChecker:
    """
    Verifies services after an upgrade.

    Attributes:
        supervisor: Supervisor queried for service state.
        retries: Number of status polls per service.
        delay: Seconds between polls.
        http_timeout: Timeout of the HTTP probe.
    """

    def __init__(
        self,
        supervisor: ServiceSupervisor,
        retries: int = 5,
        delay: float = 0.5,
        http_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the health checker.

        Args:
            supervisor: Supervisor queried for service state.
            retries: Number of status polls per service.
            delay: Seconds between polls.
            http_timeout: Timeout of the HTTP probe in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.supervisor = supervisor
        self.retries = retries
        self.delay = delay
        self.http_timeout = http_timeout
        self._transport = transport

    async def check_service_running(self, service_name: str) -> HealthCheckResult:
        """Poll the supervisor until ``service_name`` is running."""
        status = ServiceStatus.NOT_FOUND
        for attempt in range(self.retries):
            status = await self.supervisor.status(service_name)
            if status == ServiceStatus.RUNNING:
                logger.debug("Service is running", extra={"service": service_name})
                return HealthCheckResult(
                    name=f"service_{service_name}",
                    passed=True,
                    message=f"Service {service_name} is running",
                    details={"attempts": attempt + 1},
                )
            if attempt < self.retries - 1:
                await asyncio.sleep(self.delay)

        logger.warning(
            "Service did not reach running state",
            extra={"service": service_name, "status": status.value},
        )
        return HealthCheckResult(
            name=f"service_{service_name}",
            passed=False,
            message=f"Service {service_name} is {status.value} after {self.retries} checks",
            details={"status": status.value},
        )

    async def check_http_health(self, url: str) -> HealthCheckResult:
        """Issue ``GET url`` and require status 200."""
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(url, timeout=self.http_timeout)
        except httpx.HTTPError as e:
            return HealthCheckResult(
                name="http_health",
                passed=False,
                message=f"HTTP health check failed: {e}",
                details={"url": url},
            )

        if response.status_code == 200:
            return HealthCheckResult(
                name="http_health",
                passed=True,
                message=f"HTTP health check passed at {url}",
                details={"status_code": response.status_code},
            )
        return HealthCheckResult(
            name="http_health",
            passed=False,
            message=f"HTTP health check returned {response.status_code}",
            details={"status_code": response.status_code, "url": url},
        )

    async def run_health_check(
        self,
        service_names: list[str],
        health_url: str | None = None,
    ) -> list[HealthCheckResult]:
        """
        Verify every service and the optional HTTP endpoint.

        Returns:
            Results of all checks when they pass.

        Raises:
            FailedPreconditionError: If any check fails.
        """
        results = [await self.check_service_running(name) for name in service_names]
        if health_url:
            results.append(await self.check_http_health(health_url))

        failed = [r for r in results if not r.passed]
        if failed:
            messages = [r.message or r.name for r in failed]
            raise FailedPreconditionError(
                f"Health checks failed: {'; '.join(messages)}",
                details={
                    "failed_checks": [r.to_dict() for r in failed],
                    "all_results": [r.to_dict() for r in results],
                },
            )

        logger.info("Health checks passed", extra={"services": service_names})
        return results
