"""
Process supervisor integration.

The pipeline only needs four operations from a supervisor: query status,
stop, start and restart a service by logical name. "Not registered" and
"not running" are ordinary states, so a missing supervisor binary is
reported as NOT_FOUND rather than raised.

Two implementations are provided: PM2 (``pm2 jlist``) and systemd
(``systemctl``).
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from agentmgr.errors import InvalidArgumentError, UnavailableError
from agentmgr.logging import get_logger
from agentmgr.upgrade.commands import run_command

if TYPE_CHECKING:
    from agentmgr.config import SupervisorConfig

logger = get_logger(__name__)

PM2_ECOSYSTEM_FILE = "ecosystem.config.cjs"


class ServiceStatus(str, Enum):
    """State of a supervised service."""

    NOT_FOUND = "not_found"
    STOPPED = "stopped"
    RUNNING = "running"


class ServiceSupervisor(ABC):
    """Abstract process supervisor."""

    @abstractmethod
    async def status(self, name: str) -> ServiceStatus:
        """Return the current state of ``name``."""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """
        Stop ``name``.

        Raises:
            CommandError: If the supervisor reports a failure.
        """

    def can_start(self, entry: Path | None, cwd: Path) -> bool:
        """Whether a service with ``entry`` in ``cwd`` can be created at all."""
        return True

    @abstractmethod
    async def start(self, name: str, entry: Path | None, cwd: Path) -> None:
        """
        Register and start ``name``.

        Args:
            name: Service name.
            entry: Entry point relative to ``cwd`` when the supervisor needs
                one to create the service.
            cwd: Component directory.

        Raises:
            CommandError: If the supervisor reports a failure.
        """

    @abstractmethod
    async def restart(self, name: str) -> None:
        """
        Restart ``name``.

        Raises:
            CommandError: If the supervisor reports a failure.
        """


class Pm2Supervisor(ServiceSupervisor):
    """Supervisor backed by the PM2 process manager."""

    def __init__(self, executable: str = "pm2", timeout: float = 30.0) -> None:
        self.executable = executable
        self.timeout = timeout

    async def _processes(self) -> list[dict] | None:
        try:
            result = await run_command(self.executable, "jlist", timeout=self.timeout)
        except UnavailableError as e:
            logger.debug("pm2 unavailable", extra={"error": e.message})
            return None
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            logger.warning("Unparseable pm2 jlist output")
            return None
        return data if isinstance(data, list) else None

    async def status(self, name: str) -> ServiceStatus:
        processes = await self._processes()
        if processes is None:
            return ServiceStatus.NOT_FOUND

        for proc in processes:
            if proc.get("name") == name:
                state = (proc.get("pm2_env") or {}).get("status")
                return ServiceStatus.RUNNING if state == "online" else ServiceStatus.STOPPED
        return ServiceStatus.NOT_FOUND

    async def stop(self, name: str) -> None:
        logger.info("Stopping service", extra={"service": name, "supervisor": "pm2"})
        (await run_command(self.executable, "stop", name, timeout=self.timeout)).check()

    def can_start(self, entry: Path | None, cwd: Path) -> bool:
        return entry is not None or (cwd / PM2_ECOSYSTEM_FILE).is_file()

    async def start(self, name: str, entry: Path | None, cwd: Path) -> None:
        ecosystem = cwd / PM2_ECOSYSTEM_FILE
        if ecosystem.is_file():
            args = [self.executable, "start", str(ecosystem)]
        elif entry is not None:
            args = [self.executable, "start", str(cwd / entry), "--name", name]
        else:
            raise InvalidArgumentError(
                f"No entry point for service {name}",
                details={"service": name, "cwd": str(cwd)},
            )

        logger.info("Starting service", extra={"service": name, "supervisor": "pm2"})
        (await run_command(*args, timeout=self.timeout, cwd=cwd)).check()
        (await run_command(self.executable, "save", timeout=self.timeout)).check()

    async def restart(self, name: str) -> None:
        logger.info("Restarting service", extra={"service": name, "supervisor": "pm2"})
        (await run_command(self.executable, "restart", name, timeout=self.timeout)).check()


class SystemdSupervisor(ServiceSupervisor):
    """Supervisor backed by systemd units."""

    def __init__(self, executable: str = "systemctl", timeout: float = 30.0) -> None:
        self.executable = executable
        self.timeout = timeout

    async def status(self, name: str) -> ServiceStatus:
        try:
            result = await run_command(
                self.executable,
                "show",
                name,
                "--property=LoadState,ActiveState",
                timeout=self.timeout,
            )
        except UnavailableError as e:
            logger.debug("systemctl unavailable", extra={"error": e.message})
            return ServiceStatus.NOT_FOUND

        props = {}
        for line in result.stdout.strip().split("\n"):
            if "=" in line:
                key, value = line.split("=", 1)
                props[key] = value

        if not result.ok or props.get("LoadState", "not-found") == "not-found":
            return ServiceStatus.NOT_FOUND
        if props.get("ActiveState") == "active":
            return ServiceStatus.RUNNING
        return ServiceStatus.STOPPED

    async def stop(self, name: str) -> None:
        logger.info("Stopping service", extra={"service": name, "supervisor": "systemd"})
        (await run_command(self.executable, "stop", name, timeout=self.timeout)).check()

    async def start(self, name: str, entry: Path | None, cwd: Path) -> None:
        # Units are installed out of band; the entry point is not used.
        logger.info("Starting service", extra={"service": name, "supervisor": "systemd"})
        (await run_command(self.executable, "start", name, timeout=self.timeout)).check()

    async def restart(self, name: str) -> None:
        logger.info("Restarting service", extra={"service": name, "supervisor": "systemd"})
        (await run_command(self.executable, "restart", name, timeout=self.timeout)).check()


def create_supervisor(config: SupervisorConfig) -> ServiceSupervisor:
    """Build the supervisor selected by ``config.backend``."""
    if config.backend == "pm2":
        return Pm2Supervisor(timeout=config.command_timeout_seconds)
    if config.backend == "systemd":
        return SystemdSupervisor(timeout=config.command_timeout_seconds)
    raise InvalidArgumentError(
        f"Unknown supervisor backend: {config.backend}",
        details={"backend": config.backend},
    )
