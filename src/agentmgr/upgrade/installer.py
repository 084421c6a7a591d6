"""
Runtime dependency installation for component trees.

The installer looks at the dependency manifest a tree ships and runs the
matching tool inside that directory:

- ``package.json``: ``npm install`` (``--omit=dev`` by default)
- ``requirements.txt``: ``uv pip install -r`` (``pip`` when uv is absent)

A tree without either manifest needs no installation.
"""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel

from agentmgr.errors import AgentMgrError
from agentmgr.logging import get_logger
from agentmgr.upgrade.commands import run_command

if TYPE_CHECKING:
    from agentmgr.config import InstallerConfig

logger = get_logger(__name__)


class InstallResult(BaseModel):
    """
    Result of one installation.

    Attributes:
        performed: Whether an install command was run.
        success: Whether it succeeded (True when nothing had to be done).
        message: Tool used, or the failure output.
    """

    performed: bool
    success: bool
    message: str | None = None


class DependencyInstaller(ABC):
    """Abstract dependency installer."""

    @abstractmethod
    async def install(self, directory: Path) -> InstallResult:
        """Install the runtime dependencies declared in ``directory``."""

    @abstractmethod
    async def install_package(self, source: Path) -> InstallResult:
        """Install the management tool itself from an extracted tree."""


class ManifestInstaller(DependencyInstaller):
    """Picks npm or pip by the manifest present in the directory."""

    def __init__(
        self,
        timeout: float = 300.0,
        npm_omit_dev: bool = True,
        prefer_uv: bool = True,
    ) -> None:
        self.timeout = timeout
        self.npm_omit_dev = npm_omit_dev
        self._use_uv = prefer_uv and shutil.which("uv") is not None

    @classmethod
    def from_config(cls, config: InstallerConfig) -> ManifestInstaller:
        return cls(
            timeout=config.timeout_seconds,
            npm_omit_dev=config.npm_omit_dev,
            prefer_uv=config.prefer_uv,
        )

    def _pip_command(self) -> list[str]:
        """Get the pip command (uv pip or pip)."""
        if self._use_uv:
            return ["uv", "pip"]
        return ["pip"]

    def command_for(self, directory: Path) -> list[str] | None:
        """Return the install command for ``directory``, or None."""
        if (directory / "package.json").is_file():
            cmd = ["npm", "install"]
            if self.npm_omit_dev:
                cmd.append("--omit=dev")
            return cmd
        if (directory / "requirements.txt").is_file():
            return [*self._pip_command(), "install", "-r", "requirements.txt"]
        return None

    async def _run(self, args: list[str], cwd: Path | None) -> InstallResult:
        try:
            result = await run_command(*args, timeout=self.timeout, cwd=cwd)
        except AgentMgrError as e:
            return InstallResult(performed=True, success=False, message=e.message)

        if not result.ok:
            logger.error(
                "Dependency installation failed",
                extra={"command": " ".join(args), "returncode": result.returncode},
            )
            return InstallResult(performed=True, success=False, message=result.output_tail())

        return InstallResult(performed=True, success=True, message=args[0])

    async def install(self, directory: Path) -> InstallResult:
        args = self.command_for(directory)
        if args is None:
            return InstallResult(performed=False, success=True, message="no dependency manifest")

        logger.info(
            "Installing dependencies",
            extra={"directory": str(directory), "command": " ".join(args)},
        )
        return await self._run(args, directory)

    async def install_package(self, source: Path) -> InstallResult:
        if (source / "package.json").is_file():
            args = ["npm", "install", "-g", str(source)]
        elif (source / "pyproject.toml").is_file() or (source / "setup.py").is_file():
            args = [*self._pip_command(), "install", str(source)]
        else:
            return InstallResult(performed=False, success=True, message="no package manifest")

        logger.info(
            "Installing package",
            extra={"source": str(source), "command": " ".join(args)},
        )
        return await self._run(args, None)
