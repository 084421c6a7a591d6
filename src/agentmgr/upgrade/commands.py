"""
Subprocess helpers shared by supervisors, installers, hooks and routes.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from agentmgr.errors import CommandError, UnavailableError
from agentmgr.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and decoded output of a finished command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def output_tail(self, limit: int = 2000) -> str:
        """Return the most useful output for an error message."""
        text = (self.stderr.strip() or self.stdout.strip())
        return text[-limit:]

    def check(self) -> CommandResult:
        """
        Return self, or raise if the command failed.

        Raises:
            CommandError: If the exit status is non-zero. The message is the
                command's own stderr (or stdout) so it reaches the upgrade
                result verbatim.
        """
        if not self.ok:
            raise CommandError(
                self.output_tail() or f"{self.args[0]} exited with status {self.returncode}",
                details={"command": " ".join(self.args), "returncode": self.returncode},
            )
        return self


async def run_command(
    *args: str,
    timeout: float = 300.0,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """
    Run a subprocess command asynchronously.

    Args:
        *args: Command and arguments.
        timeout: Command timeout in seconds. The process is killed when it
            expires.
        cwd: Working directory.
        env: Variables added to the current environment.

    Returns:
        CommandResult with the exit status and output.

    Raises:
        UnavailableError: If the command times out or cannot be executed.
    """
    full_env = None
    if env:
        full_env = {**os.environ, **env}

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=full_env,
        )
    except OSError as e:
        raise UnavailableError(
            f"Failed to execute command: {e}",
            details={"command": " ".join(args), "error": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise UnavailableError(
            f"Command timed out after {timeout}s",
            details={"command": " ".join(args)},
        ) from e

    result = CommandResult(
        args=tuple(args),
        returncode=process.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug(
        "Command finished",
        extra={"command": " ".join(args), "returncode": result.returncode},
    )
    return result
