"""
Reverse-proxy route configuration for components.

Components declare ``http_routes`` in their descriptor. The Caddy
configurator keeps one marker block per component inside the site block of
the Caddyfile::

    # BEGIN agentmgr-component:web-console
    handle /console/* {
        uri strip_prefix /console
        reverse_proxy localhost:3456
    }
    # END agentmgr-component:web-console

Every change is validated before it replaces the live file, and the
previous file is restored if the reload fails.
"""

from __future__ import annotations

import contextlib
import os
import re
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from agentmgr.errors import CommandError, FailedPreconditionError
from agentmgr.logging import get_logger
from agentmgr.upgrade.commands import run_command
from agentmgr.upgrade.markers import collapse_blank_lines, split_segments, strip_block

if TYPE_CHECKING:
    from agentmgr.config import RoutesConfig
    from agentmgr.upgrade.descriptor import HttpRoute

logger = get_logger(__name__)

BEGIN_PATTERN = re.compile(r"#\s*BEGIN agentmgr-component:(\S+)")
END_MARKER = "# END agentmgr-component:{id}"

ROUTE_ADDED = "added"
ROUTE_UPDATED = "updated"
ROUTE_REMOVED = "removed"
ROUTE_UNCHANGED = "unchanged"
ROUTE_SKIPPED = "skipped"


class RouteConfigurator(ABC):
    """Abstract reverse-proxy configurator."""

    @abstractmethod
    async def apply(self, component: str, routes: Sequence[HttpRoute]) -> str:
        """
        Install ``routes`` for ``component``, replacing any previous block.

        Returns:
            One of ``added``, ``updated``, ``removed``, ``unchanged``,
            ``skipped``.

        Raises:
            AgentMgrError: If the configuration could not be deployed.
        """

    @abstractmethod
    async def remove(self, component: str) -> str:
        """Remove the block of ``component``; returns ``removed`` or ``skipped``."""


def render_routes(routes: Sequence[HttpRoute], indent: str = "    ") -> list[str]:
    """Render Caddy ``handle`` blocks for reverse-proxy routes."""
    lines: list[str] = []
    for route in routes:
        if route.type != "reverse_proxy":
            logger.warning(
                "Unsupported route type ignored",
                extra={"path": route.path, "type": route.type},
            )
            continue
        lines.append(f"{indent}handle {route.path} {{")
        if route.strip_prefix:
            lines.append(f"{indent}    uri strip_prefix {route.strip_prefix}")
        lines.append(f"{indent}    reverse_proxy {route.target}")
        lines.append(f"{indent}}}")
    return lines


class CaddyRouteConfigurator(RouteConfigurator):
    """Maintains component blocks in a Caddyfile."""

    def __init__(
        self,
        caddyfile: Path,
        validate_command: Sequence[str] = (),
        reload_command: Sequence[str] = (),
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize the configurator.

        Args:
            caddyfile: Live Caddyfile.
            validate_command: Run against a candidate file before deploying;
                ``{path}`` is replaced with the candidate path. Empty skips.
            reload_command: Run after deploying; ``{path}`` is replaced with
                the Caddyfile path. Empty skips.
            timeout: Timeout for each command.
        """
        self.caddyfile = Path(caddyfile)
        self.validate_command = list(validate_command)
        self.reload_command = list(reload_command)
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: RoutesConfig) -> CaddyRouteConfigurator:
        return cls(
            caddyfile=Path(config.caddyfile),
            validate_command=config.validate_command,
            reload_command=config.reload_command,
        )

    def _read(self) -> str:
        try:
            return self.caddyfile.read_text(encoding="utf-8")
        except OSError as e:
            raise FailedPreconditionError(
                f"Cannot read Caddyfile: {e}",
                details={"path": str(self.caddyfile)},
            ) from e

    async def _run(self, template: Sequence[str], path: Path) -> None:
        if not template:
            return
        args = [part.replace("{path}", str(path)) for part in template]
        (await run_command(*args, timeout=self.timeout)).check()

    def _write(self, content: str) -> None:
        fd, temp_name = tempfile.mkstemp(
            dir=self.caddyfile.parent, prefix=".Caddyfile.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_name, self.caddyfile)
        except OSError as e:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(temp_name)
            raise FailedPreconditionError(
                f"Cannot write Caddyfile: {e}",
                details={"path": str(self.caddyfile)},
            ) from e

    async def _deploy(self, content: str, original: str) -> None:
        fd, candidate = tempfile.mkstemp(
            dir=self.caddyfile.parent, prefix=".Caddyfile.", suffix=".candidate"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            try:
                await self._run(self.validate_command, Path(candidate))
            except CommandError as e:
                raise CommandError(
                    f"Caddy validation failed: {e.message}", details=e.details
                ) from e
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(candidate)

        self._write(content)
        try:
            await self._run(self.reload_command, self.caddyfile)
        except CommandError as e:
            logger.error(
                "Caddy reload failed; restoring previous Caddyfile",
                extra={"path": str(self.caddyfile), "error": e.message},
            )
            self._write(original)
            try:
                await self._run(self.reload_command, self.caddyfile)
            except CommandError as restore_error:
                logger.error(
                    "Reload of restored Caddyfile failed",
                    extra={"error": restore_error.message},
                )
            raise CommandError(
                f"Caddy reload failed (previous file restored): {e.message}",
                details=e.details,
            ) from e

    async def apply(self, component: str, routes: Sequence[HttpRoute]) -> str:
        if not routes:
            return await self.remove(component)

        original = self._read()
        content, existed = strip_block(original, component, BEGIN_PATTERN, END_MARKER)

        last_brace = content.rfind("}")
        if last_brace == -1:
            raise FailedPreconditionError(
                "Cannot find site block in Caddyfile",
                details={"path": str(self.caddyfile)},
            )

        block = "\n".join(
            [
                f"    # BEGIN agentmgr-component:{component}",
                *render_routes(routes),
                f"    {END_MARKER.format(id=component)}",
            ]
        )
        before = content[:last_brace].rstrip()
        after = content[last_brace:]
        new_content = f"{before}\n\n{block}\n{after}"

        if new_content == original:
            return ROUTE_UNCHANGED

        await self._deploy(new_content, original)
        action = ROUTE_UPDATED if existed else ROUTE_ADDED
        logger.info("Routes applied", extra={"component": component, "action": action})
        return action

    async def remove(self, component: str) -> str:
        if not self.caddyfile.is_file():
            return ROUTE_SKIPPED

        original = self._read()
        content, existed = strip_block(original, component, BEGIN_PATTERN, END_MARKER)
        if not existed:
            return ROUTE_SKIPPED

        await self._deploy(collapse_blank_lines(content), original)
        logger.info("Routes removed", extra={"component": component})
        return ROUTE_REMOVED

    def components(self) -> list[str]:
        """Return the components that currently have a block."""
        if not self.caddyfile.is_file():
            return []
        segments = split_segments(self._read(), BEGIN_PATTERN, END_MARKER)
        return [s.block_id for s in segments if s.block_id]
