"""
Pytest configuration for the agentmgr tests.

Shared fakes for the pipeline's external collaborators live here so the
pipelines can be driven end to end without real processes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from agentmgr.errors import CommandError
from agentmgr.upgrade.installer import DependencyInstaller, InstallResult
from agentmgr.upgrade.supervisor import ServiceStatus, ServiceSupervisor


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Helpers
# =============================================================================


def write_tree(root: Path, files: dict[str, str | bytes]) -> Path:
    """Create ``files`` (relative path -> content) under ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return root


def read_tree(root: Path, excludes: tuple[str, ...] = (".agentmgr", ".backup")) -> dict[str, str]:
    """Return every file under ``root`` as relative path -> text."""
    result = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root)
        if rel.parts[0] in excludes or not path.is_file():
            continue
        result[rel.as_posix()] = path.read_text(encoding="utf-8")
    return result


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeSupervisor(ServiceSupervisor):
    """In-memory supervisor recording every call."""

    def __init__(self, services: dict[str, ServiceStatus] | None = None) -> None:
        self.services = dict(services or {})
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.start_as = ServiceStatus.RUNNING
        self.requires_entry = False

    def _maybe_fail(self, action: str, name: str) -> None:
        self.calls.append((action, name))
        if action in self.fail_on:
            raise CommandError(f"{action} {name} failed")

    async def status(self, name: str) -> ServiceStatus:
        return self.services.get(name, ServiceStatus.NOT_FOUND)

    async def stop(self, name: str) -> None:
        self._maybe_fail("stop", name)
        self.services[name] = ServiceStatus.STOPPED

    def can_start(self, entry: Path | None, cwd: Path) -> bool:
        return entry is not None or not self.requires_entry

    async def start(self, name: str, entry: Path | None, cwd: Path) -> None:
        self._maybe_fail("start", name)
        self.services[name] = self.start_as

    async def restart(self, name: str) -> None:
        self._maybe_fail("restart", name)
        self.services[name] = self.start_as


class FakeInstaller(DependencyInstaller):
    """Installer that records directories and never spawns processes."""

    def __init__(self, fail: bool = False, message: str = "npm ERR! boom") -> None:
        self.fail = fail
        self.message = message
        self.installed: list[Path] = []
        self.packages: list[Path] = []

    async def install(self, directory: Path) -> InstallResult:
        if not (directory / "package.json").is_file():
            return InstallResult(performed=False, success=True, message="no dependency manifest")
        self.installed.append(directory)
        if self.fail:
            return InstallResult(performed=True, success=False, message=self.message)
        return InstallResult(performed=True, success=True, message="npm")

    async def install_package(self, source: Path) -> InstallResult:
        self.packages.append(source)
        if self.fail:
            return InstallResult(performed=True, success=False, message=self.message)
        return InstallResult(performed=True, success=True, message="npm")


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()
