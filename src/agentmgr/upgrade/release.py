"""
Incoming releases.

The download collaborator hands the pipeline an extracted tree and the
version it resolved. This module models that hand-off and offers the small
helpers callers use around it (changelog excerpt, temp cleanup).
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field

from agentmgr.errors import FailedPreconditionError
from agentmgr.upgrade.descriptor import read_version
from agentmgr.upgrade.operations import cleanup_temp

CHANGELOG_FILE = "CHANGELOG.md"

_VERSION_HEADER = re.compile(r"^##\s+\[?v?(\d+\.\d+[^\]\s]*)\]?")


class IncomingRelease(BaseModel):
    """
    An extracted incoming version ready to be applied.

    Attributes:
        temp_dir: Directory holding the extracted tree.
        new_version: Version resolved by the registry, if known.
    """

    temp_dir: Path = Field(..., description="Extracted incoming tree")
    new_version: str | None = Field(
        default=None,
        description="Version resolved by the caller",
    )
    def validate_tree(self) -> None:
        """
        Raises:
            FailedPreconditionError: If the tree is not a directory.
        """
        if not self.temp_dir.is_dir():
            raise FailedPreconditionError(
                f"Temp directory not available: {self.temp_dir}",
                details={"temp_dir": str(self.temp_dir)},
            )

    def version(self) -> str | None:
        """Return ``new_version``, or the version declared inside the tree."""
        return self.new_version or read_version(self.temp_dir)

    def changelog(self, from_version: str | None = None) -> str | None:
        """Changelog entries newer than ``from_version``."""
        return filter_changelog(read_changelog(self.temp_dir), from_version)

    def cleanup(self) -> bool:
        return cleanup_temp(self.temp_dir)


def read_changelog(directory: Path) -> str | None:
    """Return the text of ``CHANGELOG.md`` in ``directory``, or None."""
    path = directory / CHANGELOG_FILE
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def filter_changelog(changelog: str | None, from_version: str | None) -> str | None:
    """
    Keep the entries newer than ``from_version``.

    Entries start at ``## [1.2.0]``, ``## 1.2.0`` or ``## v1.2.0 - date``
    headers, newest first. Capture stops at the installed version's header.
    A changelog without recognisable headers is returned unchanged.

    Example:
        >>> filter_changelog("## 1.1.0\\n- fix\\n## 1.0.0\\n- init\\n", "1.0.0")
        '## 1.1.0\\n- fix'
    """
    if not changelog or not from_version:
        return changelog

    lines = []
    capturing = False
    found_headers = False

    for line in changelog.split("\n"):
        match = _VERSION_HEADER.match(line)
        if match:
            found_headers = True
            if match.group(1) == from_version.removeprefix("v"):
                break
            capturing = True
        if capturing:
            lines.append(line)

    if not found_headers:
        return changelog
    return "\n".join(lines).strip() or None
