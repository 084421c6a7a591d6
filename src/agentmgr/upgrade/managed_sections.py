"""
Managed sections of user-editable documents.

Documents such as ``AGENTS.md`` mix user text with sections owned by the
tool::

    <!-- BEGIN agentmgr:memory -->
    ...
    <!-- END agentmgr:memory -->

On self-upgrade each installed document is reconciled with its template:
sections present in both are replaced by the template's version, sections
only in the template are appended, and sections the template dropped are
removed. Text outside markers is never modified.
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, Field

from agentmgr.logging import get_logger
from agentmgr.upgrade.markers import Segment, join_segments, split_segments

logger = get_logger(__name__)

BEGIN_PATTERN = re.compile(r"<!--\s*BEGIN agentmgr:([A-Za-z0-9_.-]+)\s*-->")
END_MARKER = "<!-- END agentmgr:{id} -->"


class SectionSyncReport(BaseModel):
    """
    Section changes applied to one document.

    Attributes:
        document: Document path.
        created: Whether the document did not exist and was created.
        updated: Sections whose content changed.
        added: Sections appended from the template.
        removed: Sections dropped because the template no longer has them.
    """

    document: str
    created: bool = False
    updated: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.added or self.removed)


def template_sections(template: str) -> dict[str, str]:
    """Return the marked blocks of ``template`` by id, in template order."""
    return {
        s.block_id: s.text
        for s in split_segments(template, BEGIN_PATTERN, END_MARKER)
        if s.block_id
    }


def merge_sections(installed: str, template: str) -> tuple[str, SectionSyncReport]:
    """
    Reconcile the managed sections of ``installed`` with ``template``.

    Returns:
        The new document content and a report (``document`` left empty).
    """
    report = SectionSyncReport(document="")
    wanted = template_sections(template)
    seen: set[str] = set()
    result: list[Segment] = []

    for segment in split_segments(installed, BEGIN_PATTERN, END_MARKER):
        block_id = segment.block_id
        if block_id is None:
            result.append(segment)
            continue
        if block_id in seen or block_id not in wanted:
            report.removed.append(block_id)
            continue
        seen.add(block_id)
        replacement = wanted[block_id]
        if not segment.text.endswith("\n") and replacement.endswith("\n"):
            # Block was the last line of a file without a trailing newline.
            replacement = replacement[:-1]
        if replacement != segment.text:
            report.updated.append(block_id)
        result.append(Segment(replacement, block_id))

    content = join_segments(result)

    for block_id, block in wanted.items():
        if block_id in seen:
            continue
        if content and not content.endswith("\n"):
            content += "\n"
        if content and not content.endswith("\n\n"):
            content += "\n"
        content += block if block.endswith("\n") else block + "\n"
        report.added.append(block_id)

    return content, report


def sync_document(installed: Path, template: Path, *, dry_run: bool = False) -> SectionSyncReport:
    """
    Reconcile the document at ``installed`` with ``template``.

    A missing installed document is created from the template. Nothing is
    written when ``dry_run`` is set or when nothing changed.

    Raises:
        OSError: If reading or writing fails.
    """
    template_text = template.read_text(encoding="utf-8")

    if not installed.exists():
        report = SectionSyncReport(
            document=str(installed),
            created=True,
            added=list(template_sections(template_text)),
        )
        if not dry_run:
            installed.parent.mkdir(parents=True, exist_ok=True)
            installed.write_text(template_text, encoding="utf-8")
        logger.info("Created managed document", extra={"document": str(installed)})
        return report

    current = installed.read_text(encoding="utf-8")
    content, report = merge_sections(current, template_text)
    report.document = str(installed)

    if report.changed and not dry_run:
        installed.write_text(content, encoding="utf-8")
        logger.info(
            "Managed sections synced",
            extra={
                "document": str(installed),
                "updated": report.updated,
                "added": report.added,
                "removed": report.removed,
            },
        )
    return report
