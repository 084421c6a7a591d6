"""
Upgrade run context.

A context carries everything the steps of one pipeline run share: where the
incoming tree lives, what the installed tree looked like before, and the
state that rollback needs to undo the run (backup location, whether a
service was running, which routes were changed).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from agentmgr.upgrade.descriptor import ComponentDescriptor
from agentmgr.upgrade.smart_sync import FileOutcome, SyncMode, SyncReport


@dataclass
class UpgradeContext:
    """
    State shared by the steps of one upgrade run.

    Attributes:
        target: Lock target name (component name, or ``_self``).
        temp_dir: Extracted incoming tree.
        new_version: Version string resolved by the caller.
        from_version: Installed version before the run.
        backup_dir: Pre-upgrade backup, set by the backup step.
        sync_reports: Smart sync reports keyed by label.
        started_at: When the run was created (UTC).
    """

    target: str
    temp_dir: Path
    new_version: str | None = None
    from_version: str | None = None
    backup_dir: Path | None = None
    sync_reports: dict[str, SyncReport] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def _labelled(self, label: str, path: str) -> str:
        return path if not label else f"{label}/{path}"

    @property
    def merge_conflicts(self) -> list[FileOutcome]:
        """Conflicts across all sync reports, paths prefixed by label."""
        conflicts = []
        for label, report in self.sync_reports.items():
            for item in report.conflicts:
                conflicts.append(
                    FileOutcome(
                        path=self._labelled(label, item.path),
                        outcome=item.outcome,
                        backup_path=item.backup_path,
                    )
                )
        return conflicts

    @property
    def merged_files(self) -> list[str]:
        """Merged paths across all sync reports, prefixed by label."""
        return [
            self._labelled(label, path)
            for label, report in self.sync_reports.items()
            for path in report.merged
        ]


@dataclass
class ComponentContext(UpgradeContext):
    """
    Context of a component upgrade.

    Attributes:
        skill_dir: Installed component tree.
        data_dir: Component data directory exported to hooks.
        descriptor: Descriptor of the installed tree before the run.
        new_descriptor: Descriptor of the incoming tree.
        service_name: Supervisor name of the component's service.
        service_exists: Whether the supervisor knew the service.
        service_was_running: Whether it was running before the run.
        service_stopped: Whether the run stopped it.
        started_service: Service the run registered because it did not exist.
        routes_applied: Whether the route step changed the proxy config.
        mode: Smart sync mode.
    """

    skill_dir: Path = field(default_factory=Path)
    data_dir: Path = field(default_factory=Path)
    descriptor: ComponentDescriptor = field(default_factory=ComponentDescriptor)
    new_descriptor: ComponentDescriptor = field(default_factory=ComponentDescriptor)
    service_name: str = ""
    service_exists: bool = False
    service_was_running: bool = False
    service_stopped: bool = False
    started_service: str | None = None
    routes_applied: bool = False
    mode: SyncMode = SyncMode.MERGE


@dataclass
class SelfUpgradeContext(UpgradeContext):
    """
    Context of a self-upgrade.

    Attributes:
        skills_dir: Installed core skills directory.
        synced_skills: Skills applied from the incoming tree.
        added_skills: Synced skills that were not installed before.
        backed_up_skills: Skills present in the backup.
        backed_up_docs: Managed documents present in the backup.
        settings_backed_up: Whether the settings file is in the backup.
        services_were_running: Core services running before the run.
        services_stopped: Core services the run stopped.
    """

    skills_dir: Path = field(default_factory=Path)
    synced_skills: list[str] = field(default_factory=list)
    added_skills: list[str] = field(default_factory=list)
    backed_up_skills: list[str] = field(default_factory=list)
    backed_up_docs: list[str] = field(default_factory=list)
    settings_backed_up: bool = False
    services_were_running: list[str] = field(default_factory=list)
    services_stopped: list[str] = field(default_factory=list)
