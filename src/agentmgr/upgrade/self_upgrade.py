"""
Self-upgrade steps.

A self-upgrade applies a new release of the management tool: its own
package, the core skills it ships under ``skills/``, the managed sections of
user documents and the hooks of the agent settings file. The incoming tree
layout is::

    <temp_dir>/
        package.json | pyproject.toml
        skills/<name>/...
        templates/<managed doc>
        templates/settings.json

Everything the run touches is first copied to ``<backups_dir>/core-<ts>``
so rollback can put it back.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Sequence
from pathlib import Path

from agentmgr import __version__
from agentmgr.errors import AgentMgrError, CommandError, SyncError
from agentmgr.logging import get_logger
from agentmgr.upgrade.context import SelfUpgradeContext
from agentmgr.upgrade.descriptor import load_descriptor
from agentmgr.upgrade.health_check import HealthChecker
from agentmgr.upgrade.hooks import migrate_settings_file
from agentmgr.upgrade.installer import DependencyInstaller
from agentmgr.upgrade.lock import SELF_UPGRADE_TARGET
from agentmgr.upgrade.managed_sections import sync_document
from agentmgr.upgrade.operations import copy_tree, safe_remove_directory, timestamp_slug
from agentmgr.upgrade.pipeline import (
    Done,
    Failed,
    Pipeline,
    RollbackAction,
    Skipped,
    Step,
    StepOutcome,
    StepResult,
)
from agentmgr.upgrade.release import IncomingRelease
from agentmgr.upgrade.rollback import RESTORE_EXCLUDES, restore_tree, run_actions
from agentmgr.upgrade.smart_sync import SmartSync
from agentmgr.upgrade.supervisor import ServiceStatus, ServiceSupervisor

logger = get_logger(__name__)

SKILLS_DIR = "skills"
TEMPLATES_DIR = "templates"
SETTINGS_TEMPLATE = "settings.json"
BACKUP_PREFIX = "core-"
DOCS_BACKUP_DIR = "docs"


def _copy_file(src: Path, dest: Path) -> None:
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
    except OSError as e:
        raise SyncError(
            f"Failed to copy {src} to {dest}: {e}",
            details={"src": str(src), "dest": str(dest), "error": str(e)},
        ) from e


def _remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise SyncError(
            f"Failed to remove {path}: {e}",
            details={"path": str(path), "error": str(e)},
        ) from e


class SelfUpgrade:
    """Builds and runs the self-upgrade pipeline."""

    def __init__(
        self,
        home_dir: Path,
        skills_dir: Path,
        backups_dir: Path,
        settings_file: Path,
        supervisor: ServiceSupervisor,
        installer: DependencyInstaller,
        health_checker: HealthChecker,
        *,
        managed_docs: Sequence[str] = (),
        core_services: Sequence[str] = (),
        syncer: SmartSync | None = None,
        step_timeout: float | None = None,
        current_version: str | None = __version__,
    ) -> None:
        """
        Initialize the self-upgrade.

        Args:
            home_dir: Root of the managed installation; managed documents
                and ``~/`` in hook commands resolve against it.
            skills_dir: Installed core skills directory.
            backups_dir: Where ``core-<timestamp>`` backups are written.
            settings_file: Agent settings file whose hooks are migrated.
            supervisor: Process supervisor.
            installer: Dependency installer.
            health_checker: Post-restart verifier.
            managed_docs: Documents under ``home_dir`` with managed sections.
            core_services: Services stopped before and restarted after.
            syncer: Smart sync engine; a default one when None.
            step_timeout: Timeout of every step in seconds.
            current_version: Installed version of the tool.
        """
        self.home_dir = home_dir
        self.skills_dir = skills_dir
        self.backups_dir = backups_dir
        self.settings_file = settings_file
        self.supervisor = supervisor
        self.installer = installer
        self.health_checker = health_checker
        self.managed_docs = list(managed_docs)
        self.core_services = list(core_services)
        self.syncer = syncer or SmartSync()
        self.step_timeout = step_timeout
        self.current_version = current_version

    def create_context(self, release: IncomingRelease) -> SelfUpgradeContext:
        return SelfUpgradeContext(
            target=SELF_UPGRADE_TARGET,
            temp_dir=release.temp_dir,
            new_version=release.new_version,
            from_version=self.current_version,
            skills_dir=self.skills_dir,
        )

    def steps(self) -> list[Step[SelfUpgradeContext]]:
        return [
            Step("backup_core", self.backup_core),
            Step("stop_core_services", self.stop_core_services),
            Step("install_package", self.install_package),
            Step("sync_core_skills", self.sync_core_skills),
            Step("install_skill_dependencies", self.install_skill_dependencies),
            Step("sync_managed_sections", self.sync_managed_sections),
            Step("migrate_hooks", self.migrate_hooks),
            Step("refresh_manifests", self.refresh_manifests),
            Step("start_core_services", self.start_core_services),
            Step("verify_services", self.verify_services),
        ]

    def pipeline(
        self, on_step: Callable[[StepResult], None] | None = None
    ) -> Pipeline[SelfUpgradeContext]:
        return Pipeline(
            self.steps(),
            rollback=self.rollback,
            step_timeout=self.step_timeout,
            on_step=on_step,
        )

    def incoming_skills(self, ctx: SelfUpgradeContext) -> list[Path]:
        root = ctx.temp_dir / SKILLS_DIR
        if not root.is_dir():
            return []
        return sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def backup_core(self, ctx: SelfUpgradeContext) -> StepOutcome:
        backup_dir = self.backups_dir / f"{BACKUP_PREFIX}{timestamp_slug(ctx.started_at)}"
        backup_dir.mkdir(parents=True, exist_ok=True)

        for skill_src in self.incoming_skills(ctx):
            installed = self.skills_dir / skill_src.name
            if installed.is_dir():
                copy_tree(installed, backup_dir / SKILLS_DIR / skill_src.name, excludes=RESTORE_EXCLUDES)
                ctx.backed_up_skills.append(skill_src.name)

        for doc in self.managed_docs:
            installed = self.home_dir / doc
            if installed.is_file():
                _copy_file(installed, backup_dir / DOCS_BACKUP_DIR / doc)
                ctx.backed_up_docs.append(doc)

        if self.settings_file.is_file():
            _copy_file(self.settings_file, backup_dir / SETTINGS_TEMPLATE)
            ctx.settings_backed_up = True

        ctx.backup_dir = backup_dir
        return Done(backup_dir.name)

    async def stop_core_services(self, ctx: SelfUpgradeContext) -> StepOutcome:
        for name in self.core_services:
            if await self.supervisor.status(name) != ServiceStatus.RUNNING:
                continue
            ctx.services_were_running.append(name)
            await self.supervisor.stop(name)
            ctx.services_stopped.append(name)

        if not ctx.services_stopped:
            return Skipped("no running core services")
        return Done(f"stopped {', '.join(ctx.services_stopped)}")

    async def install_package(self, ctx: SelfUpgradeContext) -> StepOutcome:
        if not ctx.temp_dir.is_dir():
            return Failed("Temp directory not available")
        result = await self.installer.install_package(ctx.temp_dir)
        if not result.performed:
            return Skipped(result.message)
        if not result.success:
            return Failed(result.message or "Package installation failed")
        return Done(result.message)

    async def sync_core_skills(self, ctx: SelfUpgradeContext) -> StepOutcome:
        skills = self.incoming_skills(ctx)
        if not skills:
            return Skipped("no skills in new version")

        conflicts_root = ctx.backup_dir / "conflicts" if ctx.backup_dir else None
        summaries = []
        for skill_src in skills:
            name = skill_src.name
            dest = self.skills_dir / name
            if not dest.exists():
                ctx.added_skills.append(name)
            report = self.syncer.sync(
                skill_src,
                dest,
                backup_dir=conflicts_root / name if conflicts_root else None,
                excludes=[*RESTORE_EXCLUDES, *load_descriptor(skill_src).preserve],
                label=name,
            )
            ctx.synced_skills.append(name)
            ctx.sync_reports[name] = report
            summaries.append(f"{name}: {report.summary()}")

        return Done("; ".join(summaries))

    async def install_skill_dependencies(self, ctx: SelfUpgradeContext) -> StepOutcome:
        installed = []
        for name in ctx.synced_skills:
            result = await self.installer.install(self.skills_dir / name)
            if not result.success:
                return Failed(f"{name}: {result.message or 'dependency installation failed'}")
            if result.performed:
                installed.append(name)

        if not installed:
            return Skipped("no skill dependencies")
        return Done(", ".join(installed))

    async def sync_managed_sections(self, ctx: SelfUpgradeContext) -> StepOutcome:
        templates = ctx.temp_dir / TEMPLATES_DIR
        changes = []
        found = False
        for doc in self.managed_docs:
            template = templates / doc
            if not template.is_file():
                continue
            found = True
            report = sync_document(self.home_dir / doc, template)
            if report.changed:
                changes.append(
                    f"{doc}: {len(report.updated)} updated, {len(report.added)} added, "
                    f"{len(report.removed)} removed"
                )

        if not found:
            return Skipped("no document templates")
        if not changes:
            return Skipped("managed sections up to date")
        return Done("; ".join(changes))

    async def migrate_hooks(self, ctx: SelfUpgradeContext) -> StepOutcome:
        report = migrate_settings_file(
            self.settings_file,
            ctx.temp_dir / TEMPLATES_DIR / SETTINGS_TEMPLATE,
            self.home_dir,
        )
        if not report.changed:
            return Skipped(report.summary())
        return Done(report.summary())

    async def refresh_manifests(self, ctx: SelfUpgradeContext) -> StepOutcome:
        if not ctx.synced_skills:
            return Skipped("no skills synced")
        for name in ctx.synced_skills:
            self.syncer.manifests.refresh(self.skills_dir / name)
        return Done(f"{len(ctx.synced_skills)} manifests")

    async def start_core_services(self, ctx: SelfUpgradeContext) -> StepOutcome:
        if not ctx.services_were_running:
            return Skipped("no services to restart")

        failed = []
        for name in ctx.services_were_running:
            try:
                await self.supervisor.restart(name)
            except AgentMgrError as e:
                logger.error("Failed to restart core service", extra={"service": name, "error": e.message})
                failed.append(name)

        if failed:
            return Failed(f"Failed to restart: {', '.join(failed)}")
        return Done(", ".join(ctx.services_were_running))

    async def verify_services(self, ctx: SelfUpgradeContext) -> StepOutcome:
        if not ctx.services_were_running:
            return Skipped("no services to verify")
        await self.health_checker.run_health_check(ctx.services_were_running)
        return Done(f"{len(ctx.services_were_running)} services running")

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, ctx: SelfUpgradeContext) -> list[RollbackAction]:
        actions = []

        if ctx.backup_dir is not None:
            backup_dir = ctx.backup_dir

            async def restore_skills() -> None:
                failed: list[str] = []
                for name in ctx.backed_up_skills:
                    saved = backup_dir / SKILLS_DIR / name
                    try:
                        restore_tree(
                            saved, self.skills_dir / name, preserve=load_descriptor(saved).preserve
                        )
                    except (AgentMgrError, OSError) as e:
                        logger.error("Skill restore failed", extra={"skill": name, "error": str(e)})
                        failed.append(name)
                for name in ctx.added_skills:
                    try:
                        safe_remove_directory(self.skills_dir / name, ignore_errors=False)
                    except AgentMgrError as e:
                        logger.error(
                            "Removing added skill failed", extra={"skill": name, "error": e.message}
                        )
                        failed.append(name)
                if failed:
                    raise SyncError(
                        f"Skill restore failed: {', '.join(failed)}",
                        details={"skills": failed},
                    )

            async def restore_docs() -> None:
                for doc in self.managed_docs:
                    if doc in ctx.backed_up_docs:
                        _copy_file(backup_dir / DOCS_BACKUP_DIR / doc, self.home_dir / doc)
                    else:
                        _remove_file(self.home_dir / doc)

            async def restore_settings() -> None:
                if ctx.settings_backed_up:
                    _copy_file(backup_dir / SETTINGS_TEMPLATE, self.settings_file)
                else:
                    _remove_file(self.settings_file)

            async def restore_dependencies() -> None:
                failed = []
                for name in ctx.backed_up_skills:
                    result = await self.installer.install(self.skills_dir / name)
                    if not result.success:
                        failed.append(name)
                if failed:
                    raise CommandError(f"Dependency reinstall failed: {', '.join(failed)}")

            actions.append(("restore_skills", restore_skills))
            actions.append(("restore_docs", restore_docs))
            actions.append(("restore_settings", restore_settings))
            actions.append(("restore_dependencies", restore_dependencies))

        if ctx.services_were_running:

            async def restart_services() -> None:
                failed = []
                for name in ctx.services_were_running:
                    try:
                        await self.supervisor.restart(name)
                    except AgentMgrError:
                        failed.append(name)
                if failed:
                    raise CommandError(f"Failed to restart: {', '.join(failed)}")

            actions.append(("restart_services", restart_services))

        return await run_actions(actions)
