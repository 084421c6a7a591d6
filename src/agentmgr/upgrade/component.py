"""
Component upgrade steps.

The component pipeline runs, in order:

1. ``pre_upgrade_hook``   - optional ``hooks/pre-upgrade.*`` of the installed tree
2. ``stop_service``       - stop the component's service if it is running
3. ``backup``             - copy the installed tree to ``.backup/<timestamp>``
4. ``smart_sync``         - apply the incoming tree, keeping local edits
5. ``install_dependencies``
6. ``refresh_manifest``
7. ``post_upgrade_hook``  - optional ``hooks/post-upgrade.*`` of the new tree
8. ``sync_routes``        - reapply declared reverse-proxy routes
9. ``restart_service``
10. ``verify_service``    - poll the supervisor and the optional health URL

Rollback restores the backup (mirror semantics), reinstalls dependencies,
restores routes when they were changed and restarts the service if it had
been running.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

from agentmgr.errors import CommandError
from agentmgr.logging import get_logger
from agentmgr.upgrade.commands import CommandResult, run_command
from agentmgr.upgrade.context import ComponentContext
from agentmgr.upgrade.descriptor import load_descriptor, read_version
from agentmgr.upgrade.health_check import HealthChecker
from agentmgr.upgrade.installer import DependencyInstaller
from agentmgr.upgrade.manifest import ManifestStore
from agentmgr.upgrade.operations import copy_tree, timestamp_slug
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
from agentmgr.upgrade.rollback import BACKUP_DIR, RESTORE_EXCLUDES, restore_tree, run_actions
from agentmgr.upgrade.routes import ROUTE_SKIPPED, ROUTE_UNCHANGED, RouteConfigurator
from agentmgr.upgrade.smart_sync import SmartSync, SyncMode
from agentmgr.upgrade.supervisor import ServiceStatus, ServiceSupervisor

logger = get_logger(__name__)

HOOKS_DIR = "hooks"
PRE_UPGRADE_HOOK = "pre-upgrade"
POST_UPGRADE_HOOK = "post-upgrade"

HOOK_INTERPRETERS: dict[str, tuple[str, ...]] = {
    ".js": ("node",),
    ".mjs": ("node",),
    ".cjs": ("node",),
    ".py": (sys.executable,),
    ".sh": ("bash",),
}


# =============================================================================
# Upgrade hooks
# =============================================================================


def find_hook(directory: Path, stage: str) -> Path | None:
    """Return ``hooks/<stage>.<ext>`` under ``directory`` if present."""
    hooks_dir = directory / HOOKS_DIR
    for suffix in HOOK_INTERPRETERS:
        candidate = hooks_dir / f"{stage}{suffix}"
        if candidate.is_file():
            return candidate
    return None


async def run_hook(
    hook: Path,
    *,
    component: str,
    skill_dir: Path,
    data_dir: Path,
    timeout: float,
) -> CommandResult:
    """
    Run an upgrade hook script.

    Raises:
        CommandError: If the hook exits non-zero.
        UnavailableError: If the interpreter is missing or the hook times out.
    """
    interpreter = HOOK_INTERPRETERS[hook.suffix]
    env = {
        "AGENTMGR_COMPONENT": component,
        "AGENTMGR_SKILL_DIR": str(skill_dir),
        "AGENTMGR_DATA_DIR": str(data_dir),
    }
    logger.info("Running upgrade hook", extra={"component": component, "hook": str(hook)})
    result = await run_command(*interpreter, str(hook), timeout=timeout, cwd=skill_dir, env=env)
    return result.check()


# =============================================================================
# Component upgrade
# =============================================================================


class ComponentUpgrade:
    """
    Builds and runs the component upgrade pipeline.

    Example:
        >>> upgrade = ComponentUpgrade(skills_dir, data_root, supervisor, installer, health)
        >>> ctx = upgrade.create_context("web-console", release)
        >>> run = await upgrade.pipeline().run(ctx)
    """

    def __init__(
        self,
        skills_dir: Path,
        components_dir: Path,
        supervisor: ServiceSupervisor,
        installer: DependencyInstaller,
        health_checker: HealthChecker,
        *,
        syncer: SmartSync | None = None,
        routes: RouteConfigurator | None = None,
        service_prefix: str = "agentmgr-",
        step_timeout: float | None = None,
    ) -> None:
        """
        Initialize the component upgrade.

        Args:
            skills_dir: Directory holding installed components.
            components_dir: Root of per-component data directories.
            supervisor: Process supervisor.
            installer: Dependency installer.
            health_checker: Post-restart verifier.
            syncer: Smart sync engine; a default one when None.
            routes: Route configurator; route sync is skipped when None.
            service_prefix: Prefix of default service names.
            step_timeout: Timeout of every step in seconds.
        """
        self.skills_dir = skills_dir
        self.components_dir = components_dir
        self.supervisor = supervisor
        self.installer = installer
        self.health_checker = health_checker
        self.syncer = syncer or SmartSync()
        self.routes = routes
        self.service_prefix = service_prefix
        self.step_timeout = step_timeout

    @property
    def manifests(self) -> ManifestStore:
        return self.syncer.manifests

    def create_context(
        self,
        component: str,
        release: IncomingRelease,
        mode: SyncMode = SyncMode.MERGE,
    ) -> ComponentContext:
        """Build the context of one run from the installed and incoming trees."""
        skill_dir = self.skills_dir / component
        descriptor = load_descriptor(skill_dir)
        return ComponentContext(
            target=component,
            temp_dir=release.temp_dir,
            new_version=release.new_version,
            from_version=read_version(skill_dir),
            skill_dir=skill_dir,
            data_dir=self.components_dir / component,
            descriptor=descriptor,
            new_descriptor=load_descriptor(release.temp_dir),
            service_name=descriptor.service_name(component, self.service_prefix),
            mode=SyncMode(mode),
        )

    def steps(self) -> list[Step[ComponentContext]]:
        return [
            Step("pre_upgrade_hook", self.pre_upgrade_hook),
            Step("stop_service", self.stop_service),
            Step("backup", self.backup),
            Step("smart_sync", self.smart_sync),
            Step("install_dependencies", self.install_dependencies),
            Step("refresh_manifest", self.refresh_manifest),
            Step("post_upgrade_hook", self.post_upgrade_hook),
            Step("sync_routes", self.sync_routes),
            Step("restart_service", self.restart_service),
            Step("verify_service", self.verify_service),
        ]

    def pipeline(
        self, on_step: Callable[[StepResult], None] | None = None
    ) -> Pipeline[ComponentContext]:
        return Pipeline(
            self.steps(),
            rollback=self.rollback,
            step_timeout=self.step_timeout,
            on_step=on_step,
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _hook(self, ctx: ComponentContext, directory: Path, stage: str) -> StepOutcome:
        hook = find_hook(directory, stage)
        if hook is None:
            return Skipped(f"no {stage} hook")
        await run_hook(
            hook,
            component=ctx.target,
            skill_dir=ctx.skill_dir,
            data_dir=ctx.data_dir,
            timeout=self.step_timeout or 300.0,
        )
        return Done(hook.name)

    async def pre_upgrade_hook(self, ctx: ComponentContext) -> StepOutcome:
        return await self._hook(ctx, ctx.skill_dir, PRE_UPGRADE_HOOK)

    async def stop_service(self, ctx: ComponentContext) -> StepOutcome:
        status = await self.supervisor.status(ctx.service_name)
        if status == ServiceStatus.NOT_FOUND:
            return Skipped("service not registered")

        ctx.service_exists = True
        if status != ServiceStatus.RUNNING:
            return Skipped("service not running")

        ctx.service_was_running = True
        await self.supervisor.stop(ctx.service_name)
        ctx.service_stopped = True
        return Done(f"stopped {ctx.service_name}")

    async def backup(self, ctx: ComponentContext) -> StepOutcome:
        backup_dir = ctx.skill_dir / BACKUP_DIR / timestamp_slug(ctx.started_at)
        copy_tree(ctx.skill_dir, backup_dir, excludes=RESTORE_EXCLUDES)
        ctx.backup_dir = backup_dir
        return Done(backup_dir.name)

    async def smart_sync(self, ctx: ComponentContext) -> StepOutcome:
        if not ctx.temp_dir.is_dir():
            return Failed("Temp directory not available")

        conflicts_dir = None
        if ctx.backup_dir is not None:
            # Kept beside the backup so a restore does not wipe them.
            conflicts_dir = ctx.backup_dir.with_name(f"{ctx.backup_dir.name}.conflicts")

        report = self.syncer.sync(
            ctx.temp_dir,
            ctx.skill_dir,
            backup_dir=conflicts_dir,
            mode=ctx.mode,
            excludes=[*RESTORE_EXCLUDES, *ctx.new_descriptor.preserve],
            label=ctx.target,
        )
        ctx.sync_reports[""] = report
        return Done(report.summary())

    async def install_dependencies(self, ctx: ComponentContext) -> StepOutcome:
        result = await self.installer.install(ctx.skill_dir)
        if not result.performed:
            return Skipped(result.message)
        if not result.success:
            return Failed(result.message or "Dependency installation failed")
        return Done(result.message)

    async def refresh_manifest(self, ctx: ComponentContext) -> StepOutcome:
        manifest = self.manifests.refresh(ctx.skill_dir)
        return Done(f"{len(manifest.files)} files")

    async def post_upgrade_hook(self, ctx: ComponentContext) -> StepOutcome:
        return await self._hook(ctx, ctx.skill_dir, POST_UPGRADE_HOOK)

    async def sync_routes(self, ctx: ComponentContext) -> StepOutcome:
        if self.routes is None:
            return Skipped("route configuration disabled")
        if not ctx.descriptor.http_routes and not ctx.new_descriptor.http_routes:
            return Skipped("no http routes")

        action = await self.routes.apply(ctx.target, ctx.new_descriptor.http_routes)
        if action in (ROUTE_UNCHANGED, ROUTE_SKIPPED):
            return Skipped(f"routes {action}")
        ctx.routes_applied = True
        return Done(f"routes {action}")

    async def restart_service(self, ctx: ComponentContext) -> StepOutcome:
        if ctx.service_exists:
            if not ctx.service_was_running:
                return Skipped("service was stopped before upgrade")
            await self.supervisor.restart(ctx.service_name)
            return Done(f"restarted {ctx.service_name}")

        service = ctx.new_descriptor.service
        if service is None:
            return Skipped("no service declared")

        name = ctx.new_descriptor.service_name(ctx.target, self.service_prefix)
        entry = Path(service.entry) if service.entry else None
        if not self.supervisor.can_start(entry, ctx.skill_dir):
            logger.warning(
                "Declared service has no entry point, not starting",
                extra={"service": name, "skill_dir": str(ctx.skill_dir)},
            )
            return Skipped("no entry point")
        await self.supervisor.start(name, entry, ctx.skill_dir)
        ctx.started_service = name
        return Done(f"started {name}")

    async def verify_service(self, ctx: ComponentContext) -> StepOutcome:
        if ctx.started_service:
            names = [ctx.started_service]
        elif ctx.service_was_running:
            names = [ctx.service_name]
        else:
            return Skipped("no service to verify")

        await self.health_checker.run_health_check(names, ctx.new_descriptor.health_url)
        return Done(f"{', '.join(names)} healthy")

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, ctx: ComponentContext) -> list[RollbackAction]:
        actions = []

        if ctx.backup_dir is not None:
            backup_dir = ctx.backup_dir

            async def restore_files() -> None:
                restore_tree(backup_dir, ctx.skill_dir, preserve=ctx.new_descriptor.preserve)

            async def restore_dependencies() -> None:
                result = await self.installer.install(ctx.skill_dir)
                if not result.success:
                    raise CommandError(result.message or "Dependency installation failed")

            actions.append(("restore_files", restore_files))
            actions.append(("restore_dependencies", restore_dependencies))

        if ctx.routes_applied and self.routes is not None:
            routes = self.routes

            async def restore_routes() -> None:
                await routes.apply(ctx.target, ctx.descriptor.http_routes)

            actions.append(("restore_routes", restore_routes))

        if ctx.started_service:
            started = ctx.started_service

            async def stop_started_service() -> None:
                await self.supervisor.stop(started)

            actions.append(("stop_service", stop_started_service))

        if ctx.service_was_running:

            async def restart_service() -> None:
                await self.supervisor.restart(ctx.service_name)

            actions.append(("restart_service", restart_service))

        return await run_actions(actions)
