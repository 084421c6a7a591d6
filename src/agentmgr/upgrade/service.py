"""
Upgrade service.

Entry point for callers: acquire the target's lock, run the pipeline,
release the lock, return an ``UpgradeResult``. Problems detected before the
lock is taken (bad name, missing component, lock held) are returned as
failed results with no steps and no filesystem changes.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from agentmgr.errors import AgentMgrError, FailedPreconditionError
from agentmgr.logging import get_logger
from agentmgr.upgrade.component import ComponentUpgrade
from agentmgr.upgrade.descriptor import read_version
from agentmgr.upgrade.health_check import HealthChecker
from agentmgr.upgrade.installer import ManifestInstaller
from agentmgr.upgrade.lock import SELF_UPGRADE_TARGET, LockManager, LockStatus, validate_target
from agentmgr.upgrade.manifest import ChangeReport
from agentmgr.upgrade.merge import get_merger
from agentmgr.upgrade.pipeline import StepResult
from agentmgr.upgrade.release import IncomingRelease
from agentmgr.upgrade.results import UpgradeResult
from agentmgr.upgrade.routes import CaddyRouteConfigurator
from agentmgr.upgrade.self_upgrade import SelfUpgrade
from agentmgr.upgrade.smart_sync import SmartSync, SyncMode
from agentmgr.upgrade.supervisor import create_supervisor

if TYPE_CHECKING:
    from agentmgr.config import AppConfig

logger = get_logger(__name__)

ACTION_UPGRADE = "upgrade"
ACTION_SELF_UPGRADE = "self_upgrade"

StepCallback = Callable[[StepResult], None]


class UpgradeService:
    """
    Runs component upgrades and self-upgrades under their target locks.

    Example:
        >>> service = UpgradeService.from_config(load_config())
        >>> result = await service.upgrade_component("web-console", release)
        >>> print(json.dumps(result.to_dict()))
    """

    def __init__(
        self,
        locks: LockManager,
        components: ComponentUpgrade,
        core: SelfUpgrade,
    ) -> None:
        self.locks = locks
        self.components = components
        self.core = core

    @classmethod
    def from_config(cls, config: AppConfig) -> UpgradeService:
        """Wire every collaborator from an application config."""
        paths = config.paths
        upgrade = config.upgrade

        supervisor = create_supervisor(config.supervisor)
        installer = ManifestInstaller.from_config(config.installer)
        health_checker = HealthChecker(
            supervisor,
            retries=upgrade.health_check_retries,
            delay=upgrade.health_check_delay_seconds,
        )
        syncer = SmartSync(merger=get_merger(upgrade.merge_backend))
        routes = CaddyRouteConfigurator.from_config(config.routes) if config.routes.enabled else None

        locks = LockManager(paths.locks_path(), timeout_seconds=upgrade.lock_timeout_seconds)
        components = ComponentUpgrade(
            paths.skills_path(),
            paths.components_path(),
            supervisor,
            installer,
            health_checker,
            syncer=syncer,
            routes=routes,
            service_prefix=upgrade.service_prefix,
            step_timeout=upgrade.step_timeout_seconds,
        )
        core = SelfUpgrade(
            paths.home_path(),
            paths.skills_path(),
            paths.backups_path(),
            paths.settings_path(),
            supervisor,
            installer,
            health_checker,
            managed_docs=paths.managed_docs,
            core_services=upgrade.core_services,
            syncer=syncer,
            step_timeout=upgrade.step_timeout_seconds,
        )
        return cls(locks, components, core)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def lock_status(self, target: str) -> LockStatus:
        return self.locks.is_locked(target)

    def local_changes(self, component: str) -> ChangeReport | None:
        """Files of an installed component changed since its last sync."""
        skill_dir = self.components.skills_dir / validate_target(component)
        return self.components.manifests.detect_changes(skill_dir)

    # -------------------------------------------------------------------------
    # Upgrades
    # -------------------------------------------------------------------------

    async def upgrade_component(
        self,
        component: str,
        release: IncomingRelease,
        *,
        mode: SyncMode = SyncMode.MERGE,
        on_step: StepCallback | None = None,
    ) -> UpgradeResult:
        """
        Upgrade an installed component to the release in ``release.temp_dir``.

        Args:
            component: Installed component name.
            release: Extracted incoming tree and its version.
            mode: MERGE keeps local edits; OVERWRITE discards them.
            on_step: Called with each step result as it completes.

        Returns:
            The upgrade result; never raises for upgrade failures.
        """
        try:
            validate_target(component)
            skill_dir = self.components.skills_dir / component
            if not skill_dir.is_dir():
                raise FailedPreconditionError(
                    f"Component directory not found: {skill_dir}",
                    details={"component": component},
                )
            release.validate_tree()
            self.locks.acquire(component)
        except AgentMgrError as e:
            logger.warning(
                "Upgrade not started",
                extra={"target": component, "error_code": e.error_code, "error": e.message},
            )
            return UpgradeResult.failure(ACTION_UPGRADE, component, e.message, e.error_code)

        try:
            ctx = self.components.create_context(component, release, mode)
            logger.info(
                "Component upgrade started",
                extra={
                    "target": component,
                    "from_version": ctx.from_version,
                    "to_version": ctx.new_version,
                    "mode": ctx.mode.value,
                },
            )
            run = await self.components.pipeline(on_step).run(ctx)
            to_version = read_version(skill_dir) or release.new_version
            result = UpgradeResult.from_run(ACTION_UPGRADE, ctx, run, to_version)
        finally:
            self.locks.release(component)

        self._log_result(result)
        return result

    async def self_upgrade(
        self,
        release: IncomingRelease,
        *,
        on_step: StepCallback | None = None,
    ) -> UpgradeResult:
        """Upgrade the tool itself to the release in ``release.temp_dir``."""
        try:
            release.validate_tree()
            self.locks.acquire(SELF_UPGRADE_TARGET)
        except AgentMgrError as e:
            logger.warning(
                "Self-upgrade not started",
                extra={"error_code": e.error_code, "error": e.message},
            )
            return UpgradeResult.failure(
                ACTION_SELF_UPGRADE,
                SELF_UPGRADE_TARGET,
                e.message,
                e.error_code,
                from_version=self.core.current_version,
            )

        try:
            ctx = self.core.create_context(release)
            logger.info(
                "Self-upgrade started",
                extra={"from_version": ctx.from_version, "to_version": ctx.new_version},
            )
            run = await self.core.pipeline(on_step).run(ctx)
            result = UpgradeResult.from_run(ACTION_SELF_UPGRADE, ctx, run, release.version())
        finally:
            self.locks.release(SELF_UPGRADE_TARGET)

        self._log_result(result)
        return result

    @staticmethod
    def _log_result(result: UpgradeResult) -> None:
        if result.success:
            logger.info(
                "Upgrade succeeded",
                extra={
                    "target": result.target,
                    "from_version": result.from_version,
                    "to_version": result.to_version,
                    "conflicts": len(result.merge_conflicts),
                    "merged": len(result.merged_files),
                },
            )
        else:
            logger.error(
                "Upgrade failed",
                extra={
                    "target": result.target,
                    "failed_step": result.failed_step_name,
                    "error": result.error,
                    "rolled_back_cleanly": result.rolled_back_cleanly,
                },
            )
