"""
Manifest-driven smart-merge upgrade pipeline.

This package implements:
- Content-hash manifests and the originals snapshot (merge ancestor)
- Line-oriented three-way merging
- Smart sync of incoming trees onto installed trees
- Cooperative file-based locking per upgrade target
- Fail-fast step pipelines with whole-run rollback
- Component upgrades and self-upgrades built on them
"""

from agentmgr.upgrade.component import ComponentUpgrade
from agentmgr.upgrade.context import ComponentContext, SelfUpgradeContext, UpgradeContext
from agentmgr.upgrade.health_check import HealthChecker, HealthCheckResult
from agentmgr.upgrade.installer import DependencyInstaller, InstallResult, ManifestInstaller
from agentmgr.upgrade.lock import SELF_UPGRADE_TARGET, LockManager, LockRecord, LockStatus
from agentmgr.upgrade.manifest import ChangeReport, Manifest, ManifestStore
from agentmgr.upgrade.merge import Diff3Merger, LineMerger, MergeResult, ThreeWayMerger
from agentmgr.upgrade.operations import cleanup_temp, copy_tree, sync_tree
from agentmgr.upgrade.originals import OriginalsStore
from agentmgr.upgrade.pipeline import (
    Done,
    Failed,
    Pipeline,
    PipelineRun,
    RollbackAction,
    Skipped,
    Step,
    StepResult,
    StepStatus,
)
from agentmgr.upgrade.release import IncomingRelease
from agentmgr.upgrade.results import UpgradeResult
from agentmgr.upgrade.self_upgrade import SelfUpgrade
from agentmgr.upgrade.service import UpgradeService
from agentmgr.upgrade.smart_sync import SmartSync, SyncMode, SyncOutcome, SyncReport
from agentmgr.upgrade.supervisor import ServiceStatus, ServiceSupervisor

__all__ = [
    # Manifests
    "Manifest",
    "ManifestStore",
    "ChangeReport",
    "OriginalsStore",
    # Merge
    "ThreeWayMerger",
    "LineMerger",
    "Diff3Merger",
    "MergeResult",
    # Operations
    "copy_tree",
    "sync_tree",
    "cleanup_temp",
    # Smart sync
    "SmartSync",
    "SyncMode",
    "SyncOutcome",
    "SyncReport",
    # Locking
    "LockManager",
    "LockRecord",
    "LockStatus",
    "SELF_UPGRADE_TARGET",
    # Pipeline
    "Pipeline",
    "PipelineRun",
    "Step",
    "StepResult",
    "StepStatus",
    "Done",
    "Skipped",
    "Failed",
    "RollbackAction",
    # Upgrades
    "UpgradeContext",
    "ComponentContext",
    "SelfUpgradeContext",
    "ComponentUpgrade",
    "SelfUpgrade",
    "IncomingRelease",
    "UpgradeResult",
    "UpgradeService",
    # Collaborators
    "ServiceSupervisor",
    "ServiceStatus",
    "DependencyInstaller",
    "InstallResult",
    "ManifestInstaller",
    "HealthChecker",
    "HealthCheckResult",
]
