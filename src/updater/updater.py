#!/usr/bin/env python3
"""
Rites Keeper Update Orchestrator

Brings the tracked tree up to the latest remote version with a backup
taken first so the update can be rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from common.config import Settings
from common.exceptions import (
    ConflictError,
    ExecutionError,
    ExitCode,
    FileOperationError,
    HealthCheckWarning,
    KeeperError,
    ValidationError,
    VersionControlError,
)
from common.logging_config import operation_logger
from common.prompts import Confirmer, InteractiveConfirmer

from .backup import Backup, BackupKind, BackupManager
from .remote import RemoteVersionSource
from .vcs import GitRepository
from .verifier import ValidationGate, gate_from_settings

logger = logging.getLogger(__name__)


class UpdateStatus(Enum):
    """Status of an update operation."""
    IDLE = "idle"
    CHECKING_VERSION = "checking_version"
    UP_TO_DATE = "up_to_date"
    PREPARING = "preparing"
    BACKING_UP = "backing_up"
    APPLYING = "applying"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UpdateResult:
    """Result of an update run."""
    status: UpdateStatus
    previous_version: str
    remote_version: str
    new_version: Optional[str] = None
    backup: Optional[Backup] = None
    config_snapshot: Optional[Backup] = None
    warning: Optional[HealthCheckWarning] = None
    pending_commits: List[str] = field(default_factory=list)
    dry_run: bool = False
    config_missing: bool = False

    @property
    def up_to_date(self) -> bool:
        return self.status == UpdateStatus.UP_TO_DATE

    @property
    def exit_code(self) -> ExitCode:
        if self.warning is not None:
            return self.warning.exit_code
        return ExitCode.SUCCESS


class UpdateOrchestrator:
    """
    Runs one update of the tracked tree.

    Workflow:
    1. Compare local HEAD with the remote version (equal: stop, no changes)
    2. Check for uncommitted changes and confirm
    3. Snapshot the auxiliary configuration directory
    4. Create a full-tree backup
    5. Fetch and fast-forward merge
    6. Verify the new HEAD and run the health check
    """

    def __init__(
        self,
        settings: Settings,
        backups: Optional[BackupManager] = None,
        repository: Optional[GitRepository] = None,
        remote: Optional[RemoteVersionSource] = None,
        gate: Optional[ValidationGate] = None,
        confirmer: Optional[Confirmer] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.backups = backups or BackupManager(settings, logger=self.logger)
        self.repository = repository or GitRepository(settings.root)
        self.remote = remote or RemoteVersionSource.from_settings(settings)
        self.gate = gate or gate_from_settings(settings)
        self.confirmer = confirmer or InteractiveConfirmer()
        self.status = UpdateStatus.IDLE
        self._progress_callback: Optional[Callable[[UpdateStatus, str], None]] = None

    def set_progress_callback(self, callback: Callable[[UpdateStatus, str], None]):
        """
        Set callback for progress updates.

        Args:
            callback: Function(status, message)
        """
        self._progress_callback = callback

    def _notify(self, status: UpdateStatus, message: str):
        """Notify progress callback."""
        self.status = status
        if self._progress_callback:
            self._progress_callback(status, message)

    def current_version(self) -> str:
        """Locally checked-out version identifier."""
        return self.repository.head()

    def remote_version(self) -> str:
        """Latest published version identifier."""
        return self.remote.latest()

    def run(self, force: bool = False, dry_run: bool = False) -> UpdateResult:
        """
        Update the tracked tree.

        Args:
            force: Update even when versions match; skip the dirty-tree prompt.
            dry_run: Report what would happen without changing anything.

        Returns:
            UpdateResult. A failed health check is attached as ``warning``.

        Raises:
            RemoteVersionError: If the remote version cannot be fetched.
            ConflictError: On a declined dirty tree or a non-fast-forward merge.
            ValidationError: If HEAD does not match the remote after merging.
            ExecutionError: If applying fails after the backup was taken.
        """
        try:
            return self._run(force, dry_run)
        except KeeperError as e:
            self._notify(UpdateStatus.FAILED, e.message)
            raise

    def _run(self, force: bool, dry_run: bool) -> UpdateResult:
        root = self.settings.root
        log = operation_logger(self.logger, operation="update", root=str(root))

        self._notify(UpdateStatus.CHECKING_VERSION, "Checking for updates...")
        current = self.current_version()
        remote = self.remote_version()
        log.info(f"Local version {current[:7]}, remote version {remote[:7]}")

        if current == remote and not force:
            self._notify(UpdateStatus.UP_TO_DATE, f"Already up to date ({current[:7]})")
            return UpdateResult(
                status=UpdateStatus.UP_TO_DATE,
                previous_version=current,
                remote_version=remote,
                new_version=current,
                dry_run=dry_run,
            )

        ref = f"{self.settings.remote}/{self.settings.branch}"

        changes = self.repository.status()
        if changes:
            log.warning(f"Working tree has {len(changes)} uncommitted changes")
            if not force and not dry_run:
                if not self.confirmer.confirm("Continue update with uncommitted changes?"):
                    raise ConflictError(
                        "Working tree has uncommitted changes; commit or stash them, or use --force",
                        details={"changes": changes[:20]},
                    )

        if dry_run:
            pending = self.repository.pending_commits(ref)
            self._notify(UpdateStatus.DONE, f"Dry run: would update {current[:7]} -> {remote[:7]}")
            return UpdateResult(
                status=UpdateStatus.DONE,
                previous_version=current,
                remote_version=remote,
                pending_commits=pending,
                dry_run=True,
            )

        with self.backups.operation_lock:
            self._notify(UpdateStatus.PREPARING, "Preserving configuration...")
            config_snapshot = None
            try:
                config_snapshot = self.backups.snapshot_config(
                    description=f"Configuration before update to {remote[:7]}"
                )
            except FileOperationError as e:
                log.warning(f"Could not preserve configuration: {e.message}")

            self._notify(UpdateStatus.BACKING_UP, "Creating backup...")
            links = {"config_snapshot": config_snapshot.backup_id} if config_snapshot else {}
            backup = self.backups.create(
                [root],
                kind=BackupKind.UPDATE,
                description=f"Pre-update backup ({current[:7]} -> {remote[:7]})",
                links=links,
            )
            log.info(f"Backup created: {backup.archive}")

            self._notify(UpdateStatus.APPLYING, f"Applying update from {ref}...")
            try:
                self.repository.fetch(self.settings.remote)
                self.repository.merge_ff_only(ref)
            except ConflictError as e:
                e.details["backup"] = str(backup.archive)
                raise
            except VersionControlError as e:
                raise ExecutionError(
                    "update", e.message, safety_backup=str(backup.archive), cause=e
                ) from e

            self._notify(UpdateStatus.VALIDATING, "Verifying update...")
            new_version = self.current_version()
            if new_version != remote:
                raise ValidationError(
                    f"Version after update ({new_version[:7]}) does not match remote ({remote[:7]})",
                    details={
                        "expected": remote,
                        "actual": new_version,
                        "backup": str(backup.archive),
                    },
                )

            config_missing = config_snapshot is not None and not self.settings.config_dir.is_dir()
            if config_missing:
                log.warning(f"Configuration directory not found after update: {self.settings.config_dir}")
                log.info(f"It can be restored from config snapshot {config_snapshot.backup_id}")

            warning = None
            report = self.gate.check(root)
            if not report.healthy:
                warning = HealthCheckWarning("update", report.issues)
                log.warning(f"Health check reported {len(report.issues)} issues after update")

        self._notify(UpdateStatus.DONE, f"Updated {current[:7]} -> {new_version[:7]}")
        return UpdateResult(
            status=UpdateStatus.DONE,
            previous_version=current,
            remote_version=remote,
            new_version=new_version,
            backup=backup,
            config_snapshot=config_snapshot,
            warning=warning,
            config_missing=config_missing,
        )
