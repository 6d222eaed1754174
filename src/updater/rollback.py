#!/usr/bin/env python3
"""
Rites Keeper Rollback Manager

Replaces the tracked tree with the content of an earlier backup. A safety
backup of the current tree is always taken first, so a rollback can itself
be undone.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Set, Union

from common.config import Settings
from common.exceptions import (
    ExecutionError,
    ExitCode,
    FileOperationError,
    HealthCheckWarning,
    KeeperError,
    UserCancelled,
    ValidationError,
)
from common.logging_config import operation_logger
from common.prompts import Confirmer, InteractiveConfirmer

from .backup import Backup, BackupKind, BackupManager, ValidationReport
from .vcs import GitRepository
from .verifier import ValidationGate, gate_from_settings

logger = logging.getLogger(__name__)


class RollbackStatus(Enum):
    """Status of rollback operation."""
    IDLE = "idle"
    RESOLVING = "resolving"
    VALIDATING = "validating"
    CANCELLED = "cancelled"
    PREPARING = "preparing"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    DONE = "done"
    DEGRADED = "degraded"
    REVERTED = "reverted"
    FAILED = "failed"


class ConfigMode(Enum):
    """What to do with the auxiliary configuration directory."""
    PRESERVE = "preserve"  # Keep current config, snapshot it first
    RESTORE = "restore"    # Restore the config saved alongside the backup


class HealthFailurePolicy(Enum):
    """Reaction to a failed health check after the tree was replaced."""
    DEGRADE = "degrade"                # Report and leave the rolled-back tree
    REAPPLY_SAFETY = "reapply-safety"  # Put the safety backup back


@dataclass
class RollbackResult:
    """Result of a rollback operation."""
    status: RollbackStatus
    backup: Optional[Backup] = None
    safety_backup: Optional[Backup] = None
    config_snapshot: Optional[Backup] = None
    validation: Optional[ValidationReport] = None
    warning: Optional[HealthCheckWarning] = None
    preserved: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status in (RollbackStatus.DONE, RollbackStatus.DEGRADED, RollbackStatus.REVERTED)

    @property
    def exit_code(self) -> ExitCode:
        if self.status == RollbackStatus.CANCELLED:
            return ExitCode.CANCELLED
        if self.warning is not None:
            return self.warning.exit_code
        return ExitCode.SUCCESS


class RollbackManager:
    """
    Rolls the tracked tree back to a backup.

    Nothing is changed until the backup has been resolved, validated and
    the user has confirmed. Paths in the preserve set (version-control
    metadata, local environment files, the backup registries) survive the
    rollback untouched.
    """

    def __init__(
        self,
        settings: Settings,
        backups: Optional[BackupManager] = None,
        gate: Optional[ValidationGate] = None,
        confirmer: Optional[Confirmer] = None,
        repository: Optional[GitRepository] = None,
        policy: Optional[HealthFailurePolicy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.backups = backups or BackupManager(settings, logger=self.logger)
        self.gate = gate or gate_from_settings(settings)
        self.confirmer = confirmer or InteractiveConfirmer()
        self.repository = repository
        self.policy = policy or HealthFailurePolicy(settings.health_policy)
        self.status = RollbackStatus.IDLE
        self._progress_callback: Optional[Callable[[RollbackStatus, str], None]] = None

    def set_progress_callback(
        self,
        callback: Callable[[RollbackStatus, str], None],
    ):
        """Set callback for status updates."""
        self._progress_callback = callback

    def _notify(self, status: RollbackStatus, message: str):
        """Notify progress callback."""
        self.status = status
        if self._progress_callback:
            self._progress_callback(status, message)

    def list_available(self) -> List[Backup]:
        """Get backups available for rollback, newest first."""
        return self.backups.list_backups()

    def rollback(
        self,
        backup_id: str = "latest",
        force: bool = False,
        dry_run: bool = False,
        config_mode: Union[ConfigMode, str] = ConfigMode.PRESERVE,
    ) -> RollbackResult:
        """
        Roll the tracked tree back to a backup.

        WARNING: This replaces the current tree contents!

        Args:
            backup_id: Backup id, archive path, ``latest`` or ``previous``.
            force: Skip the confirmation prompt.
            dry_run: Resolve and validate only; change nothing.
            config_mode: Preserve or restore the configuration directory.

        Returns:
            RollbackResult. Declining the prompt gives status CANCELLED.

        Raises:
            ValidationError: On a malformed identifier or config mode.
            BackupNotFoundError: If the backup cannot be resolved.
            IntegrityError: If the archive fails validation (nothing changed).
            ExecutionError: If replacing the tree fails; names the safety backup.
        """
        try:
            return self._rollback(backup_id, force, dry_run, config_mode)
        except KeeperError as e:
            self._notify(RollbackStatus.FAILED, e.message)
            raise

    def _rollback(
        self,
        backup_id: str,
        force: bool,
        dry_run: bool,
        config_mode: Union[ConfigMode, str],
    ) -> RollbackResult:
        try:
            config_mode = ConfigMode(config_mode)
        except ValueError as e:
            raise ValidationError(
                f"Invalid config mode: {config_mode!r}",
                details={"allowed": [m.value for m in ConfigMode]},
            ) from e

        root = self.settings.root
        log = operation_logger(self.logger, operation="rollback", backup=backup_id)

        self._notify(RollbackStatus.RESOLVING, f"Resolving backup {backup_id}...")
        backup = self.backups.resolve(backup_id)
        log.info(f"Rolling back to: {backup.backup_id} ({backup.archive})")

        self._notify(RollbackStatus.VALIDATING, f"Validating {backup.archive.name}...")
        report = self.backups.validate(backup)
        preserved = [name for name in self.settings.preserve if os.path.lexists(root / name)]

        if dry_run:
            log.info(f"Dry run: would replace {root} with {backup.backup_id}")
            log.info(f"Dry run: would preserve {', '.join(preserved) or 'nothing'}")
            self._notify(RollbackStatus.DONE, "Dry run complete, no changes made")
            return RollbackResult(
                status=RollbackStatus.DONE,
                backup=backup,
                validation=report,
                preserved=preserved,
                dry_run=True,
            )

        if not force:
            try:
                self.confirmer.require(
                    f"Roll back {root} to {backup.backup_id}? Current files will be replaced."
                )
            except UserCancelled:
                log.info("Rollback cancelled by user")
                self._notify(RollbackStatus.CANCELLED, "Rollback cancelled")
                return RollbackResult(
                    status=RollbackStatus.CANCELLED,
                    backup=backup,
                    validation=report,
                    preserved=preserved,
                )

        # The target registry stays locked so the archive cannot be pruned mid-rollback
        with self.backups.operation_lock, self.backups.lock_for(backup):
            self._notify(RollbackStatus.PREPARING, "Creating safety backup...")
            config_snapshot = self._prepare_config(backup, config_mode, log)
            safety = self.backups.create(
                [root],
                kind=BackupKind.PRE_ROLLBACK,
                description=f"Safety backup before rollback to {backup.backup_id}",
                prune=False,
            )
            log.info(f"Safety backup created: {safety.archive}")

            self._notify(RollbackStatus.EXECUTING, f"Restoring {backup.backup_id}...")
            self._replace_tree(backup, safety)

            self._notify(RollbackStatus.VERIFYING, "Verifying rollback...")
            problems = self._check_structure()
            if problems:
                raise ExecutionError(
                    "rollback verification",
                    "; ".join(problems),
                    safety_backup=str(safety.archive),
                )

            status = RollbackStatus.DONE
            warning = None
            health = self.gate.check(root)
            if not health.healthy:
                warning = HealthCheckWarning("rollback", health.issues)
                if self.policy == HealthFailurePolicy.REAPPLY_SAFETY:
                    log.warning("Health check failed, re-applying safety backup")
                    self._replace_tree(safety, safety)
                    status = RollbackStatus.REVERTED
                else:
                    log.warning("Health check failed; manual remediation may be required")
                    status = RollbackStatus.DEGRADED

            self.backups.prune(BackupKind.PRE_ROLLBACK)

        messages = {
            RollbackStatus.DONE: f"Rolled back to {backup.backup_id}",
            RollbackStatus.DEGRADED: f"Rolled back to {backup.backup_id} with health check issues",
            RollbackStatus.REVERTED: f"Health check failed; restored safety backup {safety.backup_id}",
        }
        self._notify(status, messages[status])
        return RollbackResult(
            status=status,
            backup=backup,
            safety_backup=safety,
            config_snapshot=config_snapshot,
            validation=report,
            warning=warning,
            preserved=preserved,
        )

    def _prepare_config(self, backup: Backup, mode: ConfigMode, log) -> Optional[Backup]:
        """Snapshot the current config; with RESTORE, then put the backup's config back."""
        try:
            current = self.backups.snapshot_config(
                description=f"Configuration before rollback to {backup.backup_id}"
            )
        except FileOperationError as e:
            log.warning(f"Could not preserve configuration: {e.message}")
            current = None

        if mode == ConfigMode.RESTORE:
            snapshot = self.backups.find_config_snapshot(backup)
            if snapshot is None:
                log.warning(f"No configuration snapshot found for {backup.backup_id}, keeping current")
            else:
                self.backups.restore_config(snapshot)
                log.info(f"Configuration restored from {snapshot.backup_id}")

        return current

    def _pinned(self) -> Set[str]:
        """Top-level names that are never moved or removed."""
        root = self.settings.root
        try:
            relative = self.settings.backups_dir.relative_to(root)
        except ValueError:
            return set()
        return {relative.parts[0]} if relative.parts else set()

    def _replace_tree(self, backup: Backup, safety: Backup) -> None:
        """
        Swap the tree contents for the backup's, keeping the preserve set.

        Raises:
            ExecutionError: On any failure, naming the safety backup.
        """
        root = self.settings.root
        pinned = self._pinned()

        try:
            self.settings.backups_dir.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix=".rollback-", dir=self.settings.backups_dir))
        except OSError as e:
            raise ExecutionError("rollback", str(e), safety_backup=str(safety.archive), cause=e) from e

        try:
            tree = self.backups.extract(backup, workdir / "extract")
            aside = workdir / "preserve"
            aside.mkdir()
            moved: List[str] = []
            try:
                for name in self.settings.preserve:
                    if name in pinned or not os.path.lexists(root / name):
                        continue
                    (aside / name).parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(root / name), str(aside / name))
                    moved.append(name)

                for child in list(root.iterdir()):
                    if child.name not in pinned:
                        _remove(child)

                for child in list(tree.iterdir()):
                    if child.name in pinned:
                        continue
                    shutil.move(str(child), str(root / child.name))
            finally:
                for name in moved:
                    destination = root / name
                    if os.path.lexists(destination):
                        _remove(destination)
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(aside / name), str(destination))
        except (KeeperError, OSError, shutil.Error) as e:
            reason = e.message if isinstance(e, KeeperError) else str(e)
            raise ExecutionError(
                "rollback", reason, safety_backup=str(safety.archive), cause=e
            ) from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        self.logger.info(f"Tree replaced with {backup.backup_id}")

    def _check_structure(self) -> List[str]:
        """Required files exist and version-control metadata is usable."""
        root = self.settings.root
        problems = [
            f"Required file missing: {name}"
            for name in self.settings.required_files
            if not (root / name).exists()
        ]

        repository = self.repository
        if repository is None and (root / ".git").exists():
            repository = GitRepository(root)
        if repository is not None and not repository.is_intact():
            problems.append("Version control metadata is not intact")

        return problems


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
