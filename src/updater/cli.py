#!/usr/bin/env python3
"""
Rites Keeper CLI

Command-line interface for backups, updates and rollback.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from common.config import Settings
from common.exceptions import ExitCode, IntegrityError, KeeperError
from common.logging_config import setup_logging
from common.prompts import InteractiveConfirmer

from .backup import Backup, BackupKind, BackupManager
from .rollback import ConfigMode, HealthFailurePolicy, RollbackManager, RollbackStatus
from .updater import UpdateOrchestrator, UpdateStatus

logger = logging.getLogger(__name__)

KIND_CHOICES = [kind.value for kind in BackupKind]


def progress_callback(status, message: str):
    """Display progress."""
    print(f"[{status.value}] {message}", flush=True)


def _load_settings(args) -> Settings:
    return Settings.load(Path(args.root or Path.cwd()))


def _describe(manager: BackupManager, backup: Backup) -> str:
    try:
        return manager.load_manifest(backup).description
    except IntegrityError:
        return "(manifest unreadable)"


def _print_backups(manager: BackupManager, backups: List[Backup]):
    for backup in backups:
        print(f"  {backup.backup_id}")
        print(f"    Created: {backup.created_at.strftime('%Y-%m-%d %H:%M:%S')} ({backup.age_str})")
        print(f"    Size: {backup.size_str}")
        description = _describe(manager, backup)
        if description:
            print(f"    Description: {description}")
        print()


def cmd_backup(args):
    """Manage backups."""
    settings = _load_settings(args)
    manager = BackupManager(settings)
    kind = BackupKind(args.kind) if args.kind else None

    if args.action == "create":
        targets = args.paths or [settings.root]
        backup = manager.create(
            targets,
            kind=kind or BackupKind.MANUAL,
            description=args.description or "Manual backup",
        )
        print(f"Backup created: {backup.archive}")
        print(f"  Files: {len(backup.manifest.files)}")
        print(f"  Size: {backup.size_str}")

    elif args.action == "list":
        backups = manager.list_backups(kind)
        if not backups:
            print("No backups found.")
            return ExitCode.SUCCESS
        print("Backups:\n")
        _print_backups(manager, backups)

    elif args.action == "restore":
        if not args.paths:
            print("Please specify the file to restore", file=sys.stderr)
            return ExitCode.ERROR
        for path in args.paths:
            backup = manager.restore_file(path, kind)
            print(f"Restored {path} from {backup.backup_id}")

    elif args.action == "prune":
        kinds = [kind] if kind else list(BackupKind)
        for each in kinds:
            removed = manager.prune(each, args.keep)
            for backup in removed:
                print(f"Removed {backup.backup_id}")
        print("Prune complete.")

    return ExitCode.SUCCESS


def cmd_update(args):
    """Update the tracked tree."""
    settings = _load_settings(args)
    orchestrator = UpdateOrchestrator(settings, confirmer=InteractiveConfirmer())
    orchestrator.set_progress_callback(progress_callback)

    result = orchestrator.run(force=args.force, dry_run=args.dry_run)

    if result.status == UpdateStatus.UP_TO_DATE:
        print(f"Already up to date ({result.previous_version[:7]}).")
        return ExitCode.SUCCESS

    if result.dry_run:
        print(f"\nWould update {result.previous_version[:7]} -> {result.remote_version[:7]}")
        if result.pending_commits:
            print("Pending commits:")
            for line in result.pending_commits:
                print(f"  {line}")
        return ExitCode.SUCCESS

    print(f"\nUpdated {result.previous_version[:7]} -> {result.new_version[:7]}")
    print(f"Backup: {result.backup.archive}")
    if result.config_missing:
        print(f"\n[!] Configuration directory {settings.config_dir} is missing; "
              f"snapshot {result.config_snapshot.archive} holds the previous copy.", file=sys.stderr)
    if result.warning:
        print("\n[!] Health check reported issues:", file=sys.stderr)
        for issue in result.warning.issues:
            print(f"  {issue}", file=sys.stderr)
        print("Run 'rites-keeper rollback latest' to restore the previous version.", file=sys.stderr)
    return result.exit_code


def cmd_rollback(args):
    """Roll back to a previous backup."""
    settings = _load_settings(args)
    policy = HealthFailurePolicy.REAPPLY_SAFETY if args.reapply_on_failure else None
    manager = RollbackManager(settings, confirmer=InteractiveConfirmer(), policy=policy)

    if args.list:
        backups = manager.list_available()
        if not backups:
            print("No backups found.")
            return ExitCode.SUCCESS
        print("Available backups:\n")
        _print_backups(manager.backups, backups)
        return ExitCode.SUCCESS

    manager.set_progress_callback(progress_callback)
    config_mode = ConfigMode.RESTORE if args.restore_config else ConfigMode.PRESERVE
    result = manager.rollback(
        args.backup,
        force=args.force,
        dry_run=args.dry_run,
        config_mode=config_mode,
    )

    if result.status == RollbackStatus.CANCELLED:
        print("Rollback cancelled.")
    elif result.dry_run:
        print(f"\nDry run: would roll back to {result.backup.backup_id}")
        print(f"  Preserved: {', '.join(result.preserved) or 'nothing'}")
    else:
        print(f"\nRolled back to {result.backup.backup_id}")
        print(f"Safety backup: {result.safety_backup.archive}")
        if result.warning:
            print("\n[!] Health check reported issues:", file=sys.stderr)
            for issue in result.warning.issues:
                print(f"  {issue}", file=sys.stderr)
            if result.status == RollbackStatus.REVERTED:
                print("The safety backup was re-applied.", file=sys.stderr)

    return result.exit_code


def _add_verbose(subparser: argparse.ArgumentParser):
    # SUPPRESS keeps a global -v from being reset by the subcommand default
    subparser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
                           help="Verbose output")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rites-keeper",
        description="Backup, update and rollback for a tracked dotfiles tree",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rites-keeper backup create               # Back up the whole tree
  rites-keeper backup list                 # List backups
  rites-keeper backup restore ~/.bashrc    # Restore one file
  rites-keeper update --dry-run            # Show pending update
  rites-keeper rollback --list             # List rollback targets
  rites-keeper rollback previous --force   # Roll back without asking
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--root", help="Tracked tree root (default: current directory)")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")
    parser.add_argument("--json-logs", action="store_true", help="Write the log file as JSON lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Manage backups")
    backup_parser.add_argument("action", choices=["create", "list", "restore", "prune"],
                               help="Backup action")
    backup_parser.add_argument("paths", nargs="*", help="Paths to back up or restore")
    backup_parser.add_argument("-k", "--kind", choices=KIND_CHOICES, help="Backup kind")
    backup_parser.add_argument("-d", "--description", help="Backup description")
    backup_parser.add_argument("--keep", type=int, help="Backups to keep when pruning")
    _add_verbose(backup_parser)
    backup_parser.set_defaults(func=cmd_backup)

    # update command
    update_parser = subparsers.add_parser("update", help="Update to the latest version")
    update_parser.add_argument("--dry-run", action="store_true", help="Show what would change")
    update_parser.add_argument("-f", "--force", action="store_true",
                               help="Update even if up to date; skip prompts")
    _add_verbose(update_parser)
    update_parser.set_defaults(func=cmd_update)

    # rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Roll back to a backup")
    rollback_parser.add_argument("backup", nargs="?", default="latest",
                                 help="Backup id, archive path, 'latest' or 'previous'")
    rollback_parser.add_argument("-l", "--list", action="store_true", help="List available backups")
    rollback_parser.add_argument("--dry-run", action="store_true", help="Validate without changing anything")
    rollback_parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation")
    config_group = rollback_parser.add_mutually_exclusive_group()
    config_group.add_argument("--preserve-config", action="store_true",
                              help="Keep the current configuration directory (default)")
    config_group.add_argument("--restore-config", action="store_true",
                              help="Restore the configuration saved with the backup")
    rollback_parser.add_argument("--reapply-on-failure", action="store_true",
                                 help="Re-apply the safety backup if the health check fails")
    _add_verbose(rollback_parser)
    rollback_parser.set_defaults(func=cmd_rollback)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_file=args.log_file, json_logs=args.json_logs)

    if args.command is None:
        parser.print_help()
        return int(ExitCode.ERROR)

    try:
        return int(args.func(args))
    except KeeperError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e.message}", file=sys.stderr)
        return int(e.exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return int(ExitCode.CANCELLED)


if __name__ == "__main__":
    sys.exit(main())
