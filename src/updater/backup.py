#!/usr/bin/env python3
"""
Rites Keeper Backup Manager

Creates, lists, validates, prunes and restores point-in-time backups of
the tracked file set. Each backup is a gzip-compressed tar archive holding
a single top-level directory with a line-delimited JSON manifest.
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import re
import shutil
import tarfile
import tempfile
import zlib
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from common.config import Settings
from common.exceptions import (
    BackupNotFoundError,
    FileOperationError,
    IntegrityError,
    ValidationError,
)
from common.locking import RegistryLock
from utils.atomic_write import AtomicWriter

STAMP_FORMAT = "%Y%m%d-%H%M%S"
ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_SUFFIX = ".manifest.jsonl"
MANIFEST_NAME = "MANIFEST.jsonl"
TREE_DIR = "tree"
MANIFEST_FORMAT = 1
ARCHIVE_MODE = 0o600

_ID_CHARS = re.compile(r"^[A-Za-z0-9._-]+$")
_STAMP_IN_NAME = re.compile(r"(\d{8}-\d{6})(?:-(\d+))?")


class BackupKind(Enum):
    """Registry a backup belongs to."""
    UPDATE = "update"              # Created before an update
    MANUAL = "manual"              # User-created
    CONFIG = "config"              # Auxiliary configuration directory
    PRE_ROLLBACK = "pre-rollback"  # Safety backup taken before a rollback

    @property
    def directory(self) -> str:
        return _KIND_DIRECTORIES[self]


_KIND_DIRECTORIES = {
    BackupKind.UPDATE: "auto-update",
    BackupKind.MANUAL: "manual",
    BackupKind.CONFIG: "config",
    BackupKind.PRE_ROLLBACK: "rollback-safety",
}

# Kinds a rollback may target
TREE_KINDS = (BackupKind.UPDATE, BackupKind.MANUAL)


@dataclass(frozen=True)
class TrackedFile:
    """One captured file as recorded in a manifest."""
    path: Path
    relpath: str
    mode: int
    size: int = 0
    symlink: bool = False

    def to_dict(self) -> dict:
        data = {
            "path": str(self.path),
            "relpath": self.relpath,
            "mode": self.mode,
            "size": self.size,
        }
        if self.symlink:
            data["symlink"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TrackedFile":
        return cls(
            path=Path(data["path"]),
            relpath=data["relpath"],
            mode=int(data["mode"]),
            size=int(data.get("size", 0)),
            symlink=bool(data.get("symlink", False)),
        )


@dataclass
class Manifest:
    """
    Ordered list of files captured by one backup.

    Serialized as JSON lines: a header object, then one object per file.
    """
    backup_id: str
    kind: Optional[BackupKind]
    created_at: datetime
    root: Path
    files: List[TrackedFile] = field(default_factory=list)
    description: str = ""
    links: Dict[str, str] = field(default_factory=dict)

    @property
    def paths(self) -> List[Path]:
        return [entry.path for entry in self.files]

    def find(self, target: Union[str, Path]) -> Optional[TrackedFile]:
        """Find an entry by absolute path."""
        target = Path(target)
        return next((entry for entry in self.files if entry.path == target), None)

    def find_relative(self, target: Union[str, Path], root: Union[str, Path, None] = None) -> Optional[TrackedFile]:
        """
        Find an entry by its place in the tree rather than its absolute path.

        ``target`` is taken relative to ``root`` (default: the manifest
        root), so a backup of a checkout that has since moved still
        matches. Only entries with the same name in the same relative
        directory qualify.
        """
        target = Path(target)
        parent = os.path.relpath(target.parent, Path(root or self.root))
        if parent == ".." or parent.startswith(".." + os.sep):
            return None
        parent = os.path.normpath(parent)
        for entry in self.files:
            relpath = Path(entry.relpath)
            if relpath.name == target.name and os.path.normpath(str(relpath.parent)) == parent:
                return entry
        return None

    def to_jsonl(self) -> str:
        header = {
            "format": MANIFEST_FORMAT,
            "backup_id": self.backup_id,
            "kind": self.kind.value if self.kind else None,
            "created_at": self.created_at.isoformat(),
            "root": str(self.root),
            "description": self.description,
            "links": self.links,
        }
        lines = [json.dumps(header, sort_keys=True)]
        lines.extend(json.dumps(entry.to_dict(), sort_keys=True) for entry in self.files)
        return "\n".join(lines) + "\n"

    @classmethod
    def from_jsonl(cls, text: str, source: str = "<manifest>") -> "Manifest":
        """
        Parse a manifest.

        Raises:
            IntegrityError: If the header or an entry is malformed.
        """
        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            raise IntegrityError(source, "manifest is empty")

        try:
            header = json.loads(lines[0])
            kind = header.get("kind")
            manifest = cls(
                backup_id=header["backup_id"],
                kind=BackupKind(kind) if kind else None,
                created_at=datetime.fromisoformat(header["created_at"]),
                root=Path(header["root"]),
                description=header.get("description", ""),
                links=dict(header.get("links") or {}),
            )
            manifest.files = [TrackedFile.from_dict(json.loads(line)) for line in lines[1:]]
        except (ValueError, KeyError, TypeError) as e:
            raise IntegrityError(source, f"malformed manifest: {e}", cause=e) from e

        return manifest


@dataclass
class Backup:
    """A backup archive on disk."""
    backup_id: str
    kind: Optional[BackupKind]
    created_at: datetime
    archive: Path
    size: int = 0
    sequence: int = 0
    manifest: Optional[Manifest] = None

    @property
    def stamp(self) -> str:
        return self.created_at.strftime(STAMP_FORMAT)

    @property
    def sort_key(self) -> Tuple[str, int, str]:
        return (self.stamp, self.sequence, self.backup_id)

    @property
    def manifest_path(self) -> Path:
        return self.archive.with_name(self.backup_id + MANIFEST_SUFFIX)

    @property
    def age_str(self) -> str:
        """Get human-readable age."""
        delta = datetime.now() - self.created_at
        if delta.days > 0:
            return f"{delta.days} days ago"
        elif delta.seconds > 3600:
            return f"{delta.seconds // 3600} hours ago"
        elif delta.seconds > 60:
            return f"{delta.seconds // 60} minutes ago"
        else:
            return "Just now"

    @property
    def size_str(self) -> str:
        """Get human-readable size."""
        if self.size >= 1024 * 1024:
            return f"{self.size / (1024 * 1024):.1f} MB"
        elif self.size >= 1024:
            return f"{self.size / 1024:.1f} KB"
        return f"{self.size} B"


@dataclass
class ValidationReport:
    """Outcome of a successful archive validation."""
    backup: Backup
    member_count: int
    warnings: List[str] = field(default_factory=list)


class BackupRegistry:
    """
    All backups of one kind stored in one directory.

    The directory listing is the source of truth: nothing is cached, so the
    registry always reflects exactly the archives present on disk.
    """

    def __init__(
        self,
        directory: Path,
        prefix: str,
        kind: Optional[BackupKind] = None,
        cap: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        self.directory = Path(directory)
        self.prefix = prefix
        self.kind = kind
        self.cap = cap
        self.lock = RegistryLock(self.directory)
        self.logger = logger or logging.getLogger(__name__)
        self._pattern = re.compile(
            rf"^(?P<id>{re.escape(prefix)}-backup-(?P<stamp>\d{{8}}-\d{{6}})(?:-(?P<seq>\d+))?)"
            rf"{re.escape(ARCHIVE_SUFFIX)}$"
        )

    def make_id(self, stamp: str, sequence: int = 0) -> str:
        backup_id = f"{self.prefix}-backup-{stamp}"
        if sequence:
            backup_id += f"-{sequence}"
        return backup_id

    def archive_path(self, backup_id: str) -> Path:
        return self.directory / f"{backup_id}{ARCHIVE_SUFFIX}"

    def parse(self, path: Path) -> Optional[Backup]:
        """Build a Backup from an archive path following this registry's naming."""
        match = self._pattern.match(path.name)
        if not match:
            return None
        try:
            created_at = datetime.strptime(match.group("stamp"), STAMP_FORMAT)
            size = path.stat().st_size
        except (ValueError, OSError):
            return None
        return Backup(
            backup_id=match.group("id"),
            kind=self.kind,
            created_at=created_at,
            archive=path,
            size=size,
            sequence=int(match.group("seq") or 0),
        )

    def backups(self) -> List[Backup]:
        """
        Get all backups in this registry.

        Returns:
            List of Backup objects, newest first.
        """
        if not self.directory.is_dir():
            return []

        found = []
        for path in self.directory.glob(f"{self.prefix}-backup-*{ARCHIVE_SUFFIX}"):
            backup = self.parse(path)
            if backup is not None and path.is_file():
                found.append(backup)

        found.sort(key=lambda b: b.sort_key, reverse=True)
        return found

    def get(self, backup_id: str) -> Optional[Backup]:
        path = self.archive_path(backup_id)
        if not path.is_file():
            return None
        return self.parse(path)

    def next_id(self, now: datetime) -> Tuple[str, datetime, int]:
        """
        Allocate the next identifier.

        Second-granularity stamps get a numeric suffix when they would
        collide with, or sort before, the newest existing backup.
        """
        stamp = now.strftime(STAMP_FORMAT)
        sequence = 0
        existing = self.backups()
        if existing and existing[0].stamp >= stamp:
            stamp = existing[0].stamp
            sequence = existing[0].sequence + 1
        while self.archive_path(self.make_id(stamp, sequence)).exists():
            sequence += 1
        return self.make_id(stamp, sequence), datetime.strptime(stamp, STAMP_FORMAT), sequence

    def prune(self, cap: Optional[int] = None) -> List[Backup]:
        """
        Delete the oldest backups until at most ``cap`` remain.

        Returns:
            The removed backups.
        """
        cap = self.cap if cap is None else cap
        if cap < 0:
            raise ValidationError(f"Retention cap must not be negative, got {cap}")

        with self.lock:
            removed = self.backups()[cap:]
            for backup in removed:
                try:
                    backup.archive.unlink()
                    backup.manifest_path.unlink(missing_ok=True)
                except OSError as e:
                    raise FileOperationError("prune", str(backup.archive), str(e), cause=e) from e
                self.logger.info(f"Removed old backup: {backup.backup_id}")

        if removed:
            self.logger.debug(f"Pruned {len(removed)} backups from {self.directory}, keeping last {cap}")
        return removed


class BackupManager:
    """
    Manages backup registries for one tracked tree.

    Registries live under ``settings.backups_dir``, one directory per
    BackupKind. Every mutating operation holds that registry's lock.
    """

    def __init__(
        self,
        settings: Settings,
        writer: Optional[AtomicWriter] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.root = settings.root
        self.backups_dir = settings.backups_dir
        self.logger = logger or logging.getLogger(__name__)
        self.writer = writer or AtomicWriter(logger=self.logger)
        self.clock = clock
        self.operation_lock = RegistryLock(self.backups_dir)
        self._registries: Dict[BackupKind, BackupRegistry] = {}

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def registry(self, kind: BackupKind) -> BackupRegistry:
        if kind not in self._registries:
            if kind in TREE_KINDS:
                prefix = self.settings.backup_prefix
            else:
                prefix = kind.value
            self._registries[kind] = BackupRegistry(
                self.backups_dir / kind.directory,
                prefix,
                kind=kind,
                cap=self.settings.cap_for(kind.value),
                logger=self.logger,
            )
        return self._registries[kind]

    def list_backups(self, kinds: Union[BackupKind, Iterable[BackupKind], None] = None) -> List[Backup]:
        """
        List backups across registries.

        Args:
            kinds: One kind, several kinds, or None for update + manual.

        Returns:
            Backups sorted newest first.
        """
        if kinds is None:
            kinds = TREE_KINDS
        elif isinstance(kinds, BackupKind):
            kinds = (kinds,)

        found: List[Backup] = []
        for kind in kinds:
            found.extend(self.registry(kind).backups())
        found.sort(key=lambda b: b.sort_key, reverse=True)
        return found

    def prune(self, kind: BackupKind, cap: Optional[int] = None) -> List[Backup]:
        return self.registry(kind).prune(cap)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        targets: Sequence[Union[str, Path]],
        kind: BackupKind = BackupKind.MANUAL,
        description: str = "",
        links: Optional[Dict[str, str]] = None,
        root: Optional[Path] = None,
        prune: bool = True,
    ) -> Backup:
        """
        Capture ``targets`` into a new backup.

        Missing targets are skipped and individual copy failures are logged;
        neither aborts the backup. Retention is applied afterwards.

        Args:
            targets: Files or directories under ``root``.
            kind: Registry to store the backup in.
            description: Free text stored in the manifest header.
            links: Related backup ids stored in the manifest header.
            root: Base for relative archive paths (default: tracked root).
            prune: Apply retention to the registry afterwards.

        Returns:
            The created Backup.

        Raises:
            ValidationError: If a target lies outside ``root``.
            FileOperationError: If the registry or archive cannot be written.
        """
        root = Path(root or self.root)
        planned = [self._plan_target(root, target) for target in targets]
        registry = self.registry(kind)
        excluded = self._exclusion_for(kind, root)

        try:
            registry.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileOperationError(
                "create backup registry", str(registry.directory), str(e), cause=e
            ) from e

        with registry.lock:
            backup_id, created_at, sequence = registry.next_id(self.clock())
            self.logger.info(f"Creating {kind.value} backup: {backup_id}")

            try:
                staging = Path(tempfile.mkdtemp(prefix=f".staging-{backup_id}-", dir=registry.directory))
            except OSError as e:
                raise FileOperationError("create staging area", str(registry.directory), str(e), cause=e) from e

            try:
                content_dir = staging / backup_id
                tree = content_dir / TREE_DIR
                tree.mkdir(parents=True)

                files: List[TrackedFile] = []
                for path, relpath in planned:
                    files.extend(self._capture(path, relpath, tree, excluded))

                manifest = Manifest(
                    backup_id=backup_id,
                    kind=kind,
                    created_at=self.clock(),
                    root=root,
                    files=files,
                    description=description,
                    links=dict(links or {}),
                )
                manifest_text = manifest.to_jsonl()
                self.writer.write(content_dir / MANIFEST_NAME, manifest_text)

                archive = registry.archive_path(backup_id)
                self._pack(content_dir, archive)
                try:
                    self.writer.write(archive.with_name(backup_id + MANIFEST_SUFFIX), manifest_text)
                except FileOperationError:
                    archive.unlink(missing_ok=True)
                    raise
            finally:
                shutil.rmtree(staging, ignore_errors=True)

            backup = Backup(
                backup_id=backup_id,
                kind=kind,
                created_at=created_at,
                archive=archive,
                size=archive.stat().st_size,
                sequence=sequence,
                manifest=manifest,
            )
            self.logger.info(f"Backup created: {archive} ({len(files)} files, {backup.size_str})")

            if prune:
                registry.prune()

        return backup

    def _plan_target(self, root: Path, target: Union[str, Path]) -> Tuple[Path, str]:
        path = Path(os.path.abspath(os.path.expanduser(str(target))))
        relpath = os.path.relpath(path, root)
        if relpath == ".." or relpath.startswith(".." + os.sep) or os.path.isabs(relpath):
            raise ValidationError(
                f"Backup target {path} is outside the backup root {root}",
                details={"target": str(path), "root": str(root)},
            )
        return path, relpath

    def _exclusion_for(self, kind: BackupKind, root: Path) -> Callable[[Path], bool]:
        """
        Predicate for paths skipped while capturing.

        Safety backups must hold everything a rollback removes, so they
        skip only the registries and the preserve set, which a rollback
        never touches.
        """
        if kind == BackupKind.PRE_ROLLBACK:
            kept = {root / name for name in self.settings.preserve}
            return lambda path: path == self.backups_dir or path in kept

        excludes = set(self.settings.excludes)
        return lambda path: path.name in excludes or path == self.backups_dir

    def _capture(
        self,
        path: Path,
        relpath: str,
        tree: Path,
        excluded: Callable[[Path], bool],
    ) -> List[TrackedFile]:
        """Copy one target (recursively for directories) into the staging tree."""
        if not os.path.lexists(path):
            self.logger.info(f"Skipping missing backup target: {path}")
            return []

        if path.is_symlink() or not path.is_dir():
            entry = self._copy_one(path, relpath, tree)
            return [entry] if entry else []

        def relative(child: Path) -> str:
            return os.path.normpath(os.path.join(relpath, os.path.relpath(child, path)))

        captured: List[TrackedFile] = []
        (tree / relpath).mkdir(parents=True, exist_ok=True)
        for dirpath, dirnames, filenames in os.walk(path):
            base = Path(dirpath)
            kept = []
            for name in sorted(dirnames):
                child = base / name
                if excluded(child):
                    continue
                # Symlinked directories are captured as links, not followed
                if child.is_symlink():
                    filenames.append(name)
                    continue
                kept.append(name)
                (tree / relative(child)).mkdir(parents=True, exist_ok=True)
            dirnames[:] = kept

            for name in sorted(filenames):
                child = base / name
                if excluded(child):
                    continue
                entry = self._copy_one(child, relative(child), tree)
                if entry:
                    captured.append(entry)

        return captured

    def _copy_one(self, path: Path, relpath: str, tree: Path) -> Optional[TrackedFile]:
        destination = tree / relpath
        try:
            st = os.lstat(path)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, destination, follow_symlinks=False)
        except OSError as e:
            self.logger.warning(f"Failed to backup: {path}: {e}")
            return None

        self.logger.debug(f"  backed up: {path}")
        return TrackedFile(
            path=path,
            relpath=relpath,
            mode=st.st_mode & 0o7777,
            size=st.st_size,
            symlink=path.is_symlink(),
        )

    def _pack(self, content_dir: Path, archive: Path) -> None:
        """Write ``content_dir`` as a gzip tar, renamed into place when complete."""
        fd, temp_path = tempfile.mkstemp(dir=archive.parent, prefix=f".{archive.name}.", suffix=".tmp")
        try:
            os.fchmod(fd, ARCHIVE_MODE)
            with os.fdopen(fd, "wb") as raw:
                with tarfile.open(fileobj=raw, mode="w:gz") as tar:
                    tar.add(str(content_dir), arcname=content_dir.name)
                raw.flush()
                os.fsync(raw.fileno())
            os.replace(temp_path, archive)
            temp_path = None
        except (OSError, tarfile.TarError) as e:
            raise FileOperationError("archive", str(archive), str(e), cause=e) from e
        finally:
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    # ------------------------------------------------------------------
    # Resolve / validate
    # ------------------------------------------------------------------

    def resolve(
        self,
        backup_id: str,
        kinds: Union[BackupKind, Iterable[BackupKind], None] = None,
    ) -> Backup:
        """
        Resolve an identifier to a Backup.

        Args:
            backup_id: Literal id, archive path, ``latest`` or ``previous``.
            kinds: Registries to search (default: update + manual).

        Raises:
            ValidationError: If the identifier is malformed.
            BackupNotFoundError: If nothing matches.
        """
        if not backup_id or not backup_id.strip():
            raise ValidationError("No backup ID specified")
        backup_id = backup_id.strip()

        if backup_id in ("latest", "previous"):
            candidates = self.list_backups(kinds)
            index = 0 if backup_id == "latest" else 1
            if len(candidates) <= index:
                reason = "no backups available" if index == 0 else "need at least 2 backups"
                raise BackupNotFoundError(backup_id, reason)
            return candidates[index]

        if os.sep in backup_id or backup_id.endswith(ARCHIVE_SUFFIX):
            path = Path(backup_id).expanduser()
            if not path.is_file():
                raise BackupNotFoundError(backup_id, "archive file does not exist")
            return self._backup_from_path(path.resolve())

        if not _ID_CHARS.match(backup_id):
            raise ValidationError(
                f"Invalid backup ID: {backup_id!r}",
                details={"backup_id": backup_id},
            )

        if kinds is None:
            kinds = TREE_KINDS
        elif isinstance(kinds, BackupKind):
            kinds = (kinds,)
        for kind in kinds:
            backup = self.registry(kind).get(backup_id)
            if backup is not None:
                return backup

        raise BackupNotFoundError(backup_id)

    def _backup_from_path(self, path: Path) -> Backup:
        for kind in BackupKind:
            registry = self.registry(kind)
            if path.parent == registry.directory.resolve():
                backup = registry.parse(path)
                if backup is not None:
                    return backup

        name = path.name[: -len(ARCHIVE_SUFFIX)] if path.name.endswith(ARCHIVE_SUFFIX) else path.stem
        st = path.stat()
        match = _STAMP_IN_NAME.search(name)
        if match:
            created_at = datetime.strptime(match.group(1), STAMP_FORMAT)
            sequence = int(match.group(2) or 0)
        else:
            created_at = datetime.fromtimestamp(st.st_mtime).replace(microsecond=0)
            sequence = 0
        return Backup(
            backup_id=name,
            kind=None,
            created_at=created_at,
            archive=path,
            size=st.st_size,
            sequence=sequence,
        )

    def validate(self, backup: Backup, expected_layout: Optional[Sequence[str]] = None) -> ValidationReport:
        """
        Check that a backup archive is intact.

        The gzip stream is read to its end and the tar member list is read
        in full. A missing expected layout only produces a warning.

        Args:
            backup: Backup to check.
            expected_layout: Path prefixes expected inside the tree
                (default: settings for tree backups, none otherwise).

        Returns:
            ValidationReport with member count and soft warnings.

        Raises:
            IntegrityError: If the archive is unreadable or corrupt.
        """
        archive = backup.archive
        self.logger.info(f"Validating backup: {archive.name}")

        if not archive.is_file():
            raise IntegrityError(str(archive), "archive file is missing")
        if not os.access(archive, os.R_OK):
            raise IntegrityError(str(archive), "archive file is not readable")

        try:
            with open(archive, "rb") as f:
                magic = f.read(2)
        except OSError as e:
            raise IntegrityError(str(archive), "archive file is not readable", cause=e) from e
        if magic != b"\x1f\x8b":
            raise IntegrityError(str(archive), "not a gzip compressed archive")

        try:
            with gzip.open(archive, "rb") as stream:
                while stream.read(1024 * 1024):
                    pass
            with tarfile.open(archive, "r:gz") as tar:
                members = tar.getmembers()
        except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
            raise IntegrityError(str(archive), f"archive is corrupted or truncated: {e}", cause=e) from e

        _check_members(members, str(archive))

        warnings: List[str] = []
        tops = {m.name.split("/", 1)[0] for m in members}
        if len(tops) != 1:
            warnings.append(f"expected a single top-level directory, found {len(tops)}")

        if expected_layout is None:
            expected_layout = () if backup.kind == BackupKind.CONFIG else self.settings.expected_layout
        if expected_layout:
            content = [_content_path(m.name) for m in members]
            if not any(
                name == marker.rstrip("/") or name.startswith(marker)
                for name in content
                for marker in expected_layout
            ):
                warnings.append("backup may not contain the complete tracked tree structure")

        for warning in warnings:
            self.logger.warning(f"{archive.name}: {warning}")

        self.logger.info(f"Backup validation successful: {backup.size_str}, {len(members)} entries")
        return ValidationReport(backup=backup, member_count=len(members), warnings=warnings)

    def load_manifest(self, backup: Backup) -> Manifest:
        """
        Load a backup's manifest from its sidecar, or from the archive.

        Raises:
            IntegrityError: If no readable manifest exists.
        """
        if backup.manifest is not None:
            return backup.manifest

        sidecar = backup.manifest_path
        if sidecar.is_file():
            try:
                text = sidecar.read_text(encoding="utf-8")
            except OSError as e:
                raise IntegrityError(str(sidecar), "manifest is not readable", cause=e) from e
            backup.manifest = Manifest.from_jsonl(text, source=str(sidecar))
            return backup.manifest

        try:
            with tarfile.open(backup.archive, "r:gz") as tar:
                member = next(
                    (m for m in tar.getmembers()
                     if m.isfile() and m.name.count("/") == 1 and m.name.endswith("/" + MANIFEST_NAME)),
                    None,
                )
                if member is None:
                    raise IntegrityError(str(backup.archive), "archive has no manifest")
                text = tar.extractfile(member).read().decode("utf-8")
        except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
            raise IntegrityError(str(backup.archive), f"cannot read manifest: {e}", cause=e) from e

        backup.manifest = Manifest.from_jsonl(text, source=str(backup.archive))
        return backup.manifest

    # ------------------------------------------------------------------
    # Restore / extract
    # ------------------------------------------------------------------

    def restore_file(
        self,
        target: Union[str, Path],
        kinds: Union[BackupKind, Iterable[BackupKind], None] = None,
    ) -> Backup:
        """
        Restore one file from the newest backup that captured it.

        Args:
            target: File to restore; matched by path, then by basename.
            kinds: Registries to search (default: update + manual).

        Returns:
            The backup the file was restored from.

        Raises:
            BackupNotFoundError: If no backup contains a matching file.
        """
        target = Path(os.path.abspath(os.path.expanduser(str(target))))

        manifests: List[Tuple[Backup, Manifest]] = []
        for backup in self.list_backups(kinds):
            try:
                manifests.append((backup, self.load_manifest(backup)))
            except IntegrityError as e:
                self.logger.warning(f"Skipping unreadable backup {backup.backup_id}: {e.message}")

        # Exact paths in any backup win over relative matches in newer ones
        lookups = (
            lambda manifest: manifest.find(target),
            lambda manifest: manifest.find_relative(target, self.root),
        )
        for lookup in lookups:
            for backup, manifest in manifests:
                entry = lookup(manifest)
                if entry is None:
                    continue

                with self.lock_for(backup):
                    self._restore_entries(backup, [(entry, target)])
                self.logger.info(f"Restored {target} from backup: {backup.backup_id}")
                return backup

        raise BackupNotFoundError(str(target), "no backup contains this file")

    def restore_backup(self, backup: Backup) -> List[Path]:
        """
        Restore every file recorded in a backup to its original path.

        All entries are attempted; failures are collected and reported
        together.

        Returns:
            Paths restored.

        Raises:
            FileOperationError: If any file could not be restored.
        """
        manifest = self.load_manifest(backup)
        with self.lock_for(backup):
            restored = self._restore_entries(
                backup,
                [(entry, entry.path) for entry in manifest.files],
                stop_on_error=False,
            )
        self.logger.info(f"Restored {len(restored)} files from backup: {backup.backup_id}")
        return restored

    def lock_for(self, backup: Backup):
        if backup.kind is None:
            return nullcontext()
        return self.registry(backup.kind).lock

    def _restore_entries(
        self,
        backup: Backup,
        entries: List[Tuple[TrackedFile, Path]],
        stop_on_error: bool = True,
    ) -> List[Path]:
        restored: List[Path] = []
        failed: List[str] = []

        try:
            tar = tarfile.open(backup.archive, "r:gz")
        except (tarfile.TarError, OSError) as e:
            raise IntegrityError(str(backup.archive), f"cannot open archive: {e}", cause=e) from e

        with tar:
            for entry, destination in entries:
                member_name = f"{backup.backup_id}/{TREE_DIR}/{entry.relpath}"
                try:
                    member = tar.getmember(member_name)
                    self._restore_member(tar, member, entry, destination)
                    restored.append(destination)
                    self.logger.debug(f"  restored: {destination}")
                except (KeyError, OSError, tarfile.TarError, FileOperationError) as e:
                    if stop_on_error:
                        raise FileOperationError(
                            "restore", str(destination), f"{member_name}: {e}", cause=e
                        ) from e
                    self.logger.warning(f"  failed to restore: {destination}: {e}")
                    failed.append(str(destination))

        if failed:
            raise FileOperationError(
                "restore",
                backup.backup_id,
                f"{len(failed)} files failed to restore",
                details={"failed": failed},
            )
        return restored

    def _restore_member(self, tar: tarfile.TarFile, member: tarfile.TarInfo, entry: TrackedFile, destination: Path) -> None:
        if member.issym():
            destination.parent.mkdir(parents=True, exist_ok=True)
            temp_link = destination.with_name(f".{destination.name}.link.tmp")
            if os.path.lexists(temp_link):
                os.unlink(temp_link)
            os.symlink(member.linkname, temp_link)
            os.replace(temp_link, destination)
            return

        if not member.isfile():
            raise FileOperationError("restore", str(destination), f"{member.name} is not a regular file")

        data = tar.extractfile(member).read()
        self.writer.write(destination, data, mode=entry.mode)
        os.utime(destination, (member.mtime, member.mtime))

    def extract(self, backup: Backup, destination: Path) -> Path:
        """
        Extract a backup archive below ``destination``.

        Returns:
            Directory holding the restored tree.

        Raises:
            IntegrityError: If the archive is unsafe or has no content.
            FileOperationError: If extraction fails.
        """
        destination = Path(destination)
        try:
            with tarfile.open(backup.archive, "r:gz") as tar:
                members = tar.getmembers()
                _check_members(members, str(backup.archive))
                if hasattr(tarfile, "fully_trusted_filter"):
                    tar.extractall(destination, members=members, filter="fully_trusted")
                else:
                    tar.extractall(destination, members=members)
        except (tarfile.TarError, EOFError, zlib.error) as e:
            raise IntegrityError(str(backup.archive), f"extraction failed: {e}", cause=e) from e
        except OSError as e:
            raise FileOperationError("extract", str(backup.archive), str(e), cause=e) from e

        tops = [p for p in destination.iterdir() if p.is_dir() and not p.is_symlink()]
        if not tops:
            raise IntegrityError(str(backup.archive), "invalid backup structure: no content directory found")
        content = tops[0] / TREE_DIR
        # Archives without a tree/ directory hold the content directly
        return content if content.is_dir() else tops[0]

    # ------------------------------------------------------------------
    # Configuration snapshots
    # ------------------------------------------------------------------

    def snapshot_config(self, config_dir: Optional[Path] = None, description: str = "") -> Optional[Backup]:
        """
        Capture the auxiliary configuration directory.

        Returns:
            The config Backup, or None if the directory does not exist.
        """
        config_dir = Path(config_dir or self.settings.config_dir)
        if not config_dir.is_dir():
            self.logger.warning(f"Configuration directory not found at {config_dir}")
            return None
        self.logger.info(f"Preserving configuration directory {config_dir}")
        return self.create(
            [config_dir],
            kind=BackupKind.CONFIG,
            description=description,
            root=config_dir.parent,
        )

    def find_config_snapshot(self, backup: Backup) -> Optional[Backup]:
        """Find the config snapshot taken alongside ``backup``."""
        config = self.registry(BackupKind.CONFIG)
        try:
            linked = self.load_manifest(backup).links.get("config_snapshot")
        except IntegrityError:
            linked = None
        if linked:
            found = config.get(linked)
            if found is not None:
                return found
            self.logger.warning(f"Linked config snapshot {linked} no longer exists")

        for candidate in config.backups():
            if candidate.stamp <= backup.stamp:
                return candidate
        return None

    def restore_config(self, snapshot: Backup, config_dir: Optional[Path] = None) -> Path:
        """
        Replace the configuration directory with a snapshot's content.

        Returns:
            The restored configuration directory.

        Raises:
            FileOperationError: If the snapshot lacks the directory or the swap fails.
        """
        config_dir = Path(config_dir or self.settings.config_dir)
        parent = config_dir.parent
        parent.mkdir(parents=True, exist_ok=True)

        with self.registry(BackupKind.CONFIG).lock:
            workdir = Path(tempfile.mkdtemp(prefix=f".{config_dir.name}.restore-", dir=parent))
            try:
                tree = self.extract(snapshot, workdir / "extract")
                restored = tree / config_dir.name
                if not restored.is_dir():
                    raise FileOperationError(
                        "restore config", str(config_dir),
                        f"snapshot {snapshot.backup_id} does not contain {config_dir.name}",
                    )
                try:
                    if config_dir.exists():
                        os.replace(config_dir, workdir / "previous")
                    os.replace(restored, config_dir)
                except OSError as e:
                    raise FileOperationError("restore config", str(config_dir), str(e), cause=e) from e
            finally:
                shutil.rmtree(workdir, ignore_errors=True)

        self.logger.info(f"Configuration restored from {snapshot.backup_id}")
        return config_dir


def _content_path(name: str) -> str:
    """Strip ``<backup-id>/tree/`` (or ``<top>/``) from a member name."""
    parts = name.split("/", 2)
    if len(parts) == 3 and parts[1] == TREE_DIR:
        return parts[2]
    if len(parts) >= 2:
        return "/".join(parts[1:])
    return ""


def _check_members(members: List[tarfile.TarInfo], archive: str) -> None:
    """
    Reject members that would land outside the extraction directory.

    Raises:
        IntegrityError: On absolute paths, ``..`` components, links that
            escape, or members nested below a symlink.
    """
    symlinks = set()
    for member in members:
        name = member.name
        parts = Path(name).parts
        if name.startswith("/") or ".." in parts:
            raise IntegrityError(archive, f"unsafe member path: {name}")
        if member.islnk() and (member.linkname.startswith("/") or ".." in Path(member.linkname).parts):
            raise IntegrityError(archive, f"unsafe hard link: {name} -> {member.linkname}")
        for depth in range(1, len(parts)):
            if "/".join(parts[:depth]) in symlinks:
                raise IntegrityError(archive, f"member below a symlink: {name}")
        if member.issym():
            symlinks.add(name.rstrip("/"))
