"""
Atomic file operations for Rites Keeper.

Ensures file writes are atomic - either complete successfully or no change.
Uses write-to-temp-then-rename pattern for POSIX atomicity guarantees.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from common.exceptions import AtomicWriteError, AtomicWriteFailure

Content = Union[str, bytes]

TEMP_MODE = 0o600
DEFAULT_MODE = 0o644


class AtomicWriter:
    """
    Writes, appends to and rewrites single files atomically.

    At every instant the target holds either its previous complete content
    or the new complete content. Each failure stage raises AtomicWriteError
    with a distinct ``kind`` and leaves no temporary file behind.
    """

    def __init__(self, default_mode: int = DEFAULT_MODE, logger: Optional[logging.Logger] = None):
        self.default_mode = default_mode
        self.log = logger or logging.getLogger(__name__)

    def write(self, target: Union[str, Path], content: Content, mode: Optional[int] = None) -> Path:
        """
        Write content to ``target`` atomically.

        Args:
            target: Destination file path
            content: Text (UTF-8 encoded) or bytes
            mode: Final permissions (default: writer default, 0o644)

        Returns:
            The target path.

        Raises:
            AtomicWriteError: On any failure; target is left untouched.
        """
        path = Path(target)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        final_mode = self.default_mode if mode is None else mode

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AtomicWriteError(AtomicWriteFailure.DIRECTORY, str(path), e) from e

        # Same directory as the target so the rename stays on one filesystem
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
            )
        except OSError as e:
            raise AtomicWriteError(AtomicWriteFailure.TEMPFILE, str(path), e) from e

        try:
            try:
                os.fchmod(fd, TEMP_MODE)
            except OSError as e:
                os.close(fd)
                raise AtomicWriteError(AtomicWriteFailure.PERMISSIONS, str(path), e) from e

            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise AtomicWriteError(AtomicWriteFailure.WRITE, str(path), e) from e

            try:
                os.replace(temp_path, path)
            except OSError as e:
                raise AtomicWriteError(AtomicWriteFailure.RENAME, str(path), e) from e
            temp_path = None
        finally:
            if temp_path is not None:
                _discard(temp_path)

        try:
            os.chmod(path, final_mode)
        except OSError as e:
            self.log.warning(f"Could not set mode {oct(final_mode)} on {path}: {e}")

        _sync_directory(path.parent)
        return path

    def append(self, target: Union[str, Path], content: Content, mode: Optional[int] = None) -> Path:
        """
        Append content to ``target`` (created if absent) atomically.

        The read-modify step is not guarded against concurrent writers.
        """
        path = Path(target)
        current = self._read(path, missing_ok=True)
        addition = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        return self.write(path, current + addition, mode=self._mode_for(path, mode))

    def replace(
        self,
        target: Union[str, Path],
        pattern: str,
        value: str,
        count: int = 0,
        literal: bool = False,
        mode: Optional[int] = None,
    ) -> int:
        """
        Find-and-replace in ``target`` atomically.

        Args:
            target: Existing text file
            pattern: Regular expression (or literal text if ``literal``)
            value: Replacement text
            count: Maximum substitutions (0 = all)
            literal: Treat ``pattern`` and ``value`` as plain text

        Returns:
            Number of substitutions made. Zero leaves the file untouched.

        Raises:
            AtomicWriteError: If the target cannot be read or written.
        """
        path = Path(target)
        text = self._read(path, missing_ok=False).decode("utf-8")

        if literal:
            regex = re.compile(re.escape(pattern))
            new_text, replaced = regex.subn(lambda _m: value, text, count=count)
        else:
            new_text, replaced = re.subn(pattern, value, text, count=count)

        if replaced:
            self.write(path, new_text, mode=self._mode_for(path, mode))
        return replaced

    def cleanup(
        self,
        directory: Union[str, Path],
        pattern: str = "*.tmp",
        max_age: float = 3600,
    ) -> int:
        """
        Remove stale temporary files older than ``max_age`` seconds.

        Returns:
            Number of files removed.
        """
        directory = Path(directory)
        if not directory.is_dir():
            return 0

        cutoff = time.time() - max_age
        removed = 0
        for candidate in directory.glob(pattern):
            try:
                if candidate.is_file() and candidate.stat().st_mtime < cutoff:
                    candidate.unlink()
                    removed += 1
            except OSError as e:
                self.log.debug(f"Could not remove {candidate}: {e}")

        if removed:
            self.log.info(f"Cleaned up {removed} temporary files in {directory}")
        return removed

    def _read(self, path: Path, missing_ok: bool) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            if missing_ok:
                return b""
            raise AtomicWriteError(AtomicWriteFailure.READ, str(path), e) from e
        except OSError as e:
            raise AtomicWriteError(AtomicWriteFailure.READ, str(path), e) from e

    def _mode_for(self, path: Path, mode: Optional[int]) -> Optional[int]:
        """Keep an existing file's permissions unless told otherwise."""
        if mode is not None:
            return mode
        try:
            return path.stat().st_mode & 0o7777
        except OSError:
            return None


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except OSError:
        pass


def _sync_directory(directory: Path) -> None:
    """Persist a rename by syncing the parent directory."""
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError):
        # O_DIRECTORY not available on all platforms
        pass
