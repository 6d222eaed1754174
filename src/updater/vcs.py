"""
Git working-tree access for the update orchestrator.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from common.exceptions import ConflictError, VersionControlError

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120


class GitRepository:
    """
    Thin wrapper around the ``git`` command line for one working tree.

    Every method runs a single git command; failures raise
    VersionControlError with the command and its stderr.
    """

    def __init__(self, root: Path, git: str = "git", timeout: int = GIT_TIMEOUT):
        self.root = Path(root)
        self.git = git
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.git, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.root),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise VersionControlError(" ".join(args), f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise VersionControlError(" ".join(args), str(e)) from e

        if check and result.returncode != 0:
            raise VersionControlError(" ".join(args), result.stderr.strip() or f"exit status {result.returncode}")
        return result

    def is_repository(self) -> bool:
        try:
            result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        except VersionControlError:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def head(self) -> str:
        """Commit id currently checked out."""
        return self._run("rev-parse", "HEAD").stdout.strip()

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def status(self) -> List[str]:
        """Short status lines for uncommitted changes."""
        output = self._run("status", "--porcelain").stdout
        return [line for line in output.splitlines() if line.strip()]

    def is_dirty(self) -> bool:
        return bool(self.status())

    def fetch(self, remote: str = "origin") -> None:
        logger.info(f"Fetching from {remote}")
        self._run("fetch", remote)

    def pending_commits(self, ref: str, limit: int = 50) -> List[str]:
        """One-line summaries of commits on ``ref`` not yet in HEAD."""
        result = self._run("log", "--oneline", f"-{limit}", f"HEAD..{ref}", check=False)
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    def merge_ff_only(self, ref: str) -> None:
        """
        Fast-forward HEAD to ``ref``.

        Raises:
            ConflictError: If the merge is not a fast-forward. Git leaves
                the working tree untouched in that case.
        """
        result = self._run("merge", "--ff-only", ref, check=False)
        if result.returncode != 0:
            raise ConflictError(
                f"Cannot fast-forward to {ref}; local history has diverged",
                details={"ref": ref, "stderr": result.stderr.strip()},
            )

    def is_intact(self) -> bool:
        """Whether the repository metadata is readable and HEAD resolves."""
        try:
            self._run("rev-parse", "--git-dir")
            self._run("rev-parse", "--verify", "HEAD")
        except VersionControlError as e:
            logger.warning(f"Repository check failed: {e.message}")
            return False
        return True

    def describe(self, ref: Optional[str] = None) -> str:
        """Short commit id for display."""
        return self._run("rev-parse", "--short", ref or "HEAD").stdout.strip()
