"""
Pytest configuration and shared fixtures for Rites Keeper tests.

Provides a throwaway tracked tree, settings pointing at it, and helpers
for comparing trees and driving git.
"""

import os
import shutil
import subprocess
import pytest
from pathlib import Path
from typing import Callable, Dict, Tuple
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


GIT_IDENTITY = [
    "-c", "user.name=Rites Test",
    "-c", "user.email=rites@example.invalid",
    "-c", "commit.gpgsign=false",
]


# ============ Tree Fixtures ============

@pytest.fixture
def tracked_tree(tmp_path: Path) -> Path:
    """Provide a small tracked tree with nested files and mixed modes."""
    root = tmp_path / "rites"
    (root / "tools").mkdir(parents=True)
    (root / "bash").mkdir()
    (root / "bash" / "aliases.sh").write_text("alias ll='ls -l'\n")
    (root / "tools" / "setup.sh").write_text("#!/bin/sh\necho setup\n")
    os.chmod(root / "tools" / "setup.sh", 0o755)
    (root / "README.md").write_text("machine rites\n")
    (root / "secrets.env").write_text("TOKEN=abc\n")
    os.chmod(root / "secrets.env", 0o600)
    return root


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Provide the auxiliary configuration directory."""
    path = tmp_path / "home" / ".claude-flow"
    path.mkdir(parents=True)
    (path / "settings.json").write_text('{"agents": 4}\n')
    return path


@pytest.fixture
def settings(tracked_tree: Path, config_dir: Path):
    """Settings for the tracked tree with no health command."""
    from common.config import Settings

    return Settings(root=tracked_tree, config_dir=config_dir)


@pytest.fixture
def backups(settings):
    """BackupManager bound to the tracked tree."""
    from updater.backup import BackupManager

    return BackupManager(settings)


@pytest.fixture
def tree_state() -> Callable[[Path], Dict[str, Tuple[str, bytes, int]]]:
    """Return a function capturing (type, content, mode) for every path under a directory."""

    def capture(root: Path) -> Dict[str, Tuple[str, bytes, int]]:
        state = {}
        if not root.exists():
            return state
        for path in sorted(root.rglob("*")):
            rel = str(path.relative_to(root))
            mode = os.lstat(path).st_mode & 0o7777
            if path.is_symlink():
                state[rel] = ("link", os.readlink(path).encode(), mode)
            elif path.is_dir():
                state[rel] = ("dir", b"", mode)
            else:
                state[rel] = ("file", path.read_bytes(), mode)
        return state

    return capture


# ============ Git Fixtures ============

def git(cwd: Path, *args: str) -> str:
    """Run git with a fixed identity and return stdout."""
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_checkout(tmp_path: Path):
    """
    Provide (upstream, checkout) repositories.

    The checkout is a clone of upstream on branch main, with one commit.
    """
    upstream = tmp_path / "upstream"
    upstream.mkdir()
    git(upstream, "init", "-q")
    git(upstream, "symbolic-ref", "HEAD", "refs/heads/main")
    (upstream / "tools").mkdir()
    (upstream / "tools" / "setup.sh").write_text("echo v1\n")
    (upstream / "README.md").write_text("v1\n")
    git(upstream, "add", ".")
    git(upstream, "commit", "-q", "-m", "initial")

    checkout = tmp_path / "checkout"
    git(tmp_path, "clone", "-q", str(upstream), str(checkout))
    return upstream, checkout


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests exercising several components on a real filesystem"
    )
    config.addinivalue_line(
        "markers", "requires_git: marks tests that need the git executable"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests based on environment."""
    skip_git = pytest.mark.skip(reason="Requires git")

    for item in items:
        if "requires_git" in item.keywords and shutil.which("git") is None:
            item.add_marker(skip_git)
