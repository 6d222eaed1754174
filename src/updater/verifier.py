"""
Health Verification

Runs the post-update / post-rollback health check. The check is pluggable:
an external command (the tree's own doctor script by default), a Python
callable, or nothing at all.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from common.config import Settings

logger = logging.getLogger(__name__)

# Lines of command output kept as issues when a check fails
MAX_REPORTED_LINES = 20


@dataclass
class HealthReport:
    """Outcome of a health check."""
    healthy: bool
    issues: List[str] = field(default_factory=list)


class ValidationGate:
    """Capability that reports whether the tracked tree is healthy."""

    name = "health check"

    def check(self, root: Path) -> HealthReport:
        raise NotImplementedError


class NullValidationGate(ValidationGate):
    """Always healthy. Used when no health check is configured."""

    name = "no health check"

    def check(self, root: Path) -> HealthReport:
        logger.debug("No health check configured, skipping")
        return HealthReport(healthy=True)


class CommandValidationGate(ValidationGate):
    """
    Runs an external command in the tree root.

    Exit status zero is healthy. Otherwise the last lines of its output are
    reported as issues.
    """

    def __init__(self, command: Sequence[str], timeout: float = 300.0):
        self.command = list(command)
        self.timeout = timeout
        self.name = " ".join(self.command)

    def check(self, root: Path) -> HealthReport:
        logger.info(f"Running health check: {self.name}")
        try:
            result = subprocess.run(
                self.command,
                cwd=str(root),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return HealthReport(False, [f"Health check timed out after {self.timeout:g}s"])
        except FileNotFoundError:
            return HealthReport(False, [f"Health check command not found: {self.command[0]}"])
        except OSError as e:
            return HealthReport(False, [f"Health check could not run: {e}"])

        if result.returncode == 0:
            logger.info("Health check passed")
            return HealthReport(healthy=True)

        output = (result.stdout + result.stderr).strip().splitlines()
        issues = [f"Health check exited with status {result.returncode}"]
        issues.extend(line for line in output[-MAX_REPORTED_LINES:] if line.strip())
        logger.warning(f"Health check failed with status {result.returncode}")
        return HealthReport(healthy=False, issues=issues)


class CallableValidationGate(ValidationGate):
    """
    Wraps a Python callable taking the root path.

    The callable may return a bool, a ``(healthy, issues)`` tuple or a
    HealthReport.
    """

    def __init__(
        self,
        func: Callable[[Path], Union[bool, Tuple[bool, List[str]], HealthReport]],
        name: Optional[str] = None,
    ):
        self.func = func
        self.name = name or getattr(func, "__name__", "health check")

    def check(self, root: Path) -> HealthReport:
        result = self.func(root)
        if isinstance(result, HealthReport):
            return result
        if isinstance(result, tuple):
            healthy, issues = result
            return HealthReport(bool(healthy), list(issues))
        return HealthReport(bool(result))


def gate_from_settings(settings: Settings) -> ValidationGate:
    """Build the configured gate for a tracked tree."""
    if settings.health_command:
        return CommandValidationGate(settings.health_command, timeout=settings.health_timeout)
    return NullValidationGate()
