"""
Rites Keeper Exception Hierarchy

Provides clear, actionable error messages with structured information
for logging, user feedback, and exit-code mapping in the CLI.
"""

from enum import Enum, IntEnum
from typing import Optional, Dict, Any


class ExitCode(IntEnum):
    """Process exit codes reported by the command-line interface."""
    SUCCESS = 0
    ERROR = 1
    BACKUP_NOT_FOUND = 2
    INTEGRITY = 3
    EXECUTION = 4
    HEALTH_CHECK = 5
    CANCELLED = 6


class KeeperError(Exception):
    """
    Base exception for all Rites Keeper errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context as key-value pairs
        cause: Original exception that caused this error
        recoverable: Whether the error is recoverable
    """

    exit_code: ExitCode = ExitCode.ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.recoverable = recoverable

    def __str__(self):
        s = f"[{self.code}] {self.message}"
        if self.details:
            s += f" (details: {self.details})"
        if self.cause:
            s += f" caused by: {self.cause}"
        return s

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "exit_code": int(self.exit_code),
        }


# =============================================================================
# Input validation
# =============================================================================

class ValidationError(KeeperError):
    """Bad identifier, malformed flag or failed post-condition."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details=details,
            recoverable=False,
        )


# =============================================================================
# Backup errors
# =============================================================================

class BackupNotFoundError(KeeperError):
    """Backup identifier does not resolve to an archive."""

    exit_code = ExitCode.BACKUP_NOT_FOUND

    def __init__(self, backup_id: str, reason: str = "no matching archive"):
        super().__init__(
            f"Backup not found: {backup_id} ({reason})",
            code="BACKUP_NOT_FOUND",
            details={"backup_id": backup_id, "reason": reason},
            recoverable=False,
        )


class IntegrityError(KeeperError):
    """Archive is unreadable or fails tar listing."""

    exit_code = ExitCode.INTEGRITY

    def __init__(self, archive: str, reason: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Backup archive failed validation: {reason}",
            code="BACKUP_CORRUPTED",
            details={"archive": archive, "reason": reason},
            cause=cause,
            recoverable=False,
        )


# =============================================================================
# Filesystem / I/O errors
# =============================================================================

class FileOperationError(KeeperError):
    """Copy, extract, write or network failure."""
    def __init__(
        self,
        operation: str,
        target: str,
        reason: str,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"operation": operation, "target": target, "reason": reason}
        merged.update(details or {})
        super().__init__(
            f"{operation} failed for {target}: {reason}",
            code="IO_FAILED",
            details=merged,
            cause=cause,
        )


class AtomicWriteFailure(Enum):
    """Stage of an atomic write that failed."""
    DIRECTORY = "directory"
    TEMPFILE = "tempfile"
    PERMISSIONS = "permissions"
    WRITE = "write"
    RENAME = "rename"
    READ = "read"


class AtomicWriteError(FileOperationError):
    """Atomic write failed; the target keeps its previous content."""
    def __init__(self, kind: AtomicWriteFailure, target: str, cause: Optional[Exception] = None):
        super().__init__(
            f"atomic write ({kind.value})",
            target,
            str(cause) if cause else kind.value,
            cause=cause,
            details={"stage": kind.value},
        )
        self.kind = kind
        self.code = f"ATOMIC_{kind.name}_FAILED"


class RemoteVersionError(FileOperationError):
    """Remote version lookup failed."""
    def __init__(self, url: str, reason: str, cause: Optional[Exception] = None):
        super().__init__("remote version query", url, reason, cause=cause)
        self.code = "REMOTE_VERSION_FAILED"


class RegistryLockedError(KeeperError):
    """Another process holds the registry lock."""
    def __init__(self, directory: str):
        super().__init__(
            f"Backup registry is locked by another process: {directory}",
            code="REGISTRY_LOCKED",
            details={"directory": directory},
        )


class VersionControlError(KeeperError):
    """A git command failed."""
    def __init__(self, command: str, reason: str):
        super().__init__(
            f"git command failed: {command}: {reason}",
            code="VCS_FAILED",
            details={"command": command, "reason": reason},
        )


# =============================================================================
# Update / rollback execution
# =============================================================================

class ConflictError(KeeperError):
    """Update cannot be applied without conflict."""

    exit_code = ExitCode.EXECUTION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="UPDATE_CONFLICT",
            details=details,
        )


class ExecutionError(KeeperError):
    """Destructive phase failed; the safety backup is the recovery point."""

    exit_code = ExitCode.EXECUTION

    def __init__(
        self,
        operation: str,
        reason: str,
        safety_backup: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        message = f"{operation} failed: {reason}"
        if safety_backup:
            message += f". Recover from safety backup {safety_backup}"
        super().__init__(
            message,
            code="EXECUTION_FAILED",
            details={"operation": operation, "safety_backup": safety_backup},
            cause=cause,
        )
        self.safety_backup = safety_backup


class HealthCheckWarning(KeeperError):
    """Post-operation health check failed. Reported, never fatal."""

    exit_code = ExitCode.HEALTH_CHECK

    def __init__(self, operation: str, issues: Optional[list] = None):
        issues = list(issues or [])
        super().__init__(
            f"Health check reported issues after {operation}",
            code="HEALTH_CHECK_FAILED",
            details={"operation": operation, "issues": issues},
        )
        self.issues = issues


class UserCancelled(KeeperError):
    """User declined a confirmation prompt."""

    exit_code = ExitCode.CANCELLED

    def __init__(self, prompt: str):
        super().__init__(
            "Operation cancelled by user",
            code="USER_CANCELLED",
            details={"prompt": prompt},
        )
