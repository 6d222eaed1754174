"""
Rites Keeper Common Utilities

Shared error types, logging, configuration, locking and prompts.
"""

from .exceptions import (
    ExitCode, KeeperError, ValidationError, BackupNotFoundError, IntegrityError,
    FileOperationError, AtomicWriteFailure, AtomicWriteError, RemoteVersionError,
    RegistryLockedError, VersionControlError, ConflictError, ExecutionError,
    HealthCheckWarning, UserCancelled,
)
from .logging_config import setup_logging, operation_logger, OperationLogger
from .config import Settings
from .locking import RegistryLock
from .prompts import Confirmer, StaticConfirmer, InteractiveConfirmer

__all__ = [
    # Exceptions
    "ExitCode", "KeeperError", "ValidationError", "BackupNotFoundError", "IntegrityError",
    "FileOperationError", "AtomicWriteFailure", "AtomicWriteError", "RemoteVersionError",
    "RegistryLockedError", "VersionControlError", "ConflictError", "ExecutionError",
    "HealthCheckWarning", "UserCancelled",
    # Logging
    "setup_logging", "operation_logger", "OperationLogger",
    # Configuration
    "Settings",
    # Locking
    "RegistryLock",
    # Prompts
    "Confirmer", "StaticConfirmer", "InteractiveConfirmer",
]
