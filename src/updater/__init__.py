"""
Rites Keeper Backup, Update and Rollback System

Keeps a tracked tree safe across updates:
- Timestamped gzip tar backups with JSON-lines manifests
- Fast-forward-only updates with a backup taken first
- Validated rollback with a safety backup and preserved paths
- Pluggable post-operation health checks
"""

from .backup import (
    BackupManager,
    BackupRegistry,
    Backup,
    BackupKind,
    Manifest,
    TrackedFile,
    ValidationReport,
)
from .updater import (
    UpdateOrchestrator,
    UpdateResult,
    UpdateStatus,
)
from .rollback import (
    RollbackManager,
    RollbackResult,
    RollbackStatus,
    ConfigMode,
    HealthFailurePolicy,
)
from .verifier import (
    ValidationGate,
    CommandValidationGate,
    CallableValidationGate,
    NullValidationGate,
    HealthReport,
)

__all__ = [
    "BackupManager",
    "BackupRegistry",
    "Backup",
    "BackupKind",
    "Manifest",
    "TrackedFile",
    "ValidationReport",
    "UpdateOrchestrator",
    "UpdateResult",
    "UpdateStatus",
    "RollbackManager",
    "RollbackResult",
    "RollbackStatus",
    "ConfigMode",
    "HealthFailurePolicy",
    "ValidationGate",
    "CommandValidationGate",
    "CallableValidationGate",
    "NullValidationGate",
    "HealthReport",
]
