"""
Runtime configuration.

Settings are resolved from built-in defaults, an optional JSON file and
environment variables, in that order.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".rites-keeper.json"
DEFAULT_VERSION_URL = "https://api.github.com/repos/williamzujkowski/machine-rites/commits/main"

DEFAULT_CAPS = {
    "update": 10,
    "manual": 10,
    "config": 10,
    "pre-rollback": 5,
}

HEALTH_POLICIES = ("degrade", "reapply-safety")

# Environment variable -> (field name, converter)
ENV_OVERRIDES = {
    "RITES_CONFIG_DIR": ("config_dir", Path),
    "RITES_VERSION_URL": ("version_url", str),
    "RITES_VERSION_FIELD": ("version_field", str),
    "RITES_BACKUP_DIR": ("backups_dir", Path),
    "RITES_HEALTH_COMMAND": ("health_command", shlex.split),
    "RITES_REQUEST_TIMEOUT": ("request_timeout", float),
    "RITES_BACKUP_PREFIX": ("backup_prefix", str),
}


@dataclass
class Settings:
    """Resolved configuration for one tracked tree."""
    root: Path
    backups_dir: Optional[Path] = None
    config_dir: Path = field(default_factory=lambda: Path.home() / ".claude-flow")
    backup_prefix: str = ""
    version_url: str = DEFAULT_VERSION_URL
    version_field: str = "sha"
    request_timeout: float = 10.0
    remote: str = "origin"
    branch: str = "main"
    health_command: Optional[List[str]] = None
    health_timeout: float = 300.0
    health_policy: str = "degrade"
    caps: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CAPS))
    excludes: Tuple[str, ...] = (".git", "backups", "node_modules", ".DS_Store")
    preserve: Tuple[str, ...] = (".git", ".env.local", ".vscode", "backups")
    required_files: Tuple[str, ...] = ()
    expected_layout: Tuple[str, ...] = ("tools/",)

    def __post_init__(self):
        self.root = Path(self.root).expanduser().resolve()
        if self.backups_dir is None:
            self.backups_dir = self.root / "backups"
        self.backups_dir = Path(self.backups_dir).expanduser()
        if not self.backups_dir.is_absolute():
            self.backups_dir = self.root / self.backups_dir
        self.config_dir = Path(self.config_dir).expanduser()
        if not self.backup_prefix:
            self.backup_prefix = self.root.name or "rites"
        if self.health_command is None:
            doctor = self.root / "tools" / "doctor.sh"
            if doctor.exists():
                self.health_command = [str(doctor), "--quiet"]
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValidationError: On the first invalid field.
        """
        if self.health_policy not in HEALTH_POLICIES:
            raise ValidationError(
                f"Invalid health_policy '{self.health_policy}'",
                details={"allowed": list(HEALTH_POLICIES)},
            )
        if self.request_timeout <= 0:
            raise ValidationError(
                f"request_timeout must be positive, got {self.request_timeout}"
            )
        for kind, cap in self.caps.items():
            if not isinstance(cap, int) or cap < 1:
                raise ValidationError(
                    f"Retention cap for '{kind}' must be a positive integer, got {cap!r}"
                )
        if "/" in self.backup_prefix or not self.backup_prefix.strip():
            raise ValidationError(f"Invalid backup prefix '{self.backup_prefix}'")

    def cap_for(self, kind: str) -> int:
        return self.caps.get(kind, DEFAULT_CAPS.get(kind, 10))

    @classmethod
    def load(
        cls,
        root: Path,
        env: Optional[Mapping[str, str]] = None,
        config_file: Optional[Path] = None,
    ) -> "Settings":
        """
        Build settings for ``root``.

        Args:
            root: Tracked tree root.
            env: Environment mapping (default: os.environ).
            config_file: JSON file (default: <root>/.rites-keeper.json if present).

        Raises:
            ValidationError: If the file or an override is malformed.
        """
        env = os.environ if env is None else env
        root = Path(root).expanduser().resolve()
        values: Dict[str, Any] = {}

        path = config_file or root / CONFIG_FILENAME
        if config_file is not None or path.exists():
            values.update(_read_config_file(path))

        for var, (name, convert) in ENV_OVERRIDES.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[name] = convert(raw)
            except ValueError as e:
                raise ValidationError(
                    f"Invalid value for {var}: {raw!r}",
                    details={"variable": var, "reason": str(e)},
                ) from e

        return cls(root=root, **values)


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(
            f"Cannot read configuration file {path}",
            details={"reason": str(e)},
        ) from e

    if not isinstance(data, dict):
        raise ValidationError(f"Configuration file {path} must contain a JSON object")

    known = {f.name for f in fields(Settings)} - {"root"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(
            f"Unknown configuration keys in {path}: {', '.join(unknown)}",
            details={"keys": unknown},
        )

    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key in ("excludes", "preserve", "required_files", "expected_layout"):
            value = tuple(value)
        elif key == "caps":
            merged = dict(DEFAULT_CAPS)
            merged.update(value)
            value = merged
        elif key == "health_command" and isinstance(value, str):
            value = shlex.split(value)
        values[key] = value

    logger.debug(f"Loaded configuration from {path}")
    return values
