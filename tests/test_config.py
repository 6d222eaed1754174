"""
Tests for Settings loading: defaults, JSON file and environment overrides.
"""

import json
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.config import CONFIG_FILENAME, DEFAULT_CAPS, DEFAULT_VERSION_URL, Settings
from common.exceptions import ValidationError


class TestDefaults:

    @pytest.mark.unit
    def test_defaults(self, tracked_tree):
        settings = Settings.load(tracked_tree, env={})

        assert settings.root == tracked_tree.resolve()
        assert settings.backups_dir == settings.root / "backups"
        assert settings.backup_prefix == "rites"
        assert settings.version_url == DEFAULT_VERSION_URL
        assert settings.version_field == "sha"
        assert settings.caps == DEFAULT_CAPS
        assert settings.cap_for("pre-rollback") == 5
        assert settings.health_command is None
        assert ".git" in settings.preserve
        assert settings.config_dir == Path.home() / ".claude-flow"

    @pytest.mark.unit
    def test_doctor_script_becomes_health_command(self, tracked_tree):
        doctor = tracked_tree / "tools" / "doctor.sh"
        doctor.write_text("#!/bin/sh\nexit 0\n")

        settings = Settings.load(tracked_tree, env={})

        assert settings.health_command == [str(settings.root / "tools" / "doctor.sh"), "--quiet"]


class TestOverrides:

    @pytest.mark.unit
    def test_environment(self, tracked_tree, tmp_path):
        env = {
            "RITES_CONFIG_DIR": str(tmp_path / "cfg"),
            "RITES_VERSION_URL": "https://example.invalid/version",
            "RITES_VERSION_FIELD": "version",
            "RITES_BACKUP_DIR": "store",
            "RITES_HEALTH_COMMAND": "make check --quiet",
            "RITES_REQUEST_TIMEOUT": "2.5",
        }
        settings = Settings.load(tracked_tree, env=env)

        assert settings.config_dir == tmp_path / "cfg"
        assert settings.version_url == "https://example.invalid/version"
        assert settings.version_field == "version"
        assert settings.backups_dir == settings.root / "store"
        assert settings.health_command == ["make", "check", "--quiet"]
        assert settings.request_timeout == 2.5

    @pytest.mark.unit
    def test_config_file_then_environment(self, tracked_tree):
        (tracked_tree / CONFIG_FILENAME).write_text(json.dumps({
            "version_field": "commit",
            "caps": {"manual": 3},
            "preserve": [".git", "local"],
            "health_command": "tools/check.sh -q",
            "health_policy": "reapply-safety",
        }))
        settings = Settings.load(tracked_tree, env={"RITES_VERSION_FIELD": "sha"})

        assert settings.version_field == "sha"
        assert settings.cap_for("manual") == 3
        assert settings.cap_for("update") == 10
        assert settings.preserve == (".git", "local")
        assert settings.health_command == ["tools/check.sh", "-q"]
        assert settings.health_policy == "reapply-safety"

    @pytest.mark.unit
    def test_explicit_config_file_must_exist(self, tracked_tree, tmp_path):
        with pytest.raises(ValidationError):
            Settings.load(tracked_tree, env={}, config_file=tmp_path / "missing.json")

    @pytest.mark.unit
    def test_unknown_keys_rejected(self, tracked_tree):
        (tracked_tree / CONFIG_FILENAME).write_text(json.dumps({"retention": 4}))
        with pytest.raises(ValidationError) as exc_info:
            Settings.load(tracked_tree, env={})
        assert exc_info.value.details["keys"] == ["retention"]

    @pytest.mark.unit
    def test_invalid_json(self, tracked_tree):
        (tracked_tree / CONFIG_FILENAME).write_text("{not json")
        with pytest.raises(ValidationError):
            Settings.load(tracked_tree, env={})

    @pytest.mark.unit
    def test_bad_timeout_variable(self, tracked_tree):
        with pytest.raises(ValidationError):
            Settings.load(tracked_tree, env={"RITES_REQUEST_TIMEOUT": "soon"})


class TestValidation:

    @pytest.mark.unit
    @pytest.mark.parametrize("kwargs", [
        {"health_policy": "panic"},
        {"request_timeout": 0},
        {"caps": {"manual": 0}},
        {"backup_prefix": "a/b"},
    ])
    def test_invalid_values(self, tracked_tree, kwargs):
        with pytest.raises(ValidationError):
            Settings(root=tracked_tree, **kwargs)
