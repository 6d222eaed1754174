"""
Tests for the rites-keeper command line: argument handling and exit codes.
"""

import json
import logging
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.exceptions import ExitCode, RemoteVersionError
from common.prompts import InteractiveConfirmer
from updater.backup import BackupManager
from updater.cli import build_parser, main
from updater.remote import RemoteVersionSource
from updater.vcs import GitRepository

from conftest import git


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, config_dir):
    """Keep the CLI away from the real home directory and root logger."""
    for var in ("RITES_VERSION_URL", "RITES_BACKUP_DIR", "RITES_HEALTH_COMMAND", "RITES_BACKUP_PREFIX"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("RITES_CONFIG_DIR", str(config_dir))

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def answer(monkeypatch):
    """Set the interactive confirmation answer."""
    def set_answer(value: bool):
        monkeypatch.setattr(InteractiveConfirmer, "confirm", lambda self, prompt: value)
    return set_answer


def run(tree, *args):
    return main(["--root", str(tree), *args])


class TestParser:

    @pytest.mark.unit
    def test_rollback_defaults(self):
        args = build_parser().parse_args(["rollback"])
        assert args.backup == "latest"
        assert not args.force
        assert not args.restore_config

    @pytest.mark.unit
    def test_config_flags_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rollback", "--preserve-config", "--restore-config"])

    @pytest.mark.unit
    def test_no_command(self, capsys):
        assert main([]) == ExitCode.ERROR
        assert "usage:" in capsys.readouterr().out

    @pytest.mark.unit
    def test_verbose_after_subcommand(self):
        parser = build_parser()
        assert parser.parse_args(["rollback", "latest", "--verbose"]).verbose is True
        assert parser.parse_args(["update", "-v"]).verbose is True
        assert parser.parse_args(["backup", "list", "-v"]).verbose is True

    @pytest.mark.unit
    def test_verbose_before_subcommand_survives(self):
        parser = build_parser()
        assert parser.parse_args(["-v", "rollback"]).verbose is True
        assert parser.parse_args(["rollback"]).verbose is False


class TestLogOptions:

    @pytest.mark.unit
    def test_json_log_file(self, tracked_tree, tmp_path):
        log_file = tmp_path / "logs" / "keeper.log"

        assert run(tracked_tree, "--log-file", str(log_file), "--json-logs", "backup", "create") == ExitCode.SUCCESS

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert records
        assert all({"level", "logger", "message"} <= set(record) for record in records)
        assert any(record["message"].startswith("Backup created") for record in records)

    @pytest.mark.unit
    def test_plain_log_file_by_default(self, tracked_tree, tmp_path):
        log_file = tmp_path / "keeper.log"

        run(tracked_tree, "--log-file", str(log_file), "backup", "create")

        assert "Backup created" in log_file.read_text()
        assert not log_file.read_text().startswith("{")


class TestBackupCommand:

    @pytest.mark.unit
    def test_create_and_list(self, tracked_tree, capsys):
        assert run(tracked_tree, "backup", "create", "-d", "before upgrade") == ExitCode.SUCCESS
        assert "Backup created:" in capsys.readouterr().out

        assert run(tracked_tree, "backup", "list") == ExitCode.SUCCESS
        out = capsys.readouterr().out
        assert "rites-backup-" in out
        assert "Description: before upgrade" in out

    @pytest.mark.unit
    def test_list_empty(self, tracked_tree, capsys):
        assert run(tracked_tree, "backup", "list") == ExitCode.SUCCESS
        assert "No backups found." in capsys.readouterr().out

    @pytest.mark.unit
    def test_restore_file(self, tracked_tree, capsys):
        run(tracked_tree, "backup", "create")
        (tracked_tree / "README.md").write_text("broken\n")

        assert run(tracked_tree, "backup", "restore", str(tracked_tree / "README.md")) == ExitCode.SUCCESS
        assert (tracked_tree / "README.md").read_text() == "machine rites\n"

    @pytest.mark.unit
    def test_restore_without_backups(self, tracked_tree, capsys):
        assert run(tracked_tree, "backup", "restore", "README.md") == ExitCode.BACKUP_NOT_FOUND
        assert capsys.readouterr().err.startswith("Error: ")

    @pytest.mark.unit
    def test_path_outside_root(self, tracked_tree, tmp_path):
        outside = tmp_path / "elsewhere.txt"
        outside.write_text("x")
        assert run(tracked_tree, "backup", "create", str(outside)) == ExitCode.ERROR


class TestRollbackCommand:

    @pytest.fixture
    def backed_up(self, tracked_tree):
        run(tracked_tree, "backup", "create")
        (tracked_tree / "README.md").write_text("changed\n")
        return tracked_tree

    @pytest.mark.unit
    def test_forced_rollback(self, backed_up, capsys):
        assert run(backed_up, "rollback", "--force") == ExitCode.SUCCESS
        assert (backed_up / "README.md").read_text() == "machine rites\n"
        assert "Safety backup:" in capsys.readouterr().out

    @pytest.mark.unit
    def test_confirmed_rollback(self, backed_up, answer):
        answer(True)
        assert run(backed_up, "rollback", "latest") == ExitCode.SUCCESS
        assert (backed_up / "README.md").read_text() == "machine rites\n"

    @pytest.mark.unit
    def test_declined_rollback(self, backed_up, answer, capsys):
        answer(False)
        assert run(backed_up, "rollback") == ExitCode.CANCELLED
        assert (backed_up / "README.md").read_text() == "changed\n"
        assert "Rollback cancelled." in capsys.readouterr().out

    @pytest.mark.unit
    def test_dry_run(self, backed_up, capsys):
        assert run(backed_up, "rollback", "--dry-run") == ExitCode.SUCCESS
        assert (backed_up / "README.md").read_text() == "changed\n"
        assert "Dry run" in capsys.readouterr().out

    @pytest.mark.unit
    def test_unknown_backup(self, backed_up):
        assert run(backed_up, "rollback", "rites-backup-19990101-000000", "--force") == ExitCode.BACKUP_NOT_FOUND

    @pytest.mark.unit
    def test_corrupted_backup(self, backed_up, settings):
        archive = BackupManager(settings).resolve("latest").archive
        archive.write_bytes(archive.read_bytes()[:100])

        assert run(backed_up, "rollback", "--force") == ExitCode.INTEGRITY
        assert (backed_up / "README.md").read_text() == "changed\n"

    @pytest.mark.unit
    def test_health_check_failure(self, backed_up, monkeypatch):
        monkeypatch.setenv("RITES_HEALTH_COMMAND", "false")
        assert run(backed_up, "rollback", "--force") == ExitCode.HEALTH_CHECK

    @pytest.mark.unit
    def test_list(self, backed_up, capsys):
        assert run(backed_up, "rollback", "--list") == ExitCode.SUCCESS
        assert "Available backups:" in capsys.readouterr().out


@pytest.mark.integration
@pytest.mark.requires_git
class TestUpdateCommand:

    @pytest.fixture
    def checkout(self, git_checkout, tmp_path, monkeypatch):
        monkeypatch.setenv("RITES_BACKUP_DIR", str(tmp_path / "store"))
        return git_checkout

    def test_up_to_date(self, checkout, monkeypatch, capsys):
        _, tree = checkout
        head = GitRepository(tree).head()
        monkeypatch.setattr(RemoteVersionSource, "latest", lambda self: head)

        assert run(tree, "update") == ExitCode.SUCCESS
        assert "Already up to date" in capsys.readouterr().out

    def test_fast_forward(self, checkout, monkeypatch):
        upstream, tree = checkout
        (upstream / "README.md").write_text("v2\n")
        git(upstream, "commit", "-q", "-am", "second")
        head = git(upstream, "rev-parse", "HEAD")
        monkeypatch.setattr(RemoteVersionSource, "latest", lambda self: head)

        assert run(tree, "update") == ExitCode.SUCCESS
        assert (tree / "README.md").read_text() == "v2\n"

    def test_remote_unreachable(self, checkout, monkeypatch, capsys):
        _, tree = checkout

        def unreachable(self):
            raise RemoteVersionError(self.url, "connection refused")

        monkeypatch.setattr(RemoteVersionSource, "latest", unreachable)

        assert run(tree, "update") == ExitCode.ERROR
        assert "connection refused" in capsys.readouterr().err
