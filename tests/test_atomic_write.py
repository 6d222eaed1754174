"""
Tests for AtomicWriter.

Failure stages are simulated by patching the os-level call each stage
makes; the target must keep its previous content and no temp file may
remain.
"""

import os
import time
import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.exceptions import AtomicWriteError, AtomicWriteFailure, FileOperationError
from utils.atomic_write import AtomicWriter


def leftovers(directory: Path):
    return [p.name for p in directory.iterdir() if p.name.endswith(".tmp")]


class TestWrite:

    @pytest.mark.unit
    def test_writes_new_file(self, tmp_path):
        target = tmp_path / "a.txt"
        AtomicWriter().write(target, "hello\n")

        assert target.read_text() == "hello\n"
        assert os.stat(target).st_mode & 0o777 == 0o644
        assert leftovers(tmp_path) == []

    @pytest.mark.unit
    def test_creates_parent_directories(self, tmp_path):
        target = tmp_path / "deep" / "er" / "file"
        AtomicWriter().write(target, b"\x00\x01")
        assert target.read_bytes() == b"\x00\x01"

    @pytest.mark.unit
    def test_applies_requested_mode(self, tmp_path):
        target = tmp_path / "script.sh"
        AtomicWriter().write(target, "#!/bin/sh\n", mode=0o750)
        assert os.stat(target).st_mode & 0o777 == 0o750

    @pytest.mark.unit
    def test_identical_writes_are_idempotent(self, tmp_path):
        target = tmp_path / "same.txt"
        writer = AtomicWriter()
        writer.write(target, "payload", mode=0o640)
        first = (target.read_bytes(), os.stat(target).st_mode)
        writer.write(target, "payload", mode=0o640)

        assert (target.read_bytes(), os.stat(target).st_mode) == first
        assert sorted(p.name for p in tmp_path.iterdir()) == ["same.txt"]

    @pytest.mark.unit
    def test_temp_file_is_restrictive_before_content(self, tmp_path):
        target = tmp_path / "a.txt"
        seen = {}
        real_fchmod = os.fchmod

        def spy(fd, mode):
            seen["mode"] = mode
            return real_fchmod(fd, mode)

        with patch("utils.atomic_write.os.fchmod", side_effect=spy):
            AtomicWriter().write(target, "x")

        assert seen["mode"] == 0o600


class TestWriteFailures:

    @pytest.fixture
    def existing(self, tmp_path):
        target = tmp_path / "config.txt"
        target.write_text("old content")
        return target

    @pytest.mark.unit
    def test_rename_failure_keeps_previous_content(self, existing):
        with patch("utils.atomic_write.os.replace", side_effect=OSError("EXDEV")):
            with pytest.raises(AtomicWriteError) as exc_info:
                AtomicWriter().write(existing, "new content")

        assert exc_info.value.kind == AtomicWriteFailure.RENAME
        assert existing.read_text() == "old content"
        assert leftovers(existing.parent) == []

    @pytest.mark.unit
    def test_write_failure_cleans_up(self, existing):
        with patch("utils.atomic_write.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(AtomicWriteError) as exc_info:
                AtomicWriter().write(existing, "new content")

        assert exc_info.value.kind == AtomicWriteFailure.WRITE
        assert existing.read_text() == "old content"
        assert leftovers(existing.parent) == []

    @pytest.mark.unit
    def test_permission_failure_cleans_up(self, existing):
        with patch("utils.atomic_write.os.fchmod", side_effect=OSError("EPERM")):
            with pytest.raises(AtomicWriteError) as exc_info:
                AtomicWriter().write(existing, "new content")

        assert exc_info.value.kind == AtomicWriteFailure.PERMISSIONS
        assert existing.read_text() == "old content"
        assert leftovers(existing.parent) == []

    @pytest.mark.unit
    def test_tempfile_failure(self, existing):
        with patch("utils.atomic_write.tempfile.mkstemp", side_effect=OSError("EMFILE")):
            with pytest.raises(AtomicWriteError) as exc_info:
                AtomicWriter().write(existing, "new content")

        assert exc_info.value.kind == AtomicWriteFailure.TEMPFILE
        assert existing.read_text() == "old content"

    @pytest.mark.unit
    def test_directory_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(AtomicWriteError) as exc_info:
            AtomicWriter().write(blocker / "child.txt", "x")

        assert exc_info.value.kind == AtomicWriteFailure.DIRECTORY

    @pytest.mark.unit
    def test_error_codes_are_distinct(self):
        codes = {
            AtomicWriteError(kind, "/t", OSError("x")).code
            for kind in AtomicWriteFailure
        }
        assert len(codes) == len(AtomicWriteFailure)

    @pytest.mark.unit
    def test_error_is_file_operation_error(self, existing):
        with patch("utils.atomic_write.os.replace", side_effect=OSError("boom")):
            with pytest.raises(FileOperationError) as exc_info:
                AtomicWriter().write(existing, "x")

        assert exc_info.value.details["target"] == str(existing)
        assert exc_info.value.details["stage"] == "rename"


class TestAppendReplace:

    @pytest.mark.unit
    def test_append_to_missing_file(self, tmp_path):
        target = tmp_path / "log.txt"
        AtomicWriter().append(target, "one\n")
        AtomicWriter().append(target, "two\n")
        assert target.read_text() == "one\ntwo\n"

    @pytest.mark.unit
    def test_append_keeps_existing_mode(self, tmp_path):
        target = tmp_path / "private"
        target.write_text("a")
        os.chmod(target, 0o600)

        AtomicWriter().append(target, "b")

        assert target.read_text() == "ab"
        assert os.stat(target).st_mode & 0o777 == 0o600

    @pytest.mark.unit
    def test_replace_regex(self, tmp_path):
        target = tmp_path / "rc"
        target.write_text("export EDITOR=vi\nexport PAGER=less\n")

        count = AtomicWriter().replace(target, r"EDITOR=\w+", "EDITOR=nvim")

        assert count == 1
        assert target.read_text() == "export EDITOR=nvim\nexport PAGER=less\n"

    @pytest.mark.unit
    def test_replace_literal(self, tmp_path):
        target = tmp_path / "rc"
        target.write_text("a.b a.b axb")

        count = AtomicWriter().replace(target, "a.b", "c\\1", literal=True)

        assert count == 2
        assert target.read_text() == "c\\1 c\\1 axb"

    @pytest.mark.unit
    def test_replace_without_match_leaves_file(self, tmp_path):
        target = tmp_path / "rc"
        target.write_text("unchanged")
        before = os.stat(target).st_mtime_ns

        assert AtomicWriter().replace(target, "missing", "x") == 0
        assert os.stat(target).st_mtime_ns == before

    @pytest.mark.unit
    def test_replace_missing_target(self, tmp_path):
        with pytest.raises(AtomicWriteError) as exc_info:
            AtomicWriter().replace(tmp_path / "nope", "a", "b")
        assert exc_info.value.kind == AtomicWriteFailure.READ


class TestCleanup:

    @pytest.mark.unit
    def test_removes_only_stale_temp_files(self, tmp_path):
        stale = tmp_path / ".a.txt.123.tmp"
        fresh = tmp_path / ".b.txt.456.tmp"
        keep = tmp_path / "data.txt"
        for path in (stale, fresh, keep):
            path.write_text("x")
        old = time.time() - 7200
        os.utime(stale, (old, old))

        removed = AtomicWriter().cleanup(tmp_path, max_age=3600)

        assert removed == 1
        assert not stale.exists()
        assert fresh.exists()
        assert keep.exists()

    @pytest.mark.unit
    def test_missing_directory(self, tmp_path):
        assert AtomicWriter().cleanup(tmp_path / "absent") == 0
