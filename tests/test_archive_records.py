"""Tests for archive/records.py module."""

import os

import pytest

from initramfs_imagegen.archive.records import (
    ROOT,
    Record,
    default_ramfs,
    normalize_path,
    parent_dirs,
)
from initramfs_imagegen.errors import ResolutionError
from initramfs_imagegen.types import RecordType


class TestNormalizePath:
    """Tests for normalize_path function."""

    def test_strips_leading_slash(self):
        """Absolute paths become relative to the archive root."""
        assert normalize_path("/bin/ls") == "bin/ls"

    def test_strips_dot_prefix(self):
        """./ prefixes are dropped."""
        assert normalize_path("./etc/passwd") == "etc/passwd"

    def test_clamps_parent_components(self):
        """.. cannot escape the archive root."""
        assert normalize_path("../../etc/../bin/sh") == "bin/sh"

    def test_root(self):
        """Root spellings normalize to '.'."""
        assert normalize_path("/") == ROOT
        assert normalize_path(".") == ROOT
        assert normalize_path("") == ROOT

    def test_collapses_slashes(self):
        """Repeated and trailing slashes are collapsed."""
        assert normalize_path("usr//lib/") == "usr/lib"


class TestParentDirs:
    """Tests for parent_dirs function."""

    def test_nested(self):
        """Ancestors are listed outermost first."""
        assert parent_dirs("usr/lib/libc.so") == ["usr", "usr/lib"]

    def test_top_level(self):
        """Top-level paths have no ancestors."""
        assert parent_dirs("init") == []


class TestRecord:
    """Tests for Record constructors."""

    def test_path_is_normalized(self):
        """Record paths are normalized on construction."""
        assert Record.file("/bin//x", b"").path == "bin/x"

    def test_symlink_size(self):
        """Symlink size is the target length."""
        record = Record.symlink("bin/sh", "../bbin/elvish")
        assert record.type == RecordType.SYMLINK
        assert record.size == len("../bbin/elvish")

    def test_file_size(self):
        """File size is the data length."""
        assert Record.file("a", b"hello").size == 5

    def test_renamed(self):
        """renamed returns a copy at a new path."""
        record = Record.file("init", b"x", 0o755)
        moved = record.renamed("inito")
        assert moved.path == "inito"
        assert moved.data == b"x"
        assert moved.mode == 0o755
        assert record.path == "init"


class TestRecordFromPath:
    """Tests for Record.from_path."""

    def test_regular_file(self, tmp_path):
        """Regular files carry content and permission bits."""
        source = tmp_path / "tool"
        source.write_bytes(b"#!/bin/sh\n")
        source.chmod(0o750)

        record = Record.from_path(source, "/bin/tool")

        assert record.type == RecordType.FILE
        assert record.path == "bin/tool"
        assert record.data == b"#!/bin/sh\n"
        assert record.mode == 0o750
        assert record.uid == 0
        assert record.mtime == 0

    def test_directory(self, tmp_path):
        """Directories become directory records."""
        record = Record.from_path(tmp_path, "etc")
        assert record.is_dir

    def test_symlink_not_followed(self, tmp_path):
        """Symlinks are recorded, not dereferenced."""
        link = tmp_path / "link"
        os.symlink("target", link)

        record = Record.from_path(link, "lib/link")

        assert record.type == RecordType.SYMLINK
        assert record.target == "target"

    def test_missing_file(self, tmp_path):
        """A missing host file raises ResolutionError with the path."""
        missing = tmp_path / "missing"
        with pytest.raises(ResolutionError) as exc_info:
            Record.from_path(missing, "missing")
        assert exc_info.value.path == str(missing)


class TestDefaultRamfs:
    """Tests for the default filesystem skeleton."""

    def test_contains_basic_layout(self):
        """Skeleton has the standard directories and device nodes."""
        records = {r.path: r for r in default_ramfs()}

        assert records["dev"].is_dir
        assert records["tmp"].mode == 0o777
        assert records["dev/console"].type == RecordType.CHAR_DEVICE
        assert (records["dev/null"].rdev_major, records["dev/null"].rdev_minor) == (
            1,
            3,
        )
        assert records["etc/resolv.conf"].data.startswith(b"nameserver")

    def test_no_root_record(self):
        """The archive root is never part of the skeleton."""
        assert all(r.path != ROOT for r in default_ramfs())
