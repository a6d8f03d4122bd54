"""Tests for extrafiles/service.py and extrafiles/ldd.py modules.

ELF parsing is replaced by a table of fake metadata keyed by file name,
so dependency resolution can be exercised without real binaries.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from initramfs_imagegen.archive.records import normalize_path
from initramfs_imagegen.errors import ConfigError, ResolutionError
from initramfs_imagegen.extrafiles.ldd import (
    DependencyResolver,
    ElfInfo,
    default_library_dirs,
    read_elf_info,
    read_ld_so_conf,
)
from initramfs_imagegen.extrafiles.service import (
    parse_extra_file,
    resolve_extra_files,
)
from initramfs_imagegen.types import RecordType


def _fake_elf(table):
    """Build a read_elf_info replacement answering from a name table."""

    def read(path):
        return table.get(Path(path).name)

    return read


def _elf(*needed, elf_class=64, interp=None):
    return ElfInfo(
        elf_class=elf_class, machine="EM_X86_64", interp=interp, needed=needed
    )


@pytest.fixture
def layout(tmp_path):
    """Create a program and a library directory."""
    (tmp_path / "bin").mkdir()
    (tmp_path / "lib").mkdir()
    (tmp_path / "bin" / "prog").write_bytes(b"program")
    return tmp_path


class TestParseExtraFile:
    """Tests for parse_extra_file function."""

    def test_source_only(self):
        """A plain path is installed at the same archive path."""
        extra = parse_extra_file("/usr/bin/strace")
        assert extra.source == Path("/usr/bin/strace")
        assert extra.archive_path == "usr/bin/strace"

    def test_source_and_destination(self):
        """src:dst installs src at dst."""
        extra = parse_extra_file("/etc/hosts:/etc/hosts.orig")
        assert extra.source == Path("/etc/hosts")
        assert extra.archive_path == "etc/hosts.orig"

    def test_home_expanded(self):
        """A leading ~ is expanded."""
        extra = parse_extra_file("~/motd:etc/motd")
        assert extra.source == Path.home() / "motd"

    def test_empty_source(self):
        """An entry without a source is rejected."""
        with pytest.raises(ConfigError, match="no source"):
            parse_extra_file(":etc/motd")

    def test_empty_destination(self):
        """A trailing colon without a destination is rejected."""
        with pytest.raises(ConfigError, match="empty destination"):
            parse_extra_file("/etc/motd:")

    def test_archive_root(self):
        """An entry cannot replace the archive root."""
        with pytest.raises(ConfigError, match="archive root"):
            parse_extra_file("/tmp:/")


class TestReadElfInfo:
    """Tests for read_elf_info function."""

    def test_not_elf(self, tmp_path):
        """Files without the ELF magic are not ELF files."""
        script = tmp_path / "script"
        script.write_text("#!/bin/sh\n")
        assert read_elf_info(script) is None

    def test_malformed(self, tmp_path):
        """A file with the magic but a broken header raises ResolutionError."""
        broken = tmp_path / "broken"
        broken.write_bytes(b"\x7fELF" + b"\x00" * 60)
        with pytest.raises(ResolutionError) as exc_info:
            read_elf_info(broken)
        assert exc_info.value.path == str(broken)

    def test_missing(self, tmp_path):
        """An unreadable file raises ResolutionError."""
        with pytest.raises(ResolutionError, match="cannot read"):
            read_elf_info(tmp_path / "missing")


class TestLdSoConf:
    """Tests for read_ld_so_conf and default_library_dirs."""

    def test_includes_and_comments(self, tmp_path):
        """include lines are globbed relative to the including file."""
        conf_d = tmp_path / "ld.so.conf.d"
        conf_d.mkdir()
        (conf_d / "b.conf").write_text("/opt/b/lib\n")
        (conf_d / "a.conf").write_text("# vendor\n/opt/a/lib\n")
        conf = tmp_path / "ld.so.conf"
        conf.write_text(
            "include ld.so.conf.d/*.conf\nhwcap 0 nosegneg\n/usr/local/lib\n"
        )

        assert read_ld_so_conf(conf) == ["/opt/a/lib", "/opt/b/lib", "/usr/local/lib"]

    def test_missing_file(self, tmp_path):
        """A missing configuration yields no directories."""
        assert read_ld_so_conf(tmp_path / "nope") == []

    def test_include_cycle(self, tmp_path):
        """Self-inclusion does not recurse forever."""
        conf = tmp_path / "ld.so.conf"
        conf.write_text(f"include {conf}\n/lib/extra\n")
        assert read_ld_so_conf(conf) == ["/lib/extra"]

    def test_default_dirs(self):
        """Multiarch directories come before the generic ones."""
        dirs = default_library_dirs(_elf())
        assert dirs[:2] == ["/lib/x86_64-linux-gnu", "/usr/lib/x86_64-linux-gnu"]
        assert dirs[-2:] == ["/lib", "/usr/lib"]
        assert "/lib64" in dirs


class TestDependencyResolver:
    """Tests for DependencyResolver.resolve."""

    def _resolver(self, layout):
        return DependencyResolver(library_path=[str(layout / "lib")], ld_so_conf=None)

    def test_plain_file(self, layout):
        """A non-ELF file resolves to itself."""
        prog = layout / "bin" / "prog"
        pairs = self._resolver(layout).resolve(prog, "bin/prog")
        assert pairs == [(prog, "bin/prog")]

    def test_default_archive_path(self, layout):
        """Without a destination the host path is used."""
        prog = layout / "bin" / "prog"
        ((_, dest),) = self._resolver(layout).resolve(prog)
        assert dest == normalize_path(str(prog))

    def test_needed_libraries(self, layout):
        """DT_NEEDED libraries follow the file, breadth first."""
        lib = layout / "lib"
        (lib / "libfoo.so").write_bytes(b"foo")
        (lib / "libbar.so").write_bytes(b"bar")
        table = {
            "prog": _elf("libfoo.so"),
            "libfoo.so": _elf("libbar.so"),
            "libbar.so": _elf(),
        }

        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            pairs = self._resolver(layout).resolve(layout / "bin" / "prog", "bin/prog")

        assert [dest for _, dest in pairs] == [
            "bin/prog",
            normalize_path(str(lib / "libfoo.so")),
            normalize_path(str(lib / "libbar.so")),
        ]

    def test_library_symlink_chain(self, layout):
        """Symlinked libraries bring their whole link chain."""
        lib = layout / "lib"
        (lib / "libfoo.so.1.2").write_bytes(b"foo")
        (lib / "libfoo.so.1").symlink_to("libfoo.so.1.2")
        table = {"prog": _elf("libfoo.so.1"), "libfoo.so.1.2": _elf()}

        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            pairs = self._resolver(layout).resolve(layout / "bin" / "prog", "bin/prog")

        dests = [dest for _, dest in pairs]
        assert dests[1:] == [
            normalize_path(str(lib / "libfoo.so.1")),
            normalize_path(str(lib / "libfoo.so.1.2")),
        ]

    def test_interpreter(self, layout):
        """The program interpreter is included."""
        interp = layout / "lib" / "ld-linux.so"
        interp.write_bytes(b"ld")
        table = {"prog": _elf(interp=str(interp))}

        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            pairs = self._resolver(layout).resolve(layout / "bin" / "prog", "bin/prog")

        assert pairs[1] == (interp, normalize_path(str(interp)))

    def test_missing_library(self, layout):
        """An unresolvable library raises ResolutionError naming it."""
        table = {"prog": _elf("libmissing.so")}
        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            with pytest.raises(ResolutionError, match="libmissing.so"):
                self._resolver(layout).resolve(layout / "bin" / "prog", "bin/prog")

    def test_incompatible_library_skipped(self, layout):
        """Libraries of another ELF class are not used."""
        (layout / "lib" / "libfoo.so").write_bytes(b"foo")
        table = {"prog": _elf("libfoo.so"), "libfoo.so": _elf(elf_class=32)}
        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            with pytest.raises(ResolutionError, match="libfoo.so"):
                self._resolver(layout).resolve(layout / "bin" / "prog", "bin/prog")

    def test_no_dependencies(self, layout):
        """follow_dependencies=False skips ELF inspection."""
        with patch("initramfs_imagegen.extrafiles.ldd.read_elf_info") as mock_read:
            pairs = self._resolver(layout).resolve(
                layout / "bin" / "prog", "bin/prog", follow_dependencies=False
            )
        mock_read.assert_not_called()
        assert len(pairs) == 1

    def test_directory(self, layout):
        """Directories are expanded in sorted order below the destination."""
        conf = layout / "conf"
        (conf / "sub").mkdir(parents=True)
        (conf / "b").write_text("b")
        (conf / "a").write_text("a")
        (conf / "sub" / "c").write_text("c")

        pairs = self._resolver(layout).resolve(conf, "etc/conf")

        assert [dest for _, dest in pairs] == [
            "etc/conf",
            "etc/conf/a",
            "etc/conf/b",
            "etc/conf/sub",
            "etc/conf/sub/c",
        ]

    def test_missing_path(self, layout):
        """A missing source raises ResolutionError with the path."""
        with pytest.raises(ResolutionError) as exc_info:
            self._resolver(layout).resolve(layout / "nope")
        assert exc_info.value.path == str(layout / "nope")
        assert exc_info.value.code == "resolution_error"


class TestResolveExtraFiles:
    """Tests for resolve_extra_files function."""

    def test_empty(self):
        """No entries give no records."""
        assert resolve_extra_files([]) == []

    def test_records_in_user_order(self, tmp_path):
        """Entries become records in the order given."""
        (tmp_path / "motd").write_text("hello\n")
        (tmp_path / "run.sh").write_text("#!/bin/sh\n")
        (tmp_path / "run.sh").chmod(0o755)
        resolver = DependencyResolver(ld_so_conf=None)

        records = resolve_extra_files(
            [f"{tmp_path / 'run.sh'}:bin/run", f"{tmp_path / 'motd'}:etc/motd"],
            resolver=resolver,
        )

        assert [r.path for r in records] == ["bin/run", "etc/motd"]
        assert records[0].mode == 0o755
        assert records[1].type == RecordType.FILE
        assert records[1].data == b"hello\n"

    def test_skip_ldd(self, tmp_path):
        """skip_ldd disables dependency resolution."""
        (tmp_path / "prog").write_bytes(b"x")
        table = {"prog": _elf("libfoo.so")}
        with patch(
            "initramfs_imagegen.extrafiles.ldd.read_elf_info",
            side_effect=_fake_elf(table),
        ):
            records = resolve_extra_files(
                [f"{tmp_path / 'prog'}:bin/prog"],
                resolver=DependencyResolver(ld_so_conf=None),
                skip_ldd=True,
            )
        assert [r.path for r in records] == ["bin/prog"]

    def test_symlink_kept_as_symlink(self, tmp_path):
        """Symlinks inside a directory entry are not followed."""
        tree = tmp_path / "tree"
        tree.mkdir()
        (tree / "real").write_text("data")
        (tree / "link").symlink_to("real")

        records = resolve_extra_files(
            [f"{tree}:opt/tree"], resolver=DependencyResolver(ld_so_conf=None)
        )

        link = {r.path: r for r in records}["opt/tree/link"]
        assert link.type == RecordType.SYMLINK
        assert link.target == "real"

    def test_missing_source(self, tmp_path):
        """A missing source raises ResolutionError."""
        with pytest.raises(ResolutionError):
            resolve_extra_files(
                [str(tmp_path / "missing")],
                resolver=DependencyResolver(ld_so_conf=None),
            )
