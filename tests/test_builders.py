"""Tests for builder/bb.py, builder/binary.py and builder/base.py.

Builders are run against a fake toolchain that writes placeholder
binaries instead of invoking the Go compiler.
"""

import threading
from dataclasses import replace
from pathlib import Path

import pytest

from initramfs_imagegen.builder.base import (
    Binary,
    MultiplexedBinary,
    check_commands,
    get_builder,
)
from initramfs_imagegen.builder.bb import BBBuilder, assign_idents, shellbang_stub
from initramfs_imagegen.builder.binary import BinaryBuilder
from initramfs_imagegen.errors import (
    CompileCancelledError,
    CompileError,
    ConfigError,
)
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.packages import Command
from initramfs_imagegen.types import RecordType

MAIN_GO = """package main

import "fmt"

func main() {
\tfmt.Println("hi")
}
"""


class FakeToolchain:
    """Records build calls and writes a placeholder binary."""

    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()

    def build(
        self,
        env,
        package,
        output,
        log_path,
        cwd=None,
        no_strip=False,
        cancel=None,
        extra_env=None,
    ):
        with self.lock:
            self.calls.append(
                {
                    "package": package,
                    "output": output,
                    "cwd": cwd,
                    "no_strip": no_strip,
                    "extra_env": extra_env,
                }
            )
        Path(output).write_bytes(b"\x7fELF" + Path(output).name.encode())
        Path(output).chmod(0o755)


@pytest.fixture
def env() -> Environment:
    """Create a linux/amd64 environment."""
    return Environment(goos="linux", goarch="amd64")


def _command(tmp_path: Path, name: str, source: str = MAIN_GO) -> Command:
    src = tmp_path / "src" / name
    src.mkdir(parents=True)
    (src / "main.go").write_text(source)
    return Command(
        name=name,
        import_path=f"example.com/cmds/{name}",
        dir=src,
        go_files=("main.go",),
        module_path="example.com",
        module_dir=tmp_path / "src",
        go_version="1.21",
    )


class TestCheckCommands:
    """Tests for check_commands function."""

    def test_empty(self):
        """An empty command list is rejected."""
        with pytest.raises(ConfigError):
            check_commands([])

    def test_duplicate_names(self, tmp_path):
        """Two commands with the same name are rejected."""
        a = Command(name="ls", import_path="a/ls", dir=tmp_path)
        b = Command(name="ls", import_path="b/ls", dir=tmp_path)
        with pytest.raises(ConfigError, match="a/ls"):
            check_commands([a, b])


class TestGetBuilder:
    """Tests for get_builder function."""

    def test_known_builders(self):
        """bb and binary map to their builders."""
        assert isinstance(get_builder("bb"), BBBuilder)
        assert isinstance(get_builder("binary", max_workers=2), BinaryBuilder)
        assert get_builder("bb", shellbang=True).shellbang is True

    def test_source_deprecated(self):
        """The source strategy is rejected as deprecated."""
        with pytest.raises(ConfigError, match="deprecated"):
            get_builder("source")

    def test_unknown(self):
        """Unknown names are rejected."""
        with pytest.raises(ConfigError, match="could not find builder"):
            get_builder("gcc")


class TestAssignIdents:
    """Tests for assign_idents function."""

    def test_unique(self, tmp_path):
        """Names that sanitize to the same identifier are disambiguated."""
        commands = [
            Command(name="a-b", import_path="x/a-b", dir=tmp_path),
            Command(name="a_b", import_path="x/a_b", dir=tmp_path),
            Command(name="init", import_path="x/init", dir=tmp_path),
        ]
        idents = assign_idents(commands)
        assert idents == {"a-b": "a_b", "a_b": "a_b1", "init": "initcmd"}


class TestBBBuilder:
    """Tests for BBBuilder."""

    def test_generates_module_and_records(self, env, tmp_path):
        """Sources are rewritten into one module and symlinked to bb."""
        toolchain = FakeToolchain()
        commands = [_command(tmp_path, "ls"), _command(tmp_path, "init")]
        work = tmp_path / "work"

        result = BBBuilder(toolchain=toolchain).build(commands, work, env)

        bb_src = work / "bb-src"
        assert "package initcmd" in (bb_src / "cmds/initcmd/main.go").read_text()
        assert "func BBMain()" in (bb_src / "cmds/ls/main.go").read_text()
        assert (bb_src / "cmds/ls/bbinit_generated.go").is_file()
        go_mod = (bb_src / "go.mod").read_text()
        assert f"example.com => {tmp_path / 'src'}" in go_mod
        assert "go 1.21" in go_mod
        assert '"init": {init: bbcmd_initcmd.BBInit' in (bb_src / "main.go").read_text()

        (call,) = toolchain.calls
        assert call["cwd"] == bb_src
        assert call["output"] == work / "bbin" / "bb"
        assert call["extra_env"]["GOFLAGS"] == "-mod=mod"

        records = {r.path: r for r in result.records}
        assert records["bbin/bb"].type == RecordType.FILE
        assert records["bbin/bb"].mode == 0o755
        assert records["bbin/ls"].type == RecordType.SYMLINK
        assert records["bbin/ls"].target == "bb"
        assert result.symlink_hints == {"init": "bbin/init", "ls": "bbin/ls"}
        assert result.target_dir == "bbin"

        (artifact,) = result.artifacts
        assert isinstance(artifact, MultiplexedBinary)
        assert artifact.dispatch_table["ls"] == "bbcmd_ls.BBMain"

    def test_shellbang_stubs(self, env, tmp_path):
        """With shellbang, commands are #! stubs pointing at bb."""
        commands = [_command(tmp_path, "ls")]

        result = BBBuilder(toolchain=FakeToolchain(), shellbang=True).build(
            commands, tmp_path / "work", env
        )

        stub = {r.path: r for r in result.records}["bbin/ls"]
        assert stub.type == RecordType.FILE
        assert stub.data == b"#!/bbin/bb #!ls\n"
        assert stub.mode == 0o755
        assert shellbang_stub("ls") == stub.data

    def test_command_named_bb(self, env, tmp_path):
        """A command may not shadow the multiplexed binary."""
        with pytest.raises(ConfigError, match="'bb'"):
            BBBuilder(toolchain=FakeToolchain()).build(
                [_command(tmp_path, "bb")], tmp_path / "work", env
            )

    def test_library_package(self, env, tmp_path):
        """Sources that are not package main fail to compile."""
        command = _command(tmp_path, "lib", source="package lib\n")
        with pytest.raises(CompileError) as exc_info:
            BBBuilder(toolchain=FakeToolchain()).build([command], tmp_path / "w", env)
        assert exc_info.value.package == "example.com/cmds/lib"

    def test_missing_main(self, env, tmp_path):
        """A main package without func main is rejected."""
        command = _command(tmp_path, "nomain", source="package main\n")
        with pytest.raises(ConfigError, match="no main function"):
            BBBuilder(toolchain=FakeToolchain()).build([command], tmp_path / "w", env)

    def test_embed_files_copied(self, env, tmp_path):
        """go:embed files are copied next to the rewritten sources."""
        command = _command(tmp_path, "ls")
        (command.dir / "usage.txt").write_text("usage")
        command = replace(command, embed_files=("usage.txt",))
        work = tmp_path / "work"

        BBBuilder(toolchain=FakeToolchain()).build([command], work, env)

        assert (work / "bb-src/cmds/ls/usage.txt").read_text() == "usage"

    def test_rebuild_same_workspace(self, env, tmp_path):
        """A second build into a kept workspace regenerates the module."""
        ls, init = _command(tmp_path, "ls"), _command(tmp_path, "init")
        work = tmp_path / "work"
        builder = BBBuilder(toolchain=FakeToolchain())

        builder.build([ls, init], work, env)
        result = builder.build([ls], work, env)

        assert result.symlink_hints == {"ls": "bbin/ls"}
        assert (work / "bb-src/cmds/ls/main.go").is_file()
        assert not (work / "bb-src/cmds/initcmd").exists()
        assert '"init"' not in (work / "bb-src/main.go").read_text()


class TestBinaryBuilder:
    """Tests for BinaryBuilder."""

    def test_builds_each_command(self, env, tmp_path):
        """Each command becomes bin/<name>, built from its module root."""
        toolchain = FakeToolchain()
        commands = [_command(tmp_path, "ls"), _command(tmp_path, "cat")]
        work = tmp_path / "work"

        result = BinaryBuilder(toolchain=toolchain, max_workers=2).build(
            commands, work, env, no_strip=True
        )

        assert [r.path for r in result.records] == ["bin/cat", "bin/ls"]
        assert result.records[1].data == b"\x7fELFls"
        assert result.symlink_hints == {"cat": "bin/cat", "ls": "bin/ls"}
        assert all(isinstance(a, Binary) for a in result.artifacts)
        packages = sorted(call["package"] for call in toolchain.calls)
        assert packages == ["example.com/cmds/cat", "example.com/cmds/ls"]
        assert all(call["cwd"] == tmp_path / "src" for call in toolchain.calls)
        assert all(call["no_strip"] for call in toolchain.calls)

    def test_outside_module_builds_directory(self, env, tmp_path):
        """Commands outside a module are built by directory."""
        toolchain = FakeToolchain()
        src = tmp_path / "hello"
        src.mkdir()
        command = Command(name="hello", import_path="_" + str(src), dir=src)

        BinaryBuilder(toolchain=toolchain).build([command], tmp_path / "work", env)

        (call,) = toolchain.calls
        assert call["package"] == str(src)
        assert call["cwd"] == src

    def test_first_failure_cancels_siblings(self, env, tmp_path):
        """A failing compile cancels the others and removes partial output."""
        names = ["a", "b", "c", "d", "e"]
        commands = [
            Command(
                name=n,
                import_path=f"example.com/{n}",
                dir=tmp_path,
                module_path="example.com",
                module_dir=tmp_path,
            )
            for n in names
        ]
        started = threading.Barrier(len(names), timeout=5)

        class FailingToolchain(FakeToolchain):
            def build(self, env, package, output, log_path, cancel=None, **kwargs):
                Path(output).write_bytes(b"partial")
                started.wait()
                if package == "example.com/c":
                    raise CompileError(package, "syntax error", exit_code=2)
                if cancel.wait(timeout=5):
                    raise CompileCancelledError(package)
                raise AssertionError("compile was not cancelled")

        work = tmp_path / "work"
        builder = BinaryBuilder(toolchain=FailingToolchain(), max_workers=5)

        with pytest.raises(CompileError) as exc_info:
            builder.build(commands, work, env)

        assert not isinstance(exc_info.value, CompileCancelledError)
        assert exc_info.value.package == "example.com/c"
        assert not (work / "bin").exists()

    def test_empty(self, env, tmp_path):
        """Building nothing is a configuration error."""
        with pytest.raises(ConfigError):
            BinaryBuilder(toolchain=FakeToolchain()).build([], tmp_path, env)
