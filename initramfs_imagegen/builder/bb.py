"""Multiplexed ("busybox") builder.

All commands are compiled into a single executable, ``bbin/bb``. Each
command's sources are copied into a generated module and rewritten into
an importable package; a generated main package dispatches on the name
the binary was invoked as. Commands are installed as ``bbin/<name>``
symlinks to ``bb`` or, with shellbang, as ``#!/bbin/bb #!<name>`` stubs.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from pathlib import Path

from initramfs_imagegen.archive.records import DEFAULT_EXEC_MODE, Record
from initramfs_imagegen.builder.base import (
    BuildResult,
    Builder,
    MultiplexedBinary,
    check_commands,
)
from initramfs_imagegen.builder.rewrite import (
    MODULE_PATH,
    RewriteError,
    generate_go_mod,
    generate_main,
    generate_package_init,
    max_go_version,
    rewrite_file,
    sanitize_ident,
)
from initramfs_imagegen.errors import CompileError, ConfigError, ResolutionError
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.packages import Command
from initramfs_imagegen.golang.toolchain import GoToolchain

logger = logging.getLogger(__name__)

BB_NAME = "bb"
PACKAGE_INIT_FILE = "bbinit_generated.go"


def shellbang_stub(name: str, target_dir: str = "bbin") -> bytes:
    """Return the #! stub that runs a command through the multiplexed binary."""
    return f"#!/{target_dir}/{BB_NAME} #!{name}\n".encode()


def assign_idents(commands: Sequence[Command]) -> dict[str, str]:
    """Map command names to unique Go package identifiers."""
    idents: dict[str, str] = {}
    used: set[str] = set()
    for command in sorted(commands, key=lambda c: c.name):
        ident = sanitize_ident(command.name)
        candidate, n = ident, 1
        while candidate in used:
            candidate = f"{ident}{n}"
            n += 1
        used.add(candidate)
        idents[command.name] = candidate
    return idents


class BBBuilder(Builder):
    """Builds all commands into one multiplexed binary.

    Args:
        toolchain: Go toolchain used to compile.
        shellbang: Install commands as #! stubs instead of symlinks.
    """

    name = "bb"
    target_dir = "bbin"

    def __init__(
        self, toolchain: GoToolchain | None = None, shellbang: bool = False
    ) -> None:
        super().__init__(toolchain)
        self.shellbang = shellbang

    def _write_package(self, command: Command, ident: str, pkg_dir: Path) -> None:
        """Copy and rewrite one command into pkg_dir."""
        pkg_dir.mkdir(parents=True)
        var_inits: list[str] = []
        init_funcs: list[str] = []
        has_main = False

        for file_name in sorted(command.go_files):
            source_path = command.dir / file_name
            try:
                source = source_path.read_text()
            except OSError as e:
                raise ResolutionError(
                    f"cannot read {source_path}: {e}", path=source_path
                ) from e

            try:
                rewritten = rewrite_file(
                    source,
                    ident,
                    init_start=len(init_funcs),
                    var_init_name=f"bbVarInit{len(var_inits)}",
                )
            except RewriteError as e:
                raise CompileError(command.import_path, f"{file_name}: {e}") from e

            has_main = has_main or rewritten.has_main
            init_funcs.extend(rewritten.init_funcs)
            if rewritten.var_init:
                var_inits.append(rewritten.var_init)
            (pkg_dir / file_name).write_text(rewritten.source)

        if not has_main:
            raise ConfigError(f"{command.import_path} has no main function")

        for embed in command.embed_files:
            dest = pkg_dir / embed
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copy2(command.dir / embed, dest)
            except OSError as e:
                raise ResolutionError(
                    f"cannot copy embedded file {embed} of {command.import_path}: {e}",
                    path=command.dir / embed,
                ) from e

        init_file = PACKAGE_INIT_FILE
        while init_file in command.go_files:
            init_file = f"z{init_file}"
        (pkg_dir / init_file).write_text(
            generate_package_init(ident, var_inits, init_funcs)
        )

    def _write_module(
        self, commands: Sequence[Command], idents: dict[str, str], bb_dir: Path
    ) -> None:
        for command in commands:
            ident = idents[command.name]
            self._write_package(command, ident, bb_dir / "cmds" / ident)

        modules = {
            command.module_path: command.module_dir
            for command in commands
            if command.module_path and command.module_dir
        }
        go_version = max_go_version(command.go_version for command in commands)
        (bb_dir / "go.mod").write_text(generate_go_mod(modules, go_version))

        sums: set[str] = set()
        for module_dir in modules.values():
            go_sum = module_dir / "go.sum"
            if go_sum.is_file():
                sums.update(
                    line for line in go_sum.read_text().splitlines() if line.strip()
                )
        if sums:
            (bb_dir / "go.sum").write_text("\n".join(sorted(sums)) + "\n")

        (bb_dir / "main.go").write_text(generate_main(idents))

    def build(
        self,
        commands: Sequence[Command],
        workspace: Path,
        env: Environment,
        no_strip: bool = False,
    ) -> BuildResult:
        check_commands(commands)
        if any(command.name == BB_NAME for command in commands):
            raise ConfigError(f"a command may not be named {BB_NAME!r} in bb mode")

        idents = assign_idents(commands)
        bb_dir = workspace / "bb-src"
        bin_dir = workspace / self.target_dir
        shutil.rmtree(bb_dir, ignore_errors=True)
        bb_dir.mkdir(parents=True, exist_ok=True)
        bin_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Generating multiplexed module for %d commands", len(commands))
        self._write_module(commands, idents, bb_dir)

        output = bin_dir / BB_NAME
        self.toolchain.build(
            env,
            MODULE_PATH,
            output,
            log_path=workspace / "logs" / f"{BB_NAME}.log",
            cwd=bb_dir,
            no_strip=no_strip,
            extra_env={"GOFLAGS": "-mod=mod", "GOWORK": "off"},
        )

        names = sorted(idents)
        artifact = MultiplexedBinary(
            name=BB_NAME,
            path=output,
            dispatch_table={name: f"bbcmd_{idents[name]}.BBMain" for name in names},
        )

        records = [Record.from_path(output, f"{self.target_dir}/{BB_NAME}")]
        for name in names:
            path = f"{self.target_dir}/{name}"
            if self.shellbang:
                stub = shellbang_stub(name, self.target_dir)
                records.append(Record.file(path, stub, DEFAULT_EXEC_MODE))
            else:
                records.append(Record.symlink(path, BB_NAME))

        return BuildResult(
            artifacts=[artifact],
            target_dir=self.target_dir,
            symlink_hints={name: f"{self.target_dir}/{name}" for name in names},
            records=records,
        )

    def __repr__(self) -> str:
        return f"BBBuilder(shellbang={self.shellbang})"


__all__ = ["BBBuilder", "assign_idents", "shellbang_stub"]
