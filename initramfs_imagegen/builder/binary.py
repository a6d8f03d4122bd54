"""Per-command builder.

Every command is compiled to its own executable under ``bin/``. Compiles
run concurrently on a thread pool; the first failure cancels queued
compiles and kills the running ones.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Sequence
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, as_completed
from pathlib import Path

from initramfs_imagegen.archive.records import Record
from initramfs_imagegen.builder.base import Binary, BuildResult, Builder, check_commands
from initramfs_imagegen.errors import CompileCancelledError
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.packages import Command
from initramfs_imagegen.golang.toolchain import GoToolchain

logger = logging.getLogger(__name__)


class BinaryBuilder(Builder):
    """Builds one standalone binary per command.

    Args:
        toolchain: Go toolchain used to compile.
        max_workers: Maximum number of concurrent compiles.
    """

    name = "binary"
    target_dir = "bin"

    def __init__(
        self, toolchain: GoToolchain | None = None, max_workers: int = 4
    ) -> None:
        super().__init__(toolchain)
        self.max_workers = max(1, max_workers)

    def _compile(
        self,
        command: Command,
        bin_dir: Path,
        log_dir: Path,
        env: Environment,
        no_strip: bool,
        cancel: threading.Event,
    ) -> Binary:
        output = bin_dir / command.name
        if command.module_path:
            package, cwd = command.import_path, command.module_dir or command.dir
        else:
            package, cwd = str(command.dir), command.dir

        self.toolchain.build(
            env,
            package,
            output,
            log_path=log_dir / f"{command.name}.log",
            cwd=cwd,
            no_strip=no_strip,
            cancel=cancel,
        )
        logger.debug("Built %s", output)
        return Binary(name=command.name, path=output)

    def build(
        self,
        commands: Sequence[Command],
        workspace: Path,
        env: Environment,
        no_strip: bool = False,
    ) -> BuildResult:
        check_commands(commands)

        bin_dir = workspace / self.target_dir
        bin_dir.mkdir(parents=True, exist_ok=True)
        log_dir = workspace / "logs"
        cancel = threading.Event()
        ordered = sorted(commands, key=lambda c: c.name)

        logger.info(
            "Compiling %d commands (%d at a time)",
            len(ordered),
            min(self.max_workers, len(ordered)),
        )

        binaries: list[Binary] = []
        first_error: Exception | None = None

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(ordered)),
            thread_name_prefix="go-build",
        ) as pool:
            futures: dict[Future[Binary], Command] = {
                pool.submit(
                    self._compile, command, bin_dir, log_dir, env, no_strip, cancel
                ): command
                for command in ordered
            }
            for future in as_completed(futures):
                try:
                    binaries.append(future.result())
                except (CancelledError, CompileCancelledError):
                    continue
                except Exception as e:
                    if first_error is None:
                        first_error = e
                        logger.error(
                            "Compile of %s failed; cancelling remaining compiles",
                            futures[future].import_path,
                        )
                        cancel.set()
                        for pending in futures:
                            pending.cancel()

        if first_error is not None:
            shutil.rmtree(bin_dir, ignore_errors=True)
            raise first_error

        binaries.sort(key=lambda b: b.name)
        records = [
            Record.from_path(binary.path, f"{self.target_dir}/{binary.name}")
            for binary in binaries
        ]
        return BuildResult(
            artifacts=list(binaries),
            target_dir=self.target_dir,
            symlink_hints={b.name: f"{self.target_dir}/{b.name}" for b in binaries},
            records=records,
        )

    def __repr__(self) -> str:
        return f"BinaryBuilder(max_workers={self.max_workers})"


__all__ = ["BinaryBuilder"]
