"""Go toolchain invocation.

This module handles:
- Composing `go build` commands for an Environment
- Running `go list -json` and decoding its concatenated JSON output
- Executing compiles with output captured to per-package log files
- Enforcing compile timeouts and killing compiles on cancellation
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from initramfs_imagegen.errors import (
    COMPILE_TIMEOUT,
    BuildEnvironmentError,
    CompileCancelledError,
    CompileError,
    ConfigError,
)
from initramfs_imagegen.golang.env import Environment

logger = logging.getLogger(__name__)

# Interval at which a running compile checks for cancellation
POLL_INTERVAL = 0.2

# Number of log lines quoted in a CompileError
LOG_TAIL_LINES = 20


def compose_build_command(
    env: Environment,
    package: str,
    output: Path,
    no_strip: bool = False,
    go_binary: str = "go",
) -> list[str]:
    """Compose the `go build` command for one package.

    Args:
        env: Target environment (supplies build tags).
        package: Import path or directory to build.
        output: Output binary path.
        no_strip: Keep symbol and debug tables.
        go_binary: Go executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [go_binary, "build", "-trimpath"]
    cmd.extend(env.tags_args())
    if not no_strip:
        cmd.append("-ldflags=-s -w")
    cmd.extend(["-o", str(output), package])
    return cmd


def decode_json_stream(text: str) -> list[dict[str, Any]]:
    """Decode a stream of concatenated JSON objects, as printed by go list.

    Args:
        text: Raw output.

    Returns:
        Decoded objects in stream order.

    Raises:
        ValueError: If the stream contains invalid JSON.
    """
    decoder = json.JSONDecoder()
    objects: list[dict[str, Any]] = []
    index = 0
    while True:
        while index < len(text) and text[index].isspace():
            index += 1
        if index >= len(text):
            return objects
        obj, index = decoder.raw_decode(text, index)
        objects.append(obj)


def _tail(path: Path, lines: int = LOG_TAIL_LINES) -> str:
    try:
        content = path.read_text(errors="replace").splitlines()
    except OSError:
        return ""
    body = [line for line in content if not line.startswith("# ")]
    return "\n".join(body[-lines:]).strip()


class GoToolchain:
    """Thin wrapper over the `go` command.

    Args:
        go_binary: Go executable name or path.
        timeout: Per-compile timeout in seconds (None = no timeout).
    """

    def __init__(self, go_binary: str = "go", timeout: int | None = None) -> None:
        self.go_binary = go_binary
        self.timeout = timeout

    def _environ(
        self, env: Environment, extra_env: dict[str, str] | None = None
    ) -> dict[str, str]:
        environ = dict(os.environ)
        environ.update(env.go_env())
        if extra_env:
            environ.update(extra_env)
        return environ

    def version(self, env: Environment | None = None) -> str:
        """Return the output of `go version`.

        Raises:
            BuildEnvironmentError: If the toolchain cannot be run.
        """
        environ = self._environ(env) if env is not None else None
        try:
            result = subprocess.run(
                [self.go_binary, "version"],
                capture_output=True,
                text=True,
                env=environ,
                timeout=60,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise BuildEnvironmentError(
                f"go version failed: {e.stderr.strip()}"
            ) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise BuildEnvironmentError(
                f"could not run Go toolchain {self.go_binary!r}: {e}"
            ) from e
        return result.stdout.strip()

    def list_packages(
        self,
        env: Environment,
        patterns: list[str],
        cwd: Path | None = None,
    ) -> list[dict[str, Any]]:
        """Run `go list -json` for the given patterns.

        Args:
            env: Target environment (GOOS/GOARCH and tags select files).
            patterns: Package patterns understood by go list.
            cwd: Working directory (selects the enclosing module).

        Returns:
            One decoded package object per listed package.

        Raises:
            ConfigError: If go list fails or reports a package error.
            BuildEnvironmentError: If the toolchain cannot be run.
        """
        cmd = [self.go_binary, "list", "-json", *env.tags_args(), *patterns]
        logger.debug("Listing packages: %s (cwd=%s)", shlex.join(cmd), cwd)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                env=self._environ(env),
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ConfigError(f"go list {' '.join(patterns)} timed out") from e
        except OSError as e:
            raise BuildEnvironmentError(
                f"could not run Go toolchain {self.go_binary!r}: {e}"
            ) from e

        if result.returncode != 0:
            raise ConfigError(
                f"could not resolve {' '.join(patterns)}: {result.stderr.strip()}"
            )

        try:
            packages = decode_json_stream(result.stdout)
        except ValueError as e:
            raise ConfigError(f"could not decode go list output: {e}") from e

        for pkg in packages:
            error = pkg.get("Error")
            if error:
                raise ConfigError(
                    f"could not resolve {pkg.get('ImportPath', '?')}: "
                    f"{error.get('Err', error)}"
                )
        return packages

    def build(
        self,
        env: Environment,
        package: str,
        output: Path,
        log_path: Path,
        cwd: Path | None = None,
        no_strip: bool = False,
        cancel: threading.Event | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        """Compile one package to an output binary.

        The compile is polled so that setting ``cancel`` kills it promptly.

        Args:
            env: Target environment.
            package: Import path or directory to build.
            output: Output binary path.
            log_path: File receiving the compiler output.
            cwd: Working directory for the compile.
            no_strip: Keep symbol and debug tables.
            cancel: Event that aborts the compile when set.
            extra_env: Additional environment variables.

        Raises:
            CompileCancelledError: If cancel was set before or during the compile.
            CompileError: If the compile fails, times out or cannot start.
        """
        if cancel is not None and cancel.is_set():
            raise CompileCancelledError(package)

        cmd = compose_build_command(
            env, package, output, no_strip=no_strip, go_binary=self.go_binary
        )
        cmd_str = shlex.join(cmd)
        logger.debug("Compiling %s: %s", package, cmd_str)

        log_path.parent.mkdir(parents=True, exist_ok=True)
        started_at = datetime.now(timezone.utc)

        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd or os.getcwd()}\n")
            log_file.write(f"# Environment: {env}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=self._environ(env, extra_env),
                )
            except OSError as e:
                raise CompileError(
                    package, f"could not run {self.go_binary}: {e}", log_path=log_path
                ) from e

            exit_code = self._wait(proc, package, log_path, cancel)

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {exit_code}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if exit_code != 0:
            cause = _tail(log_path) or f"go build exited with code {exit_code}"
            logger.error("Compile of %s failed. See log: %s", package, log_path)
            raise CompileError(package, cause, log_path=log_path, exit_code=exit_code)

    def _wait(
        self,
        proc: subprocess.Popen,
        package: str,
        log_path: Path,
        cancel: threading.Event | None,
    ) -> int:
        deadline = time.monotonic() + self.timeout if self.timeout else None
        while True:
            try:
                return proc.wait(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                logger.debug("Killing compile of %s", package)
                proc.kill()
                proc.wait()
                raise CompileCancelledError(package)

            if deadline is not None and time.monotonic() >= deadline:
                proc.kill()
                proc.wait()
                logger.error("Compile of %s timed out. See log: %s", package, log_path)
                raise CompileError(
                    package,
                    f"timed out after {self.timeout} seconds",
                    log_path=log_path,
                    exit_code=-1,
                    code=COMPILE_TIMEOUT,
                )


__all__ = [
    "GoToolchain",
    "compose_build_command",
    "decode_json_stream",
]
