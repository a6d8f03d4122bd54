"""Tests for golang/toolchain.py module.

Uses mocked subprocess for all toolchain invocations.
"""

import json
import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from initramfs_imagegen.errors import (
    BuildEnvironmentError,
    CompileCancelledError,
    CompileError,
    ConfigError,
)
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.toolchain import (
    GoToolchain,
    compose_build_command,
    decode_json_stream,
)


@pytest.fixture
def env() -> Environment:
    """Create a linux/amd64 environment."""
    return Environment(goos="linux", goarch="amd64")


def _proc(exit_code: int) -> MagicMock:
    proc = MagicMock()
    proc.wait.return_value = exit_code
    return proc


def _hanging_proc(kill_exit_code: int = -9) -> MagicMock:
    """A process that never finishes until killed."""

    def wait(timeout=None):
        if timeout is not None:
            raise subprocess.TimeoutExpired("go", timeout)
        return kill_exit_code

    proc = MagicMock()
    proc.wait.side_effect = wait
    return proc


class TestComposeBuildCommand:
    """Tests for compose_build_command function."""

    def test_stripped_by_default(self, env):
        """Default builds strip symbol and debug tables."""
        cmd = compose_build_command(env, "example.com/cmd/ls", Path("/out/ls"))
        assert cmd == [
            "go",
            "build",
            "-trimpath",
            "-ldflags=-s -w",
            "-o",
            "/out/ls",
            "example.com/cmd/ls",
        ]

    def test_no_strip(self, env):
        """no_strip drops the linker flags."""
        cmd = compose_build_command(env, ".", Path("out"), no_strip=True)
        assert "-ldflags=-s -w" not in cmd

    def test_tags_and_binary(self, env):
        """Tags and a custom go binary are honoured."""
        cmd = compose_build_command(
            env.with_tags(("netgo",)), ".", Path("out"), go_binary="/opt/go/bin/go"
        )
        assert cmd[0] == "/opt/go/bin/go"
        assert "-tags=netgo" in cmd


class TestDecodeJsonStream:
    """Tests for decode_json_stream function."""

    def test_concatenated_objects(self):
        """Concatenated objects are decoded in order."""
        text = '{"a": 1}\n{"b": {"c": 2}}\n'
        assert decode_json_stream(text) == [{"a": 1}, {"b": {"c": 2}}]

    def test_empty(self):
        """Whitespace-only output decodes to nothing."""
        assert decode_json_stream("  \n") == []

    def test_invalid(self):
        """Invalid JSON raises ValueError."""
        with pytest.raises(ValueError):
            decode_json_stream("{not json}")


class TestVersion:
    """Tests for GoToolchain.version."""

    def test_returns_output(self):
        """version returns the trimmed go version output."""
        with patch("subprocess.run") as mock_run:
            output = "go version go1.22.0 linux/amd64\n"
            mock_run.return_value = MagicMock(stdout=output)
            assert GoToolchain().version() == "go version go1.22.0 linux/amd64"

    def test_missing_binary(self):
        """A missing toolchain raises BuildEnvironmentError."""
        with patch("subprocess.run", side_effect=FileNotFoundError("go")):
            with pytest.raises(BuildEnvironmentError):
                GoToolchain().version()


class TestListPackages:
    """Tests for GoToolchain.list_packages."""

    def test_decodes_packages(self, env, tmp_path):
        """go list output is decoded and the target env is passed."""
        pkgs = [
            {"ImportPath": "a", "Name": "main"},
            {"ImportPath": "b", "Name": "main"},
        ]
        stdout = "".join(json.dumps(p) for p in pkgs)

        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=stdout, stderr="")
            result = GoToolchain().list_packages(
                env.with_tags(("netgo",)), ["./..."], cwd=tmp_path
            )

        assert result == pkgs
        args, kwargs = mock_run.call_args
        assert args[0] == ["go", "list", "-json", "-tags=netgo", "./..."]
        assert kwargs["cwd"] == tmp_path
        assert kwargs["env"]["GOOS"] == "linux"
        assert kwargs["env"]["CGO_ENABLED"] == "0"

    def test_failure(self, env):
        """A non-zero exit raises ConfigError with stderr."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(
                returncode=1, stdout="", stderr="cannot find package\n"
            )
            with pytest.raises(ConfigError, match="cannot find package"):
                GoToolchain().list_packages(env, ["nope"])

    def test_package_error(self, env):
        """A package-level error in the output raises ConfigError."""
        stdout = json.dumps({"ImportPath": "x", "Error": {"Err": "no Go files"}})
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout=stdout, stderr="")
            with pytest.raises(ConfigError, match="no Go files"):
                GoToolchain().list_packages(env, ["x"])


class TestBuild:
    """Tests for GoToolchain.build."""

    def test_success_writes_log(self, env, tmp_path):
        """A successful compile writes a log with header and footer."""
        log_path = tmp_path / "logs" / "ls.log"
        with patch("subprocess.Popen", return_value=_proc(0)) as mock_popen:
            GoToolchain().build(
                env,
                "example.com/cmd/ls",
                tmp_path / "ls",
                log_path,
                cwd=tmp_path,
                extra_env={"GOFLAGS": "-mod=mod"},
            )

        log = log_path.read_text()
        assert "# Command: go build -trimpath" in log
        assert "# Exit code: 0" in log
        kwargs = mock_popen.call_args.kwargs
        assert kwargs["cwd"] == tmp_path
        assert kwargs["env"]["GOFLAGS"] == "-mod=mod"
        assert kwargs["stderr"] == subprocess.STDOUT

    def test_failure_raises_compile_error(self, env, tmp_path):
        """A non-zero exit raises CompileError naming the package and log."""
        log_path = tmp_path / "ls.log"
        with patch("subprocess.Popen", return_value=_proc(2)):
            with pytest.raises(CompileError) as exc_info:
                GoToolchain().build(env, "example.com/cmd/ls", tmp_path, log_path)

        error = exc_info.value
        assert error.package == "example.com/cmd/ls"
        assert error.exit_code == 2
        assert error.log_path == log_path
        assert error.code == "compile_failed"

    def test_cancelled_before_start(self, env, tmp_path):
        """A set cancel event aborts before the compiler is started."""
        cancel = threading.Event()
        cancel.set()
        with patch("subprocess.Popen") as mock_popen:
            with pytest.raises(CompileCancelledError):
                GoToolchain().build(
                    env, "p", tmp_path / "p", tmp_path / "p.log", cancel=cancel
                )
        mock_popen.assert_not_called()

    def test_cancelled_while_running(self, env, tmp_path):
        """Setting cancel kills a running compile."""
        cancel = threading.Event()
        proc = _hanging_proc()

        def start(*args, **kwargs):
            cancel.set()
            return proc

        with patch("subprocess.Popen", side_effect=start):
            with pytest.raises(CompileCancelledError) as exc_info:
                GoToolchain().build(
                    env, "p", tmp_path / "p", tmp_path / "p.log", cancel=cancel
                )

        proc.kill.assert_called_once()
        assert exc_info.value.code == "compile_cancelled"

    def test_timeout(self, env, tmp_path):
        """A compile exceeding the timeout is killed."""
        proc = _hanging_proc()
        toolchain = GoToolchain()
        toolchain.timeout = 0.01

        with patch("subprocess.Popen", return_value=proc):
            with pytest.raises(CompileError) as exc_info:
                toolchain.build(env, "p", tmp_path / "p", tmp_path / "p.log")

        proc.kill.assert_called_once()
        assert exc_info.value.code == "compile_timeout"
        assert exc_info.value.exit_code == -1

    def test_cannot_start(self, env, tmp_path):
        """An OSError starting the compiler becomes CompileError."""
        with patch("subprocess.Popen", side_effect=FileNotFoundError("go")):
            with pytest.raises(CompileError, match="could not run"):
                GoToolchain().build(env, "p", tmp_path / "p", tmp_path / "p.log")
