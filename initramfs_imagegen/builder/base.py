"""Builder interface and artifacts.

A Builder turns resolved Commands into executable artifacts inside a
workspace directory and describes how those artifacts appear in the
archive.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from initramfs_imagegen.archive.records import Record
from initramfs_imagegen.errors import ConfigError
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.packages import Command
from initramfs_imagegen.golang.toolchain import GoToolchain
from initramfs_imagegen.types import BuildMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Binary:
    """A standalone executable for one command."""

    name: str
    path: Path


@dataclass(frozen=True)
class MultiplexedBinary:
    """One executable dispatching to many commands by invocation name.

    Attributes:
        name: Name of the executable ("bb").
        path: Path of the built executable.
        dispatch_table: Command name to Go entrypoint.
    """

    name: str
    path: Path
    dispatch_table: dict[str, str] = field(default_factory=dict)


Artifact = Union[Binary, MultiplexedBinary]


@dataclass
class BuildResult:
    """Output of one Builder run.

    Attributes:
        artifacts: Built executables.
        target_dir: Archive directory the commands are installed in.
        symlink_hints: Command name to its archive path, used to resolve
            init/uinit/shell targets.
        records: Archive records for the artifacts, sorted by command name.
    """

    artifacts: list[Artifact]
    target_dir: str
    symlink_hints: dict[str, str] = field(default_factory=dict)
    records: list[Record] = field(default_factory=list)


def check_commands(commands: Sequence[Command]) -> None:
    """Reject an empty command list and colliding command names.

    Raises:
        ConfigError: If there are no commands or two share a name.
    """
    if not commands:
        raise ConfigError("no commands to build")
    counts = Counter(command.name for command in commands)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        sources = [
            f"{command.name} ({command.import_path})"
            for command in commands
            if command.name in duplicates
        ]
        raise ConfigError(f"command names collide: {', '.join(sources)}")


class Builder(ABC):
    """Strategy for turning commands into archive artifacts.

    Args:
        toolchain: Go toolchain used to compile.
    """

    name: str = ""
    target_dir: str = ""

    def __init__(self, toolchain: GoToolchain | None = None) -> None:
        self.toolchain = toolchain or GoToolchain()

    @abstractmethod
    def build(
        self,
        commands: Sequence[Command],
        workspace: Path,
        env: Environment,
        no_strip: bool = False,
    ) -> BuildResult:
        """Build commands into workspace.

        Args:
            commands: Resolved commands.
            workspace: Private directory for this build.
            env: Target environment.
            no_strip: Keep symbol and debug tables.

        Returns:
            BuildResult with artifacts and archive records.

        Raises:
            ConfigError: For an empty command list or colliding names.
            CompileError: If the toolchain fails.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def get_builder(
    name: str,
    shellbang: bool = False,
    toolchain: GoToolchain | None = None,
    max_workers: int = 4,
) -> Builder:
    """Return the builder for a strategy name.

    Args:
        name: "bb" or "binary".
        shellbang: Install multiplexed commands as #! stubs.
        toolchain: Go toolchain to compile with.
        max_workers: Concurrent compiles for the binary strategy.

    Raises:
        ConfigError: If the name is unknown or deprecated.
    """
    from initramfs_imagegen.builder.bb import BBBuilder
    from initramfs_imagegen.builder.binary import BinaryBuilder

    if name == BuildMode.BB:
        return BBBuilder(toolchain=toolchain, shellbang=shellbang)
    if name == BuildMode.BINARY:
        return BinaryBuilder(toolchain=toolchain, max_workers=max_workers)
    if name == "source":
        raise ConfigError("source mode has been deprecated")
    raise ConfigError(f"could not find builder {name!r}")


__all__ = [
    "Artifact",
    "Binary",
    "BuildResult",
    "Builder",
    "MultiplexedBinary",
    "check_commands",
    "get_builder",
]
