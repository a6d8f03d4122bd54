"""Data models for image builds.

BuildOpts is the frozen snapshot of everything one build needs; it is
produced by the CLI or an image spec file and consumed by create_image.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from initramfs_imagegen.golang.env import Environment


@dataclass(frozen=True)
class CommandGroup:
    """A set of packages built with one strategy.

    Attributes:
        builder: Strategy name ("bb" or "binary").
        packages: Package patterns, templates or directories.
    """

    builder: str
    packages: tuple[str, ...] = ()


@dataclass(frozen=True)
class BuildOpts:
    """Options of one image build.

    Attributes:
        env: Target environment.
        output_path: Archive file to produce.
        commands: Command groups, built in order.
        format: Archive format name.
        temp_dir: User-supplied workspace (kept after the build).
        extra_files: ``src[:dst]`` extra file entries.
        base_archive: Archive whose records form the lowest layer.
        use_existing_init: Keep the base archive's init.
        init_cmd: Target of the /init symlink ("" for none).
        uinit_cmd: Target of the /bin/uinit symlink ("" for none).
        uinit_args: Arguments written to /etc/uinit.flags.
        default_shell: Target of /bin/sh and /bin/defaultsh ("" for none).
        no_strip: Keep symbol and debug tables.
        skip_ldd: Add extra files without shared libraries.
        shellbang: Install multiplexed commands as #! stubs.
        package_dir: Directory package patterns resolve against.
        templates: User templates, merged over the built-in ones.
    """

    env: Environment
    output_path: Path
    commands: tuple[CommandGroup, ...] = ()
    format: str = "cpio"
    temp_dir: Path | None = None
    extra_files: tuple[str, ...] = ()
    base_archive: Path | None = None
    use_existing_init: bool = False
    init_cmd: str = "init"
    uinit_cmd: str = ""
    uinit_args: tuple[str, ...] = ()
    default_shell: str = ""
    no_strip: bool = False
    skip_ldd: bool = False
    shellbang: bool = False
    package_dir: Path | None = None
    templates: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )


@dataclass
class ImageResult:
    """Outcome of a successful build.

    Attributes:
        output_path: Archive that was written.
        output_size: Archive size in bytes.
        record_count: Number of records written.
        command_names: Names of all built commands.
        started_at: Unix time the build started.
        duration: Build duration in seconds.
    """

    output_path: Path
    output_size: int
    record_count: int
    command_names: list[str] = field(default_factory=list)
    started_at: float = 0.0
    duration: float = 0.0


def default_output_path(env: Environment, format: str = "cpio") -> Path:
    """Return the default archive path for a target platform."""
    return Path(f"/tmp/initramfs.{env.goos}_{env.goarch}.{format}")


__all__ = ["BuildOpts", "CommandGroup", "ImageResult", "default_output_path"]
