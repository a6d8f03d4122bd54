"""Image build service.

This module provides the high-level build API:
- create_image(): resolve, build, merge and write one initramfs
- Workspace lifecycle (temporary unless supplied by the user)
- Generation of the init, uinit and shell symlinks
- Atomic replacement of the output archive
"""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
import shutil
import tempfile
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from initramfs_imagegen.archive.formats import Archiver, get_archiver
from initramfs_imagegen.archive.merge import merge
from initramfs_imagegen.archive.records import Record, normalize_path
from initramfs_imagegen.builder.base import get_builder
from initramfs_imagegen.config import get_settings
from initramfs_imagegen.errors import (
    BuildEnvironmentError,
    ConfigError,
    ResolutionError,
)
from initramfs_imagegen.extrafiles.ldd import DependencyResolver
from initramfs_imagegen.extrafiles.service import resolve_extra_files
from initramfs_imagegen.golang.env import validate_environment
from initramfs_imagegen.golang.packages import resolve_packages
from initramfs_imagegen.golang.toolchain import GoToolchain
from initramfs_imagegen.image.models import BuildOpts, ImageResult

if TYPE_CHECKING:
    from initramfs_imagegen.config import Settings

logger = logging.getLogger(__name__)

UINIT_PATH = "bin/uinit"
UINIT_FLAGS_PATH = "etc/uinit.flags"
INIT_PATH = "init"
SHELL_PATH = "bin/sh"
DEFAULT_SHELL_PATH = "bin/defaultsh"


@contextmanager
def workspace(temp_dir: Path | None, parent: Path | None = None) -> Iterator[Path]:
    """Provide the private working directory of one build.

    A user-supplied directory is created if missing and kept afterwards;
    otherwise a fresh temporary directory is created and removed on every
    exit path.

    Args:
        temp_dir: User-supplied workspace, or None.
        parent: Directory for the temporary workspace (system default if None).

    Yields:
        Workspace path.
    """
    if temp_dir is not None:
        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(
                f"temporary directory {temp_dir} did not exist and could not be "
                f"created: {e}"
            ) from e
        yield temp_dir
        return

    path = Path(tempfile.mkdtemp(prefix="initramfs-imagegen-", dir=parent))
    logger.debug("Created workspace %s", path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed workspace %s", path)


def resolve_symlink_target(
    link: str,
    target: str,
    hints: Mapping[str, str],
    have_commands: bool,
) -> str | None:
    """Resolve a symlink target to an archive path.

    Args:
        link: Archive path of the symlink.
        target: Path (contains "/") or command name.
        hints: Command name to archive path of the built command.
        have_commands: Whether any command groups were built.

    Returns:
        Archive path of the target, or None if the symlink is omitted.

    Raises:
        ConfigError: If a command name is unknown and commands were built.
    """
    if "/" in target:
        return normalize_path(target)
    if target in hints:
        return hints[target]
    message = (
        f"could not create symlink from {link} to {target}: "
        "command or path not included in the build"
    )
    if have_commands:
        raise ConfigError(message)
    logger.warning("%s; skipping", message)
    return None


def relative_target(link: str, target: str) -> str:
    """Return target relative to the directory containing link."""
    return posixpath.relpath(target, posixpath.dirname(link) or ".")


def compute_symlinks(
    opts: BuildOpts, hints: Mapping[str, str], have_commands: bool
) -> list[Record]:
    """Generate the uinit, init and shell symlinks of an image.

    Each symlink is omitted when its target string is empty.

    Args:
        opts: Build options.
        hints: Command name to archive path, first group wins.
        have_commands: Whether any command groups were built.

    Returns:
        Symlink records plus the uinit flags file.
    """
    records: list[Record] = []
    wanted = [
        (UINIT_PATH, opts.uinit_cmd),
        (INIT_PATH, opts.init_cmd),
        (SHELL_PATH, opts.default_shell),
        (DEFAULT_SHELL_PATH, opts.default_shell),
    ]
    for link, target in wanted:
        if not target:
            continue
        resolved = resolve_symlink_target(link, target, hints, have_commands)
        if resolved is None:
            continue
        records.append(Record.symlink(link, relative_target(link, resolved)))
        if link == UINIT_PATH and opts.uinit_args:
            flags = shlex.join(opts.uinit_args).encode()
            records.append(Record.file(UINIT_FLAGS_PATH, flags))
    return records


def _check_output_dir(output_path: Path) -> None:
    output_dir = output_path.parent
    if not output_dir.is_dir():
        raise ConfigError(f"output directory {output_dir} does not exist")
    if not os.access(output_dir, os.W_OK):
        raise ConfigError(f"output directory {output_dir} is not writable")


def _write_archive(
    archiver: Archiver,
    opts: BuildOpts,
    output_path: Path,
    command_groups: Sequence[Sequence[Record]],
    extra_records: Sequence[Record],
    symlink_records: Sequence[Record],
) -> int:
    """Merge all layers into a temporary file and move it onto output_path."""
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent
    )
    tmp_path = Path(tmp_name)
    try:
        with ExitStack() as stack:
            out = stack.enter_context(os.fdopen(fd, "wb"))
            base = None
            if opts.base_archive is not None:
                try:
                    base_stream = stack.enter_context(opts.base_archive.open("rb"))
                except OSError as e:
                    raise ResolutionError(
                        f"cannot open base archive {opts.base_archive}: {e}",
                        path=opts.base_archive,
                    ) from e
                base = archiver.reader(base_stream)

            writer = archiver.open_writer(out)
            count = merge(
                base,
                command_groups,
                extra_records,
                symlink_records,
                writer,
                use_existing_init=opts.use_existing_init,
            )
            writer.finish()

        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, output_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return count


def create_image(
    opts: BuildOpts,
    settings: Settings | None = None,
    toolchain: GoToolchain | None = None,
    resolver: DependencyResolver | None = None,
) -> ImageResult:
    """Build an initramfs archive.

    Args:
        opts: Build options.
        settings: Settings instance (defaults to get_settings()).
        toolchain: Go toolchain (defaults to one built from settings).
        resolver: Shared library resolver for extra files.

    Returns:
        ImageResult describing the written archive.

    Raises:
        BuildEnvironmentError: If the target environment is invalid.
        ConfigError: For invalid options, unknown builders or formats,
            unresolvable packages or symlink targets.
        CompileError: If a command fails to compile.
        ResolutionError: If an extra file or library is missing.
        ArchiveError: If the base archive is malformed or writing fails.
    """
    if settings is None:
        settings = get_settings()
    if toolchain is None:
        toolchain = GoToolchain(settings.go_binary, timeout=settings.compile_timeout)

    started_at = time.time()
    start = time.monotonic()

    validate_environment(opts.env)
    logger.info("Build environment: %s", opts.env)

    output_path = Path(opts.output_path).absolute()
    _check_output_dir(output_path)
    archiver = get_archiver(opts.format)

    builders = [
        get_builder(
            group.builder,
            shellbang=opts.shellbang,
            toolchain=toolchain,
            max_workers=settings.max_concurrent_compiles,
        )
        for group in opts.commands
    ]
    if opts.use_existing_init and opts.base_archive is None:
        logger.warning("useinit has no effect without a base archive")

    if builders:
        try:
            logger.info("Using %s", toolchain.version(opts.env))
        except BuildEnvironmentError as e:
            logger.warning("Could not determine the Go version: %s", e)

    package_dir = opts.package_dir or settings.package_dir

    with workspace(opts.temp_dir, settings.tmp_dir) as work:
        group_records: list[list[Record]] = []
        hints: dict[str, str] = {}
        command_names: list[str] = []

        for index, (group, builder) in enumerate(zip(opts.commands, builders)):
            commands = resolve_packages(
                toolchain,
                opts.env,
                group.packages,
                cwd=package_dir,
                templates=opts.templates,
            )
            logger.info(
                "Building %d commands with %s builder", len(commands), builder.name
            )
            result = builder.build(
                commands, work / f"builder-{index}", opts.env, no_strip=opts.no_strip
            )
            group_records.append(result.records)
            for name, path in result.symlink_hints.items():
                hints.setdefault(name, path)
            command_names.extend(command.name for command in commands)

        extra_records = resolve_extra_files(
            opts.extra_files, resolver=resolver, skip_ldd=opts.skip_ldd
        )
        symlink_records = compute_symlinks(opts, hints, have_commands=bool(builders))

        record_count = _write_archive(
            archiver,
            opts,
            output_path,
            group_records,
            extra_records,
            symlink_records,
        )

    output_size = output_path.stat().st_size
    duration = time.monotonic() - start
    logger.info("Successfully built %s (size %d)", output_path, output_size)

    return ImageResult(
        output_path=output_path,
        output_size=output_size,
        record_count=record_count,
        command_names=command_names,
        started_at=started_at,
        duration=duration,
    )


__all__ = [
    "compute_symlinks",
    "create_image",
    "relative_target",
    "resolve_symlink_target",
    "workspace",
]
