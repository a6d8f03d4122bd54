"""Extra file handling.

Extra files are given as ``src:dst`` or a plain ``src`` (installed at the
same path inside the archive). Each entry is expanded to its directory
contents and shared library dependencies and turned into archive records,
in the order the user listed the entries.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from initramfs_imagegen.archive.records import ROOT, Record, normalize_path
from initramfs_imagegen.errors import ConfigError
from initramfs_imagegen.extrafiles.ldd import DependencyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtraFile:
    """A parsed extra file entry."""

    source: Path
    archive_path: str


def parse_extra_file(entry: str) -> ExtraFile:
    """Parse a ``src[:dst]`` entry.

    Args:
        entry: Entry as given on the command line.

    Returns:
        ExtraFile with the host source and normalized archive path.

    Raises:
        ConfigError: If the source or destination is empty.
    """
    source, sep, dest = entry.partition(":")
    if not source:
        raise ConfigError(f"extra file {entry!r} has no source path")
    if sep and not dest:
        raise ConfigError(f"extra file {entry!r} has an empty destination")

    source_path = Path(os.path.expanduser(source))
    archive_path = normalize_path(dest if sep else source)
    if archive_path == ROOT:
        raise ConfigError(f"extra file {entry!r} would replace the archive root")
    return ExtraFile(source=source_path, archive_path=archive_path)


def resolve_extra_files(
    entries: Sequence[str],
    resolver: DependencyResolver | None = None,
    skip_ldd: bool = False,
) -> list[Record]:
    """Turn extra file entries into archive records.

    Args:
        entries: ``src[:dst]`` entries in user order.
        resolver: Dependency resolver (defaults to one honouring
            LD_LIBRARY_PATH).
        skip_ldd: Add the files without their shared libraries.

    Returns:
        Records in user order; libraries follow the entry that needs them.

    Raises:
        ConfigError: If an entry is malformed.
        ResolutionError: If a file or a needed library cannot be found.
    """
    if not entries:
        return []
    if resolver is None:
        resolver = DependencyResolver.from_environment()

    records: list[Record] = []
    for entry in entries:
        extra = parse_extra_file(entry)
        pairs = resolver.resolve(
            extra.source,
            extra.archive_path,
            follow_dependencies=not skip_ldd,
        )
        logger.debug("Extra file %s resolved to %d entries", entry, len(pairs))
        records.extend(Record.from_path(source, dest) for source, dest in pairs)

    logger.info("Resolved %d extra file records", len(records))
    return records


__all__ = ["ExtraFile", "parse_extra_file", "resolve_extra_files"]
