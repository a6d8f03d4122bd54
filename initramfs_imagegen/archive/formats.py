"""Archive format registry.

Formats are selected by name from a small closed set. Each Archiver can
read records lazily from a stream and open a writer over a stream.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import BinaryIO, Protocol

from initramfs_imagegen.archive.cpio import CPIOArchiver
from initramfs_imagegen.archive.records import Record
from initramfs_imagegen.errors import UnsupportedFormatError


class ArchiveWriter(Protocol):
    """Append-only archive writer."""

    def write(self, record: Record) -> None: ...

    def finish(self) -> None: ...


class Archiver(Protocol):
    """Reader/writer pair for one archive wire format."""

    name: str

    def reader(self, stream: BinaryIO) -> Iterator[Record]: ...

    def open_writer(self, stream: BinaryIO) -> ArchiveWriter: ...


ARCHIVERS: dict[str, Archiver] = {
    "cpio": CPIOArchiver(),
}


def get_archiver(name: str) -> Archiver:
    """Look up an archiver by format name.

    Args:
        name: Format name, e.g. "cpio".

    Returns:
        The registered Archiver.

    Raises:
        UnsupportedFormatError: If no archiver has that name.
    """
    try:
        return ARCHIVERS[name]
    except KeyError:
        raise UnsupportedFormatError(name, list(ARCHIVERS)) from None


def list_formats() -> list[str]:
    """Return the registered format names, sorted."""
    return sorted(ARCHIVERS)


__all__ = ["ARCHIVERS", "ArchiveWriter", "Archiver", "get_archiver", "list_formats"]
