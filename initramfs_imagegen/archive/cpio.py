"""SVR4 "newc" cpio reader and writer.

This is the format the Linux kernel unpacks into the initial rootfs. Each
entry is a 110 byte ASCII header (magic plus 13 eight digit hex fields),
the NUL terminated name and the payload, with name and payload padded to
4 byte boundaries. The stream ends with a "TRAILER!!!" entry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import BinaryIO

from initramfs_imagegen.archive.records import Record, normalize_path
from initramfs_imagegen.errors import ArchiveError
from initramfs_imagegen.types import RecordType

logger = logging.getLogger(__name__)

NEWC_MAGIC = b"070701"
CRC_MAGIC = b"070702"
HEADER_SIZE = 110
TRAILER_NAME = "TRAILER!!!"
BLOCK_SIZE = 512

# File type bits of the cpio mode field
TYPE_MASK = 0o170000
TYPE_BITS = {
    RecordType.SOCKET: 0o140000,
    RecordType.SYMLINK: 0o120000,
    RecordType.FILE: 0o100000,
    RecordType.BLOCK_DEVICE: 0o060000,
    RecordType.DIRECTORY: 0o040000,
    RecordType.CHAR_DEVICE: 0o020000,
    RecordType.FIFO: 0o010000,
}
TYPES_BY_BITS = {bits: kind for kind, bits in TYPE_BITS.items()}

_FIELDS = (
    "ino",
    "mode",
    "uid",
    "gid",
    "nlink",
    "mtime",
    "filesize",
    "devmajor",
    "devminor",
    "rdevmajor",
    "rdevminor",
    "namesize",
    "check",
)


def _pad(length: int) -> int:
    """Return the number of padding bytes to reach a 4 byte boundary."""
    return (4 - length % 4) % 4


def _encode_name(path: str) -> bytes:
    return path.encode("utf-8", "surrogateescape") + b"\0"


class CPIOWriter:
    """Append-only newc writer.

    Records are written in the order given. Inode numbers are assigned
    sequentially so that identical inputs produce identical streams.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._offset = 0
        self._next_ino = 1
        self._finished = False

    def _emit(self, data: bytes) -> None:
        try:
            self._stream.write(data)
        except OSError as e:
            raise ArchiveError(
                f"failed to write archive: {e}",
                offset=self._offset,
                code="archive_write_error",
            ) from e
        self._offset += len(data)

    def _write_entry(
        self, name: str, fields: dict[str, int], payload: bytes = b""
    ) -> None:
        encoded_name = _encode_name(name)
        fields = {**fields, "filesize": len(payload), "namesize": len(encoded_name)}
        header = NEWC_MAGIC + b"".join(
            f"{fields.get(field, 0):08X}".encode("ascii") for field in _FIELDS
        )
        self._emit(header)
        self._emit(encoded_name + b"\0" * _pad(HEADER_SIZE + len(encoded_name)))
        if payload:
            self._emit(payload + b"\0" * _pad(len(payload)))

    def write(self, record: Record) -> None:
        """Append a record to the archive.

        Args:
            record: Record to write.

        Raises:
            ArchiveError: If the writer is finished or the stream fails.
        """
        if self._finished:
            raise ArchiveError(f"write of {record.path} after finish", path=record.path)

        if record.type == RecordType.SYMLINK:
            payload = record.target.encode("utf-8", "surrogateescape")
        elif record.type == RecordType.FILE:
            payload = record.data
        else:
            payload = b""

        fields = {
            "ino": self._next_ino,
            "mode": TYPE_BITS[record.type] | (record.mode & 0o7777),
            "uid": record.uid,
            "gid": record.gid,
            "nlink": 2 if record.is_dir else 1,
            "mtime": record.mtime,
            "rdevmajor": record.rdev_major,
            "rdevminor": record.rdev_minor,
        }
        self._next_ino += 1
        self._write_entry(record.path, fields, payload)

    def finish(self) -> None:
        """Write the trailer and pad the stream to a full block."""
        if self._finished:
            return
        self._write_entry(TRAILER_NAME, {"nlink": 1})
        remainder = self._offset % BLOCK_SIZE
        if remainder:
            self._emit(b"\0" * (BLOCK_SIZE - remainder))
        try:
            self._stream.flush()
        except OSError as e:
            raise ArchiveError(f"failed to flush archive: {e}") from e
        self._finished = True


class _StreamCursor:
    """Reads exact byte counts from a stream while tracking the offset."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.offset = 0

    def read(self, size: int, what: str) -> bytes:
        data = self.read_or_eof(size, what)
        if data is None:
            raise ArchiveError(
                f"truncated archive while reading {what}", offset=self.offset
            )
        return data

    def read_or_eof(self, size: int, what: str) -> bytes | None:
        """Read exactly size bytes, or return None at a clean end of stream."""
        chunks: list[bytes] = []
        remaining = size
        while remaining > 0:
            chunk = self._stream.read(remaining)
            if not chunk and not chunks:
                return None
            if not chunk:
                raise ArchiveError(
                    f"truncated archive while reading {what}", offset=self.offset
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        data = b"".join(chunks)
        self.offset += len(data)
        return data

    def skip_padding(self, length: int, what: str) -> None:
        padding = _pad(length)
        if padding:
            self.read(padding, what)


def read_records(stream: BinaryIO) -> Iterator[Record]:
    """Lazily read records from a newc stream.

    Args:
        stream: Binary stream positioned at the start of an archive.

    Yields:
        Records in archive order, up to the trailer.

    Raises:
        ArchiveError: If the stream is malformed or truncated.
    """
    cursor = _StreamCursor(stream)
    while True:
        header_offset = cursor.offset
        header = cursor.read_or_eof(HEADER_SIZE, "header")
        if header is None:
            # An empty stream is an empty archive, e.g. a base of /dev/null.
            if header_offset == 0:
                return
            raise ArchiveError("archive ends without a trailer", offset=header_offset)
        magic = header[:6]
        if magic not in (NEWC_MAGIC, CRC_MAGIC):
            raise ArchiveError(f"bad cpio magic {magic!r}", offset=header_offset)

        try:
            values = {
                field: int(header[6 + i * 8 : 14 + i * 8], 16)
                for i, field in enumerate(_FIELDS)
            }
        except ValueError:
            raise ArchiveError("malformed cpio header", offset=header_offset) from None

        raw_name = cursor.read(values["namesize"], "name")
        cursor.skip_padding(HEADER_SIZE + values["namesize"], "name padding")
        name = raw_name.rstrip(b"\0").decode("utf-8", "surrogateescape")
        if name == TRAILER_NAME:
            return

        payload = cursor.read(values["filesize"], f"data of {name}")
        cursor.skip_padding(values["filesize"], f"data padding of {name}")

        mode = values["mode"]
        kind = TYPES_BY_BITS.get(mode & TYPE_MASK)
        if kind is None:
            raise ArchiveError(
                f"unknown file type {mode & TYPE_MASK:o} for {name}",
                offset=header_offset,
            )

        yield Record(
            path=normalize_path(name),
            type=kind,
            mode=mode & 0o7777,
            uid=values["uid"],
            gid=values["gid"],
            mtime=values["mtime"],
            data=payload if kind == RecordType.FILE else b"",
            target=payload.decode("utf-8", "surrogateescape")
            if kind == RecordType.SYMLINK
            else "",
            rdev_major=values["rdevmajor"],
            rdev_minor=values["rdevminor"],
        )


class CPIOArchiver:
    """Archiver for the newc cpio format."""

    name = "cpio"

    def reader(self, stream: BinaryIO) -> Iterator[Record]:
        return read_records(stream)

    def open_writer(self, stream: BinaryIO) -> CPIOWriter:
        return CPIOWriter(stream)


__all__ = [
    "BLOCK_SIZE",
    "CRC_MAGIC",
    "HEADER_SIZE",
    "NEWC_MAGIC",
    "TRAILER_NAME",
    "CPIOArchiver",
    "CPIOWriter",
    "read_records",
]
