"""Archive records.

A Record is one entry of an archive stream: a regular file, directory,
symlink or special file. Paths are stored normalized, relative to the
archive root and without a leading slash ("bin/ls", "init"), which is the
form the kernel's initramfs unpacker expects.
"""

from __future__ import annotations

import logging
import os
import posixpath
import stat
from dataclasses import dataclass, replace
from pathlib import Path

from initramfs_imagegen.errors import ResolutionError
from initramfs_imagegen.types import RecordType

logger = logging.getLogger(__name__)

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644
DEFAULT_EXEC_MODE = 0o755

ROOT = "."


def normalize_path(path: str) -> str:
    """Normalize an archive path.

    Leading slashes and "./" prefixes are dropped and ".." components are
    clamped at the archive root.

    Args:
        path: Path as given by a user, a base archive or a builder.

    Returns:
        Normalized relative path, or "." for the archive root.
    """
    cleaned = posixpath.normpath("/" + path.replace("\\", "/"))
    cleaned = cleaned.lstrip("/")
    return cleaned or ROOT


def parent_dirs(path: str) -> list[str]:
    """List the ancestor directories of a normalized path, outermost first.

    Args:
        path: Normalized archive path.

    Returns:
        Ancestors, e.g. ["usr", "usr/lib"] for "usr/lib/libc.so".
    """
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


@dataclass(frozen=True)
class Record:
    """One archive entry.

    Attributes:
        path: Normalized archive path.
        type: Entry type.
        mode: Permission bits (including setuid/setgid/sticky).
        uid: Owner user id.
        gid: Owner group id.
        mtime: Modification time (unix seconds).
        data: File content (regular files only).
        target: Symlink target (symlinks only).
        rdev_major: Device major number (device nodes only).
        rdev_minor: Device minor number (device nodes only).
    """

    path: str
    type: RecordType
    mode: int
    uid: int = 0
    gid: int = 0
    mtime: int = 0
    data: bytes = b""
    target: str = ""
    rdev_major: int = 0
    rdev_minor: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))

    @property
    def size(self) -> int:
        """Payload size as stored in an archive."""
        if self.type == RecordType.SYMLINK:
            return len(self.target.encode("utf-8", "surrogateescape"))
        return len(self.data)

    @property
    def is_dir(self) -> bool:
        return self.type == RecordType.DIRECTORY

    def renamed(self, path: str) -> Record:
        """Return a copy of this record at another path."""
        return replace(self, path=path)

    @classmethod
    def directory(cls, path: str, mode: int = DEFAULT_DIR_MODE) -> Record:
        return cls(path=path, type=RecordType.DIRECTORY, mode=mode)

    @classmethod
    def file(cls, path: str, data: bytes, mode: int = DEFAULT_FILE_MODE) -> Record:
        return cls(path=path, type=RecordType.FILE, mode=mode, data=data)

    @classmethod
    def symlink(cls, path: str, target: str) -> Record:
        return cls(path=path, type=RecordType.SYMLINK, mode=0o777, target=target)

    @classmethod
    def char_device(cls, path: str, mode: int, major: int, minor: int) -> Record:
        return cls(
            path=path,
            type=RecordType.CHAR_DEVICE,
            mode=mode,
            rdev_major=major,
            rdev_minor=minor,
        )

    @classmethod
    def from_path(cls, source: Path, path: str) -> Record:
        """Create a record from a host file without following symlinks.

        Ownership and timestamps are not carried over so that archives are
        reproducible.

        Args:
            source: Host file, directory, symlink or device node.
            path: Destination path inside the archive.

        Returns:
            Record describing the host entry.

        Raises:
            ResolutionError: If the host entry cannot be read.
        """
        try:
            st = source.lstat()
            perm = stat.S_IMODE(st.st_mode)
            if stat.S_ISDIR(st.st_mode):
                return cls.directory(path, perm)
            if stat.S_ISLNK(st.st_mode):
                return cls.symlink(path, os.readlink(source))
            if stat.S_ISREG(st.st_mode):
                return cls.file(path, source.read_bytes(), perm)
            if stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
                kind = (
                    RecordType.CHAR_DEVICE
                    if stat.S_ISCHR(st.st_mode)
                    else RecordType.BLOCK_DEVICE
                )
                return cls(
                    path=path,
                    type=kind,
                    mode=perm,
                    rdev_major=os.major(st.st_rdev),
                    rdev_minor=os.minor(st.st_rdev),
                )
            if stat.S_ISFIFO(st.st_mode):
                return cls(path=path, type=RecordType.FIFO, mode=perm)
            if stat.S_ISSOCK(st.st_mode):
                return cls(path=path, type=RecordType.SOCKET, mode=perm)
        except OSError as e:
            raise ResolutionError(f"cannot read {source}: {e}", path=source) from e
        raise ResolutionError(f"unsupported file type: {source}", path=source)


def default_ramfs() -> list[Record]:
    """Return the minimal filesystem skeleton used when no base is given.

    Returns:
        Records for the standard top-level directories, the basic device
        nodes and a resolver configuration.
    """
    return [
        Record.directory("bin"),
        Record.directory("dev"),
        Record.directory("env"),
        Record.directory("etc"),
        Record.directory("lib64"),
        Record.directory("proc"),
        Record.directory("sys"),
        Record.directory("tcz"),
        Record.directory("tmp", 0o777),
        Record.directory("ubin"),
        Record.directory("usr"),
        Record.directory("usr/lib"),
        Record.directory("var/log", 0o777),
        Record.char_device("dev/console", 0o600, 5, 1),
        Record.char_device("dev/tty", 0o666, 5, 0),
        Record.char_device("dev/null", 0o666, 1, 3),
        Record.char_device("dev/port", 0o640, 1, 4),
        Record.char_device("dev/urandom", 0o666, 1, 9),
        Record.file("etc/resolv.conf", b"nameserver 8.8.8.8\n"),
    ]


__all__ = [
    "DEFAULT_DIR_MODE",
    "DEFAULT_EXEC_MODE",
    "DEFAULT_FILE_MODE",
    "ROOT",
    "Record",
    "default_ramfs",
    "normalize_path",
    "parent_dirs",
]
