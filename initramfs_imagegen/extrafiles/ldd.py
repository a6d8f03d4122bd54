"""Shared library resolution for extra files.

Given a host file or directory, compute every host path that has to be
copied into the archive so that its ELF executables can run: the program
interpreter and the transitive closure of DT_NEEDED libraries, searched
the way the dynamic loader searches them. ELF files are parsed with
pyelftools; the host's ldd is never executed, so foreign-architecture
binaries resolve as well.
"""

from __future__ import annotations

import glob
import logging
import os
from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from initramfs_imagegen.archive.records import normalize_path
from initramfs_imagegen.errors import ResolutionError

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"
LD_SO_CONF = Path("/etc/ld.so.conf")
MAX_SYMLINK_HOPS = 40

# Debian-style multiarch directory names by e_machine and ELF class
MULTIARCH_TRIPLETS = {
    ("EM_X86_64", 64): "x86_64-linux-gnu",
    ("EM_386", 32): "i386-linux-gnu",
    ("EM_AARCH64", 64): "aarch64-linux-gnu",
    ("EM_ARM", 32): "arm-linux-gnueabihf",
    ("EM_RISCV", 64): "riscv64-linux-gnu",
    ("EM_PPC64", 64): "powerpc64le-linux-gnu",
    ("EM_S390", 64): "s390x-linux-gnu",
    ("EM_MIPS", 64): "mips64el-linux-gnuabi64",
}


@dataclass(frozen=True)
class ElfInfo:
    """Dynamic linking metadata of an ELF file.

    Attributes:
        elf_class: 32 or 64.
        machine: e_machine name, e.g. "EM_X86_64".
        interp: Program interpreter (PT_INTERP), if any.
        needed: DT_NEEDED library names in order.
        rpath: DT_RPATH search directories.
        runpath: DT_RUNPATH search directories.
    """

    elf_class: int
    machine: str
    interp: str | None = None
    needed: tuple[str, ...] = ()
    rpath: tuple[str, ...] = ()
    runpath: tuple[str, ...] = ()

    def compatible(self, other: ElfInfo) -> bool:
        return self.elf_class == other.elf_class and self.machine == other.machine


def _split_search_path(value: str) -> tuple[str, ...]:
    return tuple(part for part in value.split(":") if part)


def read_elf_info(path: Path) -> ElfInfo | None:
    """Read the dynamic linking metadata of a file.

    Args:
        path: Host file.

    Returns:
        ElfInfo, or None if the file is not an ELF file.

    Raises:
        ResolutionError: If the file cannot be read or is a malformed ELF.
    """
    try:
        with path.open("rb") as f:
            if f.read(4) != ELF_MAGIC:
                return None
            f.seek(0)
            elf = ELFFile(f)

            interp = None
            needed: list[str] = []
            rpath: list[str] = []
            runpath: list[str] = []
            for segment in elf.iter_segments():
                if segment["p_type"] == "PT_INTERP":
                    interp = segment.get_interp_name()
                elif segment["p_type"] == "PT_DYNAMIC":
                    for tag in segment.iter_tags():
                        if tag.entry.d_tag == "DT_NEEDED":
                            needed.append(tag.needed)
                        elif tag.entry.d_tag == "DT_RPATH":
                            rpath.extend(_split_search_path(tag.rpath))
                        elif tag.entry.d_tag == "DT_RUNPATH":
                            runpath.extend(_split_search_path(tag.runpath))

            return ElfInfo(
                elf_class=elf.elfclass,
                machine=elf["e_machine"],
                interp=interp,
                needed=tuple(needed),
                rpath=tuple(rpath),
                runpath=tuple(runpath),
            )
    except ELFError as e:
        raise ResolutionError(f"malformed ELF file {path}: {e}", path=path) from e
    except OSError as e:
        raise ResolutionError(f"cannot read {path}: {e}", path=path) from e


def read_ld_so_conf(
    path: Path = LD_SO_CONF, _seen: set[Path] | None = None
) -> list[str]:
    """Return the library directories listed in an ld.so.conf file.

    ``include`` lines are expanded as globs relative to the including
    file's directory; missing files yield no directories.
    """
    seen = _seen if _seen is not None else set()
    if path in seen:
        return []
    seen.add(path)

    try:
        lines = path.read_text().splitlines()
    except OSError:
        return []

    dirs: list[str] = []
    for raw in lines:
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if line.startswith("include"):
            pattern = line[len("include") :].strip()
            if not os.path.isabs(pattern):
                pattern = str(path.parent / pattern)
            for included in sorted(glob.glob(pattern)):
                dirs.extend(read_ld_so_conf(Path(included), seen))
        elif line.startswith("hwcap"):
            continue
        else:
            dirs.append(line)
    return dirs


def default_library_dirs(info: ElfInfo) -> list[str]:
    """Return the loader's built-in search directories for an ELF file."""
    dirs: list[str] = []
    triplet = MULTIARCH_TRIPLETS.get((info.machine, info.elf_class))
    if triplet:
        dirs.extend([f"/lib/{triplet}", f"/usr/lib/{triplet}"])
    if info.elf_class == 64:
        dirs.extend(["/lib64", "/usr/lib64"])
    else:
        dirs.extend(["/lib32", "/usr/lib32"])
    dirs.extend(["/lib", "/usr/lib"])
    return dirs


def _expand_origin(entries: Sequence[str], origin: Path) -> list[str]:
    return [
        entry.replace("${ORIGIN}", str(origin)).replace("$ORIGIN", str(origin))
        for entry in entries
    ]


class DependencyResolver:
    """Resolves host paths and their shared library closure.

    Args:
        library_path: Extra library directories (like LD_LIBRARY_PATH).
        ld_so_conf: Loader configuration file (None to skip it).
    """

    def __init__(
        self,
        library_path: Sequence[str] = (),
        ld_so_conf: Path | None = LD_SO_CONF,
    ) -> None:
        self.library_path = list(library_path)
        self.ld_so_conf = ld_so_conf
        self._conf_dirs: list[str] | None = None

    @classmethod
    def from_environment(cls) -> DependencyResolver:
        """Create a resolver honouring LD_LIBRARY_PATH."""
        library_path = os.environ.get("LD_LIBRARY_PATH", "")
        return cls(library_path=_split_search_path(library_path))

    def conf_dirs(self) -> list[str]:
        if self._conf_dirs is None:
            self._conf_dirs = (
                read_ld_so_conf(self.ld_so_conf) if self.ld_so_conf is not None else []
            )
        return self._conf_dirs

    def search_dirs(self, requester: Path, info: ElfInfo) -> list[str]:
        """Return the directories searched for the libraries of requester."""
        origin = requester.resolve().parent
        dirs: list[str] = []
        if info.rpath and not info.runpath:
            dirs.extend(_expand_origin(info.rpath, origin))
        dirs.extend(self.library_path)
        dirs.extend(_expand_origin(info.runpath, origin))
        dirs.extend(self.conf_dirs())
        dirs.extend(default_library_dirs(info))
        return dirs

    def find_library(self, name: str, requester: Path, info: ElfInfo) -> Path | None:
        """Locate a DT_NEEDED library for requester.

        Args:
            name: Library name, e.g. "libc.so.6".
            requester: File that needs the library.
            info: ELF metadata of requester.

        Returns:
            Host path of the library, or None if it cannot be found.
        """
        if "/" in name:
            candidates = [Path(name)]
        else:
            candidates = [Path(d) / name for d in self.search_dirs(requester, info)]

        for candidate in candidates:
            if not candidate.is_file():
                continue
            candidate_info = read_elf_info(candidate.resolve())
            if candidate_info is None or not candidate_info.compatible(info):
                logger.debug("Skipping incompatible library %s", candidate)
                continue
            return candidate
        return None

    def _host_entries(
        self, path: Path, archive_path: str
    ) -> Iterator[tuple[Path, str]]:
        """Yield a path and, for directories, everything below it in sorted order."""
        yield path, archive_path
        if path.is_symlink() or not path.is_dir():
            return
        for root, dirs, files in os.walk(path):
            dirs.sort()
            rel_root = Path(root).relative_to(path)
            for name in sorted([*dirs, *files]):
                rel = (rel_root / name).as_posix()
                yield Path(root) / name, normalize_path(f"{archive_path}/{rel}")

    def _library_chain(self, library: Path) -> tuple[list[tuple[Path, str]], Path]:
        """Return a library's symlink chain entries and the real file."""
        entries: list[tuple[Path, str]] = []
        current = Path(os.path.abspath(library))
        for _ in range(MAX_SYMLINK_HOPS):
            entries.append((current, normalize_path(str(current))))
            if not current.is_symlink():
                return entries, current
            target = os.readlink(current)
            current = Path(os.path.normpath(current.parent / target))
        raise ResolutionError(
            f"too many levels of symbolic links: {library}", path=library
        )

    def resolve(
        self,
        path: str | Path,
        archive_path: str | None = None,
        follow_dependencies: bool = True,
    ) -> list[tuple[Path, str]]:
        """Resolve a host path into (host path, archive path) pairs.

        Args:
            path: Host file or directory.
            archive_path: Destination in the archive (defaults to path).
            follow_dependencies: Add interpreters and shared libraries.

        Returns:
            Pairs in order: the entry (and directory contents), then its
            libraries breadth first. Each archive path appears once.

        Raises:
            ResolutionError: If path does not exist or a library is missing.
        """
        path = Path(os.path.expanduser(str(path)))
        if not os.path.lexists(path):
            raise ResolutionError(f"no such file or directory: {path}", path=path)
        if archive_path is None:
            archive_path = normalize_path(str(path))
        if path.is_symlink() and not path.is_dir():
            path = path.resolve()
            if not path.exists():
                raise ResolutionError(f"dangling symbolic link: {path}", path=path)

        pairs: list[tuple[Path, str]] = []
        seen: set[str] = set()
        queue: deque[tuple[Path, ElfInfo]] = deque()

        def emit(source: Path, dest: str) -> bool:
            if dest in seen:
                return False
            seen.add(dest)
            pairs.append((source, dest))
            return True

        for source, dest in self._host_entries(path, archive_path):
            emit(source, dest)
            if follow_dependencies and source.is_file() and not source.is_symlink():
                info = read_elf_info(source)
                if info is not None:
                    queue.append((source, info))

        while queue:
            requester, info = queue.popleft()
            wanted: list[Path] = []
            if info.interp:
                wanted.append(Path(info.interp))
            for name in info.needed:
                library = self.find_library(name, requester, info)
                if library is None:
                    raise ResolutionError(
                        f"cannot find library {name} needed by {requester}",
                        path=requester,
                    )
                wanted.append(library)

            for library in wanted:
                if not os.path.lexists(library):
                    raise ResolutionError(
                        f"interpreter {library} of {requester} does not exist",
                        path=requester,
                    )
                entries, real = self._library_chain(library)
                for source, dest in entries[:-1]:
                    emit(source, dest)
                if emit(*entries[-1]) and real.is_file():
                    real_info = read_elf_info(real)
                    if real_info is not None:
                        logger.debug("Adding library %s for %s", real, requester)
                        queue.append((real, real_info))

        return pairs


__all__ = [
    "DependencyResolver",
    "ElfInfo",
    "default_library_dirs",
    "read_elf_info",
    "read_ld_so_conf",
]
