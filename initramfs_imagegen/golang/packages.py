"""Source package resolution.

This module handles:
- Expanding template names into package patterns
- Expanding directory globs and import-path globs (``.../cmds/core/*``)
- Resolving patterns into Commands with `go list`
- Rejecting non-main packages and de-duplicating commands
"""

from __future__ import annotations

import glob
import logging
import os
import posixpath
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from initramfs_imagegen.errors import ConfigError
from initramfs_imagegen.golang.env import Environment
from initramfs_imagegen.golang.toolchain import GoToolchain

logger = logging.getLogger(__name__)

UROOT = "github.com/u-root/u-root"

TEMPLATES: dict[str, list[str]] = {
    "all": [
        f"{UROOT}/cmds/core/*",
        f"{UROOT}/cmds/boot/*",
        f"{UROOT}/cmds/exp/*",
    ],
    "core": [
        f"{UROOT}/cmds/core/*",
    ],
    "minimal": [
        f"{UROOT}/cmds/core/{name}"
        for name in (
            "cat",
            "chmod",
            "cmp",
            "cp",
            "date",
            "dd",
            "df",
            "dhclient",
            "dmesg",
            "echo",
            "elvish",
            "find",
            "free",
            "grep",
            "gzip",
            "hostname",
            "id",
            "init",
            "insmod",
            "kill",
            "ln",
            "ls",
            "lsmod",
            "mkdir",
            "mknod",
            "mount",
            "mv",
            "ping",
            "ps",
            "pwd",
            "readlink",
            "rm",
            "rmmod",
            "seq",
            "shutdown",
            "sleep",
            "sync",
            "tail",
            "tee",
            "true",
            "umount",
            "uname",
            "uniq",
            "wc",
            "wget",
            "which",
        )
    ],
    "boot": [
        f"{UROOT}/cmds/core/init",
        f"{UROOT}/cmds/core/elvish",
        f"{UROOT}/cmds/boot/*",
    ],
}

DEFAULT_PACKAGES = [f"{UROOT}/cmds/core/*"]

_GLOB_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class Command:
    """A buildable Go main package.

    Attributes:
        name: Command name (base of the import path, or of the directory
            for packages outside a module).
        import_path: Go import path.
        dir: Source directory.
        go_files: Go source file names selected for the environment.
        embed_files: Files referenced by go:embed directives.
        module_path: Path of the owning module, if any.
        module_dir: Directory of the owning module, if any.
        go_version: Go version declared by the owning module.
        tags: Build tags the files were selected with.
    """

    name: str
    import_path: str
    dir: Path
    go_files: tuple[str, ...] = ()
    embed_files: tuple[str, ...] = ()
    module_path: str | None = None
    module_dir: Path | None = None
    go_version: str | None = None
    tags: tuple[str, ...] = ()

    @classmethod
    def from_go_list(
        cls, pkg: Mapping[str, Any], tags: tuple[str, ...] = ()
    ) -> Command:
        """Build a Command from a decoded `go list -json` package.

        Raises:
            ConfigError: If the package is not a main package.
        """
        import_path = pkg.get("ImportPath", "")
        if pkg.get("Name") != "main":
            raise ConfigError(
                f"{import_path} is not a command "
                f"(package {pkg.get('Name')!r}, not main)"
            )

        module = pkg.get("Module") or {}
        directory = Path(pkg["Dir"])
        if module.get("Path"):
            name = posixpath.basename(import_path)
        else:
            name = directory.name

        return cls(
            name=name,
            import_path=import_path,
            dir=directory,
            go_files=tuple(pkg.get("GoFiles", [])) + tuple(pkg.get("CgoFiles", [])),
            embed_files=tuple(pkg.get("EmbedFiles", [])),
            module_path=module.get("Path"),
            module_dir=Path(module["Dir"]) if module.get("Dir") else None,
            go_version=module.get("GoVersion"),
            tags=tags,
        )


@dataclass(frozen=True)
class SourcePackage:
    """An unresolved package identifier.

    One of: a template name, a directory (or directory glob), an import
    path glob ending in ``/*``, or a plain import path.
    """

    pattern: str

    def kind(self, templates: Mapping[str, Sequence[str]], cwd: Path) -> str:
        if self.pattern in templates:
            return "template"
        if self.is_filesystem_path(cwd):
            return "directory"
        if self.pattern.endswith("/*"):
            return "import_glob"
        return "import_path"

    def is_filesystem_path(self, cwd: Path) -> bool:
        pattern = self.pattern
        if pattern.startswith(("/", "./", "../")) or pattern in (".", ".."):
            return True
        candidate = cwd / pattern
        if _GLOB_CHARS & set(pattern):
            return any(os.path.isdir(p) for p in glob.glob(str(candidate)))
        return candidate.is_dir()


def expand_templates(
    patterns: Sequence[str], templates: Mapping[str, Sequence[str]] | None = None
) -> list[str]:
    """Replace template names with their package lists.

    Args:
        patterns: Package patterns, possibly naming templates.
        templates: Template table (defaults to the built-in templates).

    Returns:
        Expanded patterns in order.
    """
    if templates is None:
        templates = TEMPLATES
    expanded: list[str] = []
    for pattern in patterns:
        if pattern in templates:
            logger.debug("Expanding template %s", pattern)
            expanded.extend(templates[pattern])
        else:
            expanded.append(pattern)
    return expanded


def _expand_directories(pattern: str, cwd: Path) -> list[Path]:
    matches = sorted(glob.glob(str(cwd / pattern)))
    dirs = [Path(p) for p in matches if os.path.isdir(p)]
    if not dirs:
        raise ConfigError(f"no package directories match {pattern!r}")
    return dirs


def resolve_packages(
    toolchain: GoToolchain,
    env: Environment,
    patterns: Sequence[str],
    cwd: Path | None = None,
    templates: Mapping[str, Sequence[str]] | None = None,
) -> list[Command]:
    """Resolve package patterns into Commands.

    Args:
        toolchain: Toolchain used to query packages.
        env: Target environment.
        patterns: Import paths, import path globs, directories, directory
            globs or template names.
        cwd: Directory against which relative paths and import paths
            resolve (defaults to the current directory).
        templates: Template table, merged over the built-in templates.

    Returns:
        Commands in pattern order, without duplicates.

    Raises:
        ConfigError: If a pattern matches nothing or names a non-main package.
    """
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    table: dict[str, Sequence[str]] = {**TEMPLATES, **(templates or {})}

    commands: list[Command] = []
    seen: set[str] = set()

    def add(command: Command) -> None:
        key = command.import_path
        if key.startswith("_") or key == "command-line-arguments":
            key = str(command.dir)
        if key in seen:
            logger.debug("Skipping duplicate package %s", command.import_path)
            return
        seen.add(key)
        commands.append(command)

    for pattern in expand_templates(patterns, table):
        source = SourcePackage(pattern)
        kind = source.kind(table, cwd)

        if kind == "directory":
            for directory in _expand_directories(pattern, cwd):
                for pkg in toolchain.list_packages(env, ["."], cwd=directory):
                    add(Command.from_go_list(pkg, env.build_tags))

        elif kind == "import_glob":
            prefix = pattern[: -len("/*")]
            found = 0
            for pkg in toolchain.list_packages(env, [f"{prefix}/..."], cwd=cwd):
                import_path = pkg.get("ImportPath", "")
                if posixpath.dirname(import_path) != prefix:
                    continue
                if pkg.get("Name") != "main":
                    logger.debug("Skipping non-command package %s", import_path)
                    continue
                add(Command.from_go_list(pkg, env.build_tags))
                found += 1
            if not found:
                raise ConfigError(f"no commands match {pattern!r}")

        else:
            for pkg in toolchain.list_packages(env, [pattern], cwd=cwd):
                add(Command.from_go_list(pkg, env.build_tags))

    logger.info("Resolved %d commands", len(commands))
    return commands


__all__ = [
    "DEFAULT_PACKAGES",
    "TEMPLATES",
    "Command",
    "SourcePackage",
    "expand_templates",
    "resolve_packages",
]
