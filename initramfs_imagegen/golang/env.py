"""Target build environment for the Go toolchain.

The Environment describes the target platform (GOOS/GOARCH), the build
tags and whether cgo linkage is permitted. It is immutable; variants are
derived with the ``with_*`` helpers.
"""

from __future__ import annotations

import logging
import os
import platform
from collections.abc import Mapping
from dataclasses import dataclass, replace

from initramfs_imagegen.errors import BuildEnvironmentError

logger = logging.getLogger(__name__)

KNOWN_GOOS = frozenset(
    {
        "aix",
        "android",
        "darwin",
        "dragonfly",
        "freebsd",
        "illumos",
        "ios",
        "js",
        "linux",
        "netbsd",
        "openbsd",
        "plan9",
        "solaris",
        "wasip1",
        "windows",
    }
)

KNOWN_GOARCH = frozenset(
    {
        "386",
        "amd64",
        "arm",
        "arm64",
        "loong64",
        "mips",
        "mips64",
        "mips64le",
        "mipsle",
        "ppc64",
        "ppc64le",
        "riscv64",
        "s390x",
        "wasm",
    }
)

# platform.machine() values mapped to GOARCH
_MACHINE_TO_GOARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv6l": "arm",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
    "loongarch64": "loong64",
    "mips64": "mips64",
    "ppc64le": "ppc64le",
    "riscv64": "riscv64",
    "s390x": "s390x",
}


def parse_tags(value: str | None) -> tuple[str, ...]:
    """Split a comma-separated build tag list.

    Args:
        value: Tags like "netgo,osusergo"; empty or None for no tags.

    Returns:
        Tuple of non-empty tags in the given order.
    """
    if not value:
        return ()
    return tuple(tag.strip() for tag in value.split(",") if tag.strip())


def host_goarch() -> str:
    """Return the GOARCH of the running machine (empty if unknown)."""
    return _MACHINE_TO_GOARCH.get(platform.machine().lower(), "")


@dataclass(frozen=True)
class Environment:
    """Immutable description of the build target.

    Attributes:
        goos: Target operating system.
        goarch: Target architecture.
        goarm: ARM variant for GOARCH=arm.
        cgo_enabled: Whether native library linkage is permitted.
        build_tags: Go build tags.
        goroot: Optional GOROOT override.
        gopath: Optional GOPATH override.
    """

    goos: str
    goarch: str
    goarm: str | None = None
    cgo_enabled: bool = False
    build_tags: tuple[str, ...] = ()
    goroot: str | None = None
    gopath: str | None = None

    @classmethod
    def default(cls, environ: Mapping[str, str] | None = None) -> Environment:
        """Build an environment from GO* variables, defaulting to the host.

        Args:
            environ: Environment variables (defaults to os.environ).

        Returns:
            Environment for the configured or host platform.
        """
        if environ is None:
            environ = os.environ
        goos = environ.get("GOOS") or platform.system().lower()
        goarch = environ.get("GOARCH") or host_goarch()
        return cls(
            goos=goos,
            goarch=goarch,
            goarm=environ.get("GOARM") or None,
            cgo_enabled=environ.get("CGO_ENABLED", "0") == "1",
            goroot=environ.get("GOROOT") or None,
            gopath=environ.get("GOPATH") or None,
        )

    def with_tags(self, tags: tuple[str, ...]) -> Environment:
        return replace(self, build_tags=tuple(tags))

    def without_cgo(self) -> Environment:
        return replace(self, cgo_enabled=False)

    def go_env(self) -> dict[str, str]:
        """Environment variables passed to every toolchain invocation."""
        env = {
            "GOOS": self.goos,
            "GOARCH": self.goarch,
            "CGO_ENABLED": "1" if self.cgo_enabled else "0",
        }
        if self.goarm:
            env["GOARM"] = self.goarm
        if self.goroot:
            env["GOROOT"] = self.goroot
        if self.gopath:
            env["GOPATH"] = self.gopath
        return env

    def tags_args(self) -> list[str]:
        """Return the ``-tags`` arguments for go build/list."""
        if not self.build_tags:
            return []
        return [f"-tags={','.join(self.build_tags)}"]

    def __str__(self) -> str:
        parts = [f"GOOS={self.goos}", f"GOARCH={self.goarch}"]
        if self.goarm:
            parts.append(f"GOARM={self.goarm}")
        parts.append(f"CGO_ENABLED={'1' if self.cgo_enabled else '0'}")
        if self.build_tags:
            parts.append(f"tags={','.join(self.build_tags)}")
        return " ".join(parts)


def target_environment(
    goos: str | None = None,
    goarch: str | None = None,
    goarm: str | None = None,
    tags: tuple[str, ...] = (),
    environ: Mapping[str, str] | None = None,
) -> Environment:
    """Build the environment commands are compiled for.

    Starts from the GO* variables (or the host), applies explicit
    overrides and disables cgo so that commands are statically linked.

    Args:
        goos: Target operating system override.
        goarch: Target architecture override.
        goarm: ARM variant override.
        tags: Build tags.
        environ: Environment variables (defaults to os.environ).

    Returns:
        Environment with cgo disabled.
    """
    env = Environment.default(environ)
    goarch = goarch or env.goarch
    if not goarm and goarch == "arm":
        goarm = env.goarm
    env = replace(
        env,
        goos=goos or env.goos,
        goarch=goarch,
        goarm=goarm or None,
        build_tags=tuple(tags),
    )
    if env.cgo_enabled:
        logger.info("Disabling CGO for initramfs commands")
        env = env.without_cgo()
    return env


def validate_environment(env: Environment) -> None:
    """Check that an environment describes a buildable target.

    Args:
        env: Environment to validate.

    Raises:
        BuildEnvironmentError: If GOOS or GOARCH is missing or unknown.
    """
    if not env.goos or not env.goarch:
        raise BuildEnvironmentError(
            f"target platform is incomplete (GOOS={env.goos!r}, GOARCH={env.goarch!r})"
        )
    if env.goos not in KNOWN_GOOS:
        raise BuildEnvironmentError(f"unknown GOOS {env.goos!r}")
    if env.goarch not in KNOWN_GOARCH:
        raise BuildEnvironmentError(f"unknown GOARCH {env.goarch!r}")
    if env.goarm and env.goarch != "arm":
        raise BuildEnvironmentError(
            f"GOARM={env.goarm} is only valid with GOARCH=arm, not {env.goarch}"
        )

    if env.goos != "linux":
        logger.warning(
            "GOOS is %s, not linux. Did you mean to set GOOS=linux?", env.goos
        )
    if env.cgo_enabled:
        logger.warning("CGO is enabled; commands may depend on host C libraries")


__all__ = [
    "KNOWN_GOARCH",
    "KNOWN_GOOS",
    "Environment",
    "host_goarch",
    "parse_tags",
    "target_environment",
    "validate_environment",
]
