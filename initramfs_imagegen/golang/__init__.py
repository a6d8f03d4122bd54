"""Go toolchain module.

This module handles:
- The target build environment (GOOS/GOARCH, tags, cgo)
- Invoking `go list`, `go build` and `go version`
- Resolving package patterns and templates into Commands
"""

from initramfs_imagegen.golang.env import Environment, validate_environment
from initramfs_imagegen.golang.packages import Command, resolve_packages
from initramfs_imagegen.golang.toolchain import GoToolchain

__all__ = [
    "Command",
    "Environment",
    "GoToolchain",
    "resolve_packages",
    "validate_environment",
]
