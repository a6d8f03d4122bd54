"""Extra files module.

This module handles:
- Parsing ``src[:dst]`` extra file entries
- Walking directories into archive records
- Resolving ELF interpreters and shared library dependencies
"""

from initramfs_imagegen.extrafiles.ldd import DependencyResolver, read_elf_info
from initramfs_imagegen.extrafiles.service import parse_extra_file, resolve_extra_files

__all__ = [
    "DependencyResolver",
    "parse_extra_file",
    "read_elf_info",
    "resolve_extra_files",
]
