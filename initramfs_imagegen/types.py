"""Shared type definitions for initramfs_imagegen.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class BuildMode(str, Enum):
    """Strategy used to turn command packages into executables."""

    BB = "bb"
    BINARY = "binary"


class RecordType(str, Enum):
    """Type of an archive entry."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    CHAR_DEVICE = "char_device"
    BLOCK_DEVICE = "block_device"
    FIFO = "fifo"
    SOCKET = "socket"


__all__ = ["BuildMode", "RecordType"]
