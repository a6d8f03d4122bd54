"""Archive module.

This module handles:
- Archive records and the default filesystem skeleton
- The newc cpio wire format
- Format lookup by name
- Precedence-resolved merging of all record sources
"""

from initramfs_imagegen.archive.formats import get_archiver, list_formats
from initramfs_imagegen.archive.records import Record

__all__ = ["Record", "get_archiver", "list_formats"]
