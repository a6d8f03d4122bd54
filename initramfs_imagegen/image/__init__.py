"""Image module.

This module handles:
- Image spec files (YAML/JSON) and their validation
- Turning specs and flags into build options
- The end-to-end build of one initramfs archive
"""

from initramfs_imagegen.image.io import build_opts_from_spec, load_image_spec
from initramfs_imagegen.image.models import BuildOpts, CommandGroup, ImageResult
from initramfs_imagegen.image.schema import ImageSpecSchema
from initramfs_imagegen.image.service import create_image

__all__ = [
    "BuildOpts",
    "CommandGroup",
    "ImageResult",
    "ImageSpecSchema",
    "build_opts_from_spec",
    "create_image",
    "load_image_spec",
]
