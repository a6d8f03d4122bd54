"""initramfs-imagegen - build minimal Linux initramfs images from Go commands.

This package compiles Go command packages with the external toolchain,
either as one multiplexed busybox-style binary or as one binary per command,
and merges them with a base filesystem tree, extra host files and generated
init symlinks into a single cpio archive.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
