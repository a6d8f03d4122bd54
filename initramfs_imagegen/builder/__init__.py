"""Builder module.

This module handles:
- The Builder interface and its artifacts
- The multiplexed (bb) strategy and its Go source rewriting
- The per-command (binary) strategy with concurrent compiles
"""

from initramfs_imagegen.builder.base import (
    Binary,
    BuildResult,
    Builder,
    MultiplexedBinary,
    get_builder,
)

__all__ = ["Binary", "BuildResult", "Builder", "MultiplexedBinary", "get_builder"]
