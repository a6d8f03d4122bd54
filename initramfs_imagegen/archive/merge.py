"""Archive merge engine.

This module combines the record sources of an image into one
precedence-resolved, deterministic record sequence and writes it:

1. base archive records (or the default skeleton when no base is given)
2. command group records, in group order
3. extra file records, in the order the user listed them
4. generated init/uinit/shell symlinks

A later layer replaces an earlier record at the same path; the record keeps
the position where the path was first seen. Output order is therefore a
pure function of the inputs, independent of build timing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from initramfs_imagegen.archive.formats import ArchiveWriter
from initramfs_imagegen.archive.records import (
    ROOT,
    Record,
    default_ramfs,
    parent_dirs,
)

logger = logging.getLogger(__name__)

INIT_PATH = "init"
DISPLACED_INIT_PATH = "inito"


def resolve_records(
    base: Iterable[Record] | None,
    command_groups: Sequence[Sequence[Record]],
    extra_records: Sequence[Record],
    symlink_records: Sequence[Record],
    use_existing_init: bool = False,
) -> dict[str, Record]:
    """Apply layer precedence to all record sources.

    Args:
        base: Base archive records, or None for the default skeleton.
        command_groups: Records of each build group, in group order.
        extra_records: Records for user-supplied extra files.
        symlink_records: Generated init/uinit/shell records.
        use_existing_init: Keep the base archive's init in place of the
            generated one. Only applies when a base archive is supplied.

    Returns:
        Mapping of archive path to winning record, in first-seen order.

    Raises:
        ArchiveError: If the base archive is malformed.
    """
    merged: dict[str, Record] = {}

    base_records = default_ramfs() if base is None else base
    for record in base_records:
        if record.path != ROOT:
            merged[record.path] = record

    base_init = merged.get(INIT_PATH) if base is not None else None
    keep_base_init = use_existing_init and base_init is not None
    if use_existing_init and base is not None and base_init is None:
        logger.warning("--useinit given but the base archive has no init")

    for group in command_groups:
        for record in group:
            if record.path != ROOT:
                merged[record.path] = record

    for record in extra_records:
        if record.path != ROOT:
            merged[record.path] = record

    for record in symlink_records:
        if record.path == ROOT:
            continue
        if record.path == INIT_PATH and keep_base_init:
            logger.info(
                "Keeping init from base archive; generated init installed as /%s",
                DISPLACED_INIT_PATH,
            )
            record = record.renamed(DISPLACED_INIT_PATH)
        merged[record.path] = record

    if (
        base_init is not None
        and merged.get(INIT_PATH) is not base_init
        and DISPLACED_INIT_PATH not in merged
    ):
        logger.info("Base archive init replaced; kept as /%s", DISPLACED_INIT_PATH)
        merged[DISPLACED_INIT_PATH] = base_init.renamed(DISPLACED_INIT_PATH)

    return merged


def order_records(merged: dict[str, Record]) -> list[Record]:
    """Order records so that every parent directory precedes its children.

    Parents that appear later in the mapping are moved up; parents with no
    record at all are synthesized with the default directory mode.

    Args:
        merged: Precedence-resolved records in first-seen order.

    Returns:
        Records in write order.
    """
    ordered: list[Record] = []
    emitted: set[str] = set()

    for path, record in merged.items():
        if path in emitted:
            continue
        for parent in parent_dirs(path):
            if parent in emitted:
                continue
            parent_record = merged.get(parent)
            if parent_record is None:
                logger.debug("Synthesizing directory /%s", parent)
                parent_record = Record.directory(parent)
            ordered.append(parent_record)
            emitted.add(parent)
        ordered.append(record)
        emitted.add(path)

    return ordered


def merge(
    base: Iterable[Record] | None,
    command_groups: Sequence[Sequence[Record]],
    extra_records: Sequence[Record],
    symlink_records: Sequence[Record],
    writer: ArchiveWriter,
    use_existing_init: bool = False,
) -> int:
    """Merge all record sources and write them to an archive writer.

    Every source is fully resolved before the first record is written, so
    a malformed base archive never leaves a partial stream behind. The
    writer is not finished here.

    Args:
        base: Base archive records, or None for the default skeleton.
        command_groups: Records of each build group, in group order.
        extra_records: Records for user-supplied extra files.
        symlink_records: Generated init/uinit/shell records.
        writer: Destination writer.
        use_existing_init: Keep the base archive's init.

    Returns:
        Number of records written.

    Raises:
        ArchiveError: If the base archive is malformed or a write fails.
    """
    merged = resolve_records(
        base,
        command_groups,
        extra_records,
        symlink_records,
        use_existing_init=use_existing_init,
    )
    ordered = order_records(merged)
    for record in ordered:
        writer.write(record)

    logger.info("Wrote %d archive records", len(ordered))
    return len(ordered)


__all__ = [
    "DISPLACED_INIT_PATH",
    "INIT_PATH",
    "merge",
    "order_records",
    "resolve_records",
]
