"""Build statistics.

Statistics are kept in a JSON list with one entry per label. Writing an
entry replaces any existing entry with the same label, and the list stays
sorted by label.
"""

from __future__ import annotations

import json
import logging
import os
import posixpath
import tempfile
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from pathlib import Path

from initramfs_imagegen.errors import ConfigError
from initramfs_imagegen.golang.env import Environment

logger = logging.getLogger(__name__)


@dataclass
class BuildStats:
    """Statistics of one build.

    Attributes:
        label: Identifies the build configuration.
        time: Unix time the build started, in whole seconds.
        duration: Build duration in seconds.
        output_size: Archive size in bytes.
    """

    label: str
    time: int
    duration: float
    output_size: int


def generate_label(build: str, env: Environment, packages: Sequence[str]) -> str:
    """Generate a stats label from the build configuration.

    Packages contribute their base names; with no packages the label uses
    "core".

    Example:
        ``bb-linux-amd64-ls_cat`` for packages ``.../ls`` and ``.../cat``.
    """
    names = [posixpath.basename(p.rstrip("/")) for p in packages]
    suffix = "_".join(n for n in names if n) or "core"
    return f"{build}-{env.goos}-{env.goarch}-{suffix}"


def read_build_stats(path: Path) -> list[dict]:
    """Read the stats list from path (empty if the file does not exist).

    Raises:
        ConfigError: If the file is not a JSON list.
    """
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read build stats {path}: {e}") from e
    if not isinstance(data, list):
        raise ConfigError(f"build stats {path} must contain a JSON list")
    return data


def write_build_stats(stats: BuildStats, path: Path) -> None:
    """Upsert a stats entry by label.

    Args:
        stats: Entry to write.
        path: JSON file holding the stats list.

    Raises:
        ConfigError: If the existing file is malformed or cannot be written.
    """
    entries = [e for e in read_build_stats(path) if e.get("label") != stats.label]
    entries.append(asdict(stats))
    entries.sort(key=lambda e: str(e.get("label", "")))

    directory = path.parent if str(path.parent) else Path(".")
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=directory)
    except OSError as e:
        raise ConfigError(f"cannot write build stats {path}: {e}") from e
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2)
            f.write("\n")
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"cannot write build stats {path}: {e}") from e
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.info("Wrote build stats %s to %s", stats.label, path)


__all__ = ["BuildStats", "generate_label", "read_build_stats", "write_build_stats"]
