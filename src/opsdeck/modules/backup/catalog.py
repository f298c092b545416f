"""
Filesystem layout for backup archives.

Archives live in one directory per instance and are named
``<instance>_<timestamp><extension>``::

    backups/
      Ubuntu/
        Ubuntu_20260101_030000.tar
        Ubuntu_20260102_030000.tar
"""

from __future__ import annotations

import datetime as dt
import glob
import logging
import re
from pathlib import Path

from ...core.contracts import BackupArtifact

logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DEFAULT_EXTENSION = ".tar"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_instance_name(instance: str) -> str:
    """Return ``instance`` with characters unsafe for file names replaced by ``_``."""

    cleaned = _UNSAFE_CHARS.sub("_", instance.strip())
    if not cleaned or set(cleaned) <= {"."}:
        raise ValueError(f"Instance name {instance!r} cannot be used as a directory name")
    return cleaned


def instance_dir(root: Path, instance: str) -> Path:
    return root / safe_instance_name(instance)


def archive_path_for(
    root: Path,
    instance: str,
    when: dt.datetime,
    *,
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
    extension: str = DEFAULT_EXTENSION,
) -> Path:
    """Build the archive path for an export of ``instance`` taken at ``when``."""

    safe = safe_instance_name(instance)
    return root / safe / f"{safe}_{when.strftime(timestamp_format)}{extension}"


def scan_instance(
    root: Path,
    instance: str,
    *,
    extension: str = DEFAULT_EXTENSION,
) -> list[BackupArtifact]:
    """
    Enumerate archives for one instance with their modification timestamps.

    A missing instance directory yields an empty list. Files that disappear
    or cannot be stat'ed during the scan are skipped.
    """

    directory = instance_dir(root, instance)
    if not directory.is_dir():
        logger.warning("Backup directory %s does not exist; nothing to scan", directory)
        return []

    prefix = f"{safe_instance_name(instance)}_"
    artifacts: list[BackupArtifact] = []
    for path in sorted(directory.glob(f"{glob.escape(prefix)}*{glob.escape(extension)}")):
        if not path.is_file():
            continue
        try:
            mtime = path.stat().st_mtime
        except OSError as exc:
            logger.warning("Skipping %s: %s", path, exc)
            continue
        artifacts.append(
            BackupArtifact(
                instance=instance,
                name=path.name,
                path=path,
                last_modified=dt.datetime.fromtimestamp(mtime, tz=dt.UTC),
            )
        )
    return artifacts


def scan_all(root: Path, *, extension: str = DEFAULT_EXTENSION) -> list[BackupArtifact]:
    """Enumerate archives for every instance directory below ``root``."""

    if not root.is_dir():
        logger.warning("Backup root %s does not exist", root)
        return []
    artifacts: list[BackupArtifact] = []
    for directory in sorted(root.iterdir()):
        if directory.is_dir():
            artifacts.extend(scan_instance(root, directory.name, extension=extension))
    return artifacts


__all__ = [
    "DEFAULT_EXTENSION",
    "DEFAULT_TIMESTAMP_FORMAT",
    "archive_path_for",
    "instance_dir",
    "safe_instance_name",
    "scan_all",
    "scan_instance",
]
