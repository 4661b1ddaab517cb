"""
Create and enumerate compressed snapshots of the server directory.

Archive names carry a sortable timestamp, e.g.
``dbboys-minecraft-server-2024-01-01-02-00-00.tar.gz``.
"""
from __future__ import annotations

import logging
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from stat import S_ISREG
from typing import List, Optional, Tuple


BACKUP_FORMAT = "%Y-%m-%d-%H-%M-%S"
ARCHIVE_SUFFIX = ".tar.gz"


class ArchiveError(Exception):
    """Raised when an archive cannot be created or sized."""


@dataclass(frozen=True)
class Archive:
    path: Path
    filename: str
    size_bytes: int
    created_at: datetime

    @property
    def timestamp(self) -> str:
        return self.created_at.strftime(BACKUP_FORMAT)


def archive_name(prefix: str, created_at: datetime) -> str:
    return f"{prefix}-{created_at.strftime(BACKUP_FORMAT)}{ARCHIVE_SUFFIX}"


def archive_glob(prefix: str) -> str:
    return f"{prefix}-*{ARCHIVE_SUFFIX}"


def parse_archive_timestamp(filename: str, prefix: str) -> Optional[datetime]:
    head = f"{prefix}-"
    if not filename.startswith(head) or not filename.endswith(ARCHIVE_SUFFIX):
        return None
    stamp = filename[len(head) : -len(ARCHIVE_SUFFIX)]
    try:
        return datetime.strptime(stamp, BACKUP_FORMAT)
    except ValueError:
        return None


def create_archive(
    source_dir: Path,
    archive_dir: Path,
    prefix: str,
    *,
    created_at: Optional[datetime] = None,
) -> Archive:
    """Package ``source_dir`` into a gzip-compressed tarball inside ``archive_dir``.

    The directory is stored under its own name so extracting the archive next
    to the server recreates it. A partially written file is removed before
    :class:`ArchiveError` is raised.
    """
    if not source_dir.is_dir():
        raise ArchiveError(f"Folder to archive not found: {source_dir}")
    if not archive_dir.is_dir():
        raise ArchiveError(f"Archive directory not found: {archive_dir}")

    timestamp = (created_at or datetime.now()).replace(microsecond=0)
    filename = archive_name(prefix, timestamp)
    archive_path = archive_dir / filename

    logging.info("Creating archive of '%s' as '%s'...", source_dir.name, filename)
    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(source_dir, arcname=source_dir.name)
    except (OSError, tarfile.TarError) as error:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to create tar archive {archive_path}: {error}") from error

    try:
        size_bytes = archive_path.stat().st_size
    except OSError as error:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to get file size for {archive_path}: {error}") from error

    logging.info("Archive created successfully: %s (%s)", archive_path, format_size(size_bytes))
    return Archive(
        path=archive_path,
        filename=filename,
        size_bytes=size_bytes,
        created_at=timestamp,
    )


def find_archives(archive_dir: Path, prefix: str) -> List[Path]:
    """Return matching archives, newest modification time first."""
    found: List[Tuple[float, str, Path]] = []
    for candidate in archive_dir.glob(archive_glob(prefix)):
        if parse_archive_timestamp(candidate.name, prefix) is None:
            logging.debug("Skipping non-conforming backup file %s", candidate.name)
            continue
        try:
            stat = candidate.stat()
        except OSError as error:
            logging.warning("Skipping backup file %s: %s", candidate.name, error)
            continue
        if not S_ISREG(stat.st_mode):
            continue
        found.append((stat.st_mtime, candidate.name, candidate))

    found.sort(reverse=True)
    return [path for _, _, path in found]


def format_size(num_bytes: int) -> str:
    units = [
        (1024 ** 3, "GiB"),
        (1024 ** 2, "MiB"),
        (1024, "KiB"),
    ]
    for unit_bytes, label in units:
        if num_bytes >= unit_bytes:
            return f"{num_bytes / unit_bytes:.2f} {label}"
    return f"{num_bytes} B"
