#!/usr/bin/env python3
"""
Prune old Minecraft backups locally and on UploadThing.

Local archives beyond the newest ``keep_local`` are deleted. Remotely, at most
one file is removed per run: the oldest one, and only while more than
``keep_remote`` files exist.
"""
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import requests

from archiver import find_archives
from backup_settings import (
    BackupConfig,
    ConfigurationError,
    add_common_arguments,
    configure_logging,
    load_config,
    require_api_key,
)
from uploadthing_client import RemoteFile, RemoteStoreError, UploadThingClient


EXIT_OK = 0
EXIT_ERROR = 1


@dataclass
class RemotePruneResult:
    listed: int = 0
    candidate: Optional[RemoteFile] = None
    deleted: bool = False


@dataclass
class RetentionSummary:
    local_deleted: List[Path] = field(default_factory=list)
    remote: Optional[RemotePruneResult] = None
    remote_error: Optional[str] = None


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete old local Minecraft backups and the oldest UploadThing backup."
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--keep-local",
        type=int,
        help="Number of newest local archives to keep (default: 3).",
    )
    parser.add_argument(
        "--keep-remote",
        type=int,
        help="Number of newest remote files to keep (default: 1).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned deletions without deleting anything.",
    )
    return parser.parse_args(argv)


def prune_local_archives(
    archive_dir: Path, prefix: str, keep: int, *, dry_run: bool = False
) -> List[Path]:
    """Delete all but the ``keep`` most recently modified archives.

    A file that cannot be removed is logged and skipped. Returns the paths that
    were deleted, or would have been in a dry run.
    """
    archives = find_archives(archive_dir, prefix)
    if len(archives) <= keep:
        logging.info("Found %d local backup(s). No local cleanup needed.", len(archives))
        return []

    logging.info(
        "Found %d local backups; keeping the %d newest.", len(archives), keep
    )
    deleted: List[Path] = []
    for archive in archives[keep:]:
        if dry_run:
            logging.info("Would delete local file: %s", archive.name)
            deleted.append(archive)
            continue
        logging.info("Deleting local file: %s", archive.name)
        try:
            archive.unlink()
        except OSError as error:
            logging.error("Error deleting %s: %s", archive.name, error)
            continue
        deleted.append(archive)
    return deleted


def select_oldest_remote(files: List[RemoteFile]) -> Optional[RemoteFile]:
    if not files:
        return None

    def sort_key(item: RemoteFile):
        # Entries without a timestamp sort first, as the oldest.
        return (item.uploaded_at is not None, item.uploaded_at or 0)

    return min(files, key=sort_key)


def prune_remote_files(
    client: UploadThingClient, keep: int, *, dry_run: bool = False
) -> RemotePruneResult:
    """Delete the single oldest remote file when more than ``keep`` exist.

    Listing errors propagate. Deletion errors are logged and leave the remote
    set for the next run.
    """
    logging.info("Fetching list of remote files from UploadThing...")
    files = client.list_files()
    result = RemotePruneResult(listed=len(files))
    logging.info("Found %d file(s) on UploadThing.", len(files))

    if len(files) <= keep:
        logging.info("No remote cleanup needed based on current file count.")
        return result

    oldest = select_oldest_remote(files)
    if oldest is None or not oldest.key:
        logging.error("Could not determine the key of the oldest remote file.")
        return result

    result.candidate = oldest
    logging.info(
        "Oldest file identified for deletion: name=%r, key=%r", oldest.name, oldest.key
    )
    if dry_run:
        logging.info("Would delete remote file %s.", oldest.key)
        return result

    try:
        response = client.delete_files([oldest.key])
    except (requests.RequestException, RemoteStoreError) as error:
        logging.error("Delete request for remote file %s failed: %s", oldest.key, error)
        return result

    if response.success and response.deleted_count >= 1:
        logging.info(
            "Successfully deleted remote file: %s (key: %s)", oldest.name, oldest.key
        )
        result.deleted = True
    else:
        logging.error(
            "Failed to delete remote file or unexpected response. Success: %r, count: %r",
            response.success,
            response.deleted_count,
        )
    return result


def run_retention(config: BackupConfig, client: UploadThingClient) -> RetentionSummary:
    summary = RetentionSummary()

    logging.info("--- Starting local backup cleanup in %s ---", config.archive_dir)
    summary.local_deleted = prune_local_archives(
        config.archive_dir,
        config.archive_prefix,
        config.retention.keep_local,
        dry_run=config.dry_run,
    )
    logging.info("--- Local backup cleanup finished ---")

    logging.info(
        "--- Starting UploadThing remote cleanup (keeping %d newest) ---",
        config.retention.keep_remote,
    )
    try:
        summary.remote = prune_remote_files(
            client, config.retention.keep_remote, dry_run=config.dry_run
        )
    except (requests.RequestException, RemoteStoreError) as error:
        summary.remote_error = str(error)
        logging.error("Could not list remote files: %s", error)
    logging.info("--- UploadThing remote cleanup finished ---")
    return summary


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level, args.log_timezone)
    except (ValueError, ConfigurationError) as error:
        logging.error("%s", error)
        return EXIT_ERROR

    try:
        config = load_config(args)
        if config.log_timezone != args.log_timezone:
            configure_logging(args.log_level, config.log_timezone)
        api_key = require_api_key()
    except ConfigurationError as error:
        logging.error("%s", error)
        return EXIT_ERROR

    if not config.archive_dir.is_dir():
        logging.error("Archive directory not found: %s", config.archive_dir)
        return EXIT_ERROR

    summary = run_retention(config, UploadThingClient(api_key))
    if summary.remote_error is not None:
        return EXIT_ERROR
    logging.info("Cleanup finished.")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
