#!/usr/bin/env python3
"""
Minecraft backup uploader.

Archives the server directory, uploads the archive to UploadThing and deletes
the local copy only once the remote store confirms it has processed the file.
Timeouts and interrupts during the transfer are not trusted either way: the
remote store is polled by file key to learn what actually happened.
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, Optional

import requests

from archiver import Archive, ArchiveError, create_archive, format_size
from backup_settings import (
    BackupConfig,
    ConfigurationError,
    add_common_arguments,
    configure_logging,
    load_config,
    require_api_key,
)
from uploadthing_client import (
    RemoteStoreError,
    UploadResponse,
    UploadThingClient,
    extract_upload_url,
)


EXIT_UPLOADED = 0
EXIT_PRECONDITION = 1
EXIT_FAILED = 3
EXIT_UNRESOLVED = 4

TRANSFER_CONFIRMED = "confirmed"
TRANSFER_INDETERMINATE = "indeterminate"
TRANSFER_FAILED = "failed"

OUTCOME_UPLOADED = "uploaded"
OUTCOME_FAILED = "failed"
OUTCOME_UNRESOLVED = "unresolved"

OUTCOME_EXIT_CODES = {
    OUTCOME_UPLOADED: EXIT_UPLOADED,
    OUTCOME_FAILED: EXIT_FAILED,
    OUTCOME_UNRESOLVED: EXIT_UNRESOLVED,
}


class PrepareError(Exception):
    """Raised when the remote store does not hand out a usable upload target."""


@dataclass(frozen=True)
class UploadSession:
    archive: Archive
    remote_key: str
    upload_url: str
    custom_id: str


@dataclass(frozen=True)
class TransferOutcome:
    kind: str  # 'confirmed', 'indeterminate' or 'failed'
    status_code: Optional[int] = None
    file_url: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class PollOutcome:
    completed: bool
    file_url: Optional[str]
    attempts_used: int
    last_status: Optional[str] = None


@dataclass(frozen=True)
class CycleResult:
    outcome: str  # 'uploaded', 'failed' or 'unresolved'
    archive: Archive
    remote_key: Optional[str] = None
    file_url: Optional[str] = None
    archive_deleted: bool = False

    @property
    def exit_code(self) -> int:
        return OUTCOME_EXIT_CODES[self.outcome]


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive the Minecraft server directory and upload it to UploadThing."
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--source-dir",
        type=Path,
        help="Directory to archive (e.g. ~/minecraft_server/dbboys).",
    )
    parser.add_argument(
        "--max-upload-time",
        type=int,
        help="Seconds to wait for the upload request before treating it as timed out (default: 720).",
    )
    parser.add_argument(
        "--poll-attempts",
        type=int,
        help="Number of status checks after an unconfirmed upload (default: 6).",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        help="Seconds between status checks (default: 15).",
    )
    return parser.parse_args(argv)


def build_custom_id(prefix: str, archive: Archive) -> str:
    return f"{prefix}-{archive.timestamp}"


def prepare_upload(
    client: UploadThingClient, archive: Archive, config: BackupConfig
) -> UploadSession:
    custom_id = build_custom_id(config.custom_id_prefix, archive)
    logging.info("Preparing upload with UploadThing (customId %s)...", custom_id)
    try:
        prepared = client.prepare_upload(
            file_name=archive.filename,
            file_size=archive.size_bytes,
            slug=config.upload_slug,
            custom_id=custom_id,
            content_disposition=config.content_disposition,
            acl=config.acl,
            expires_in=config.expires_in,
        )
    except (requests.RequestException, RemoteStoreError) as error:
        raise PrepareError(f"prepareUpload request failed: {error}") from error

    if not prepared.upload_url or not prepared.remote_key:
        message = "Failed to get pre-signed URL or file key from UploadThing."
        if prepared.error:
            message = f"{message} UploadThing error: {prepared.error}"
        raise PrepareError(message)

    logging.info("Pre-signed URL received; file key: %s", prepared.remote_key)
    return UploadSession(
        archive=archive,
        remote_key=prepared.remote_key,
        upload_url=prepared.upload_url,
        custom_id=custom_id,
    )


def _parse_upload_body(response: UploadResponse) -> Optional[str]:
    if not response.content:
        logging.info("No response body received with the successful upload status.")
        return None
    try:
        body = response.json()
    except ValueError:
        logging.info("Upload response body was not valid JSON.")
        return None
    file_url = extract_upload_url(body)
    if file_url:
        logging.info("Parsed final file URL from upload response: %s", file_url)
    return file_url


def transfer_archive(
    client: UploadThingClient, session: UploadSession, *, timeout: float
) -> TransferOutcome:
    """Send the archive to the single-use upload URL and classify the result."""
    archive = session.archive
    logging.info(
        "Uploading %s (%s) to UploadThing...",
        archive.filename,
        format_size(archive.size_bytes),
    )
    try:
        response = client.upload_file(session.upload_url, archive.path, timeout=timeout)
    except requests.Timeout as error:
        logging.warning(
            "Upload timed out after %s seconds: %s. The file may still have arrived; "
            "polling with file key %s.",
            timeout,
            error,
            session.remote_key,
        )
        return TransferOutcome(kind=TRANSFER_INDETERMINATE, detail="timeout")
    except KeyboardInterrupt:
        logging.warning(
            "Upload was interrupted. The file may still have arrived; polling with file key %s.",
            session.remote_key,
        )
        return TransferOutcome(kind=TRANSFER_INDETERMINATE, detail="interrupted")
    except (requests.RequestException, OSError) as error:
        logging.error("Upload request failed: %s", error)
        return TransferOutcome(kind=TRANSFER_FAILED, detail=str(error))

    logging.info("Upload finished with HTTP status %d.", response.status_code)
    if not 200 <= response.status_code < 300:
        logging.error(
            "Upload HTTP status was %d. Response body: %s",
            response.status_code,
            response.text[:500],
        )
        return TransferOutcome(
            kind=TRANSFER_FAILED,
            status_code=response.status_code,
            detail=f"HTTP {response.status_code}",
        )

    return TransferOutcome(
        kind=TRANSFER_CONFIRMED,
        status_code=response.status_code,
        file_url=_parse_upload_body(response),
    )


def _near_miss(status: str, success_statuses: FrozenSet[str]) -> Optional[str]:
    folded = status.casefold()
    for token in sorted(success_statuses):
        if token.casefold() == folded:
            return token
    return None


def poll_upload_status(
    client: UploadThingClient,
    remote_key: str,
    *,
    attempts: int,
    interval: float,
    success_statuses: FrozenSet[str],
    sleep: Callable[[float], None] = time.sleep,
    file_url: Optional[str] = None,
) -> PollOutcome:
    """Ask the remote store about ``remote_key`` until it reports a success status.

    A failed status request uses up its attempt and is retried after the usual
    interval. ``file_url`` is an already known URL that a URL from the final
    poll response replaces.
    """
    last_status: Optional[str] = None
    for attempt in range(1, attempts + 1):
        logging.info("Poll attempt %d/%d for file key %s", attempt, attempts, remote_key)
        try:
            result = client.poll_upload(remote_key)
        except (requests.RequestException, RemoteStoreError) as error:
            logging.warning("Status request failed: %s. Will retry.", error)
        else:
            last_status = result.status
            logging.info(
                "Polling status: %r; file URL from poll: %r", result.status, result.file_url
            )
            if result.status is not None and result.status in success_statuses:
                if result.file_url:
                    file_url = result.file_url
                else:
                    logging.warning(
                        "Status %r reports completion but no file URL was included.",
                        result.status,
                    )
                return PollOutcome(
                    completed=True,
                    file_url=file_url,
                    attempts_used=attempt,
                    last_status=result.status,
                )
            if result.status is not None:
                match = _near_miss(result.status, success_statuses)
                if match is not None:
                    logging.warning(
                        "Status %r differs from the configured success status %r only by case; "
                        "still treating the upload as pending. Add it to success_statuses "
                        "if it means completion.",
                        result.status,
                        match,
                    )

        if attempt < attempts:
            logging.info("Status not final yet. Waiting %s seconds...", interval)
            sleep(interval)

    return PollOutcome(
        completed=False,
        file_url=file_url,
        attempts_used=attempts,
        last_status=last_status,
    )


def finalize_upload(
    session: UploadSession, *, completed: bool, file_url: Optional[str]
) -> CycleResult:
    archive = session.archive
    if not completed:
        logging.warning(
            "Upload did not reach a confirmed success status. Check the UploadThing "
            "dashboard for file key %s.",
            session.remote_key,
        )
        logging.warning("Local archive %s will NOT be deleted for safety.", archive.path)
        return CycleResult(
            outcome=OUTCOME_UNRESOLVED,
            archive=archive,
            remote_key=session.remote_key,
            file_url=file_url,
        )

    logging.info("File successfully uploaded and processed by UploadThing.")
    if file_url:
        logging.info("Final file URL: %s", file_url)
    else:
        logging.warning(
            "Processing is complete but the final URL is unknown. Look up file key %s "
            "on the UploadThing dashboard.",
            session.remote_key,
        )

    logging.info("Deleting local archive: %s", archive.path)
    deleted = True
    try:
        archive.path.unlink()
    except OSError as error:
        deleted = False
        logging.warning("Failed to delete local archive %s: %s", archive.path, error)

    return CycleResult(
        outcome=OUTCOME_UPLOADED,
        archive=archive,
        remote_key=session.remote_key,
        file_url=file_url,
        archive_deleted=deleted,
    )


def upload_archive(
    client: UploadThingClient,
    archive: Archive,
    config: BackupConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleResult:
    try:
        session = prepare_upload(client, archive, config)
    except PrepareError as error:
        logging.error("%s", error)
        logging.warning("Local archive %s will NOT be deleted for safety.", archive.path)
        return CycleResult(outcome=OUTCOME_FAILED, archive=archive)

    transfer = transfer_archive(client, session, timeout=config.max_upload_time)

    if transfer.kind == TRANSFER_FAILED:
        logging.error(
            "Upload failed (%s); polling is not possible for this cycle.", transfer.detail
        )
        logging.warning("Local archive %s will NOT be deleted for safety.", archive.path)
        return CycleResult(
            outcome=OUTCOME_FAILED, archive=archive, remote_key=session.remote_key
        )

    if transfer.kind == TRANSFER_CONFIRMED and transfer.file_url:
        return finalize_upload(session, completed=True, file_url=transfer.file_url)

    logging.info("Proceeding to poll for file processing status.")
    poll = poll_upload_status(
        client,
        session.remote_key,
        attempts=config.poll_attempts,
        interval=config.poll_interval,
        success_statuses=config.success_statuses,
        sleep=sleep,
        file_url=transfer.file_url,
    )
    if not poll.completed:
        logging.warning(
            "No success status after %d poll attempts (last status: %r).",
            poll.attempts_used,
            poll.last_status,
        )
    return finalize_upload(session, completed=poll.completed, file_url=poll.file_url)


def run_upload_cycle(
    config: BackupConfig,
    client: UploadThingClient,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleResult:
    """Create a fresh archive and push it through prepare, transfer, poll and finalize.

    Raises :class:`ArchiveError` before any network call if the archive cannot
    be produced.
    """
    if config.source_dir is None:
        raise ConfigurationError("source_dir must be supplied via CLI or config file.")
    archive = create_archive(config.source_dir, config.archive_dir, config.archive_prefix)
    logging.info("File size: %d bytes", archive.size_bytes)
    return upload_archive(client, archive, config, sleep=sleep)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level, args.log_timezone)
    except (ValueError, ConfigurationError) as error:
        logging.error("%s", error)
        return EXIT_PRECONDITION

    try:
        config = load_config(args)
        if config.log_timezone != args.log_timezone:
            configure_logging(args.log_level, config.log_timezone)
        api_key = require_api_key()
    except ConfigurationError as error:
        logging.error("%s", error)
        return EXIT_PRECONDITION

    if config.source_dir is None or not config.source_dir.is_dir():
        logging.error("Folder to archive not found: %s", config.source_dir)
        return EXIT_PRECONDITION

    client = UploadThingClient(api_key)
    try:
        result = run_upload_cycle(config, client)
    except ArchiveError as error:
        logging.error("%s", error)
        return EXIT_PRECONDITION

    logging.info("Backup cycle finished: %s.", result.outcome)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
