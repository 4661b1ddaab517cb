#!/usr/bin/env python3
"""
Register the backup and cleanup scripts in the current user's crontab.

Adds one upload entry at 02:00 and cleanup entries at 01:00 and 13:00 (system
time). Entries are only added when the crontab does not already reference the
corresponding module, so the script can be re-run safely.
"""
from __future__ import annotations

import argparse
import getpass
import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from backup_settings import API_KEY_ENV, DEFAULT_SOURCE_DIR, LOG_LEVELS, configure_logging


API_KEY_INPUT_ENV = "UPLOADTHING_API_KEY_INPUT"
UPLOAD_MODULE = "backup_manager"
MANAGE_MODULE = "manage_backups"
UPLOAD_SCHEDULES = ("0 2 * * *",)
MANAGE_SCHEDULES = ("0 1 * * *", "0 13 * * *")
UPLOAD_COMMENT = "# Minecraft Backup Job (via setup script)"
MANAGE_COMMENT = "# Minecraft Cleanup Job (via setup script)"


class CrontabError(Exception):
    """Raised when the crontab cannot be read or written."""


@dataclass(frozen=True)
class CronJobGroup:
    module: str
    comment: str
    schedules: Sequence[str]
    log_file: Path
    arguments: Tuple[str, ...] = ()


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Install cron entries for the Minecraft backup and cleanup scripts."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Config file passed to both scripts from cron.",
    )
    parser.add_argument(
        "--source-dir",
        type=Path,
        help=f"Server directory the upload job archives (default: {DEFAULT_SOURCE_DIR}).",
    )
    parser.add_argument(
        "--archive-dir",
        type=Path,
        help="Directory holding the archives (default: parent of the source directory).",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=Path.home(),
        help="Directory for minecraft_backup.log and minecraft_cleanup.log (default: home).",
    )
    parser.add_argument(
        "--python",
        default=sys.executable,
        help="Interpreter used to run the scripts (default: the current one).",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=Path(__file__).resolve().parent,
        help="Directory cron changes into before running the scripts.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the resulting crontab instead of installing it.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=LOG_LEVELS,
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def build_command(
    *,
    python: str,
    module: str,
    workdir: Path,
    api_key: str,
    log_file: Path,
    arguments: Sequence[str] = (),
) -> str:
    parts = [shlex.quote(python), "-m", module]
    parts.extend(shlex.quote(argument) for argument in arguments)
    return (
        f"cd {shlex.quote(str(workdir))} && "
        f"{API_KEY_ENV}={shlex.quote(api_key)} {' '.join(parts)} "
        f">> {shlex.quote(str(log_file))} 2>&1"
    )


def module_marker(module: str) -> str:
    return f"-m {module}"


def add_missing_jobs(
    current: str,
    groups: Sequence[CronJobGroup],
    *,
    python: str,
    workdir: Path,
    api_key: str,
) -> Tuple[str, int]:
    """Return the new crontab text and the number of entries added."""
    lines: List[str] = current.splitlines()
    added = 0
    for group in groups:
        if module_marker(group.module) in current:
            logging.info(
                "A cron job for %s already seems to exist. Skipping addition.", group.module
            )
            continue
        logging.info("Adding cron job(s) for %s at %s.", group.module, ", ".join(group.schedules))
        lines.append(group.comment)
        command = build_command(
            python=python,
            module=group.module,
            workdir=workdir,
            api_key=api_key,
            log_file=group.log_file,
            arguments=group.arguments,
        )
        for schedule in group.schedules:
            lines.append(f"{schedule} {command}")
            added += 1
    if added:
        lines.append("")
    text = "\n".join(lines)
    if text and not text.endswith("\n"):
        text += "\n"
    return text, added


Runner = Callable[..., subprocess.CompletedProcess]


def read_crontab(run: Runner = subprocess.run) -> str:
    result = run(["crontab", "-l"], capture_output=True, text=True)
    if result.returncode != 0:
        # No crontab installed yet.
        return ""
    return result.stdout


def write_crontab(content: str, run: Runner = subprocess.run) -> None:
    result = run(["crontab", "-"], input=content, capture_output=True, text=True)
    if result.returncode != 0:
        raise CrontabError(f"Failed to update crontab: {result.stderr.strip()}")


def job_arguments(args: argparse.Namespace) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Return the flags passed to the upload job and to the cleanup job."""
    upload: List[str] = []
    manage: List[str] = []
    if args.config:
        config_flag = ["--config", str(args.config.expanduser().resolve())]
        upload += config_flag
        manage += config_flag

    source_dir = args.source_dir.expanduser().resolve() if args.source_dir else None
    archive_dir = args.archive_dir.expanduser().resolve() if args.archive_dir else None
    if archive_dir is None and source_dir is not None:
        archive_dir = source_dir.parent
    if source_dir is not None:
        upload += ["--source-dir", str(source_dir)]
    if archive_dir is not None:
        upload += ["--archive-dir", str(archive_dir)]
        manage += ["--archive-dir", str(archive_dir)]

    if source_dir is None and not args.config and not DEFAULT_SOURCE_DIR.is_dir():
        logging.warning(
            "Default server directory %s does not exist; pass --source-dir or --config "
            "or the upload job will fail.",
            DEFAULT_SOURCE_DIR,
        )
    return tuple(upload), tuple(manage)


def resolve_api_key(prompt: Optional[Callable[[str], str]] = None) -> str:
    api_key = os.environ.get(API_KEY_INPUT_ENV, "").strip()
    if not api_key:
        api_key = (prompt or getpass.getpass)("Enter your UploadThing API key: ").strip()
    return api_key


def install_jobs(
    args: argparse.Namespace,
    api_key: str,
    run: Runner = subprocess.run,
) -> int:
    log_dir = args.log_dir.expanduser().resolve()
    upload_arguments, manage_arguments = job_arguments(args)
    groups = [
        CronJobGroup(
            UPLOAD_MODULE,
            UPLOAD_COMMENT,
            UPLOAD_SCHEDULES,
            log_dir / "minecraft_backup.log",
            upload_arguments,
        ),
        CronJobGroup(
            MANAGE_MODULE,
            MANAGE_COMMENT,
            MANAGE_SCHEDULES,
            log_dir / "minecraft_cleanup.log",
            manage_arguments,
        ),
    ]

    current = read_crontab(run)
    content, added = add_missing_jobs(
        current,
        groups,
        python=args.python,
        workdir=args.workdir.expanduser().resolve(),
        api_key=api_key,
    )

    if not added:
        logging.info("No new cron jobs were added; entries for both scripts already exist.")
        return added

    if args.dry_run:
        print(content, end="")
        return added

    log_dir.mkdir(parents=True, exist_ok=True)
    write_crontab(content, run)
    logging.info("Crontab updated successfully with %d new job(s).", added)
    return added


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    api_key = resolve_api_key()
    if not api_key:
        logging.error("No UploadThing API key provided.")
        return 1

    try:
        install_jobs(args, api_key)
    except (CrontabError, OSError) as error:
        logging.error("%s", error)
        return 1

    logging.info("Schedules use the system timezone. Verify with: crontab -l")
    return 0


if __name__ == "__main__":
    sys.exit(main())
