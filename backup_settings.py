"""
Shared configuration and logging helpers for the backup scripts.

Both the upload cycle and the retention pass read the same INI file, the same
``[backup]`` section and the same API key environment variable.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


CONFIG_SECTION = "backup"
API_KEY_ENV = "UPLOADTHING_API_KEY"
NOISY_LOGGERS = ("urllib3", "requests")
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]

DEFAULT_SOURCE_DIR = Path.home() / "minecraft_server" / "dbboys"
DEFAULT_ARCHIVE_PREFIX = "dbboys-minecraft-server"
DEFAULT_CUSTOM_ID_PREFIX = "dbboys-backup"
DEFAULT_UPLOAD_SLUG = "minecraftBackupUploader"
DEFAULT_CONTENT_DISPOSITION = "attachment"
DEFAULT_ACL = "public-read"
DEFAULT_EXPIRES_IN = 300
DEFAULT_MAX_UPLOAD_TIME = 720
DEFAULT_POLL_ATTEMPTS = 6
DEFAULT_POLL_INTERVAL = 15
DEFAULT_KEEP_LOCAL = 3
DEFAULT_KEEP_REMOTE = 1
DEFAULT_SUCCESS_STATUSES = frozenset(
    {"Uploaded", "uploaded", "Completed", "Processed", "AVAILABLE", "complete", "done"}
)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class RetentionPolicy:
    keep_local: int = DEFAULT_KEEP_LOCAL
    keep_remote: int = DEFAULT_KEEP_REMOTE


@dataclass
class BackupConfig:
    archive_dir: Path
    source_dir: Optional[Path] = None
    archive_prefix: str = DEFAULT_ARCHIVE_PREFIX
    custom_id_prefix: str = DEFAULT_CUSTOM_ID_PREFIX
    upload_slug: str = DEFAULT_UPLOAD_SLUG
    content_disposition: str = DEFAULT_CONTENT_DISPOSITION
    acl: str = DEFAULT_ACL
    expires_in: int = DEFAULT_EXPIRES_IN
    max_upload_time: int = DEFAULT_MAX_UPLOAD_TIME
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    poll_interval: int = DEFAULT_POLL_INTERVAL
    success_statuses: FrozenSet[str] = field(default=DEFAULT_SUCCESS_STATUSES)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    log_timezone: Optional[str] = None
    dry_run: bool = False


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument(
        "--archive-dir",
        type=Path,
        help="Directory where backup archives are written and pruned.",
    )
    parser.add_argument(
        "--archive-prefix",
        help=f"Filename prefix of backup archives (default: {DEFAULT_ARCHIVE_PREFIX}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=LOG_LEVELS,
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--log-timezone",
        help="IANA timezone used for log timestamps, e.g. Asia/Kolkata (default: system local time).",
    )


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> BackupConfig:
    """Combine CLI flags and config file values into a :class:`BackupConfig`.

    CLI flags win over the config file, which wins over the built-in defaults.
    Flags that a particular script does not define are simply absent from
    ``args`` and fall through to the file.
    """
    file_cfg = file_config or {}

    def pick(name: str) -> Optional[object]:
        value = getattr(args, name, None)
        if value is not None:
            return value
        return file_cfg.get(name)

    source_dir = _as_path(pick("source_dir") or DEFAULT_SOURCE_DIR)

    archive_value = pick("archive_dir")
    archive_dir = _as_path(archive_value) if archive_value else source_dir.parent

    statuses_value = file_cfg.get("success_statuses")
    if statuses_value is not None:
        success_statuses = parse_status_list(statuses_value)
    else:
        success_statuses = DEFAULT_SUCCESS_STATUSES

    retention = RetentionPolicy(
        keep_local=_pick_int(pick("keep_local"), "keep_local", DEFAULT_KEEP_LOCAL, minimum=0),
        keep_remote=_pick_int(pick("keep_remote"), "keep_remote", DEFAULT_KEEP_REMOTE, minimum=0),
    )

    log_timezone = pick("log_timezone")
    if log_timezone is not None:
        resolve_timezone(str(log_timezone))

    dry_run = bool(getattr(args, "dry_run", False))
    if not dry_run and "dry_run" in file_cfg:
        dry_run = parse_bool(file_cfg["dry_run"])

    return BackupConfig(
        archive_dir=archive_dir,
        source_dir=source_dir,
        archive_prefix=str(pick("archive_prefix") or DEFAULT_ARCHIVE_PREFIX),
        custom_id_prefix=file_cfg.get("custom_id_prefix", DEFAULT_CUSTOM_ID_PREFIX),
        upload_slug=file_cfg.get("upload_slug", DEFAULT_UPLOAD_SLUG),
        content_disposition=file_cfg.get("content_disposition", DEFAULT_CONTENT_DISPOSITION),
        acl=file_cfg.get("acl", DEFAULT_ACL),
        expires_in=_pick_int(file_cfg.get("expires_in"), "expires_in", DEFAULT_EXPIRES_IN, minimum=1),
        max_upload_time=_pick_int(
            pick("max_upload_time"), "max_upload_time", DEFAULT_MAX_UPLOAD_TIME, minimum=1
        ),
        poll_attempts=_pick_int(pick("poll_attempts"), "poll_attempts", DEFAULT_POLL_ATTEMPTS, minimum=1),
        poll_interval=_pick_int(pick("poll_interval"), "poll_interval", DEFAULT_POLL_INTERVAL, minimum=0),
        success_statuses=success_statuses,
        retention=retention,
        log_timezone=str(log_timezone) if log_timezone is not None else None,
        dry_run=dry_run,
    )


def load_config(args: argparse.Namespace) -> BackupConfig:
    file_config: Optional[Dict[str, str]] = None
    if args.config:
        file_config = read_config_file(args.config)
    return merge_config(args, file_config)


def _as_path(value: object) -> Path:
    path = value if isinstance(value, Path) else Path(str(value))
    return path.expanduser().resolve()


def _pick_int(value: Optional[object], name: str, default: int, *, minimum: int) -> int:
    if value is None:
        return default
    number = value if isinstance(value, int) else parse_int(str(value), name)
    if number < minimum:
        kind = "positive" if minimum > 0 else "non-negative"
        raise ConfigurationError(f"{name} must be a {kind} integer.")
    return number


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def parse_status_list(value: str) -> FrozenSet[str]:
    statuses = frozenset(part.strip() for part in value.split(",") if part.strip())
    if not statuses:
        raise ConfigurationError("success_statuses must list at least one status.")
    return statuses


def require_api_key(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    api_key = env.get(API_KEY_ENV, "").strip()
    if not api_key:
        raise ConfigurationError(
            f"{API_KEY_ENV} environment variable is not set. "
            f'Set it with: export {API_KEY_ENV}="your_api_key_here"'
        )
    return api_key


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ConfigurationError(f"Unknown log timezone: {name}") from error


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders ``asctime`` in a fixed timezone."""

    def __init__(self, fmt: str, datefmt: str, tz: Optional[tzinfo]) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        if self.tz is None:
            moment = datetime.fromtimestamp(record.created).astimezone()
        else:
            moment = datetime.fromtimestamp(record.created, tz=self.tz)
        return moment.strftime(datefmt or LOG_DATE_FORMAT)


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str, timezone_name: Optional[str] = None) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    handler = logging.StreamHandler()
    handler.setFormatter(
        TimezoneFormatter(LOG_FORMAT, LOG_DATE_FORMAT, resolve_timezone(timezone_name))
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)
    _quiet_external_loggers()
