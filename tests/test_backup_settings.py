import argparse
import logging
from pathlib import Path

import pytest

from backup_settings import (
    DEFAULT_SOURCE_DIR,
    DEFAULT_SUCCESS_STATUSES,
    ConfigurationError,
    TimezoneFormatter,
    merge_config,
    parse_status_list,
    read_config_file,
    require_api_key,
    resolve_timezone,
)


def namespace(**values) -> argparse.Namespace:
    return argparse.Namespace(**values)


def write_config(path: Path, body: str) -> Path:
    path.write_text("[backup]\n" + body)
    return path


def test_defaults_follow_source_dir(tmp_path: Path) -> None:
    source = tmp_path / "dbboys"

    config = merge_config(namespace(source_dir=source), None)

    assert config.source_dir == source.resolve()
    assert config.archive_dir == tmp_path.resolve()
    assert config.poll_attempts == 6
    assert config.poll_interval == 15
    assert config.max_upload_time == 720
    assert config.expires_in == 300
    assert config.retention.keep_local == 3
    assert config.retention.keep_remote == 1
    assert config.success_statuses == DEFAULT_SUCCESS_STATUSES


def test_cli_overrides_config_file(tmp_path: Path) -> None:
    config_path = write_config(
        tmp_path / "backup.ini",
        f"archive_dir = {tmp_path}\n"
        "keep_local = 5\n"
        "keep_remote = 2\n"
        "poll_attempts = 3\n"
        "success_statuses = done, Stored\n"
        "log_timezone = Asia/Kolkata\n",
    )

    config = merge_config(namespace(keep_local=1, keep_remote=None), read_config_file(config_path))

    assert config.retention.keep_local == 1
    assert config.retention.keep_remote == 2
    assert config.poll_attempts == 3
    assert config.success_statuses == frozenset({"done", "Stored"})
    assert config.log_timezone == "Asia/Kolkata"


def test_bare_invocation_uses_home_server_directory() -> None:
    config = merge_config(namespace(), None)

    assert config.source_dir == DEFAULT_SOURCE_DIR.resolve()
    assert config.archive_dir == DEFAULT_SOURCE_DIR.parent.resolve()
    assert DEFAULT_SOURCE_DIR.parts[-2:] == ("minecraft_server", "dbboys")


@pytest.mark.parametrize(
    "body",
    ["keep_local = -1\n", "keep_remote = many\n", "poll_attempts = 0\n", "log_timezone = Mars/Olympus\n"],
)
def test_invalid_values_rejected(tmp_path: Path, body: str) -> None:
    config_path = write_config(tmp_path / "backup.ini", f"archive_dir = {tmp_path}\n" + body)

    with pytest.raises(ConfigurationError):
        merge_config(namespace(), read_config_file(config_path))


def test_config_file_without_section(tmp_path: Path) -> None:
    path = tmp_path / "backup.ini"
    path.write_text("[other]\nkey = value\n")

    with pytest.raises(ConfigurationError):
        read_config_file(path)


def test_status_list_must_not_be_empty() -> None:
    with pytest.raises(ConfigurationError):
        parse_status_list(" , ")


def test_require_api_key() -> None:
    assert require_api_key({"UPLOADTHING_API_KEY": " sk_live_x "}) == "sk_live_x"
    with pytest.raises(ConfigurationError):
        require_api_key({})


def test_timezone_formatter_renders_configured_zone() -> None:
    formatter = TimezoneFormatter("%(asctime)s", "%Y-%m-%d %H:%M:%S", resolve_timezone("Asia/Kolkata"))
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)
    record.created = 0.0

    assert formatter.formatTime(record, "%Y-%m-%d %H:%M:%S") == "1970-01-01 05:30:00"
