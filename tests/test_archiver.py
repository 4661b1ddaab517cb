import logging
import os
import tarfile
from datetime import datetime
from pathlib import Path

import pytest

from archiver import (
    ArchiveError,
    archive_name,
    create_archive,
    find_archives,
    format_size,
    parse_archive_timestamp,
)


PREFIX = "dbboys-minecraft-server"


def make_world(root: Path) -> Path:
    world = root / "dbboys"
    (world / "world" / "region").mkdir(parents=True)
    (world / "world" / "level.dat").write_bytes(b"level")
    (world / "world" / "region" / "r.0.0.mca").write_bytes(b"\x00" * 64)
    return world


def test_create_archive_packages_directory(tmp_path: Path) -> None:
    world = make_world(tmp_path)

    archive = create_archive(world, tmp_path, PREFIX, created_at=datetime(2024, 6, 1, 2, 0, 0, 123))

    assert archive.filename == "dbboys-minecraft-server-2024-06-01-02-00-00.tar.gz"
    assert archive.path == tmp_path / archive.filename
    assert archive.size_bytes == archive.path.stat().st_size
    assert archive.timestamp == "2024-06-01-02-00-00"
    with tarfile.open(archive.path, "r:gz") as tar:
        names = set(tar.getnames())
    assert "dbboys/world/level.dat" in names
    assert "dbboys/world/region/r.0.0.mca" in names


def test_create_archive_missing_source(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError):
        create_archive(tmp_path / "missing", tmp_path, PREFIX)


def test_create_archive_logs_progress(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    world = make_world(tmp_path)

    with caplog.at_level(logging.INFO):
        archive = create_archive(world, tmp_path, PREFIX, created_at=datetime(2024, 6, 1))

    messages = [record.getMessage() for record in caplog.records if record.name == "root"]
    assert any(archive.filename in message for message in messages)
    assert any("Archive created successfully" in message for message in messages)


def test_create_archive_removes_partial_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    world = make_world(tmp_path)

    def broken_add(self, *args, **kwargs) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(tarfile.TarFile, "add", broken_add)

    with pytest.raises(ArchiveError):
        create_archive(world, tmp_path, PREFIX, created_at=datetime(2024, 6, 1))

    assert list(tmp_path.glob("*.tar.gz")) == []


def test_archive_names_sort_chronologically() -> None:
    earlier = archive_name(PREFIX, datetime(2024, 1, 31, 23, 59, 0))
    later = archive_name(PREFIX, datetime(2024, 2, 1, 0, 1, 0))

    assert sorted([later, earlier]) == [earlier, later]
    assert parse_archive_timestamp(later, PREFIX) == datetime(2024, 2, 1, 0, 1, 0)
    assert parse_archive_timestamp("other-2024-02-01-00-01-00.tar.gz", PREFIX) is None


def test_find_archives_newest_first(tmp_path: Path) -> None:
    names = [archive_name(PREFIX, datetime(2024, 1, day)) for day in (1, 2, 3)]
    for offset, name in enumerate(names):
        path = tmp_path / name
        path.write_bytes(b"x")
        os.utime(path, (1_700_000_000 + offset, 1_700_000_000 + offset))
    (tmp_path / "notes.txt").write_text("ignore me")

    found = find_archives(tmp_path, PREFIX)

    assert [path.name for path in found] == list(reversed(names))


def test_find_archives_skips_file_removed_during_scan(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    names = [archive_name(PREFIX, datetime(2024, 1, day)) for day in (1, 2, 3)]
    for offset, name in enumerate(names):
        path = tmp_path / name
        path.write_bytes(b"x")
        os.utime(path, (1_700_000_000 + offset, 1_700_000_000 + offset))
    vanished = tmp_path / names[1]
    original_stat = Path.stat

    def racing_stat(self: Path, *args, **kwargs):
        if self == vanished:
            raise FileNotFoundError(2, "No such file or directory", str(self))
        return original_stat(self, *args, **kwargs)

    monkeypatch.setattr(Path, "stat", racing_stat)

    found = find_archives(tmp_path, PREFIX)

    assert [path.name for path in found] == [names[2], names[0]]


@pytest.mark.parametrize(
    "num_bytes, expected",
    [
        (0, "0 B"),
        (512, "512 B"),
        (2048, "2.00 KiB"),
        (5 * 1024 * 1024, "5.00 MiB"),
        (3 * 1024 ** 3 // 2, "1.50 GiB"),
    ],
)
def test_format_size(num_bytes: int, expected: str) -> None:
    assert format_size(num_bytes) == expected
