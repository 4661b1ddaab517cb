import shlex
import subprocess
from pathlib import Path
from typing import Any, List

import pytest

import backup_manager
import backup_settings
import manage_backups
import setup_cronjobs
from setup_cronjobs import CrontabError, install_jobs, parse_args


class FakeCrontab:
    def __init__(self, existing: str = "", *, installed: bool = True, write_code: int = 0) -> None:
        self.content = existing
        self.installed = installed
        self.write_code = write_code
        self.calls: List[List[str]] = []

    def __call__(self, command: List[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(command)
        if command == ["crontab", "-l"]:
            if not self.installed:
                return subprocess.CompletedProcess(command, 1, "", "no crontab for user")
            return subprocess.CompletedProcess(command, 0, self.content, "")
        if self.write_code == 0:
            self.content = kwargs["input"]
        return subprocess.CompletedProcess(command, self.write_code, "", "permission denied")


def make_args(tmp_path: Path, *extra: str):
    return parse_args(
        ["--log-dir", str(tmp_path / "logs"), "--python", "/usr/bin/python3", "--workdir", str(tmp_path), *extra]
    )


def test_install_adds_all_jobs_to_empty_crontab(tmp_path: Path) -> None:
    crontab = FakeCrontab(installed=False)

    added = install_jobs(make_args(tmp_path), "sk_test", run=crontab)

    assert added == 3
    lines = crontab.content.splitlines()
    assert any(line.startswith("0 2 * * * ") and "-m backup_manager" in line for line in lines)
    assert any(line.startswith("0 1 * * * ") and "-m manage_backups" in line for line in lines)
    assert any(line.startswith("0 13 * * * ") and "-m manage_backups" in line for line in lines)
    assert "UPLOADTHING_API_KEY=sk_test" in crontab.content
    assert str(tmp_path / "logs" / "minecraft_backup.log") in crontab.content
    assert (tmp_path / "logs").is_dir()


def test_install_is_idempotent(tmp_path: Path) -> None:
    crontab = FakeCrontab()
    install_jobs(make_args(tmp_path), "sk_test", run=crontab)
    first = crontab.content

    added = install_jobs(make_args(tmp_path), "sk_test", run=crontab)

    assert added == 0
    assert crontab.content == first
    assert crontab.calls[-1] == ["crontab", "-l"]


def test_install_keeps_existing_entries(tmp_path: Path) -> None:
    existing = "*/5 * * * * /usr/local/bin/healthcheck\n0 1 * * * python3 -m manage_backups\n"
    crontab = FakeCrontab(existing)

    added = install_jobs(make_args(tmp_path), "sk_test", run=crontab)

    assert added == 1
    assert crontab.content.startswith(existing)
    assert crontab.content.count("-m manage_backups") == 1


def test_install_passes_config_path(tmp_path: Path) -> None:
    crontab = FakeCrontab()
    config = tmp_path / "backup.ini"

    install_jobs(make_args(tmp_path, "--config", str(config)), "sk_test", run=crontab)

    assert f"--config {config.resolve()}" in crontab.content


def test_dry_run_prints_without_writing(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    crontab = FakeCrontab()

    install_jobs(make_args(tmp_path, "--dry-run"), "sk_test", run=crontab)

    assert crontab.calls == [["crontab", "-l"]]
    assert "-m backup_manager" in capsys.readouterr().out


def test_write_failure_raises(tmp_path: Path) -> None:
    crontab = FakeCrontab(write_code=1)

    with pytest.raises(CrontabError):
        install_jobs(make_args(tmp_path), "sk_test", run=crontab)


def test_main_without_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("UPLOADTHING_API_KEY_INPUT", raising=False)
    monkeypatch.setattr(setup_cronjobs.getpass, "getpass", lambda prompt: "")

    assert setup_cronjobs.main([]) == 1


def job_argv(content: str, module: str) -> List[str]:
    line = next(line for line in content.splitlines() if f"-m {module}" in line)
    return shlex.split(line.split(f"-m {module}", 1)[1].split(">>", 1)[0])


def test_install_forwards_server_directory(tmp_path: Path) -> None:
    source = tmp_path / "srv" / "dbboys"
    source.mkdir(parents=True)
    crontab = FakeCrontab()

    install_jobs(make_args(tmp_path, "--source-dir", str(source)), "sk_test", run=crontab)

    upload = backup_settings.load_config(backup_manager.parse_args(job_argv(crontab.content, "backup_manager")))
    manage = backup_settings.load_config(manage_backups.parse_args(job_argv(crontab.content, "manage_backups")))
    assert upload.source_dir == source.resolve()
    assert upload.archive_dir == source.parent.resolve()
    assert manage.archive_dir == source.parent.resolve()


def test_bare_install_runs_against_default_server_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = tmp_path / "minecraft_server" / "dbboys"
    source.mkdir(parents=True)
    monkeypatch.setattr(backup_settings, "DEFAULT_SOURCE_DIR", source)
    monkeypatch.setattr(setup_cronjobs, "DEFAULT_SOURCE_DIR", source)
    crontab = FakeCrontab()

    install_jobs(make_args(tmp_path), "sk_test", run=crontab)

    argv = job_argv(crontab.content, "backup_manager")
    config = backup_settings.load_config(backup_manager.parse_args(argv))
    assert argv == []
    assert config.source_dir == source.resolve()
    assert config.source_dir.is_dir()


def test_install_warns_when_default_server_directory_is_missing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setattr(setup_cronjobs, "DEFAULT_SOURCE_DIR", tmp_path / "missing")

    install_jobs(make_args(tmp_path, "--dry-run"), "sk_test", run=FakeCrontab())

    assert "does not exist" in caplog.text
