from __future__ import annotations

from pathlib import Path

import pytest

import vminit.__main__ as cli
from vminit.config import DEFAULT_METADATA_PATH, LOG_LEVEL_ENV, MMDS_IP_ENV
from vminit.deployer import ExecutingResourceDeployer, NoopResourceDeployer
from vminit.errors import MetadataError
from vminit.metadata import BootstrapConfig, GuestMetadata
from vminit.runner import NoopCommandRunner, ShellCommandRunner


class _RecordingBootstrapper:
    instances: list[_RecordingBootstrapper] = []

    def __init__(self, bootstrap: BootstrapConfig, *, fail: bool = False):
        self.bootstrap = bootstrap
        self.command_runner = NoopCommandRunner()
        self.resource_deployer = NoopResourceDeployer()
        self.executed = False
        self.fail = fail
        _RecordingBootstrapper.instances.append(self)

    def with_command_runner(self, runner):
        self.command_runner = runner
        return self

    def with_resource_deployer(self, deployer):
        self.resource_deployer = deployer
        return self

    def execute(self) -> None:
        self.executed = True
        if self.fail:
            raise RuntimeError("controller rejected the build")


@pytest.fixture
def guest_files(tmp_path: Path) -> list[str]:
    hostname = tmp_path / "hostname"
    hosts = tmp_path / "hosts"
    hostname.write_text("", encoding="utf-8")
    hosts.write_text("", encoding="utf-8")
    return [
        "--path-authorized-keys-pattern",
        str(tmp_path / "{user}.keys"),
        "--path-env-file",
        str(tmp_path / "env.sh"),
        "--path-hostname-file",
        str(hostname),
        "--path-hosts-file",
        str(hosts),
        "--path-entrypoint-runner",
        str(tmp_path / "entrypoint.sh"),
    ]


@pytest.fixture(autouse=True)
def _reset_recorded() -> None:
    _RecordingBootstrapper.instances.clear()


def _bootstrap() -> BootstrapConfig:
    return BootstrapConfig("10.0.0.1:5000", "cert", "key", "ca", "controller")


def test_parse_args_defaults(monkeypatch) -> None:
    monkeypatch.delenv(MMDS_IP_ENV, raising=False)
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)

    config = cli.parse_args([])

    assert config.mmds_ip == "169.254.169.254"
    assert config.metadata_path == DEFAULT_METADATA_PATH
    assert config.log_level == "INFO"
    assert not config.dry_run


def test_parse_args_overrides(monkeypatch) -> None:
    monkeypatch.setenv(MMDS_IP_ENV, "10.9.9.9")
    config = cli.parse_args(["--guest-mmds-ip", "10.1.1.1", "--log-level", "debug", "--dry-run"])

    assert config.mmds_ip == "10.1.1.1"
    assert config.log_level == "DEBUG"
    assert config.dry_run


def test_main_rejects_invalid_config(capsys) -> None:
    assert cli.main(["--log-level", "chatty"]) == 2
    assert "log_level" in capsys.readouterr().err


def test_main_reports_metadata_failure(monkeypatch, guest_files) -> None:
    def _fail(url: str) -> GuestMetadata:
        raise MetadataError("connection refused")

    monkeypatch.setattr(cli, "fetch_metadata", _fail)
    assert cli.main(guest_files) == 1


def test_main_without_bootstrap_only_injects(monkeypatch, guest_files, tmp_path: Path) -> None:
    seen: list[str] = []

    def _fetch(url: str) -> GuestMetadata:
        seen.append(url)
        return GuestMetadata(local_hostname="builder", env={"A": "1"})

    monkeypatch.setattr(cli, "fetch_metadata", _fetch)
    monkeypatch.setattr(cli, "Bootstrapper", _RecordingBootstrapper)

    assert cli.main(["--guest-mmds-ip", "10.0.0.254", *guest_files]) == 0

    assert seen == ["http://10.0.0.254/latest/meta-data"]
    assert (tmp_path / "hostname").read_text(encoding="utf-8") == "builder"
    assert (tmp_path / "env.sh").exists()
    assert _RecordingBootstrapper.instances == []


def test_main_runs_bootstrap_with_executing_collaborators(monkeypatch, guest_files) -> None:
    monkeypatch.setattr(cli, "fetch_metadata", lambda url: GuestMetadata(bootstrap=_bootstrap()))
    monkeypatch.setattr(cli, "Bootstrapper", _RecordingBootstrapper)

    assert cli.main(guest_files) == 0

    (bootstrapper,) = _RecordingBootstrapper.instances
    assert bootstrapper.executed
    assert isinstance(bootstrapper.command_runner, ShellCommandRunner)
    assert isinstance(bootstrapper.resource_deployer, ExecutingResourceDeployer)


def test_main_dry_run_keeps_noop_collaborators(monkeypatch, guest_files) -> None:
    monkeypatch.setattr(cli, "fetch_metadata", lambda url: GuestMetadata(bootstrap=_bootstrap()))
    monkeypatch.setattr(cli, "Bootstrapper", _RecordingBootstrapper)

    assert cli.main(["--dry-run", *guest_files]) == 0

    (bootstrapper,) = _RecordingBootstrapper.instances
    assert isinstance(bootstrapper.command_runner, NoopCommandRunner)
    assert isinstance(bootstrapper.resource_deployer, NoopResourceDeployer)


def test_main_reports_bootstrap_failure(monkeypatch, guest_files) -> None:
    monkeypatch.setattr(cli, "fetch_metadata", lambda url: GuestMetadata(bootstrap=_bootstrap()))
    monkeypatch.setattr(
        cli,
        "Bootstrapper",
        lambda bootstrap: _RecordingBootstrapper(bootstrap, fail=True),
    )

    assert cli.main(guest_files) == 1


def test_main_reports_injection_failure(monkeypatch, guest_files) -> None:
    monkeypatch.setattr(cli, "fetch_metadata", lambda url: GuestMetadata(users={"ghost": "key"}))
    assert cli.main(guest_files) == 1
