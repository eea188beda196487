from __future__ import annotations

import logging

import pytest

from vminit.config import (
    DEFAULT_MMDS_IP,
    LOG_LEVEL_ENV,
    MMDS_IP_ENV,
    AgentConfig,
    default_log_level,
    default_mmds_ip,
)


def test_default_mmds_ip_uses_argument(monkeypatch) -> None:
    monkeypatch.setenv(MMDS_IP_ENV, "10.1.1.1")
    assert default_mmds_ip("10.2.2.2") == "10.2.2.2"


def test_default_mmds_ip_uses_env_override(monkeypatch) -> None:
    monkeypatch.setenv(MMDS_IP_ENV, "10.1.1.1")
    assert default_mmds_ip() == "10.1.1.1"


def test_default_mmds_ip_falls_back_to_link_local(monkeypatch) -> None:
    monkeypatch.delenv(MMDS_IP_ENV, raising=False)
    assert default_mmds_ip() == DEFAULT_MMDS_IP


def test_default_log_level(monkeypatch) -> None:
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    assert default_log_level() == "INFO"
    monkeypatch.setenv(LOG_LEVEL_ENV, "debug")
    assert default_log_level() == "DEBUG"
    assert default_log_level("warning") == "WARNING"


def test_metadata_url_joins_ip_and_path() -> None:
    config = AgentConfig(mmds_ip="169.254.169.254", metadata_path="/latest/meta-data")
    assert config.metadata_url == "http://169.254.169.254/latest/meta-data"


def test_log_level_value() -> None:
    assert AgentConfig(log_level="debug").log_level_value == logging.DEBUG


def test_validate_accepts_defaults() -> None:
    AgentConfig().validate()


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"mmds_ip": " "}, "mmds_ip"),
        ({"authorized_keys_pattern": "/root/.ssh/authorized_keys"}, "placeholder"),
        ({"hosts_file": ""}, "hosts_file"),
        ({"log_level": "chatty"}, "log_level"),
        ({"dry_run": "yes"}, "dry_run"),
    ],
)
def test_validate_rejects_invalid(changes: dict, message: str) -> None:
    config = AgentConfig(**changes)
    with pytest.raises(ValueError, match=message):
        config.validate()
