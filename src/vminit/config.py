"""Agent configuration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

MMDS_IP_ENV = "VMINIT_MMDS_IP"
LOG_LEVEL_ENV = "VMINIT_LOG_LEVEL"

DEFAULT_MMDS_IP = "169.254.169.254"
DEFAULT_METADATA_PATH = "latest/meta-data"
DEFAULT_AUTHORIZED_KEYS_PATTERN = "/home/{user}/.ssh/authorized_keys"
DEFAULT_ENV_FILE = "/etc/profile.d/run-env.sh"
DEFAULT_HOSTNAME_FILE = "/etc/hostname"
DEFAULT_HOSTS_FILE = "/etc/hosts"
DEFAULT_ENTRYPOINT_RUNNER = "/usr/bin/firebuild-entrypoint.sh"
DEFAULT_LOG_LEVEL = "INFO"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_mmds_ip(mmds_ip: str | None = None) -> str:
    """Return the metadata service address.

    Priority order:
    1) explicit ``mmds_ip`` argument
    2) ``VMINIT_MMDS_IP`` environment variable
    3) the link-local default
    """
    if mmds_ip:
        return mmds_ip
    return os.environ.get(MMDS_IP_ENV) or DEFAULT_MMDS_IP


def default_log_level(log_level: str | None = None) -> str:
    if log_level:
        return log_level.upper()
    return (os.environ.get(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).upper()


@dataclass
class AgentConfig:
    mmds_ip: str = field(default_factory=default_mmds_ip)
    metadata_path: str = DEFAULT_METADATA_PATH
    authorized_keys_pattern: str = DEFAULT_AUTHORIZED_KEYS_PATTERN
    env_file: str = DEFAULT_ENV_FILE
    hostname_file: str = DEFAULT_HOSTNAME_FILE
    hosts_file: str = DEFAULT_HOSTS_FILE
    entrypoint_runner: str = DEFAULT_ENTRYPOINT_RUNNER
    log_level: str = field(default_factory=default_log_level)
    dry_run: bool = False

    @property
    def metadata_url(self) -> str:
        return f"http://{self.mmds_ip}/{self.metadata_path.lstrip('/')}"

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    def validate(self) -> None:
        if not isinstance(self.mmds_ip, str) or not self.mmds_ip.strip():
            raise ValueError("`mmds_ip` must be a non-empty string.")
        if not isinstance(self.metadata_path, str):
            raise ValueError("`metadata_path` must be a string.")
        if "{user}" not in self.authorized_keys_pattern:
            raise ValueError("`authorized_keys_pattern` must contain a `{user}` placeholder.")
        for name in ("env_file", "hostname_file", "hosts_file", "entrypoint_runner"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"`{name}` must be a non-empty string.")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(
                f"`log_level` must be one of {', '.join(_LOG_LEVELS)}, got: {self.log_level!r}"
            )
        if not isinstance(self.dry_run, bool):
            raise ValueError("`dry_run` must be a bool.")
