"""Guest file injections driven by metadata.

Each injector is a no-op when the metadata carries nothing for it.
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
from collections.abc import Iterator

from .metadata import EntrypointInfo, GuestMetadata

logger = logging.getLogger(__name__)

DEFAULT_HOSTS: dict[str, str] = {
    "127.0.0.1": "localhost",
    "::1": "localhost ip6-localhost ip6-loopback",
    "fe00::0": "ip6-localnet",
    "ff00::0": "ip6-mcastprefix",
    "ff02::1": "ip6-allnodes",
    "ff02::2": "ip6-allrouters",
}

_WRITABLE_MODE = 0o660
_DEFAULT_DIR_MODE = 0o755


def _require_regular_file(path: str) -> os.stat_result:
    info = os.stat(path)
    if not stat.S_ISREG(info.st_mode):
        raise OSError(f"not a regular file: {path!r}")
    return info


@contextlib.contextmanager
def _temporarily_writable(path: str) -> Iterator[os.stat_result]:
    """Make an existing regular file writable, restoring its mode afterwards."""
    info = _require_regular_file(path)
    os.chmod(path, _WRITABLE_MODE)
    try:
        yield info
    finally:
        try:
            os.chmod(path, stat.S_IMODE(info.st_mode))
        except OSError as exc:
            logger.error("failed resetting mode of %s after writing: %s", path, exc)


def inject_ssh_keys(metadata: GuestMetadata, pattern: str) -> None:
    if not metadata.users:
        logger.debug("no users, nothing to do")
        return

    for username, keys in metadata.users.items():
        path = pattern.format(user=username)
        logger.debug("authorized_keys file to use: %s", path)
        with _temporarily_writable(path) as info:
            with open(path, "a", encoding="utf-8") as handle:
                if info.st_size > 0:
                    handle.write("\n")
                handle.write(keys)


def inject_environment(metadata: GuestMetadata, env_file: str) -> None:
    if not metadata.env:
        logger.debug("env empty, nothing to do")
        return

    parent = os.path.dirname(env_file)
    if parent and not os.path.isdir(parent):
        logger.debug("creating env file parent directory for %s", env_file)
        os.makedirs(parent, mode=_DEFAULT_DIR_MODE, exist_ok=True)

    fd = os.open(env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o755)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        for name, value in metadata.env.items():
            escaped = value.replace('"', '\\"')
            handle.write(f'export {name}="{escaped}"\n')
    logger.debug("wrote env file %s", env_file)


def inject_hostname(metadata: GuestMetadata, hostname_file: str) -> None:
    if not metadata.local_hostname:
        logger.debug("no local hostname, nothing to do")
        return

    with _temporarily_writable(hostname_file):
        with open(hostname_file, "w", encoding="utf-8") as handle:
            handle.write(metadata.local_hostname)
    logger.debug("wrote hostname file %s", hostname_file)


def hosts_entries(metadata: GuestMetadata) -> dict[str, str]:
    hosts: dict[str, str] = {}
    for address, names in DEFAULT_HOSTS.items():
        if address in ("127.0.0.1", "::1") and not metadata.interface_ips and metadata.local_hostname:
            names = f"{names} {metadata.local_hostname}"
        hosts[address] = names
    if metadata.local_hostname:
        for address in metadata.interface_ips:
            hosts[address] = metadata.local_hostname
    return hosts


def inject_hosts(metadata: GuestMetadata, hosts_file: str) -> None:
    entries = hosts_entries(metadata)
    with _temporarily_writable(hosts_file):
        with open(hosts_file, "w", encoding="utf-8") as handle:
            for address, names in entries.items():
                handle.write(f"{address}\t{names}\n")
    logger.debug("wrote %d hosts entries to %s", len(entries), hosts_file)


def inject_entrypoint(metadata: GuestMetadata, runner_path: str, env_file: str) -> None:
    if not metadata.entrypoint_json:
        logger.debug("no entrypoint information, nothing to do")
        return

    info = EntrypointInfo.from_json(metadata.entrypoint_json)
    if not info.entrypoint:
        logger.debug("no entrypoint, nothing to do")
        return

    parent = os.path.dirname(runner_path)
    if parent:
        os.makedirs(parent, mode=_DEFAULT_DIR_MODE, exist_ok=True)

    shell, env_exports, command = info.to_shell_command()
    script = (
        "#!/bin/sh\n\n"
        f"{shell} '{env_exports}if [ -f \"{env_file}\" ]; then . \"{env_file}\"; fi; {command}'\n"
    )
    fd = os.open(runner_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o755)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(script)
    logger.debug("wrote entrypoint runner %s", runner_path)


def inject_all(
    metadata: GuestMetadata,
    *,
    authorized_keys_pattern: str,
    env_file: str,
    hostname_file: str,
    hosts_file: str,
    entrypoint_runner: str,
) -> None:
    inject_ssh_keys(metadata, authorized_keys_pattern)
    inject_environment(metadata, env_file)
    inject_hostname(metadata, hostname_file)
    inject_hosts(metadata, hosts_file)
    inject_entrypoint(metadata, entrypoint_runner, env_file)
