"""Module entrypoint for `python -m vminit`."""

from __future__ import annotations

import argparse
import logging
import sys

from .bootstrap import Bootstrapper
from .config import (
    DEFAULT_AUTHORIZED_KEYS_PATTERN,
    DEFAULT_ENTRYPOINT_RUNNER,
    DEFAULT_ENV_FILE,
    DEFAULT_HOSTNAME_FILE,
    DEFAULT_HOSTS_FILE,
    DEFAULT_METADATA_PATH,
    AgentConfig,
    default_log_level,
    default_mmds_ip,
)
from .deployer import ExecutingResourceDeployer
from .errors import VminitError
from .injectors import inject_all
from .metadata import fetch_metadata
from .runner import ShellCommandRunner

logger = logging.getLogger("vminit")


def parse_args(argv: list[str] | None = None) -> AgentConfig:
    parser = argparse.ArgumentParser(
        prog="vminit",
        description="Initialize a guest VM from metadata and run its bootstrap commands.",
    )
    parser.add_argument(
        "--guest-mmds-ip",
        default=None,
        help="Guest IP address of the metadata service (default: $VMINIT_MMDS_IP or 169.254.169.254).",
    )
    parser.add_argument(
        "--metadata-path",
        default=DEFAULT_METADATA_PATH,
        help=f"Path to the metadata root (default: {DEFAULT_METADATA_PATH}).",
    )
    parser.add_argument(
        "--path-authorized-keys-pattern",
        default=DEFAULT_AUTHORIZED_KEYS_PATTERN,
        help="authorized_keys path pattern; `{user}` is replaced by the user name.",
    )
    parser.add_argument("--path-env-file", default=DEFAULT_ENV_FILE, help="Profile environment file.")
    parser.add_argument("--path-hostname-file", default=DEFAULT_HOSTNAME_FILE, help="Hostname file.")
    parser.add_argument("--path-hosts-file", default=DEFAULT_HOSTS_FILE, help="Hosts file.")
    parser.add_argument(
        "--path-entrypoint-runner",
        default=DEFAULT_ENTRYPOINT_RUNNER,
        help="Where to write the entrypoint runner script.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (default: $VMINIT_LOG_LEVEL or INFO).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log bootstrap commands instead of executing them.",
    )
    args = parser.parse_args(argv)
    return AgentConfig(
        mmds_ip=default_mmds_ip(args.guest_mmds_ip),
        metadata_path=args.metadata_path,
        authorized_keys_pattern=args.path_authorized_keys_pattern,
        env_file=args.path_env_file,
        hostname_file=args.path_hostname_file,
        hosts_file=args.path_hosts_file,
        entrypoint_runner=args.path_entrypoint_runner,
        log_level=default_log_level(args.log_level),
        dry_run=args.dry_run,
    )


def run(config: AgentConfig) -> int:
    try:
        metadata = fetch_metadata(config.metadata_url)
    except VminitError as exc:
        logger.error("failed fetching guest metadata: %s", exc)
        return 1

    try:
        inject_all(
            metadata,
            authorized_keys_pattern=config.authorized_keys_pattern,
            env_file=config.env_file,
            hostname_file=config.hostname_file,
            hosts_file=config.hosts_file,
            entrypoint_runner=config.entrypoint_runner,
        )
    except (OSError, VminitError) as exc:
        logger.error("failed injecting guest metadata: %s", exc)
        return 1

    if metadata.bootstrap is None:
        logger.debug("no bootstrap data, nothing to do")
        return 0

    bootstrapper = Bootstrapper(metadata.bootstrap)
    if not config.dry_run:
        bootstrapper.with_command_runner(ShellCommandRunner()).with_resource_deployer(
            ExecutingResourceDeployer()
        )

    try:
        bootstrapper.execute()
    except Exception as exc:
        logger.error("bootstrap failed: %s", exc)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    config = parse_args(argv)
    try:
        config.validate()
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    logging.basicConfig(
        level=config.log_level_value,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    return run(config)


if __name__ == "__main__":
    raise SystemExit(main())
