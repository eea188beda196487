"""Guest metadata: the JSON document the VMM serves inside the guest."""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import MetadataError

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL_S = 5.0
_DEFAULT_TIMEOUT_S = 10

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse a duration such as ``"300ms"`` or ``"1m30s"`` into seconds."""
    text = value.strip()
    if not text:
        raise ValueError("duration cannot be empty")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0

    total = 0.0
    position = 0
    while position < len(text):
        match = _DURATION_PART_RE.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return sign * total


@dataclass(frozen=True)
class BootstrapConfig:
    host_port: str
    certificate: str
    key: str
    ca_chain: str
    server_name: str
    ping_interval: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> BootstrapConfig:
        return cls(
            host_port=_str_field(payload, "HostPort"),
            certificate=_str_field(payload, "Cert"),
            key=_str_field(payload, "Key"),
            ca_chain=_str_field(payload, "CAChain"),
            server_name=_str_field(payload, "ServerName"),
            ping_interval=_str_field(payload, "PingInterval"),
        )

    @property
    def safe_ping_interval(self) -> float:
        """Ping interval in seconds, or the default when unset or invalid."""
        try:
            interval = parse_duration(self.ping_interval)
        except ValueError:
            return DEFAULT_PING_INTERVAL_S
        if interval <= 0:
            return DEFAULT_PING_INTERVAL_S
        return interval


@dataclass(frozen=True)
class EntrypointInfo:
    cmd: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    shell: tuple[str, ...] = ()
    user: str = ""
    workdir: str = ""

    @classmethod
    def from_json(cls, text: str) -> EntrypointInfo:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MetadataError(f"invalid entrypoint JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise MetadataError("entrypoint JSON must be an object.")
        return cls(
            cmd=tuple(raw.get("Cmd") or ()),
            entrypoint=tuple(raw.get("EntryPoint") or ()),
            env=dict(raw.get("Env") or {}),
            shell=tuple(raw.get("Shell") or ()),
            user=str(raw.get("User") or ""),
            workdir=str(raw.get("Workdir") or ""),
        )

    def to_shell_command(self) -> tuple[str, str, str]:
        """Return ``(shell, env_exports, command)``.

        The caller runs it as ``shell '<env_exports><command>'``, so the command
        has its single quotes escaped.
        """
        env_exports = "".join(f'export {name}="{value}"; ' for name, value in self.env.items())
        command = f"export PATH=$PATH:{self.workdir}; cd {self.workdir} && " + " ".join(self.entrypoint)
        for item in self.cmd:
            command += f' "{item}"'
        command = command.replace("'", "'\\''")
        shell = " ".join(self.shell) if self.shell else "/bin/sh -c"
        return shell, env_exports, command


@dataclass(frozen=True)
class GuestMetadata:
    bootstrap: BootstrapConfig | None = None
    vmm_id: str = ""
    image_tag: str = ""
    entrypoint_json: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    local_hostname: str = ""
    interface_ips: tuple[str, ...] = ()
    users: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> GuestMetadata:
        if not isinstance(payload, Mapping):
            raise MetadataError("metadata must be a JSON object.")

        bootstrap_raw = payload.get("Bootstrap")
        bootstrap = None
        if bootstrap_raw:
            if not isinstance(bootstrap_raw, Mapping):
                raise MetadataError("`Bootstrap` must be an object.")
            bootstrap = BootstrapConfig.from_dict(bootstrap_raw)

        network = payload.get("Network") or {}
        if not isinstance(network, Mapping):
            raise MetadataError("`Network` must be an object.")
        interfaces = network.get("Interfaces") or {}
        if not isinstance(interfaces, Mapping):
            raise MetadataError("`Network.Interfaces` must be an object.")
        interface_ips = tuple(
            str(item["IP"])
            for item in interfaces.values()
            if isinstance(item, Mapping) and item.get("IP")
        )

        users_raw = payload.get("Users") or {}
        if not isinstance(users_raw, Mapping):
            raise MetadataError("`Users` must be an object.")
        users: dict[str, str] = {}
        for name, info in users_raw.items():
            if isinstance(info, Mapping):
                users[str(name)] = str(info.get("SSHKeys") or "")

        env = payload.get("Env") or {}
        if not isinstance(env, Mapping):
            raise MetadataError("`Env` must be an object.")

        return cls(
            bootstrap=bootstrap,
            vmm_id=str(payload.get("VMMID") or ""),
            image_tag=str(payload.get("ImageTag") or ""),
            entrypoint_json=str(payload.get("EntrypointJSON") or ""),
            env={str(k): str(v) for k, v in env.items()},
            local_hostname=str(payload.get("LocalHostname") or ""),
            interface_ips=interface_ips,
            users=users,
        )


def fetch_metadata(url: str, *, timeout_s: float = _DEFAULT_TIMEOUT_S) -> GuestMetadata:
    """Fetch and decode guest metadata from the metadata service."""
    request = urllib.request.Request(url, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            status = response.status
            body = response.read()
    except urllib.error.HTTPError as exc:
        raise MetadataError(f"expected status OK but received {exc.code}") from exc
    except OSError as exc:
        raise MetadataError(f"error executing metadata request: {exc}") from exc

    if status != 200:
        raise MetadataError(f"expected status OK but received {status}")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MetadataError(f"error deserializing metadata: {exc}") from exc
    logger.debug("fetched guest metadata from %s", url)
    return GuestMetadata.from_dict(payload)


def _str_field(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MetadataError(f"`{key}` must be a string.")
    return value
