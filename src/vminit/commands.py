"""Build commands, resolved resources and the stream markers that frame them.

The controller hands the agent two streams: the ordered list of build commands
and, per ADD/COPY source, the resources that source resolved to. Both streams
carry explicit markers, so an item, the end of the stream and a failure are
always distinguishable by type:

* ``END_OF_STREAM`` (the only ``EndOfStream`` instance) closes a stream,
* ``StreamFailure`` carries an error raised while producing the stream,
* anything else is a data item.
"""

from __future__ import annotations

import base64
import io
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import BinaryIO, Union

from .errors import ProtocolError

DEFAULT_SHELL: tuple[str, ...] = ("/bin/sh", "-c")
DEFAULT_USER = "0:0"
DEFAULT_WORKDIR = "/"


class EndOfStream:
    _instance: EndOfStream | None = None

    def __new__(cls) -> EndOfStream:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()


@dataclass(frozen=True)
class StreamFailure:
    error: BaseException


@dataclass(frozen=True)
class RunCommand:
    command: str
    original_command: str = ""
    shell: tuple[str, ...] = DEFAULT_SHELL
    args: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    workdir: str = DEFAULT_WORKDIR
    user: str = DEFAULT_USER


@dataclass(frozen=True)
class AddCommand:
    source: str
    target: str
    original_command: str = ""
    original_source: str = ""
    workdir: str = DEFAULT_WORKDIR
    user: str = DEFAULT_USER


@dataclass(frozen=True)
class CopyCommand:
    source: str
    target: str
    original_command: str = ""
    original_source: str = ""
    workdir: str = DEFAULT_WORKDIR
    user: str = DEFAULT_USER


Command = Union[RunCommand, AddCommand, CopyCommand]


@dataclass(frozen=True)
class ResolvedResource:
    """A file or directory to materialize on disk.

    ``contents`` is only set for files. It is called once and must return a
    readable binary file object; the deployer closes it.
    """

    is_dir: bool
    target_mode: int
    target_path: str
    target_workdir: str
    source_path: str
    target_user: str = DEFAULT_USER
    contents: Callable[[], BinaryIO] | None = None

    @classmethod
    def directory(
        cls,
        *,
        source_path: str,
        target_path: str,
        target_workdir: str,
        mode: int = 0o755,
        user: str = DEFAULT_USER,
    ) -> ResolvedResource:
        return cls(
            is_dir=True,
            target_mode=mode,
            target_path=target_path,
            target_workdir=target_workdir,
            source_path=source_path,
            target_user=user,
        )

    @classmethod
    def file(
        cls,
        data: bytes | Callable[[], BinaryIO],
        *,
        source_path: str,
        target_path: str,
        target_workdir: str,
        mode: int = 0o644,
        user: str = DEFAULT_USER,
    ) -> ResolvedResource:
        if isinstance(data, bytes):
            payload = data
            contents: Callable[[], BinaryIO] = lambda: io.BytesIO(payload)
        else:
            contents = data
        return cls(
            is_dir=False,
            target_mode=mode,
            target_path=target_path,
            target_workdir=target_workdir,
            source_path=source_path,
            target_user=user,
            contents=contents,
        )


def command_from_dict(payload: Mapping[str, object]) -> Command:
    kind = payload.get("kind")
    if kind == "run":
        shell = payload.get("shell") or DEFAULT_SHELL
        if not isinstance(shell, (list, tuple)) or not all(isinstance(item, str) for item in shell):
            raise ProtocolError("`shell` must be a list of strings.")
        return RunCommand(
            command=_require_str(payload, "command"),
            original_command=_optional_str(payload, "original_command"),
            shell=tuple(shell),
            args=_str_mapping(payload, "args"),
            env=_str_mapping(payload, "env"),
            workdir=_optional_str(payload, "workdir") or DEFAULT_WORKDIR,
            user=_optional_str(payload, "user") or DEFAULT_USER,
        )
    if kind in ("add", "copy"):
        command_type = AddCommand if kind == "add" else CopyCommand
        return command_type(
            source=_require_str(payload, "source"),
            target=_require_str(payload, "target"),
            original_command=_optional_str(payload, "original_command"),
            original_source=_optional_str(payload, "original_source"),
            workdir=_optional_str(payload, "workdir") or DEFAULT_WORKDIR,
            user=_optional_str(payload, "user") or DEFAULT_USER,
        )
    raise ProtocolError(f"unsupported command kind: {kind!r}")


def command_to_dict(command: Command) -> dict[str, object]:
    if isinstance(command, RunCommand):
        return {
            "kind": "run",
            "original_command": command.original_command,
            "shell": list(command.shell),
            "command": command.command,
            "args": dict(command.args),
            "env": dict(command.env),
            "workdir": command.workdir,
            "user": command.user,
        }
    return {
        "kind": "add" if isinstance(command, AddCommand) else "copy",
        "original_command": command.original_command,
        "original_source": command.original_source,
        "source": command.source,
        "target": command.target,
        "workdir": command.workdir,
        "user": command.user,
    }


def resource_from_dict(payload: Mapping[str, object]) -> ResolvedResource:
    is_dir = bool(payload.get("is_dir", False))
    mode = payload.get("mode", 0o755 if is_dir else 0o644)
    if not isinstance(mode, int):
        raise ProtocolError("`mode` must be an int.")
    fields = dict(
        source_path=_require_str(payload, "source_path"),
        target_path=_require_str(payload, "target_path"),
        target_workdir=_optional_str(payload, "target_workdir") or DEFAULT_WORKDIR,
        mode=mode,
        user=_optional_str(payload, "target_user") or DEFAULT_USER,
    )
    if is_dir:
        return ResolvedResource.directory(**fields)
    data_b64 = payload.get("data_b64", "")
    if not isinstance(data_b64, str):
        raise ProtocolError("`data_b64` must be a string.")
    try:
        data = base64.b64decode(data_b64.encode("ascii"), validate=True)
    except ValueError as exc:
        raise ProtocolError(f"invalid resource data: {exc}") from exc
    return ResolvedResource.file(data, **fields)


def _require_str(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"`{key}` must be a string.")
    return value


def _optional_str(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(f"`{key}` must be a string.")
    return value


def _str_mapping(payload: Mapping[str, object], key: str) -> dict[str, str]:
    value = payload.get(key) or {}
    if not isinstance(value, Mapping):
        raise ProtocolError(f"`{key}` must be an object.")
    normalized: dict[str, str] = {}
    for name, item in value.items():
        if not isinstance(name, str) or not isinstance(item, str):
            raise ProtocolError(f"`{key}` must map strings to strings.")
        normalized[name] = item
    return normalized
