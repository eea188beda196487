"""In-memory stand-in for the controller session."""

from __future__ import annotations

import queue
import threading
from collections.abc import Sequence

from vminit.commands import END_OF_STREAM, Command, EndOfStream, StreamFailure
from vminit.metadata import BootstrapConfig


class FakeSessionClient:
    def __init__(
        self,
        commands: Sequence[Command] = (),
        resources: dict[str, list[object]] | None = None,
        *,
        fail_stdout: bool = False,
        fail_ping: bool = False,
    ):
        self._commands = list(commands)
        self._resources = resources or {}
        self._lock = threading.Lock()
        self._fail_stdout = fail_stdout
        self._fail_ping = fail_ping
        self.commands_requested = 0
        self.requested_sources: list[str] = []
        self.stdout_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self.pings = 0
        self.aborted: BaseException | None = None
        self.succeeded = False
        self.closed = False

    def ping(self) -> None:
        with self._lock:
            self.pings += 1
        if self._fail_ping:
            raise ConnectionResetError("controller went away")

    def commands(self) -> None:
        self.commands_requested += 1

    def next_command(self) -> Command | EndOfStream:
        if self.commands_requested == 0:
            raise RuntimeError("commands() not called")
        if not self._commands:
            return END_OF_STREAM
        return self._commands.pop(0)

    def resource(self, source: str) -> queue.Queue:
        self.requested_sources.append(source)
        items: queue.Queue = queue.Queue()
        entries = self._resources.get(source, [])
        for entry in entries:
            items.put(entry)
        if not entries or not isinstance(entries[-1], StreamFailure):
            items.put(END_OF_STREAM)
        return items

    def stdout(self, lines: Sequence[str]) -> None:
        if self._fail_stdout:
            raise ConnectionResetError("stdout rejected")
        with self._lock:
            self.stdout_lines.extend(lines)

    def stderr(self, lines: Sequence[str]) -> None:
        with self._lock:
            self.stderr_lines.extend(lines)

    def abort(self, error: BaseException) -> None:
        self.aborted = error

    def success(self) -> None:
        self.succeeded = True

    def close(self) -> None:
        self.closed = True


def bootstrap_config(materials, *, ping_interval: str = "") -> BootstrapConfig:
    return BootstrapConfig(
        host_port="127.0.0.1:0",
        certificate=materials.client_cert_pem,
        key=materials.client_key_pem,
        ca_chain=materials.ca_pem,
        server_name=materials.server_name,
        ping_interval=ping_interval,
    )
