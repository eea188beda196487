"""Bootstrap session with the controller.

``SessionClient`` is what the bootstrap engine consumes. ``TlsSessionClient``
implements it over a single mutual-TLS socket carrying one base64 encoded JSON
object per line:

* requests: ``{"id", "action", ...}``,
* responses: ``{"id", "ok", "result" | "error"}``,
* resource streams: any number of ``{"id", "kind": "resource", "resource"}``
  followed by ``{"id", "kind": "eof"}`` or ``{"id", "kind": "error", "error"}``.
"""

from __future__ import annotations

import base64
import json
import logging
import queue
import socket
import ssl
import threading
import time
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, Union

from .commands import (
    END_OF_STREAM,
    Command,
    EndOfStream,
    ResolvedResource,
    StreamFailure,
    command_from_dict,
    resource_from_dict,
)
from .errors import ProtocolError

if TYPE_CHECKING:
    from .tls import TlsClientContext

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_S = 30.0
_REQUEST_TIMEOUT_S = 60.0
_MAX_LINE_BYTES = 64 * 1024 * 1024

ResourceItem = Union[ResolvedResource, EndOfStream, StreamFailure]


class SessionClient(Protocol):
    def ping(self) -> None: ...

    def commands(self) -> None: ...

    def next_command(self) -> Command | EndOfStream: ...

    def resource(self, source: str) -> queue.Queue[ResourceItem]: ...

    def stdout(self, lines: Sequence[str]) -> None: ...

    def stderr(self, lines: Sequence[str]) -> None: ...

    def abort(self, error: BaseException) -> None: ...

    def success(self) -> None: ...

    def close(self) -> None: ...


def split_host_port(host_port: str) -> tuple[str, int]:
    host, sep, port = host_port.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"invalid host:port: {host_port!r}")
    return host.strip("[]"), int(port)


def connect(
    host_port: str,
    tls: TlsClientContext,
    *,
    timeout_s: float = _CONNECT_TIMEOUT_S,
) -> TlsSessionClient:
    """Open a TLS connection to the controller and return a session on it."""
    host, port = split_host_port(host_port)
    raw = socket.create_connection((host, port), timeout=timeout_s)
    try:
        wrapped = tls.ssl_context.wrap_socket(raw, server_hostname=tls.server_name or host)
    except BaseException:
        raw.close()
        raise
    wrapped.settimeout(None)
    logger.debug("connected to %s as %s", host_port, tls.server_name)
    return TlsSessionClient(wrapped)


class TlsSessionClient:
    """Line protocol client; safe to call from several threads."""

    def __init__(self, sock: socket.socket, *, request_timeout_s: float = _REQUEST_TIMEOUT_S):
        self._sock = sock
        self._reader = sock.makefile("rb")
        self._request_timeout_s = request_timeout_s
        self._write_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: dict[str, queue.Queue[dict[str, object] | None]] = {}
        self._streams: dict[str, queue.Queue[ResourceItem]] = {}
        self._commands: list[Command] | None = None
        self._closed = False
        self._disconnected = threading.Event()
        self._reader_thread = threading.Thread(target=self._reader_loop, daemon=True)
        self._reader_thread.start()

    def ping(self) -> None:
        self._request({"action": "ping"})

    def commands(self) -> None:
        result = self._request({"action": "commands"})
        raw = result.get("commands", [])
        if not isinstance(raw, list):
            raise ProtocolError("`commands` must be a list.")
        parsed: list[Command] = []
        for item in raw:
            if not isinstance(item, dict):
                raise ProtocolError("command entries must be objects.")
            parsed.append(command_from_dict(item))
        self._commands = parsed
        logger.debug("received %d commands", len(parsed))

    def next_command(self) -> Command | EndOfStream:
        if self._commands is None:
            raise RuntimeError("commands() must be called before next_command().")
        if not self._commands:
            return END_OF_STREAM
        return self._commands.pop(0)

    def resource(self, source: str) -> queue.Queue[ResourceItem]:
        request_id = uuid.uuid4().hex
        items: queue.Queue[ResourceItem] = queue.Queue()
        with self._pending_lock:
            self._streams[request_id] = items
        try:
            self._send({"id": request_id, "action": "resource", "source": source})
        except Exception:
            with self._pending_lock:
                self._streams.pop(request_id, None)
            raise
        return items

    def stdout(self, lines: Sequence[str]) -> None:
        self._request({"action": "stdout", "lines": list(lines)})

    def stderr(self, lines: Sequence[str]) -> None:
        self._request({"action": "stderr", "lines": list(lines)})

    def abort(self, error: BaseException) -> None:
        self._request({"action": "abort", "error": str(error)})

    def success(self) -> None:
        self._request({"action": "success"})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        self._reader.close()
        if self._reader_thread.is_alive():
            self._reader_thread.join(timeout=1.0)

    def _request(self, payload: dict[str, object]) -> dict[str, object]:
        request_id = uuid.uuid4().hex
        payload["id"] = request_id
        responses: queue.Queue[dict[str, object] | None] = queue.Queue()
        with self._pending_lock:
            self._pending[request_id] = responses
        try:
            self._send(payload)
            response = self._wait_for_response(responses, request_id=request_id)
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

        if response.get("ok") is not True:
            message = str(response.get("error", "unknown controller error"))
            raise ProtocolError(f"controller request {payload['action']} failed: {message}")
        result = response.get("result", {})
        if not isinstance(result, dict):
            return {}
        return result

    def _wait_for_response(
        self,
        responses: queue.Queue[dict[str, object] | None],
        *,
        request_id: str,
    ) -> dict[str, object]:
        deadline = time.monotonic() + self._request_timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Timed out waiting for controller response to request {request_id}.")
            try:
                response = responses.get(timeout=remaining)
            except queue.Empty:
                continue
            if response is None:
                raise ProtocolError("controller connection closed while waiting for response")
            return response

    def _send(self, payload: dict[str, object]) -> None:
        line = encode_message(payload) + b"\n"
        with self._write_lock:
            if self._closed:
                raise ProtocolError("session is closed")
            if self._disconnected.is_set():
                raise ProtocolError("controller connection closed")
            self._sock.sendall(line)

    def _reader_loop(self) -> None:
        try:
            while True:
                raw_line = self._reader.readline(_MAX_LINE_BYTES)
                if not raw_line:
                    break
                message = decode_message(raw_line.strip())
                if message is None:
                    logger.warning("dropping undecodable controller message")
                    continue
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            if not self._closed:
                logger.warning("controller connection failed: %s", exc)
        finally:
            self._disconnected.set()
            self._fail_pending()

    def _dispatch(self, message: dict[str, object]) -> None:
        request_id = str(message.get("id", ""))
        with self._pending_lock:
            responses = self._pending.get(request_id)
            items = self._streams.get(request_id)

        if responses is not None:
            responses.put(message)
            return
        if items is None:
            logger.debug("dropping message for unknown request %s", request_id)
            return

        kind = message.get("kind")
        if kind == "resource":
            raw = message.get("resource")
            try:
                if not isinstance(raw, dict):
                    raise ProtocolError("`resource` must be an object.")
                items.put(resource_from_dict(raw))
            except ProtocolError as exc:
                self._finish_stream(request_id, StreamFailure(exc))
            return
        if kind == "eof":
            self._finish_stream(request_id, END_OF_STREAM)
            return
        error = str(message.get("error", f"unexpected stream message kind: {kind!r}"))
        self._finish_stream(request_id, StreamFailure(ProtocolError(error)))

    def _finish_stream(self, request_id: str, item: ResourceItem) -> None:
        with self._pending_lock:
            items = self._streams.pop(request_id, None)
        if items is not None:
            items.put(item)

    def _fail_pending(self) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            streams = list(self._streams.values())
            self._streams.clear()
        for responses in pending:
            responses.put(None)
        for items in streams:
            items.put(StreamFailure(ProtocolError("controller connection closed")))


def encode_message(payload: dict[str, object]) -> bytes:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=False).encode("utf-8")
    return base64.b64encode(raw)


def decode_message(value: bytes) -> dict[str, object] | None:
    try:
        raw = base64.b64decode(value, validate=True)
        parsed = json.loads(raw.decode("utf-8"))
    except Exception:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
