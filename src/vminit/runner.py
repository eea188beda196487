"""Execution of RUN commands."""

from __future__ import annotations

import collections
import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
from collections.abc import Callable, Mapping
from typing import IO, Protocol

from .commands import RunCommand
from .errors import CommandExecutionError
from .session import SessionClient

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 200
_VAR_REF_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


class CommandRunner(Protocol):
    def execute(self, command: RunCommand, client: SessionClient) -> None: ...


def build_environment(command: RunCommand) -> dict[str, str]:
    """Merge build args with the explicit environment; env wins."""
    merged = dict(command.args)
    merged.update(command.env)
    return merged


def expand_variables(text: str, environment: Mapping[str, str]) -> str:
    """Expand ``${NAME}`` and ``$NAME`` for names present in ``environment``.

    References to unknown names are kept so the shell can resolve them.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        if name in environment:
            return environment[name]
        return match.group(0)

    return _VAR_REF_RE.sub(_replace, text)


def _export_lines(environment: Mapping[str, str]) -> list[str]:
    return [f"export {name}={shlex.quote(value)}" for name, value in environment.items()]


class NoopCommandRunner:
    """Logs the shell line a RUN command would execute."""

    def execute(self, command: RunCommand, client: SessionClient) -> None:
        environment = build_environment(command)
        body = "; ".join([*_export_lines(environment), expand_variables(command.command, environment)])
        line = "mkdir -p {0} && cd {0} && {1} {2}".format(
            shlex.quote(command.workdir),
            " ".join(command.shell),
            shlex.quote(body),
        )
        logger.debug("executing RUN command: %s", line)


class ShellCommandRunner:
    """Runs RUN commands through their declared shell.

    The merged environment and the expanded command are written to a temporary
    script which the shell sources. If the script cannot be prepared, the same
    content is passed inline instead.
    """

    def __init__(self, *, temp_dir: str | None = None):
        self._temp_dir = temp_dir

    def execute(self, command: RunCommand, client: SessionClient) -> None:
        logger.debug(
            "executing command in %s as %s with shell %s",
            command.workdir,
            command.user,
            list(command.shell),
        )
        if not command.shell:
            raise CommandExecutionError("RUN command has no shell to execute with")

        environment = build_environment(command)
        expanded = expand_variables(command.command, environment)
        exports = _export_lines(environment)

        script_path: str | None = None
        try:
            script_path = self._write_script(exports, expanded)
            if script_path is None:
                payload = "; ".join([*exports, expanded])
            else:
                payload = f". {shlex.quote(script_path)}; "
            self._run(command, payload, environment, client)
        finally:
            if script_path is not None:
                try:
                    os.remove(script_path)
                except OSError as exc:
                    logger.warning("failed removing command temporary file %s: %s", script_path, exc)

    def _write_script(self, exports: list[str], expanded: str) -> str | None:
        try:
            fd, path = tempfile.mkstemp(prefix="vminit-run-", suffix=".sh", dir=self._temp_dir)
        except OSError as exc:
            logger.warning("failed creating temporary command file, passing command inline: %s", exc)
            return None

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                os.chmod(path, 0o700)
                handle.write("\n".join([*exports, expanded]) + "\n")
        except OSError as exc:
            logger.warning("failed preparing temporary command file, passing command inline: %s", exc)
            try:
                os.remove(path)
            except OSError:
                logger.warning("failed removing command temporary file %s", path)
            return None

        logger.debug("using executable file command: %s", path)
        return path

    def _run(
        self,
        command: RunCommand,
        payload: str,
        environment: Mapping[str, str],
        client: SessionClient,
    ) -> None:
        recent_output: collections.deque[str] = collections.deque(maxlen=_OUTPUT_TAIL_LINES)
        relay_errors: list[BaseException] = []

        try:
            os.makedirs(command.workdir, exist_ok=True)
            process = subprocess.Popen(
                [*command.shell, payload],
                cwd=command.workdir,
                env={**os.environ, **environment},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            logger.error("failed starting command: %s", exc)
            raise CommandExecutionError(f"failed starting command: {exc}") from exc

        assert process.stdout is not None
        assert process.stderr is not None
        readers = [
            threading.Thread(
                target=self._relay_loop,
                args=(process.stdout, client.stdout, "stdout", recent_output, relay_errors),
                daemon=True,
            ),
            threading.Thread(
                target=self._relay_loop,
                args=(process.stderr, client.stderr, "stderr", recent_output, relay_errors),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        exit_code = process.wait()
        for reader in readers:
            reader.join()

        output = "".join(recent_output)
        if exit_code != 0:
            logger.error("command finished with exit code %d", exit_code)
            raise CommandExecutionError(
                f"command exited with code: {exit_code}",
                exit_code=exit_code,
                output=output,
            )
        if relay_errors:
            raise CommandExecutionError(
                f"failed relaying command output: {relay_errors[0]}",
                exit_code=exit_code,
                output=output,
            ) from relay_errors[0]
        logger.debug("command finished successfully")

    @staticmethod
    def _relay_loop(
        stream: IO[str],
        sink: Callable[[list[str]], None],
        name: str,
        recent_output: collections.deque[str],
        relay_errors: list[BaseException],
    ) -> None:
        relaying = True
        with stream:
            for line in stream:
                recent_output.append(line)
                logger.debug("writing %s: %r", name, line)
                if not relaying:
                    continue
                try:
                    sink([line])
                except Exception as exc:
                    relay_errors.append(exc)
                    relaying = False
