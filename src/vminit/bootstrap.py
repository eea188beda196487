"""Bootstrap orchestration: connect, keep alive, run every command, report."""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable

from .commands import AddCommand, CopyCommand, EndOfStream, RunCommand
from .deployer import NoopResourceDeployer, ResourceDeployer
from .errors import BootstrapConnectionError, ProtocolError
from .metadata import BootstrapConfig
from .runner import CommandRunner, NoopCommandRunner
from .session import SessionClient, connect
from .tls import TlsClientContext, build_tls_context

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL_S = 5.0
_KEEPALIVE_JOIN_TIMEOUT_S = 1.0

SessionFactory = Callable[[str, TlsClientContext], SessionClient]


class BootstrapState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Bootstrapper:
    """Runs one bootstrap session.

    Runner and deployer default to no-op implementations; swap them with
    ``with_command_runner`` / ``with_resource_deployer`` before ``execute``.
    An instance serves a single run.
    """

    def __init__(
        self,
        bootstrap: BootstrapConfig,
        *,
        command_runner: CommandRunner | None = None,
        resource_deployer: ResourceDeployer | None = None,
        session_factory: SessionFactory | None = None,
        keepalive_interval_s: float = KEEPALIVE_INTERVAL_S,
    ):
        self.bootstrap = bootstrap
        self.command_runner: CommandRunner = command_runner or NoopCommandRunner()
        self.resource_deployer: ResourceDeployer = resource_deployer or NoopResourceDeployer()
        self._session_factory: SessionFactory = session_factory or connect
        self._keepalive_interval_s = keepalive_interval_s
        self._state = BootstrapState.IDLE
        self._state_lock = threading.Lock()
        self._finished = threading.Event()
        self._keepalive_thread: threading.Thread | None = None

    def with_command_runner(self, runner: CommandRunner) -> Bootstrapper:
        self.command_runner = runner
        return self

    def with_resource_deployer(self, deployer: ResourceDeployer) -> Bootstrapper:
        self.resource_deployer = deployer
        return self

    @property
    def state(self) -> BootstrapState:
        return self._state

    def execute(self) -> None:
        """Run the bootstrap; raise the first error encountered."""
        with self._state_lock:
            if self._state is not BootstrapState.IDLE:
                raise RuntimeError("Bootstrapper instances are single use.")
            self._state = BootstrapState.CONNECTING

        try:
            tls = build_tls_context(self.bootstrap)
        except Exception as exc:
            logger.error("failed creating client TLS config: %s", exc)
            self._state = BootstrapState.FAILED
            raise

        try:
            client = self._session_factory(self.bootstrap.host_port, tls)
        except (OSError, ValueError) as exc:
            logger.error("failed connecting to %s: %s", self.bootstrap.host_port, exc)
            self._state = BootstrapState.FAILED
            raise BootstrapConnectionError(
                f"failed connecting to {self.bootstrap.host_port}: {exc}"
            ) from exc

        try:
            self._run_session(client)
        finally:
            client.close()

    def _run_session(self, client: SessionClient) -> None:
        self._state = BootstrapState.ACTIVE
        self._keepalive_thread = threading.Thread(
            target=self._keepalive_loop,
            args=(client,),
            name="vminit-keepalive",
            daemon=True,
        )
        self._keepalive_thread.start()

        try:
            client.commands()
            while True:
                command = client.next_command()
                if isinstance(command, EndOfStream):
                    break
                self._dispatch(command, client)
        except Exception as exc:
            logger.error("bootstrap failed: %s", exc)
            self._stop_keepalive()
            self._state = BootstrapState.FAILED
            try:
                client.abort(exc)
            except Exception as abort_exc:
                logger.error("failed sending abort to controller: %s", abort_exc)
            raise

        self._state = BootstrapState.FINALIZING
        self._stop_keepalive()
        try:
            client.success()
        except Exception:
            self._state = BootstrapState.FAILED
            raise
        self._state = BootstrapState.SUCCEEDED
        logger.info("bootstrap finished successfully")

    def _dispatch(self, command: object, client: SessionClient) -> None:
        if isinstance(command, RunCommand):
            logger.debug("dispatching RUN: %s", command.original_command or command.command)
            self.command_runner.execute(command, client)
        elif isinstance(command, AddCommand):
            logger.debug("dispatching ADD: %s", command.original_command or command.source)
            self.resource_deployer.add(command, client)
        elif isinstance(command, CopyCommand):
            logger.debug("dispatching COPY: %s", command.original_command or command.source)
            self.resource_deployer.copy(command, client)
        else:
            raise ProtocolError(f"unsupported command: {command!r}")

    def _stop_keepalive(self) -> None:
        self._finished.set()
        thread = self._keepalive_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=_KEEPALIVE_JOIN_TIMEOUT_S)

    def _keepalive_loop(self, client: SessionClient) -> None:
        wait_s = self.bootstrap.safe_ping_interval
        while not self._finished.wait(timeout=wait_s):
            logger.debug("pinging server")
            try:
                client.ping()
            except Exception as exc:
                if self._finished.is_set():
                    logger.debug("ping interrupted by session shutdown: %s", exc)
                else:
                    logger.warning("ping returned an error: %s", exc)
                return
            wait_s = self._keepalive_interval_s
        logger.debug("ping stopped, program finished")
