"""vminit package."""

from .bootstrap import Bootstrapper, BootstrapState
from .commands import (
    END_OF_STREAM,
    AddCommand,
    CopyCommand,
    EndOfStream,
    ResolvedResource,
    RunCommand,
    StreamFailure,
)
from .config import AgentConfig
from .deployer import ExecutingResourceDeployer, NoopResourceDeployer, parse_owner_spec
from .metadata import BootstrapConfig, GuestMetadata, fetch_metadata
from .runner import NoopCommandRunner, ShellCommandRunner
from .session import SessionClient, TlsSessionClient, connect
from .tls import TlsClientContext, build_tls_context

__all__ = [
    "END_OF_STREAM",
    "AddCommand",
    "AgentConfig",
    "BootstrapConfig",
    "BootstrapState",
    "Bootstrapper",
    "CopyCommand",
    "EndOfStream",
    "ExecutingResourceDeployer",
    "GuestMetadata",
    "NoopCommandRunner",
    "NoopResourceDeployer",
    "ResolvedResource",
    "RunCommand",
    "SessionClient",
    "ShellCommandRunner",
    "StreamFailure",
    "TlsClientContext",
    "TlsSessionClient",
    "build_tls_context",
    "connect",
    "fetch_metadata",
    "parse_owner_spec",
]
