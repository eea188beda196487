"""Exception types raised by the bootstrap agent."""

from __future__ import annotations


class VminitError(Exception):
    """Base class for agent errors."""


class TlsSetupError(VminitError):
    """Client TLS materials could not be turned into a context."""


class CertificateParseError(TlsSetupError):
    pass


class TrustPoolError(TlsSetupError):
    pass


class KeyPairError(TlsSetupError):
    pass


class BootstrapConnectionError(VminitError, ConnectionError):
    """The bootstrap session could not be opened."""


class ProtocolError(VminitError):
    """The controller sent something the agent does not understand."""


class MetadataError(VminitError):
    """Guest metadata could not be fetched or decoded."""


class CommandExecutionError(VminitError):
    """A RUN command failed to launch or exited with a non-zero code."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ResourceNotFoundError(VminitError, FileNotFoundError):
    """An ADD or COPY source resolved to no resources at all."""

    def __init__(self, source: str):
        super().__init__(f"no resources transferred for: {source}")
        self.source = source


class InvalidOwnerSpecError(VminitError, ValueError):
    """An owner string is not of the form ``uid`` or ``uid:gid``."""
