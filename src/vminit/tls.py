"""Client TLS context built from the bootstrap certificate material."""

from __future__ import annotations

import logging
import os
import re
import ssl
import tempfile
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import CertificateParseError, KeyPairError, TrustPoolError
from .metadata import BootstrapConfig

logger = logging.getLogger(__name__)

_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN (?P<label>[^-\r\n]+)-----\r?\n.*?-----END (?P=label)-----",
    flags=re.DOTALL,
)


@dataclass(frozen=True)
class TlsClientContext:
    ssl_context: ssl.SSLContext
    server_name: str
    trust_anchors: tuple[x509.Certificate, ...]
    client_certificate: x509.Certificate


def pem_blocks(text: str) -> list[str]:
    """Return every PEM block in ``text``, in order."""
    return [match.group(0) for match in _PEM_BLOCK_RE.finditer(text)]


def build_tls_context(bootstrap: BootstrapConfig) -> TlsClientContext:
    """Build the client TLS context for a bootstrap session.

    The trust pool is every certificate of the leaf PEM text plus every
    certificate of the CA chain text. The leaf certificate and key are
    presented as the client identity.
    """
    leaf_blocks = pem_blocks(bootstrap.certificate)
    if not leaf_blocks:
        raise CertificateParseError("failed to parse certificate PEM: no PEM block found")

    roots: list[x509.Certificate] = []
    for block in leaf_blocks:
        try:
            roots.append(x509.load_pem_x509_certificate(block.encode("ascii")))
        except ValueError as exc:
            raise CertificateParseError(f"failed parsing certificate: {exc}") from exc

    chain_count = 0
    for block in pem_blocks(bootstrap.ca_chain):
        try:
            roots.append(x509.load_pem_x509_certificate(block.encode("ascii")))
        except ValueError:
            logger.debug("skipping CA chain block that is not a certificate")
            continue
        chain_count += 1
    if chain_count == 0:
        raise TrustPoolError("failed appending root to the cert pool")

    client_certificate = roots[0]
    _verify_key_pair(client_certificate, bootstrap.key)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    cadata = "".join(
        cert.public_bytes(serialization.Encoding.PEM).decode("ascii") for cert in roots
    )
    try:
        context.load_verify_locations(cadata=cadata)
    except ssl.SSLError as exc:
        raise TrustPoolError(f"failed loading trust pool: {exc}") from exc
    _load_client_identity(context, leaf_blocks[0], bootstrap.key)

    logger.debug(
        "client TLS context ready for %r with %d trust anchors",
        bootstrap.server_name,
        len(roots),
    )
    return TlsClientContext(
        ssl_context=context,
        server_name=bootstrap.server_name,
        trust_anchors=tuple(roots),
        client_certificate=client_certificate,
    )


def _verify_key_pair(certificate: x509.Certificate, key_pem: str) -> None:
    try:
        private_key = serialization.load_pem_private_key(key_pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError) as exc:
        raise KeyPairError(f"failed loading TLS key: {exc}") from exc

    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    expected = certificate.public_key().public_bytes(serialization.Encoding.DER, public_format)
    actual = private_key.public_key().public_bytes(serialization.Encoding.DER, public_format)
    if expected != actual:
        raise KeyPairError("private key does not match certificate public key")


def _load_client_identity(context: ssl.SSLContext, cert_pem: str, key_pem: str) -> None:
    # ssl only loads identities from files.
    with tempfile.TemporaryDirectory(prefix="vminit-tls-") as tmp:
        cert_path = os.path.join(tmp, "client.crt")
        key_path = os.path.join(tmp, "client.key")
        with open(cert_path, "w", encoding="ascii") as handle:
            handle.write(cert_pem + "\n")
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(key_pem.strip() + "\n")
        try:
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        except ssl.SSLError as exc:
            raise KeyPairError(f"failed loading TLS certificate: {exc}") from exc
