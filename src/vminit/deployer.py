"""Deployment of ADD and COPY resources onto the local filesystem."""

from __future__ import annotations

import logging
import os
import shutil
from typing import Protocol, Union

from .commands import (
    DEFAULT_USER,
    AddCommand,
    CopyCommand,
    EndOfStream,
    ResolvedResource,
    StreamFailure,
)
from .errors import InvalidOwnerSpecError, ProtocolError, ResourceNotFoundError
from .session import SessionClient

logger = logging.getLogger(__name__)

DEFAULT_PARENT_DIR_MODE = 0o755


class ResourceDeployer(Protocol):
    def add(self, command: AddCommand, client: SessionClient) -> None: ...

    def copy(self, command: CopyCommand, client: SessionClient) -> None: ...


def parse_owner_spec(value: str) -> tuple[int, int]:
    """Parse ``"uid"`` or ``"uid:gid"``; a missing gid is returned as ``-1``."""
    parts = value.split(":")
    if len(parts) > 2:
        raise InvalidOwnerSpecError(f"invalid uid:gid: {value!r}")
    numbers: list[int] = []
    for part in parts:
        if not part.isdigit() or not part.isascii():
            raise InvalidOwnerSpecError(f"invalid uid:gid: {value!r}")
        numbers.append(int(part))
    if len(numbers) == 1:
        return numbers[0], -1
    return numbers[0], numbers[1]


def resource_disk_path(resource: ResolvedResource) -> str:
    """Join the target path onto the target workdir.

    Absolute target paths are taken relative to the workdir.
    """
    return os.path.join(resource.target_workdir, resource.target_path.lstrip("/"))


def file_destination(resource: ResolvedResource) -> str:
    """Destination of a file resource.

    When the last component of the target differs from the source file name,
    the target is treated as a directory and the source file name is appended.
    """
    destination = resource_disk_path(resource)
    source_name = os.path.basename(resource.source_path.rstrip("/"))
    if source_name and os.path.basename(destination.rstrip("/")) != source_name:
        destination = os.path.join(destination, source_name)
    return destination


class NoopResourceDeployer:
    """Logs ADD and COPY commands without touching the filesystem."""

    def add(self, command: AddCommand, client: SessionClient) -> None:
        logger.debug("executing ADD command: %s", command.original_command or command)

    def copy(self, command: CopyCommand, client: SessionClient) -> None:
        logger.debug("executing COPY command: %s", command.original_command or command)


class ExecutingResourceDeployer:
    """Writes every resource a source resolves to, with mode and owner."""

    def __init__(self, *, default_user: str = DEFAULT_USER):
        self.default_user = default_user

    def add(self, command: AddCommand, client: SessionClient) -> None:
        logger.debug("executing ADD command: %s", command.original_command or command)
        self.deploy(command.source, client)

    def copy(self, command: CopyCommand, client: SessionClient) -> None:
        logger.debug("executing COPY command: %s", command.original_command or command)
        self.deploy(command.source, client)

    def deploy(self, source: str, client: SessionClient) -> int:
        """Drain the resource stream for ``source``; return the item count."""
        items = client.resource(source)
        deployed = 0
        while True:
            item: Union[ResolvedResource, EndOfStream, StreamFailure] = items.get()
            if isinstance(item, EndOfStream):
                if deployed == 0:
                    logger.error("no resources transferred for %s", source)
                    raise ResourceNotFoundError(source)
                logger.debug("resource %s deployed, %d items", source, deployed)
                return deployed
            if isinstance(item, StreamFailure):
                logger.error("resource stream for %s failed: %s", source, item.error)
                raise item.error
            if not isinstance(item, ResolvedResource):
                raise ProtocolError(f"unexpected resource stream item: {item!r}")

            deployed += 1
            if item.is_dir:
                self._deploy_directory(item)
            else:
                self._deploy_file(item)

    def _deploy_directory(self, resource: ResolvedResource) -> None:
        path = resource_disk_path(resource)
        if os.path.isdir(path):
            # Shared ancestors such as /etc keep their mode and owner.
            logger.debug("directory %s exists for %s", path, resource.target_path)
            return
        os.makedirs(path, mode=resource.target_mode, exist_ok=True)
        os.chmod(path, resource.target_mode)
        logger.debug("created directory %s for %s", path, resource.target_path)
        self._apply_owner(resource, path)

    def _deploy_file(self, resource: ResolvedResource) -> None:
        if resource.contents is None:
            raise ProtocolError(f"file resource without contents: {resource.target_path}")

        path = file_destination(resource)
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, mode=DEFAULT_PARENT_DIR_MODE, exist_ok=True)

        with resource.contents() as reader, open(path, "wb") as writer:
            shutil.copyfileobj(reader, writer)
            written = writer.tell()
        os.chmod(path, resource.target_mode)
        logger.info("file written: %s (%d bytes) for %s", path, written, resource.target_path)
        self._apply_owner(resource, path)

    def _apply_owner(self, resource: ResolvedResource, path: str) -> None:
        if resource.target_user == self.default_user:
            return
        try:
            uid, gid = parse_owner_spec(resource.target_user)
        except InvalidOwnerSpecError:
            logger.error("error while chowning %s: invalid owner %r", path, resource.target_user)
            raise
        os.chown(path, uid, gid)
        logger.debug("chowned %s to %d:%d", path, uid, gid)
