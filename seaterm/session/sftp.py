"""
File-transfer sub-session (SFTP) on an authenticated transport.
"""

from __future__ import annotations
import os
import threading
import logging
from pathlib import Path
from typing import Optional, Callable, Union

import paramiko

from .models import (
    OperationResult, ErrorKind, DirectoryEntry, EMPTY_DIRECTORY,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Errors paramiko raises from SFTP calls: IOError subclasses with errno for
# remote status codes, SSHException / EOFError when the channel dies.
SFTP_ERRORS = (OSError, EOFError, paramiko.SSHException)


def _describe(exc: BaseException) -> str:
    """Short human text for an SFTP / OS error."""
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    return str(exc) or exc.__class__.__name__


class FileTransferSession:
    """
    SFTP sub-session.

    Open/closed independently of the shell. Every operation assumes the
    owning SSHSession already checked that the session is usable.
    """

    def __init__(
        self,
        transport: paramiko.Transport,
        client_factory: Callable[[paramiko.Transport], Optional[paramiko.SFTPClient]] = None,
    ):
        self._transport = transport
        self._client_factory = client_factory or paramiko.SFTPClient.from_transport
        self._client: Optional[paramiko.SFTPClient] = None
        self._lock = threading.RLock()

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def start(self) -> OperationResult:
        """Open the sftp subsystem."""
        with self._lock:
            if self._client is not None:
                return OperationResult.success("SFTP session already active")

            if not self._transport.is_authenticated():
                return OperationResult.failure(
                    ErrorKind.NOT_AUTHORIZED,
                    "SFTP not authorized: the session is not authenticated for file transfer.",
                )

            try:
                client = self._client_factory(self._transport)
            except paramiko.SSHException as e:
                logger.warning(f"SFTP subsystem refused: {e}")
                return OperationResult.failure(
                    ErrorKind.NOT_AUTHORIZED,
                    f"SFTP not authorized: remote host refused the sftp subsystem ({e})",
                )
            except (OSError, EOFError) as e:
                logger.error(f"SFTP start failed: {e}")
                return OperationResult.failure(ErrorKind.REMOTE, f"SFTP failed to start: {_describe(e)}")

            if client is None:
                return OperationResult.failure(
                    ErrorKind.REMOTE, "SFTP failed to start: could not open channel"
                )

            self._client = client
            logger.info("SFTP session started")
            return OperationResult.success("SFTP session started")

    def list(self, path: str = ".") -> OperationResult:
        """List a remote directory, directories first."""
        with self._lock:
            try:
                attrs = self._client.listdir_attr(path)
            except SFTP_ERRORS as e:
                return OperationResult.failure(
                    ErrorKind.REMOTE, f"sftp-ls: cannot access '{path}': {_describe(e)}"
                )

        entries = sorted(
            (DirectoryEntry.from_attributes(a) for a in attrs),
            key=lambda entry: (not entry.is_directory, entry.name),
        )
        if not entries:
            return OperationResult.success(EMPTY_DIRECTORY)

        return OperationResult.success(
            "\n".join(str(entry) for entry in entries),
            entries=tuple(entries),
        )

    def upload(self, local_path: PathLike, remote_path: str) -> OperationResult:
        """Copy a whole local file to the remote host."""
        local = Path(local_path)
        if not local.is_file():
            return OperationResult.failure(
                ErrorKind.LOCAL_IO, f"sftp-put: {local}: No such file"
            )

        try:
            handle = local.open("rb")
        except OSError as e:
            return OperationResult.failure(
                ErrorKind.LOCAL_IO, f"sftp-put: cannot read '{local}': {_describe(e)}"
            )

        with handle, self._lock:
            try:
                attrs = self._client.putfo(handle, remote_path)
            except SFTP_ERRORS as e:
                return OperationResult.failure(
                    ErrorKind.REMOTE, f"sftp-put: upload to '{remote_path}' failed: {_describe(e)}"
                )

        size = attrs.st_size if attrs is not None and attrs.st_size is not None else local.stat().st_size
        logger.info(f"Uploaded {local} -> {remote_path} ({size} bytes)")
        return OperationResult.success(f"Uploaded {local} -> {remote_path} ({size} bytes)")

    def download(self, remote_path: str, local_path: PathLike) -> OperationResult:
        """
        Copy a whole remote file to disk.

        Data lands in '<local>.part' first and replaces the target only once
        the transfer finished, so a failed download leaves the target alone.
        """
        local = Path(local_path)
        if not local.parent.is_dir():
            return OperationResult.failure(
                ErrorKind.LOCAL_IO, f"sftp-get: {local.parent}: No such directory"
            )

        partial = local.with_name(local.name + ".part")
        try:
            handle = partial.open("wb")
        except OSError as e:
            return OperationResult.failure(
                ErrorKind.LOCAL_IO, f"sftp-get: cannot write '{local}': {_describe(e)}"
            )

        try:
            with handle, self._lock:
                size = self._client.getfo(remote_path, handle)
        except SFTP_ERRORS as e:
            partial.unlink(missing_ok=True)
            return OperationResult.failure(
                ErrorKind.REMOTE, f"sftp-get: download of '{remote_path}' failed: {_describe(e)}"
            )

        try:
            os.replace(partial, local)
        except OSError as e:
            partial.unlink(missing_ok=True)
            return OperationResult.failure(
                ErrorKind.LOCAL_IO, f"sftp-get: cannot write '{local}': {_describe(e)}"
            )

        logger.info(f"Downloaded {remote_path} -> {local} ({size} bytes)")
        return OperationResult.success(f"Downloaded {remote_path} -> {local} ({size} bytes)")

    def mkdir(self, path: str) -> OperationResult:
        with self._lock:
            try:
                self._client.mkdir(path)
            except SFTP_ERRORS as e:
                return OperationResult.failure(
                    ErrorKind.REMOTE, f"sftp-mkdir: cannot create directory '{path}': {_describe(e)}"
                )
        return OperationResult.success(f"Created remote directory {path}")

    def remove(self, path: str) -> OperationResult:
        with self._lock:
            try:
                self._client.remove(path)
            except SFTP_ERRORS as e:
                return OperationResult.failure(
                    ErrorKind.REMOTE, f"sftp-rm: cannot remove '{path}': {_describe(e)}"
                )
        return OperationResult.success(f"Removed {path}")

    def close(self) -> None:
        """Close the subsystem channel. Safe to call twice."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception as e:
                logger.debug(f"SFTP close error: {e}")
            logger.info("SFTP session closed")
