"""Paramiko-based remote execution and file upload.

This is the single place cloudpack talks SSH. Every call opens its own
connection, so a session handle is cheap to pass around and never reused
across steps.

Output handling: the channel is read as an ordered stream of events
(data chunks, end of stream, exit status). fold_stream() turns that stream
into line-oriented debug logging plus an ExecutionResult, which keeps
execute() a plain blocking call.
"""

from __future__ import annotations

import codecs
import os
import socket
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import paramiko
from loguru import logger

from cloudpack.core.exceptions import (
    AuthenticationFailed,
    ConfigurationError,
    ConnectionFailed,
    FailureKind,
)
from cloudpack.logging import remote_logger
from cloudpack.retry import failure_kind

_CHUNK_SIZE = 32 * 1024


@dataclass(frozen=True, slots=True)
class RemoteSession:
    """Where and as whom to connect.

    A key_path of None authenticates through the local ssh-agent
    (SSH_AUTH_SOCK) instead of loading key material.
    """

    host: str
    login: str
    key_path: str | None = None
    port: int = 22
    connect_timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one remote command.

    exit_code is None when the channel closed without an exit status.
    """

    exit_code: int | None
    stdout: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# =============================================================================
# Stream Events
# =============================================================================


@dataclass(frozen=True, slots=True)
class Data:
    chunk: str


@dataclass(frozen=True, slots=True)
class End:
    pass


@dataclass(frozen=True, slots=True)
class ExitStatus:
    code: int


type StreamEvent = Data | End | ExitStatus


class LineBuffer:
    """Emit complete lines as they arrive, hold the trailing partial one."""

    __slots__ = ("_emit", "_pending")

    def __init__(self, emit: Callable[[str], None]) -> None:
        self._emit = emit
        self._pending = ""

    def feed(self, chunk: str) -> None:
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._emit(line.rstrip("\r"))

    def flush(self) -> None:
        if self._pending:
            self._emit(self._pending.rstrip("\r"))
            self._pending = ""


def _log_line(line: str) -> None:
    logger.debug(line)


def fold_stream(
    events: Iterable[StreamEvent],
    emit: Callable[[str], None] = _log_line,
) -> ExecutionResult:
    """Fold channel events into logged lines and an ExecutionResult."""
    buffer = LineBuffer(emit)
    output: list[str] = []
    exit_code: int | None = None

    for event in events:
        match event:
            case Data(chunk=chunk):
                output.append(chunk)
                buffer.feed(chunk)
            case End():
                buffer.flush()
            case ExitStatus(code=code):
                exit_code = code
                logger.debug("SSH Command Exit Code: {code}", code=code)

    buffer.flush()
    return ExecutionResult(exit_code=exit_code, stdout="".join(output))


def channel_events(channel: paramiko.Channel) -> Iterator[StreamEvent]:
    """Read a paramiko channel until close, as StreamEvents."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = channel.recv(_CHUNK_SIZE)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            yield Data(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield Data(tail)
    yield End()

    # paramiko reports -1 when the server closed without an exit-status
    status = channel.recv_exit_status()
    if status != -1:
        yield ExitStatus(status)


# =============================================================================
# Executor
# =============================================================================


class Executor(Protocol):
    def execute(self, session: RemoteSession, command: str) -> ExecutionResult: ...

    def upload(self, session: RemoteSession, local: str | Path, remote: str) -> None: ...


def _transport_kind(exc: BaseException) -> FailureKind | None:
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        for inner in exc.errors.values():
            kind = failure_kind(inner)
            if kind is not None:
                return kind
        return FailureKind.CONNECTION_REFUSED
    if isinstance(exc, socket.timeout | TimeoutError):
        return FailureKind.TIMEOUT
    return failure_kind(exc)




@contextmanager
def _session_io(session: RemoteSession) -> Iterator[None]:
    """Map a connection dropping mid-command or mid-transfer to ConnectionFailed."""
    try:
        yield
    except (paramiko.SSHException, EOFError) as e:
        raise ConnectionFailed(session.host, FailureKind.CONNECTION_RESET, str(e)) from e
    except OSError as e:
        kind = _transport_kind(e) or FailureKind.CONNECTION_RESET
        raise ConnectionFailed(session.host, kind, str(e)) from e


class SSHExecutor:
    """Runs commands and uploads files over fresh paramiko connections."""

    def __init__(
        self,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._client_factory = client_factory

    def execute(self, session: RemoteSession, command: str) -> ExecutionResult:
        """Run command in a pty and block until the channel closes.

        Raises:
            AuthenticationFailed: Credential negotiation failed.
            ConnectionFailed: Transport-level failure.
        """
        logger.info("Executing remote command ...")
        logger.debug("Command: {command}", command=command)

        with self._connected(session) as client, _session_io(session):
            transport = client.get_transport()
            if transport is None:
                raise ConnectionFailed(session.host, FailureKind.CONNECTION_RESET, "no transport")
            channel = transport.open_session()
            try:
                # Some install scripts expect an interactive terminal
                channel.get_pty()
                channel.exec_command(command)
                result = fold_stream(channel_events(channel), remote_logger(session.host).debug)
            finally:
                channel.close()

        logger.info("Executing remote command ... Done")
        return result

    def upload(self, session: RemoteSession, local: str | Path, remote: str) -> None:
        """Push a single file to remote over SFTP.

        Raises:
            ConfigurationError: local is not a readable file.
        """
        source = Path(local)
        if not source.is_file():
            raise ConfigurationError(f"Could not find file '{source}' to upload")

        logger.debug("Uploading {local} to {host}:{remote}", local=local, host=session.host, remote=remote)
        with self._connected(session) as client, _session_io(session):
            sftp = client.open_sftp()
            try:
                sftp.put(str(local), remote)
            finally:
                sftp.close()

    @contextmanager
    def _connected(self, session: RemoteSession) -> Iterator[paramiko.SSHClient]:
        client = self._client_factory()
        try:
            self._connect(client, session)
            yield client
        finally:
            client.close()

    def _connect(self, client: paramiko.SSHClient, session: RemoteSession) -> None:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs: dict = {
            "hostname": session.host,
            "port": session.port,
            "username": session.login,
            "timeout": session.connect_timeout,
            "banner_timeout": session.connect_timeout,
            "auth_timeout": session.connect_timeout,
            "look_for_keys": False,
        }
        if session.key_path:
            kwargs["key_filename"] = os.path.expanduser(session.key_path)
            kwargs["allow_agent"] = False
        else:
            kwargs["allow_agent"] = True

        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as e:
            raise AuthenticationFailed(session.login, session.host) from e
        except paramiko.SSHException as e:
            # Banner/negotiation errors while sshd is still coming up
            raise ConnectionFailed(session.host, FailureKind.CONNECTION_RESET, str(e)) from e
        except OSError as e:
            raise ConnectionFailed(session.host, _transport_kind(e), str(e)) from e
