"""Wait for a freshly booted host to accept SSH connections."""

from __future__ import annotations

from loguru import logger

from cloudpack.constants import (
    REACHABILITY_COMMAND,
    SSH_ATTEMPT_TIMEOUT,
    SSH_CONNECT_TIMEOUT,
)
from cloudpack.core.exceptions import FailureKind, InstanceUnreachable, TimeoutExceeded
from cloudpack.remote.ssh import Executor, RemoteSession
from cloudpack.retry import RetryPolicy

_BOOTING = "Failed to connect. This may be because the machine is booting. Retrying the connection..."

BOOT_RETRY_MESSAGES: dict[FailureKind, str] = {
    FailureKind.AUTHENTICATION: _BOOTING,
    FailureKind.HOST_UNREACHABLE: _BOOTING,
    FailureKind.CONNECTION_REFUSED: _BOOTING,
    FailureKind.CONNECTION_RESET: "Connection reset. Retrying the connection...",
    FailureKind.NETWORK_UNREACHABLE: "Network unreachable. Retrying the connection...",
    FailureKind.TIMEOUT: (
        "Connection test timed-out. This may be because the machine is booting. "
        "Retrying the connection..."
    ),
}


def ensure_reachable(
    session: RemoteSession,
    executor: Executor,
    timeout: float = SSH_CONNECT_TIMEOUT,
    attempt_timeout: float = SSH_ATTEMPT_TIMEOUT,
) -> None:
    """Block until session.host runs a trivial command, or give up.

    Raises:
        InstanceUnreachable: No attempt succeeded within timeout.
    """
    logger.info("Waiting for SSH response ...")

    policy = RetryPolicy(
        timeout=timeout,
        messages=BOOT_RETRY_MESSAGES,
        attempt_timeout=attempt_timeout,
        name=f"SSH connection to {session.host}",
    )
    try:
        policy.call(lambda: executor.execute(session, REACHABILITY_COMMAND))
    except TimeoutExceeded as e:
        logger.info("Waiting for SSH response ... Timeout")
        raise InstanceUnreachable(session.host) from e

    logger.info("Waiting for SSH response ... Done")
