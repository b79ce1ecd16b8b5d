"""Bounded-time retry with per-failure-kind messaging.

A RetryPolicy keeps calling an operation until it succeeds, a failure it
does not recognise is raised, or its overall time budget runs out.
Attempts are back-to-back: there is no backoff between them.

Example:
    from cloudpack.core.exceptions import FailureKind
    from cloudpack.retry import RetryPolicy

    policy = RetryPolicy(
        timeout=120,
        messages={FailureKind.PROVIDER: "Tag not accepted yet, retrying..."},
        name="Creating tag",
    )
    policy.call(lambda: provider.create_tag(instance_id, "Name", "web"))
"""

from __future__ import annotations

import errno
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_delay,
    wait_none,
)

from cloudpack.core.exceptions import (
    AttemptTimedOut,
    CloudpackError,
    FailureKind,
    TimeoutExceeded,
)

T = TypeVar("T")

_ERRNO_KINDS: dict[int, FailureKind] = {
    errno.EHOSTUNREACH: FailureKind.HOST_UNREACHABLE,
    errno.ECONNREFUSED: FailureKind.CONNECTION_REFUSED,
    errno.ECONNRESET: FailureKind.CONNECTION_RESET,
    errno.ENETUNREACH: FailureKind.NETWORK_UNREACHABLE,
    errno.ETIMEDOUT: FailureKind.TIMEOUT,
}


def failure_kind(exc: BaseException) -> FailureKind | None:
    """Map an exception to the failure kind a policy can recognise."""
    if isinstance(exc, CloudpackError):
        return exc.kind
    if isinstance(exc, ConnectionRefusedError):
        return FailureKind.CONNECTION_REFUSED
    if isinstance(exc, ConnectionResetError):
        return FailureKind.CONNECTION_RESET
    if isinstance(exc, TimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, OSError) and exc.errno is not None:
        return _ERRNO_KINDS.get(exc.errno)
    return None


def run_with_timeout(operation: Callable[[], T], timeout: float) -> T:
    """Run operation in a daemon thread, giving up after timeout seconds.

    The abandoned thread is not interrupted; it finishes (or fails) on its own.
    """
    outcome: Future[T] = Future()

    def target() -> None:
        if not outcome.set_running_or_notify_cancel():
            return
        try:
            outcome.set_result(operation())
        except BaseException as exc:  # noqa: BLE001 - handed to the caller
            outcome.set_exception(exc)

    threading.Thread(target=target, daemon=True, name="cloudpack-attempt").start()
    done, _ = wait([outcome], timeout=timeout)
    if not done:
        raise AttemptTimedOut(timeout)
    return outcome.result()


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry recognised failures until success or the budget expires.

    Attributes:
        timeout: Overall budget in seconds, measured from the first attempt.
        messages: Recognised failure kinds and the warning logged for each.
        attempt_timeout: Optional bound on a single attempt. An attempt that
            overruns it fails with AttemptTimedOut (FailureKind.TIMEOUT).
        name: Operation name used in TimeoutExceeded.
    """

    timeout: float
    messages: Mapping[FailureKind, str] = field(default_factory=dict)
    attempt_timeout: float | None = None
    name: str = "operation"

    def recognizes(self, exc: BaseException) -> bool:
        return failure_kind(exc) in self.messages

    def call(self, operation: Callable[[], T]) -> T:
        """Invoke operation under this policy.

        Raises:
            TimeoutExceeded: The budget ran out while failures were recognised.
            Exception: The first failure whose kind is not recognised.
        """
        attempts = 0

        def attempt() -> T:
            nonlocal attempts
            attempts += 1
            if self.attempt_timeout is None:
                return operation()
            return run_with_timeout(operation, self.attempt_timeout)

        def announce(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            kind = failure_kind(exc) if exc else None
            if kind is not None:
                logger.warning(self.messages[kind])
                logger.debug("{name}: attempt {n} failed: {exc}", name=self.name, n=attempts, exc=exc)

        retrying = Retrying(
            stop=stop_after_delay(self.timeout),
            wait=wait_none(),
            retry=retry_if_exception(self.recognizes),
            before_sleep=announce,
        )

        started = time.monotonic()
        try:
            return retrying(attempt)
        except RetryError as e:
            elapsed = time.monotonic() - started
            raise TimeoutExceeded(self.name, self.timeout, elapsed, attempts) from (
                e.last_attempt.exception()
            )


def retry(
    timeout: float,
    messages: Mapping[FailureKind, str],
    operation: Callable[[], T],
    attempt_timeout: float | None = None,
    name: str = "operation",
) -> T:
    """Functional shortcut for RetryPolicy(...).call(operation)."""
    policy = RetryPolicy(
        timeout=timeout,
        messages=messages,
        attempt_timeout=attempt_timeout,
        name=name,
    )
    return policy.call(operation)
