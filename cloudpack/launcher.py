"""Instance creation, tagging and readiness.

The launcher drives one instance through
``requesting -> pending -> ready | error | terminated``. As soon as the
provider hands back an id, an ExitGuard is armed so an abandoned launch
does not leave a running instance behind.
"""

from __future__ import annotations

import atexit
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import partial

from loguru import logger

from cloudpack.constants import (
    CREATED_BY_TAG,
    CREATED_BY_VALUE,
    INSTANCE_POLL_INTERVAL,
    INSTANCE_READY_TIMEOUT,
    TAG_RETRY_TIMEOUT,
    InstanceState,
)
from cloudpack.core.exceptions import (
    CloudpackError,
    FailureKind,
    InstanceErrorState,
    ProviderError,
    ReadinessUnconfirmed,
)
from cloudpack.progress import ProgressReporter, bounded
from cloudpack.providers.base import Instance, InstanceSpec, Provider
from cloudpack.retry import RetryPolicy


class ExitGuard:
    """Destroys an instance at process exit unless disarmed first.

    Only the control thread arms and disarms it. The teardown callback is
    registered once, on first arm, and does nothing while disarmed.
    """

    __slots__ = ("instance_id", "_destroy", "_register", "_armed", "_registered")

    def __init__(
        self,
        instance_id: str,
        destroy: Callable[[str], None],
        register: Callable[[Callable[[], None]], object] = atexit.register,
    ) -> None:
        self.instance_id = instance_id
        self._destroy = destroy
        self._register = register
        self._armed = False
        self._registered = False

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self) -> None:
        if not self._registered:
            self._register(self.trigger)
            self._registered = True
        self._armed = True

    def disarm(self) -> None:
        self._armed = False

    def trigger(self) -> None:
        """Best-effort destroy if still armed. Never raises."""
        if not self._armed:
            return
        self._armed = False
        try:
            self._destroy(self.instance_id)
        except Exception as e:  # noqa: BLE001 - must not block process exit
            logger.warning(
                "Could not destroy server {id} after an abnormal exit: {error}",
                id=self.instance_id,
                error=e,
            )
            return
        logger.error("Destroyed server {id} because of an abnormal exit", id=self.instance_id)


class LaunchPhase(StrEnum):
    REQUESTING = "requesting"
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class LaunchResult:
    instance: Instance
    address: str
    guard: ExitGuard


class InstanceLauncher:
    """Creates an instance, tags it and waits for it to be ready."""

    def __init__(
        self,
        provider: Provider,
        *,
        reporter: ProgressReporter | None = None,
        ready_timeout: float = INSTANCE_READY_TIMEOUT,
        poll_interval: float = INSTANCE_POLL_INTERVAL,
        tag_timeout: float = TAG_RETRY_TIMEOUT,
        guard_factory: Callable[[str, Callable[[str], None]], ExitGuard] = ExitGuard,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._reporter = reporter
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._tag_timeout = tag_timeout
        self._guard_factory = guard_factory
        self._sleep = sleep
        self.phase = LaunchPhase.REQUESTING

    def launch(
        self,
        spec: InstanceSpec,
        tags: Mapping[str, str] | None = None,
        *,
        tag_instance: bool = True,
    ) -> LaunchResult:
        """Create an instance and block until it is ready.

        The returned guard is still armed; the caller disarms it once
        installation starts.

        Raises:
            ProviderError: The create request was rejected.
            InstanceErrorState: The provider reports the instance cannot boot.
            ReadinessUnconfirmed: Polling the provider failed.
            TimeoutExceeded: The instance was still pending at the deadline.
        """
        logger.info("Instance Type: {flavor}", flavor=spec.flavor)
        logger.info("Creating new instance ...")
        instance = self._provider.create_instance(spec)
        logger.info("Creating new instance ... Done")
        self._transition(LaunchPhase.PENDING)

        # Earliest point we know the instance ID
        logger.info("Instance identifier: {id}", id=instance.id)
        guard = self._guard_factory(instance.id, self._provider.destroy_instance)
        guard.arm()

        if tag_instance:
            self.apply_tags(instance.id, {CREATED_BY_TAG: CREATED_BY_VALUE, **(tags or {})})

        ready = self.wait_until_ready(instance.id)
        if not ready.address:
            raise ReadinessUnconfirmed(ready.id, "the instance has no reachable address")

        logger.info("Server {id} public dns name: {address}", id=ready.id, address=ready.address)
        return LaunchResult(instance=ready, address=ready.address, guard=guard)

    def apply_tags(self, instance_id: str, tags: Mapping[str, str]) -> None:
        """Best effort: a tag that keeps failing is logged and skipped."""
        logger.info("Creating tags for instance ... ")
        for key, value in tags.items():
            logger.debug("Creating tag for {key} ... ", key=key)
            policy = RetryPolicy(
                timeout=self._tag_timeout,
                messages={FailureKind.PROVIDER: f"Creating tag for {key} failed. Retrying..."},
                name=f"Creating tag for {key}",
            )
            try:
                policy.call(partial(self._provider.create_tag, instance_id, key, value))
            except CloudpackError as e:
                logger.warning("Could not create tag {key}: {error}", key=key, error=e)
                continue
            logger.debug("Creating tag for {key} ... Done", key=key)
        logger.info("Creating tags for instance ... Done")

    def wait_until_ready(self, instance_id: str) -> Instance:
        logger.info("Launching server {id} ...", id=instance_id)
        with bounded(
            f"Launching server {instance_id}",
            self._ready_timeout,
            reporter=self._reporter,
        ) as deadline:
            while True:
                try:
                    instance = self._provider.get_instance(instance_id)
                except ProviderError as e:
                    logger.error("Launching server {id} Failed.", id=instance_id)
                    logger.error("Could not connect to host")
                    raise ReadinessUnconfirmed(instance_id, e.reason) from e

                match instance.state:
                    case InstanceState.READY:
                        self._transition(LaunchPhase.READY)
                        logger.info("Server {id} is now launched", id=instance_id)
                        return instance
                    case InstanceState.ERROR | InstanceState.TERMINATED:
                        self._transition(LaunchPhase(instance.state.value))
                        logger.error("Launching machine instance {id} Failed.", id=instance_id)
                        logger.error("Instance has entered an {state} state", state=instance.state)
                        raise InstanceErrorState(instance_id, instance.state)

                deadline.check()
                self._sleep(min(self._poll_interval, deadline.remaining))

    def _transition(self, phase: LaunchPhase) -> None:
        logger.debug("Launch phase: {old} -> {new}", old=self.phase, new=phase)
        self.phase = phase
