from __future__ import annotations

import io
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest
from loguru import logger
from rich.console import Console

from cloudpack.constants import InstanceState
from cloudpack.core.exceptions import ProviderError
from cloudpack.progress import ProgressReporter
from cloudpack.providers.base import Instance, InstanceSpec, KeyPair, SecurityGroup
from cloudpack.remote.ssh import ExecutionResult, RemoteSession


class FakeProvider:
    """In-memory Provider. States are served from a script, one per poll."""

    def __init__(
        self,
        states: Sequence[InstanceState] = (InstanceState.READY,),
        address: str | None = "ec2-1-2-3-4.compute.amazonaws.com",
    ) -> None:
        self.states = list(states)
        self.address = address
        self.created: list[InstanceSpec] = []
        self.destroyed: list[str] = []
        self.tags: dict[str, dict[str, str]] = {}
        self.polls = 0
        self.fail_polls = False
        self.tag_failures: dict[str, int] = {}
        self.instances: list[Instance] = []
        self.console: list[str | None] = []
        self.key_pairs = [KeyPair("zeta", "aa:bb"), KeyPair("alpha", "cc:dd")]
        self.security_groups = [
            SecurityGroup("sg-111", "web"),
            SecurityGroup("sg-222", "db"),
        ]
        self.regions = ["us-east-1", "eu-west-1"]
        self.images = {"ami-123"}

    def create_instance(self, spec: InstanceSpec) -> Instance:
        self.created.append(spec)
        return Instance(id=f"i-{len(self.created):04d}", state=InstanceState.PENDING)

    def get_instance(self, instance_id: str) -> Instance:
        if self.fail_polls:
            raise ProviderError("describe instance", "connection refused")
        state = self.states[min(self.polls, len(self.states) - 1)]
        self.polls += 1
        address = self.address if state is InstanceState.READY else None
        return Instance(id=instance_id, state=state, address=address)

    def create_tag(self, resource_id: str, key: str, value: str) -> None:
        remaining = self.tag_failures.get(key, 0)
        if remaining:
            self.tag_failures[key] = remaining - 1
            raise ProviderError("create tag", "InvalidInstanceID.NotFound")
        self.tags.setdefault(resource_id, {})[key] = value

    def destroy_instance(self, instance_id: str) -> None:
        self.destroyed.append(instance_id)

    def list_instances(self) -> Sequence[Instance]:
        return self.instances

    def find_instances(self, filter_name: str, value: str) -> Sequence[Instance]:
        return [i for i in self.instances if i.address == value or i.id == value]

    def console_output(self, instance_id: str) -> str | None:
        return self.console.pop(0) if self.console else None

    def list_security_groups(self) -> Sequence[SecurityGroup]:
        return self.security_groups

    def image_exists(self, image_id: str) -> bool:
        return image_id in self.images

    def list_key_pairs(self) -> Sequence[KeyPair]:
        return self.key_pairs

    def list_regions(self) -> Sequence[str]:
        return self.regions


type Responder = Callable[[RemoteSession, str], ExecutionResult]


class FakeExecutor:
    """Records commands and uploads; answers commands through responders."""

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.uploads: list[tuple[str, str, str]] = []
        self.sessions: list[RemoteSession] = []
        self.responders: list[tuple[str, Responder]] = []

    def on(self, needle: str, responder: Responder | ExecutionResult | BaseException) -> None:
        """Answer commands containing needle. Later registrations win."""
        if isinstance(responder, ExecutionResult):
            result = responder
            responder = lambda _s, _c: result  # noqa: E731
        elif isinstance(responder, BaseException):
            error = responder

            def responder(_s: RemoteSession, _c: str) -> ExecutionResult:
                raise error

        self.responders.insert(0, (needle, responder))

    def execute(self, session: RemoteSession, command: str) -> ExecutionResult:
        self.sessions.append(session)
        self.commands.append(command)
        for needle, responder in self.responders:
            if needle in command:
                return responder(session, command)
        return ExecutionResult(exit_code=0, stdout="")

    def upload(self, session: RemoteSession, local: str | Path, remote: str) -> None:
        content = Path(local).read_text(errors="replace") if Path(local).is_file() else ""
        self.uploads.append((str(local), remote, content))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def reporter() -> ProgressReporter:
    return ProgressReporter(console=Console(file=io.StringIO(), force_terminal=False), interval=0.01)


@pytest.fixture
def log_records() -> Iterator[list[dict[str, Any]]]:
    records: list[dict[str, Any]] = []
    logger.enable("cloudpack")
    hid = logger.add(lambda message: records.append(message.record), level="DEBUG", filter="cloudpack")
    yield records
    logger.remove(hid)
    logger.disable("cloudpack")


def messages(records: list[dict[str, Any]], level: str | None = None) -> list[str]:
    return [r["message"] for r in records if level is None or r["level"].name == level]
