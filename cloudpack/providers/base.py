"""Provider interface consumed by the launcher and the workflow.

The core treats the provider as an opaque capability set. Implementations
wrap their SDK's errors as ProviderError so callers never see them.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from cloudpack.constants import InstanceState


@dataclass(frozen=True, slots=True)
class Instance:
    """A provisioned compute resource as last reported by the provider."""

    id: str
    state: InstanceState
    address: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    key_name: str | None = None
    launched_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """Everything the provider needs to create one instance."""

    image: str
    key_name: str
    flavor: str
    security_groups: tuple[str, ...] = ()
    subnet: str | None = None
    availability_zone: str | None = None


@dataclass(frozen=True, slots=True)
class SecurityGroup:
    group_id: str
    name: str


@dataclass(frozen=True, slots=True)
class KeyPair:
    name: str
    fingerprint: str


@runtime_checkable
class Provider(Protocol):
    """Synchronous instance lifecycle and lookup operations."""

    def create_instance(self, spec: InstanceSpec) -> Instance:
        """Request a new instance; returns as soon as the provider accepts."""
        ...

    def get_instance(self, instance_id: str) -> Instance: ...

    def create_tag(self, resource_id: str, key: str, value: str) -> None: ...

    def destroy_instance(self, instance_id: str) -> None: ...

    def list_instances(self) -> Sequence[Instance]: ...

    def find_instances(self, filter_name: str, value: str) -> Sequence[Instance]:
        """Instances matching a provider filter such as 'dns-name'."""
        ...

    def console_output(self, instance_id: str) -> str | None: ...

    def list_security_groups(self) -> Sequence[SecurityGroup]: ...

    def image_exists(self, image_id: str) -> bool: ...

    def list_key_pairs(self) -> Sequence[KeyPair]: ...

    def list_regions(self) -> Sequence[str]: ...
