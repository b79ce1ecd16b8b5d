"""AWS EC2 provider backed by boto3.

Every public method wraps botocore failures as ProviderError, so callers
can tell "the control plane said no / could not be reached" apart from
everything else.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import cached_property, wraps
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from cloudpack.constants import DEFAULT_REGION, EC2_STATE_MAP, InstanceState
from cloudpack.core.exceptions import ProviderError
from cloudpack.providers.base import Instance, InstanceSpec, KeyPair, SecurityGroup

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

_NOT_FOUND = "InvalidInstanceID.NotFound"


def _failed[**P, R](operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Re-raise botocore failures of the wrapped call as ProviderError(operation)."""

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        @wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return fn(*args, **kwargs)
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(operation, str(e)) from e

        return wrapper

    return decorator


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _parse_instance(raw: dict[str, Any]) -> Instance:
    state_name = raw.get("State", {}).get("Name", "pending")
    tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
    address = (
        raw.get("PublicDnsName")
        or raw.get("PublicIpAddress")
        or raw.get("PrivateIpAddress")
        or None
    )
    return Instance(
        id=raw["InstanceId"],
        state=EC2_STATE_MAP.get(state_name, InstanceState.PENDING),
        address=address,
        tags=tags,
        key_name=raw.get("KeyName"),
        launched_at=raw.get("LaunchTime"),
    )


def _instances_of(response: dict[str, Any]) -> list[Instance]:
    return [
        _parse_instance(raw)
        for reservation in response.get("Reservations", [])
        for raw in reservation.get("Instances", [])
    ]


class EC2Provider:
    """Provider implementation for a single EC2 region.

    Args:
        region: EC2 region name.
        endpoint: Optional endpoint URL override.
        profile: Optional named credentials profile.
    """

    def __init__(
        self,
        region: str = DEFAULT_REGION,
        endpoint: str | None = None,
        profile: str | None = None,
    ) -> None:
        self.region = region
        self.endpoint = endpoint
        self.profile = profile

    @cached_property
    def _ec2(self) -> EC2Client:
        logger.debug("Connecting to AWS {region} ...", region=self.region)
        session = boto3.Session(profile_name=self.profile, region_name=self.region)
        return session.client("ec2", endpoint_url=self.endpoint)

    @_failed("create instance")
    def create_instance(self, spec: InstanceSpec) -> Instance:
        params: dict[str, Any] = {
            "ImageId": spec.image,
            "KeyName": spec.key_name,
            "InstanceType": spec.flavor,
            "MinCount": 1,
            "MaxCount": 1,
        }
        if spec.security_groups:
            params["SecurityGroupIds"] = list(spec.security_groups)
        if spec.subnet:
            params["SubnetId"] = spec.subnet
        if spec.availability_zone:
            params["Placement"] = {"AvailabilityZone": spec.availability_zone}

        response = self._ec2.run_instances(**params)
        return _parse_instance(response["Instances"][0])

    @_failed("describe instance")
    def get_instance(self, instance_id: str) -> Instance:
        """Current state of instance_id.

        A just-created id that EC2 does not list yet reads as pending.
        """
        try:
            response = self._ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) != _NOT_FOUND:
                raise
            logger.debug("{id} not visible yet, treating as pending", id=instance_id)
            return Instance(id=instance_id, state=InstanceState.PENDING)
        instances = _instances_of(response)
        if not instances:
            raise ProviderError("describe instance", f"{instance_id} not found")
        return instances[0]

    @_failed("create tag")
    def create_tag(self, resource_id: str, key: str, value: str) -> None:
        self._ec2.create_tags(Resources=[resource_id], Tags=[{"Key": key, "Value": value}])

    @_failed("terminate instance")
    def destroy_instance(self, instance_id: str) -> None:
        self._ec2.terminate_instances(InstanceIds=[instance_id])

    @_failed("list instances")
    def list_instances(self) -> Sequence[Instance]:
        paginator = self._ec2.get_paginator("describe_instances")
        return [inst for page in paginator.paginate() for inst in _instances_of(page)]

    @_failed("find instances")
    def find_instances(self, filter_name: str, value: str) -> Sequence[Instance]:
        response = self._ec2.describe_instances(
            Filters=[{"Name": filter_name, "Values": [value]}],
        )
        return _instances_of(response)

    @_failed("get console output")
    def console_output(self, instance_id: str) -> str | None:
        return self._ec2.get_console_output(InstanceId=instance_id).get("Output")

    @_failed("list security groups")
    def list_security_groups(self) -> Sequence[SecurityGroup]:
        response = self._ec2.describe_security_groups()
        return [
            SecurityGroup(group_id=g["GroupId"], name=g["GroupName"])
            for g in response.get("SecurityGroups", [])
        ]

    @_failed("describe image")
    def image_exists(self, image_id: str) -> bool:
        try:
            response = self._ec2.describe_images(ImageIds=[image_id])
        except ClientError as e:
            if _error_code(e).startswith("InvalidAMIID"):
                return False
            raise
        return bool(response.get("Images"))

    @_failed("list key pairs")
    def list_key_pairs(self) -> Sequence[KeyPair]:
        response = self._ec2.describe_key_pairs()
        return [
            KeyPair(name=k["KeyName"], fingerprint=k.get("KeyFingerprint", ""))
            for k in response.get("KeyPairs", [])
        ]

    @_failed("describe regions")
    def list_regions(self) -> Sequence[str]:
        response = self._ec2.describe_regions()
        return [r["RegionName"] for r in response.get("Regions", [])]
