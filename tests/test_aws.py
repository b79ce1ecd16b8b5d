"""EC2Provider against botocore's Stubber; no network."""

from __future__ import annotations

from collections.abc import Iterator

import boto3
import pytest
from botocore.stub import Stubber

from cloudpack.constants import InstanceState
from cloudpack.core.exceptions import ProviderError
from cloudpack.launcher import ExitGuard, InstanceLauncher
from cloudpack.providers.aws import EC2Provider
from cloudpack.providers.base import InstanceSpec, KeyPair

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


@pytest.fixture
def ec2() -> EC2Provider:
    provider = EC2Provider(region="us-east-1")
    provider.__dict__["_ec2"] = boto3.client(
        "ec2",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    return provider


@pytest.fixture
def stub(ec2: EC2Provider) -> Iterator[Stubber]:
    with Stubber(ec2._ec2) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


def _reservation(**instance) -> dict:
    return {"Reservations": [{"Instances": [{"InstanceId": "i-0001", **instance}]}]}


class TestCreateInstance:
    def test_run_instances_params(self, ec2, stub):
        stub.add_response(
            "run_instances",
            {"Instances": [{"InstanceId": "i-0001", "State": {"Code": 0, "Name": "pending"}}]},
            {
                "ImageId": "ami-123",
                "KeyName": "ops",
                "InstanceType": "t3.small",
                "MinCount": 1,
                "MaxCount": 1,
                "SecurityGroupIds": ["sg-111"],
                "Placement": {"AvailabilityZone": "us-east-1a"},
            },
        )

        instance = ec2.create_instance(
            InstanceSpec(
                image="ami-123",
                key_name="ops",
                flavor="t3.small",
                security_groups=("sg-111",),
                availability_zone="us-east-1a",
            )
        )

        assert instance.id == "i-0001"
        assert instance.state == InstanceState.PENDING

    def test_client_error_becomes_provider_error(self, ec2, stub):
        stub.add_client_error("run_instances", "InsufficientInstanceCapacity", "no capacity")

        with pytest.raises(ProviderError) as info:
            ec2.create_instance(InstanceSpec(image="ami-123", key_name="ops", flavor="t3.small"))

        assert info.value.operation == "create instance"
        assert "InsufficientInstanceCapacity" in info.value.reason


class TestGetInstance:
    def test_running_with_dns_name(self, ec2, stub):
        stub.add_response(
            "describe_instances",
            _reservation(
                State={"Code": 16, "Name": "running"},
                PublicDnsName="ec2-1-2-3-4.compute.amazonaws.com",
                KeyName="ops",
                Tags=[{"Key": "Name", "Value": "web1"}],
            ),
            {"InstanceIds": ["i-0001"]},
        )

        instance = ec2.get_instance("i-0001")

        assert instance.state == InstanceState.READY
        assert instance.address == "ec2-1-2-3-4.compute.amazonaws.com"
        assert instance.tags == {"Name": "web1"}
        assert instance.key_name == "ops"

    def test_falls_back_to_ip(self, ec2, stub):
        stub.add_response(
            "describe_instances",
            _reservation(State={"Code": 16, "Name": "running"}, PublicDnsName="", PublicIpAddress="1.2.3.4"),
        )
        assert ec2.get_instance("i-0001").address == "1.2.3.4"

    def test_stopped_is_error(self, ec2, stub):
        stub.add_response("describe_instances", _reservation(State={"Code": 80, "Name": "stopped"}))
        assert ec2.get_instance("i-0001").state == InstanceState.ERROR

    def test_not_yet_visible_reads_as_pending(self, ec2, stub):
        stub.add_client_error("describe_instances", "InvalidInstanceID.NotFound", "does not exist")
        instance = ec2.get_instance("i-0001")
        assert instance.state == InstanceState.PENDING
        assert instance.address is None

    def test_not_found(self, ec2, stub):
        stub.add_response("describe_instances", {"Reservations": []})
        with pytest.raises(ProviderError, match="not found"):
            ec2.get_instance("i-0001")


class TestLookups:
    def test_image_exists(self, ec2, stub):
        stub.add_response("describe_images", {"Images": [{"ImageId": "ami-123"}]}, {"ImageIds": ["ami-123"]})
        assert ec2.image_exists("ami-123")

    def test_malformed_image_id_is_missing(self, ec2, stub):
        stub.add_client_error("describe_images", "InvalidAMIID.Malformed", "bad id")
        assert not ec2.image_exists("nope")

    def test_other_image_errors_propagate(self, ec2, stub):
        stub.add_client_error("describe_images", "UnauthorizedOperation", "denied")
        with pytest.raises(ProviderError):
            ec2.image_exists("ami-123")

    def test_key_pairs(self, ec2, stub):
        stub.add_response(
            "describe_key_pairs",
            {"KeyPairs": [{"KeyName": "ops", "KeyFingerprint": "aa:bb"}]},
        )
        assert ec2.list_key_pairs() == [KeyPair(name="ops", fingerprint="aa:bb")]

    def test_find_instances_by_dns_name(self, ec2, stub):
        stub.add_response(
            "describe_instances",
            _reservation(State={"Code": 16, "Name": "running"}, PublicDnsName="a.example.com"),
            {"Filters": [{"Name": "dns-name", "Values": ["a.example.com"]}]},
        )
        (instance,) = ec2.find_instances("dns-name", "a.example.com")
        assert instance.id == "i-0001"

    def test_console_output(self, ec2, stub):
        stub.add_response(
            "get_console_output",
            {"InstanceId": "i-0001", "Output": "ec2: fingerprint"},
            {"InstanceId": "i-0001"},
        )
        assert ec2.console_output("i-0001") == "ec2: fingerprint"


@pytest.mark.timeout(30)
class TestLaunchAgainstEC2:
    def test_waits_out_describe_lag_without_tagging(self, ec2, stub, reporter):
        destroyed: list[str] = []
        stub.add_response(
            "run_instances",
            {"Instances": [{"InstanceId": "i-0001", "State": {"Code": 0, "Name": "pending"}}]},
        )
        stub.add_client_error("describe_instances", "InvalidInstanceID.NotFound", "does not exist")
        stub.add_response(
            "describe_instances",
            _reservation(State={"Code": 16, "Name": "running"}, PublicDnsName="a.example.com"),
        )
        launcher = InstanceLauncher(
            ec2,
            reporter=reporter,
            poll_interval=0,
            guard_factory=lambda id_, destroy: ExitGuard(id_, destroyed.append, register=lambda _: None),
            sleep=lambda _: None,
        )

        result = launcher.launch(
            InstanceSpec(image="ami-123", key_name="ops", flavor="t3.small"),
            tag_instance=False,
        )

        assert result.address == "a.example.com"
        assert result.guard.armed
        assert destroyed == []
