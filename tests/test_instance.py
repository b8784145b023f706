from unittest.mock import Mock

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError, WaiterError
from moto import mock_aws

from ec2_gha_provision.errors import PreconditionError
from ec2_gha_provision.instance import Ec2Instance

REGION = "us-east-1"


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture(scope="function")
def ec2(aws_credentials):
    with mock_aws():
        yield boto3.client("ec2", region_name=REGION)


@pytest.fixture
def instance_id(ec2):
    image_id = ec2.describe_images()["Images"][0]["ImageId"]
    response = ec2.run_instances(ImageId=image_id, InstanceType="t2.micro", MinCount=1, MaxCount=1)
    return response["Instances"][0]["InstanceId"]


def test_running_instance(ec2, instance_id):
    instance = Ec2Instance(instance_id, REGION)
    description = instance.ensure_running()
    assert description["InstanceId"] == instance_id
    assert instance.state() == "running"


def test_stopped_instance_is_started(ec2, instance_id):
    ec2.stop_instances(InstanceIds=[instance_id])
    instance = Ec2Instance(instance_id, REGION)

    description = instance.ensure_running(Delay=1, MaxAttempts=5)

    assert description["State"]["Name"] == "running"


def test_stopped_instance_without_start(ec2, instance_id):
    ec2.stop_instances(InstanceIds=[instance_id])
    with pytest.raises(PreconditionError, match="not running"):
        Ec2Instance(instance_id, REGION).ensure_running(start=False)


def test_terminated_instance(ec2, instance_id):
    ec2.terminate_instances(InstanceIds=[instance_id])
    with pytest.raises(PreconditionError) as exc_info:
        Ec2Instance(instance_id, REGION).ensure_running()
    assert "start-instances" in exc_info.value.hint


def test_unknown_instance(ec2):
    with pytest.raises(PreconditionError, match="not found"):
        Ec2Instance("i-0123456789abcdef0", REGION).describe()


@pytest.mark.parametrize("instance_id, region", [("", REGION), ("i-0abc", "")])
def test_missing_identifiers(instance_id, region):
    with pytest.raises(PreconditionError):
        Ec2Instance(instance_id, region, client=Mock()).describe()


def describe_response(state="running", **fields):
    instance = {"InstanceId": "i-0abc", "State": {"Name": state}, **fields}
    return {"Reservations": [{"Instances": [instance]}]}


def test_public_address_prefers_ip():
    client = Mock()
    client.describe_instances.return_value = describe_response(
        PublicIpAddress="203.0.113.10", PublicDnsName="ec2-203-0-113-10.compute-1.amazonaws.com"
    )
    assert Ec2Instance("i-0abc", REGION, client=client).public_address() == "203.0.113.10"


def test_public_address_falls_back_to_dns():
    instance = Ec2Instance("i-0abc", REGION, client=Mock())
    description = describe_response(PublicDnsName="ec2.example.com")["Reservations"][0]["Instances"][0]
    assert instance.public_address(description) == "ec2.example.com"


def test_no_public_address():
    client = Mock()
    client.describe_instances.return_value = describe_response(PublicDnsName="")
    with pytest.raises(PreconditionError, match="no public IP"):
        Ec2Instance("i-0abc", REGION, client=client).public_address()


def test_waiter_failure():
    client = Mock()
    client.describe_instances.return_value = describe_response(state="pending")
    client.get_waiter.return_value.wait.side_effect = WaiterError(
        name="InstanceRunning", reason="Max attempts exceeded", last_response={}
    )
    with pytest.raises(PreconditionError, match="did not reach running state"):
        Ec2Instance("i-0abc", REGION, client=client).ensure_running()
    client.start_instances.assert_not_called()


def test_waiter_config_is_passed():
    client = Mock()
    client.describe_instances.side_effect = [
        describe_response(state="stopped"), describe_response(state="running"),
    ]
    Ec2Instance("i-0abc", REGION, client=client).ensure_running(Delay=5, MaxAttempts=10)
    client.start_instances.assert_called_once_with(InstanceIds=["i-0abc"])
    client.get_waiter.return_value.wait.assert_called_once_with(
        InstanceIds=["i-0abc"], WaiterConfig={"Delay": 5, "MaxAttempts": 10}
    )


def test_describe_client_error():
    client = Mock()
    client.describe_instances.side_effect = ClientError(
        {"Error": {"Code": "UnauthorizedOperation", "Message": "denied"}}, "DescribeInstances"
    )
    with pytest.raises(PreconditionError, match="UnauthorizedOperation"):
        Ec2Instance("i-0abc", REGION, client=client).describe()


def test_missing_credentials():
    client = Mock()
    client.describe_instances.side_effect = NoCredentialsError()
    with pytest.raises(PreconditionError) as exc_info:
        Ec2Instance("i-0abc", REGION, client=client).describe()
    assert "Unable to locate credentials" in exc_info.value.message
    assert "AWS credentials" in exc_info.value.hint


def test_start_endpoint_unreachable():
    client = Mock()
    client.describe_instances.return_value = describe_response(state="stopped")
    client.start_instances.side_effect = EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com/")
    with pytest.raises(PreconditionError, match="did not reach running state"):
        Ec2Instance("i-0abc", REGION, client=client).ensure_running()
