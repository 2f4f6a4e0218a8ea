# nicswap/gateway.py
import abc
import logging
import math
import time

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from nicswap.errors import GatewayError, OperationFailed, WaitTimedOut
from nicswap.models import InstanceAttribute, PowerState
from nicswap.utils import DEFAULT_POLL_INTERVAL, poll_until

log = logging.getLogger(__name__)

AGENT_ONLINE = "Online"
COMMAND_SUCCESS = "Success"
LIVE_INSTANCE_STATES = ["pending", "running", "shutting-down", "stopping", "stopped"]
INSTANCE_NOT_FOUND = "InvalidInstanceID.NotFound"

POWER_STATE_WAITERS = {
    PowerState.RUNNING: "instance_running",
    PowerState.STOPPED: "instance_stopped",
}


def api_tags(tags):
    return [{"Key": key, "Value": value} for key, value in tags]


class ResourceGateway(abc.ABC):
    """
    Everything the migration needs from the infrastructure provider.

    Await methods block, polling at a fixed interval, and raise WaitTimedOut
    when their bound runs out or OperationFailed when the provider reports a
    terminal failure. Any other provider error surfaces as GatewayError.
    """

    # reads

    @abc.abstractmethod
    def find_instances_by_private_ip(self, private_ip): ...

    @abc.abstractmethod
    def describe_instance(self, instance_id):
        """Return the instance descriptor, or None when the provider no longer knows it."""

    @abc.abstractmethod
    def describe_volumes(self, volume_ids): ...

    @abc.abstractmethod
    def get_instance_attribute(self, instance_id, attribute: InstanceAttribute): ...

    @abc.abstractmethod
    def remote_agent_status(self, instance_id):
        """Ping status of the remote command agent, None when not registered."""

    @abc.abstractmethod
    def remote_command_status(self, command_id): ...

    # power state

    @abc.abstractmethod
    def stop_instance(self, instance_id): ...

    @abc.abstractmethod
    def start_instance(self, instance_id): ...

    @abc.abstractmethod
    def await_power_state(self, instance_id, target: PowerState, timeout): ...

    def await_running(self, instance_id, timeout):
        return self.await_power_state(instance_id, PowerState.RUNNING, timeout)

    # images and instances

    @abc.abstractmethod
    def create_backup_image(self, instance_id, name, description, tags): ...

    @abc.abstractmethod
    def await_image_ready(self, image_id, timeout): ...

    @abc.abstractmethod
    def terminate_instance(self, instance_id): ...

    @abc.abstractmethod
    def await_terminated(self, instance_id, timeout): ...

    @abc.abstractmethod
    def create_instance_from_image(self, image_id, network_interface_id, record): ...

    # attributes and tags

    @abc.abstractmethod
    def set_nic_delete_on_termination(self, nic_id, attachment_id, value): ...

    @abc.abstractmethod
    def set_instance_attribute(self, instance_id, attribute: InstanceAttribute, value): ...

    @abc.abstractmethod
    def tag_resource(self, resource_id, tags): ...

    # remote commands

    @abc.abstractmethod
    def run_remote_command(self, instance_id, commands): ...

    @abc.abstractmethod
    def await_remote_command(self, instance_id, command_id, timeout): ...

    @abc.abstractmethod
    def await_remote_agent_ready(self, instance_id, timeout): ...


def _error_code_of(response):
    return (response or {}).get("Error", {}).get("Code", "")


def _error_code(err: ClientError):
    return _error_code_of(err.response)


def _instance_state(response):
    for reservation in (response or {}).get("Reservations", []):
        for instance in reservation.get("Instances", []):
            return instance.get("State", {}).get("Name")
    return None


def _image_state(response):
    images = (response or {}).get("Images", [])
    return images[0].get("State") if images else None


def _command_status(response):
    return (response or {}).get("Status")


class AwsResourceGateway(ResourceGateway):
    """EC2 + SSM implementation on top of boto3."""

    def __init__(
        self,
        region: str | None = None,
        profile: str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        session=None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        try:
            if session is None:
                session = boto3.Session(profile_name=profile, region_name=region) if profile else boto3.Session(region_name=region)
            self.ec2 = session.client("ec2", region_name=region)
            self.ssm = session.client("ssm", region_name=region)
        except BotoCoreError as e:
            raise GatewayError(f"Cannot create AWS clients: {e}") from e
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _poll(self, fetch, done, timeout, description, failed=None):
        return poll_until(
            fetch,
            done,
            timeout,
            description,
            failed=failed,
            interval=self.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )

    @staticmethod
    def _call(operation, fn, **kwargs):
        log.debug("About to run %s %s", operation, kwargs)
        try:
            return fn(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"{operation} failed: {e}") from e

    def _waiter_config(self, timeout):
        delay = max(1, int(self.poll_interval))
        return {"Delay": delay, "MaxAttempts": max(1, math.ceil(timeout / delay))}

    def _wait(self, client, waiter_name, description, timeout, last_state, **params):
        """
        Block on a boto3 waiter.

        Max attempts exceeded becomes WaitTimedOut, a terminal acceptor match
        becomes OperationFailed. Error responses no acceptor handles are
        raised as GatewayError with the botocore error attached.
        """
        log.debug("Waiting for %s (%s, timeout %ss)", description, waiter_name, timeout)
        waiter = client.get_waiter(waiter_name)
        try:
            waiter.wait(WaiterConfig=self._waiter_config(timeout), **params)
        except WaiterError as e:
            reason = e.kwargs.get("reason") or ""
            state = last_state(e.last_response)
            if "Max attempts exceeded" in reason:
                raise WaitTimedOut(description, timeout, last_state=state) from e
            if "terminal failure state" in reason:
                raise OperationFailed(f"{description} failed (state: {state})") from e
            raise GatewayError(f"Waiting for {description} failed: {reason}") from e
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"Waiting for {description} failed: {e}") from e

    # reads

    def find_instances_by_private_ip(self, private_ip):
        paginator = self.ec2.get_paginator("describe_instances")
        filters = [
            {"Name": "private-ip-address", "Values": [private_ip]},
            {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
        ]
        instances = []
        try:
            for page in paginator.paginate(Filters=filters):
                for reservation in page.get("Reservations", []):
                    instances.extend(reservation.get("Instances", []))
        except (ClientError, BotoCoreError) as e:
            raise GatewayError(f"DescribeInstances for {private_ip} failed: {e}") from e
        return instances

    def describe_instance(self, instance_id):
        try:
            resp = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) == INSTANCE_NOT_FOUND:
                return None
            raise GatewayError(f"DescribeInstances for {instance_id} failed: {e}") from e
        except BotoCoreError as e:
            raise GatewayError(f"DescribeInstances for {instance_id} failed: {e}") from e
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def describe_volumes(self, volume_ids):
        if not volume_ids:
            return []
        resp = self._call("DescribeVolumes", self.ec2.describe_volumes, VolumeIds=list(volume_ids))
        return resp.get("Volumes", [])

    def get_instance_attribute(self, instance_id, attribute):
        resp = self._call(
            "DescribeInstanceAttribute",
            self.ec2.describe_instance_attribute,
            InstanceId=instance_id,
            Attribute=attribute.value,
        )
        return resp.get(_attribute_key(attribute), {}).get("Value")

    def remote_agent_status(self, instance_id):
        resp = self._call(
            "DescribeInstanceInformation",
            self.ssm.describe_instance_information,
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
        )
        for info in resp.get("InstanceInformationList", []):
            if info.get("InstanceId") == instance_id:
                return info.get("PingStatus")
        return None

    def remote_command_status(self, command_id):
        resp = self._call(
            "ListCommandInvocations",
            self.ssm.list_command_invocations,
            CommandId=command_id,
            Details=True,
        )
        invocations = resp.get("CommandInvocations", [])
        return invocations[0].get("Status") if invocations else None

    # power state

    def stop_instance(self, instance_id):
        self._call("StopInstances", self.ec2.stop_instances, InstanceIds=[instance_id])

    def start_instance(self, instance_id):
        self._call("StartInstances", self.ec2.start_instances, InstanceIds=[instance_id])

    def await_power_state(self, instance_id, target, timeout):
        # instance_running retries InvalidInstanceID.NotFound right after RunInstances.
        self._wait(
            self.ec2,
            POWER_STATE_WAITERS[target],
            f"instance {instance_id} to be {target.value}",
            timeout,
            _instance_state,
            InstanceIds=[instance_id],
        )
        return target.value

    # images and instances

    def create_backup_image(self, instance_id, name, description, tags):
        resp = self._call(
            "CreateImage",
            self.ec2.create_image,
            InstanceId=instance_id,
            Name=name,
            Description=description,
            NoReboot=True,
            TagSpecifications=[
                {"ResourceType": "image", "Tags": api_tags(tags)},
                {"ResourceType": "snapshot", "Tags": api_tags(tags)},
            ],
        )
        image_id = resp.get("ImageId")
        if not image_id:
            raise GatewayError(f"CreateImage for {instance_id} returned no image id")
        log.debug("Created AMI: %s", image_id)
        return image_id

    def await_image_ready(self, image_id, timeout):
        description = f"AMI {image_id} creation"
        # A freshly registered image can lag behind in DescribeImages;
        # image_exists retries InvalidAMIID.NotFound, image_available does not.
        self._wait(self.ec2, "image_exists", description, timeout, _image_state, ImageIds=[image_id])
        self._wait(self.ec2, "image_available", description, timeout, _image_state, ImageIds=[image_id])
        return "available"

    def terminate_instance(self, instance_id):
        self._call("TerminateInstances", self.ec2.terminate_instances, InstanceIds=[instance_id])

    def await_terminated(self, instance_id, timeout):
        try:
            self._wait(
                self.ec2,
                "instance_terminated",
                f"instance {instance_id} to terminate",
                timeout,
                _instance_state,
                InstanceIds=[instance_id],
            )
        except GatewayError as e:
            # An instance reaped from the inventory counts as terminated.
            cause = e.__cause__
            if isinstance(cause, WaiterError) and _error_code_of(cause.last_response) == INSTANCE_NOT_FOUND:
                log.debug("Instance %s no longer exists", instance_id)
                return None
            raise
        return "terminated"

    def create_instance_from_image(self, image_id, network_interface_id, record):
        launch_spec = {
            "ImageId": image_id,
            "InstanceType": record.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "NetworkInterfaces": [{"NetworkInterfaceId": network_interface_id, "DeviceIndex": 0}],
        }
        if record.key_pair:
            launch_spec["KeyName"] = record.key_pair
        if record.iam_role_arn:
            launch_spec["IamInstanceProfile"] = {"Arn": record.iam_role_arn}
        if record.tags:
            launch_spec["TagSpecifications"] = [{"ResourceType": "instance", "Tags": api_tags(record.tags)}]
        if record.volumes:
            launch_spec["BlockDeviceMappings"] = [v.to_block_device_mapping() for v in record.volumes]
        if record.capacity_reservation:
            launch_spec["CapacityReservationSpecification"] = record.capacity_reservation
        if record.placement:
            launch_spec["Placement"] = dict(record.placement)

        resp = self._call("RunInstances", self.ec2.run_instances, **launch_spec)
        instance_id = resp["Instances"][0]["InstanceId"]
        log.debug("Created instance: %s", instance_id)
        return instance_id

    # attributes and tags

    def set_nic_delete_on_termination(self, nic_id, attachment_id, value):
        self._call(
            "ModifyNetworkInterfaceAttribute",
            self.ec2.modify_network_interface_attribute,
            NetworkInterfaceId=nic_id,
            Attachment={"AttachmentId": attachment_id, "DeleteOnTermination": value},
        )

    def set_instance_attribute(self, instance_id, attribute, value):
        self._call(
            "ModifyInstanceAttribute",
            self.ec2.modify_instance_attribute,
            InstanceId=instance_id,
            **{_attribute_key(attribute): {"Value": value}},
        )

    def tag_resource(self, resource_id, tags):
        self._call("CreateTags", self.ec2.create_tags, Resources=[resource_id], Tags=api_tags(tags))

    # remote commands

    def run_remote_command(self, instance_id, commands):
        resp = self._call(
            "SendCommand",
            self.ssm.send_command,
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Parameters={"commands": list(commands)},
        )
        return resp["Command"]["CommandId"]

    def await_remote_command(self, instance_id, command_id, timeout):
        self._wait(
            self.ssm,
            "command_executed",
            f"remote command {command_id} on instance {instance_id} to complete",
            timeout,
            _command_status,
            CommandId=command_id,
            InstanceId=instance_id,
        )
        return COMMAND_SUCCESS

    def await_remote_agent_ready(self, instance_id, timeout):
        return self._poll(
            lambda: self.remote_agent_status(instance_id),
            lambda s: s == AGENT_ONLINE,
            timeout,
            f"remote agent on instance {instance_id}",
        )


def _attribute_key(attribute):
    # disableApiTermination -> DisableApiTermination
    name = attribute.value
    return name[0].upper() + name[1:]
