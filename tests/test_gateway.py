import itertools
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import (
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    ProfileNotFound,
    ReadTimeoutError,
    WaiterError,
)

from nicswap.errors import GatewayError, OperationFailed, WaitTimedOut
from nicswap.gateway import AwsResourceGateway
from nicswap.models import EbsSpec, InstanceAttribute, MigrationRecord, PowerState, VolumeSpec

TERMINAL_REASON = 'Waiter encountered a terminal failure state: For expression "State" we matched expected path: "failed"'


def client_error(code, operation="DescribeInstances"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def waiter_error(name, reason, last_response):
    return WaiterError(name=name, reason=reason, last_response=last_response)


def reservations(*states):
    return {"Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": s}}]} for s in states]}


class GatewayTestCase(unittest.TestCase):
    def setUp(self):
        self.ec2 = MagicMock()
        self.ssm = MagicMock()
        session = MagicMock()
        session.client.side_effect = lambda name, region_name=None: {"ec2": self.ec2, "ssm": self.ssm}[name]
        self.sleeps = []
        clock = itertools.count(0, 10)
        self.gateway = AwsResourceGateway(
            region="us-east-1",
            poll_interval=10,
            session=session,
            sleep=self.sleeps.append,
            clock=lambda: next(clock),
        )


class TestSession(unittest.TestCase):
    @patch("nicswap.gateway.boto3.Session")
    def test_profile_is_passed_to_session(self, mock_session):
        """Named profile selects credentials"""
        AwsResourceGateway(region="eu-west-1", profile="dr")
        mock_session.assert_called_once_with(profile_name="dr", region_name="eu-west-1")
        mock_session.return_value.client.assert_any_call("ec2", region_name="eu-west-1")
        mock_session.return_value.client.assert_any_call("ssm", region_name="eu-west-1")

    @patch("nicswap.gateway.boto3.Session")
    def test_default_credentials(self, mock_session):
        AwsResourceGateway(region="eu-west-1")
        mock_session.assert_called_once_with(region_name="eu-west-1")


class TestReads(GatewayTestCase):
    def test_find_by_private_ip_collects_pages(self):
        """All reservations across pages are returned"""
        paginator = self.ec2.get_paginator.return_value
        paginator.paginate.return_value = [
            {"Reservations": [{"Instances": [{"InstanceId": "i-1"}]}]},
            {"Reservations": [{"Instances": [{"InstanceId": "i-2"}]}]},
        ]

        found = self.gateway.find_instances_by_private_ip("10.0.0.5")

        self.assertEqual([i["InstanceId"] for i in found], ["i-1", "i-2"])
        filters = paginator.paginate.call_args.kwargs["Filters"]
        self.assertIn({"Name": "private-ip-address", "Values": ["10.0.0.5"]}, filters)
        state_filter = [f for f in filters if f["Name"] == "instance-state-name"][0]
        self.assertNotIn("terminated", state_filter["Values"])

    def test_find_wraps_client_error(self):
        self.ec2.get_paginator.return_value.paginate.side_effect = client_error("UnauthorizedOperation")
        with self.assertRaises(GatewayError):
            self.gateway.find_instances_by_private_ip("10.0.0.5")

    def test_describe_missing_instance(self):
        self.ec2.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")
        self.assertIsNone(self.gateway.describe_instance("i-gone"))

    def test_describe_other_error(self):
        self.ec2.describe_instances.side_effect = client_error("RequestLimitExceeded")
        with self.assertRaises(GatewayError):
            self.gateway.describe_instance("i-1")

    def test_describe_volumes_skips_empty_list(self):
        self.assertEqual(self.gateway.describe_volumes([]), [])
        self.ec2.describe_volumes.assert_not_called()

    def test_get_instance_attribute(self):
        self.ec2.describe_instance_attribute.return_value = {"DisableApiStop": {"Value": True}}
        value = self.gateway.get_instance_attribute("i-1", InstanceAttribute.DISABLE_API_STOP)
        self.assertTrue(value)
        self.ec2.describe_instance_attribute.assert_called_once_with(InstanceId="i-1", Attribute="disableApiStop")

    def test_remote_agent_status(self):
        self.ssm.describe_instance_information.return_value = {
            "InstanceInformationList": [{"InstanceId": "i-1", "PingStatus": "ConnectionLost"}]
        }
        self.assertEqual(self.gateway.remote_agent_status("i-1"), "ConnectionLost")

    def test_remote_agent_not_registered(self):
        self.ssm.describe_instance_information.return_value = {"InstanceInformationList": []}
        self.assertIsNone(self.gateway.remote_agent_status("i-1"))


class TestWaits(GatewayTestCase):
    def setUp(self):
        super().setUp()
        self.waiters = {}
        self.ec2.get_waiter.side_effect = self.waiter
        self.ssm.get_waiter.side_effect = self.waiter

    def waiter(self, name):
        return self.waiters.setdefault(name, MagicMock())

    def test_wait_for_stopped_uses_waiter(self):
        """Polling interval and timeout are handed to the boto3 waiter"""
        self.assertEqual(self.gateway.await_power_state("i-1", PowerState.STOPPED, 300), "stopped")
        self.waiters["instance_stopped"].wait.assert_called_once_with(
            InstanceIds=["i-1"], WaiterConfig={"Delay": 10, "MaxAttempts": 30}
        )

    def test_max_attempts_is_rounded_up(self):
        self.gateway.await_running("i-1", 25)
        config = self.waiters["instance_running"].wait.call_args.kwargs["WaiterConfig"]
        self.assertEqual(config["MaxAttempts"], 3)

    def test_wait_times_out(self):
        self.waiter("instance_stopped").wait.side_effect = waiter_error(
            "InstanceStopped", "Max attempts exceeded", reservations("stopping")
        )
        with self.assertRaises(WaitTimedOut) as ctx:
            self.gateway.await_power_state("i-1", PowerState.STOPPED, 30)
        self.assertEqual(ctx.exception.last_state, "stopping")
        self.assertEqual(ctx.exception.timeout, 30)

    def test_running_wait_fails_on_termination(self):
        self.waiter("instance_running").wait.side_effect = waiter_error(
            "InstanceRunning", TERMINAL_REASON, reservations("shutting-down")
        )
        with self.assertRaises(OperationFailed) as ctx:
            self.gateway.await_running("i-1", 600)
        self.assertNotIsInstance(ctx.exception, WaitTimedOut)

    def test_terminated_when_instance_disappears(self):
        self.waiter("instance_terminated").wait.side_effect = waiter_error(
            "InstanceTerminated",
            "An error occurred (InvalidInstanceID.NotFound): The instance ID 'i-1' does not exist",
            {"Error": {"Code": "InvalidInstanceID.NotFound"}},
        )
        self.assertIsNone(self.gateway.await_terminated("i-1", 300))

    def test_terminate_wait_other_error(self):
        self.waiter("instance_terminated").wait.side_effect = waiter_error(
            "InstanceTerminated",
            "An error occurred (UnauthorizedOperation): denied",
            {"Error": {"Code": "UnauthorizedOperation"}},
        )
        with self.assertRaises(GatewayError):
            self.gateway.await_terminated("i-1", 300)

    def test_image_waits_for_existence_then_availability(self):
        self.assertEqual(self.gateway.await_image_ready("ami-1", 1800), "available")
        self.waiters["image_exists"].wait.assert_called_once()
        self.waiters["image_available"].wait.assert_called_once_with(
            ImageIds=["ami-1"], WaiterConfig={"Delay": 10, "MaxAttempts": 180}
        )

    def test_image_failure_is_distinct_from_timeout(self):
        self.waiter("image_available").wait.side_effect = waiter_error(
            "ImageAvailable", TERMINAL_REASON, {"Images": [{"State": "failed"}]}
        )
        with self.assertRaises(OperationFailed) as ctx:
            self.gateway.await_image_ready("ami-1", 1800)
        self.assertIn("failed", str(ctx.exception))

    def test_remote_command_uses_ssm_waiter(self):
        self.assertEqual(self.gateway.await_remote_command("i-1", "cmd-1", 240), "Success")
        self.waiters["command_executed"].wait.assert_called_once_with(
            CommandId="cmd-1", InstanceId="i-1", WaiterConfig={"Delay": 10, "MaxAttempts": 24}
        )

    def test_remote_command_failure(self):
        self.waiter("command_executed").wait.side_effect = waiter_error(
            "CommandExecuted", TERMINAL_REASON, {"Status": "Failed"}
        )
        with self.assertRaises(OperationFailed):
            self.gateway.await_remote_command("i-1", "cmd-1", 240)

    def test_waiter_transport_error(self):
        self.waiter("instance_stopped").wait.side_effect = EndpointConnectionError(
            endpoint_url="https://ec2.us-east-1.amazonaws.com"
        )
        with self.assertRaises(GatewayError):
            self.gateway.await_power_state("i-1", PowerState.STOPPED, 300)

    def test_agent_ready_polls_ping_status(self):
        """The SSM agent has no waiter; its ping status is polled"""
        self.ssm.describe_instance_information.side_effect = [
            {"InstanceInformationList": []},
            {"InstanceInformationList": [{"InstanceId": "i-1", "PingStatus": "Online"}]},
        ]
        self.assertEqual(self.gateway.await_remote_agent_ready("i-1", 600), "Online")
        self.assertEqual(self.sleeps, [10])


class TestTransportErrors(GatewayTestCase):
    def test_send_command_connection_error(self):
        """Network failures surface as GatewayError like API errors do"""
        self.ssm.send_command.side_effect = EndpointConnectionError(endpoint_url="https://ssm.us-east-1.amazonaws.com")
        with self.assertRaises(GatewayError):
            self.gateway.run_remote_command("i-1", ["uptime"])

    def test_find_without_credentials(self):
        self.ec2.get_paginator.return_value.paginate.side_effect = NoCredentialsError()
        with self.assertRaises(GatewayError):
            self.gateway.find_instances_by_private_ip("10.0.0.5")

    def test_describe_read_timeout(self):
        self.ec2.describe_instances.side_effect = ReadTimeoutError(endpoint_url="https://ec2.us-east-1.amazonaws.com")
        with self.assertRaises(GatewayError):
            self.gateway.describe_instance("i-1")

    @patch("nicswap.gateway.boto3.Session")
    def test_unknown_profile(self, mock_session):
        mock_session.side_effect = ProfileNotFound(profile="dr")
        with self.assertRaises(GatewayError):
            AwsResourceGateway(region="us-east-1", profile="dr")


class TestMutations(GatewayTestCase):
    def test_create_backup_image(self):
        self.ec2.create_image.return_value = {"ImageId": "ami-123"}
        image_id = self.gateway.create_backup_image(
            "i-1", "WindowsForMigrationAmi-20240101000000", "backup", [("NIC_REASSIGN_BACKUP", "x")]
        )
        self.assertEqual(image_id, "ami-123")
        kwargs = self.ec2.create_image.call_args.kwargs
        self.assertTrue(kwargs["NoReboot"])
        self.assertEqual(
            [spec["ResourceType"] for spec in kwargs["TagSpecifications"]], ["image", "snapshot"]
        )

    def test_create_instance_from_image(self):
        """The launch request carries the captured configuration"""
        self.ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-new"}]}
        record = MigrationRecord(
            instance_id="i-1",
            private_ip="10.0.0.5",
            subnet_id="subnet-1",
            region="us-east-1",
            network_interface_id="eni-1",
            network_attachment_id="attach-1",
            instance_type="m5.large",
            iam_role_arn="arn:aws:iam::1:instance-profile/zca",
            volumes=(VolumeSpec("/dev/sda1", None, EbsSpec(volume_type="gp3", throughput=250)),),
            placement={"AvailabilityZone": "us-east-1a"},
            tags=(("Name", "zca"),),
        )

        instance_id = self.gateway.create_instance_from_image("ami-1", "eni-2", record)

        self.assertEqual(instance_id, "i-new")
        kwargs = self.ec2.run_instances.call_args.kwargs
        self.assertEqual(kwargs["NetworkInterfaces"], [{"NetworkInterfaceId": "eni-2", "DeviceIndex": 0}])
        self.assertNotIn("KeyName", kwargs)
        self.assertNotIn("CapacityReservationSpecification", kwargs)
        self.assertEqual(kwargs["IamInstanceProfile"], {"Arn": "arn:aws:iam::1:instance-profile/zca"})
        self.assertEqual(
            kwargs["BlockDeviceMappings"],
            [{"DeviceName": "/dev/sda1", "Ebs": {"DeleteOnTermination": False, "VolumeType": "gp3", "Throughput": 250}}],
        )
        self.assertEqual(kwargs["TagSpecifications"][0]["Tags"], [{"Key": "Name", "Value": "zca"}])

    def test_run_instances_error(self):
        self.ec2.run_instances.side_effect = client_error("InvalidNetworkInterface.InUse", "RunInstances")
        record = MigrationRecord("i-1", "10.0.0.5", "subnet-1", "us-east-1", "eni-1", "attach-1", "m5.large")
        with self.assertRaises(GatewayError):
            self.gateway.create_instance_from_image("ami-1", "eni-2", record)

    def test_set_nic_delete_on_termination(self):
        self.gateway.set_nic_delete_on_termination("eni-1", "attach-1", False)
        self.ec2.modify_network_interface_attribute.assert_called_once_with(
            NetworkInterfaceId="eni-1",
            Attachment={"AttachmentId": "attach-1", "DeleteOnTermination": False},
        )

    def test_set_instance_attribute(self):
        self.gateway.set_instance_attribute("i-1", InstanceAttribute.INITIATED_SHUTDOWN_BEHAVIOR, "terminate")
        self.ec2.modify_instance_attribute.assert_called_once_with(
            InstanceId="i-1", InstanceInitiatedShutdownBehavior={"Value": "terminate"}
        )

    def test_run_remote_command(self):
        self.ssm.send_command.return_value = {"Command": {"CommandId": "cmd-1"}}
        self.assertEqual(self.gateway.run_remote_command("i-1", ["uptime"]), "cmd-1")
        kwargs = self.ssm.send_command.call_args.kwargs
        self.assertEqual(kwargs["DocumentName"], "AWS-RunShellScript")
        self.assertEqual(kwargs["Parameters"], {"commands": ["uptime"]})

    def test_stop_wraps_client_error(self):
        self.ec2.stop_instances.side_effect = client_error("OperationNotPermitted", "StopInstances")
        with self.assertRaises(GatewayError):
            self.gateway.stop_instance("i-1")


if __name__ == "__main__":
    unittest.main()
