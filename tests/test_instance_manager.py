import base64
import unittest
from unittest.mock import patch, MagicMock

from botocore.exceptions import ClientError, WaiterError

from provisioner import status
from provisioner.config_loader import RunnerConfig
from provisioner.instance_manager import (
    resolve_subnets,
    start_instance,
    terminate_instance,
    wait_for_instance_running,
)


def client_error(code="InsufficientInstanceCapacity", operation="RunInstances"):
    return ClientError({"Error": {"Code": code, "Message": "no capacity"}}, operation)


def make_config(**overrides):
    values = {
        "mode": "start",
        "ec2_image_id": "ami-123",
        "ec2_instance_type": "t3.micro",
        "security_group_id": "sg-123",
        "iam_role_name": "runner-role",
        "github_owner": "octo",
        "github_repo": "demo",
    }
    values.update(overrides)
    return RunnerConfig(**values)


class TestResolveSubnets(unittest.TestCase):
    def test_comma_separated_whitespace_stripped(self):
        self.assertEqual(resolve_subnets("subnet-a, subnet-b"), ["subnet-a", "subnet-b"])

    def test_unset_uses_default(self):
        self.assertEqual(resolve_subnets(None), [None])
        self.assertEqual(resolve_subnets(""), [None])

    def test_empty_entries_dropped(self):
        self.assertEqual(resolve_subnets("subnet-a,, "), ["subnet-a"])
        self.assertEqual(resolve_subnets(" , "), [None])


class TestStartInstance(unittest.TestCase):
    def setUp(self):
        status.reset()
        patcher = patch("provisioner.instance_manager.boto3.client")
        self.mock_client_factory = patcher.start()
        self.addCleanup(patcher.stop)
        self.ec2 = MagicMock()
        self.mock_client_factory.return_value = self.ec2

    def test_launch_params(self):
        self.ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        config = make_config(
            subnet_id="subnet-a",
            aws_region="eu-west-1",
            aws_resource_tags=[{"Key": "Name", "Value": "runner"}],
        )

        instance_id = start_instance(config, "lbl", "tok")

        self.assertEqual(instance_id, "i-1")
        self.mock_client_factory.assert_called_once_with("ec2", region_name="eu-west-1")
        kwargs = self.ec2.run_instances.call_args.kwargs
        self.assertEqual(kwargs["ImageId"], "ami-123")
        self.assertEqual(kwargs["InstanceType"], "t3.micro")
        self.assertEqual(kwargs["MinCount"], 1)
        self.assertEqual(kwargs["MaxCount"], 1)
        self.assertEqual(kwargs["SubnetId"], "subnet-a")
        self.assertEqual(kwargs["SecurityGroupIds"], ["sg-123"])
        self.assertEqual(kwargs["IamInstanceProfile"], {"Name": "runner-role"})
        self.assertEqual([spec["ResourceType"] for spec in kwargs["TagSpecifications"]], ["instance", "volume"])
        script = base64.b64decode(kwargs["UserData"]).decode("utf-8")
        self.assertTrue(script.startswith("#!/bin/bash\n"))
        self.assertIn("--labels lbl", script)

    def test_default_subnet_omits_subnet_id(self):
        self.ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        start_instance(make_config(iam_role_name=None), "lbl", "tok")
        kwargs = self.ec2.run_instances.call_args.kwargs
        self.assertNotIn("SubnetId", kwargs)
        self.assertNotIn("IamInstanceProfile", kwargs)
        self.assertNotIn("TagSpecifications", kwargs)

    def test_falls_back_to_next_subnet(self):
        self.ec2.run_instances.side_effect = [
            client_error(),
            {"Instances": [{"InstanceId": "i-second"}]},
        ]
        config = make_config(subnet_id="subnet-a, subnet-b, subnet-c")

        with self.assertLogs("provisioner", level="INFO") as logs:
            instance_id = start_instance(config, "lbl", "tok")

        self.assertEqual(instance_id, "i-second")
        self.assertEqual(self.ec2.run_instances.call_count, 2)
        subnets = [c.kwargs["SubnetId"] for c in self.ec2.run_instances.call_args_list]
        self.assertEqual(subnets, ["subnet-a", "subnet-b"])
        warnings = [r for r in logs.records if r.levelname == "WARNING"]
        infos = [r for r in logs.records if r.levelname == "INFO"]
        self.assertEqual(len(warnings), 1)
        self.assertIn("InsufficientInstanceCapacity", warnings[0].getMessage())
        self.assertEqual(len(infos), 1)
        self.assertIn("i-second", infos[0].getMessage())
        self.assertFalse(status.has_failed())

    def test_all_subnets_fail(self):
        self.ec2.run_instances.side_effect = client_error()
        config = make_config(subnet_id="subnet-a,subnet-b")

        with self.assertLogs("provisioner", level="INFO") as logs:
            instance_id = start_instance(config, "lbl", "tok")

        self.assertIsNone(instance_id)
        self.assertEqual(self.ec2.run_instances.call_count, 2)
        self.assertEqual(status.failures(), ["Failed to launch instance after trying in 2 subnets."])
        warnings = [r for r in logs.records if r.levelname == "WARNING"]
        self.assertEqual(len(warnings), 2)


class TestWaitAndTerminate(unittest.TestCase):
    def setUp(self):
        patcher = patch("provisioner.instance_manager.boto3.client")
        self.mock_client_factory = patcher.start()
        self.addCleanup(patcher.stop)
        self.ec2 = MagicMock()
        self.mock_client_factory.return_value = self.ec2

    def test_wait_success(self):
        waiter = self.ec2.get_waiter.return_value
        with self.assertLogs("provisioner.instance_manager", level="INFO") as logs:
            wait_for_instance_running(make_config(), "i-1")
        self.ec2.get_waiter.assert_called_once_with("instance_running")
        waiter.wait.assert_called_once_with(InstanceIds=["i-1"])
        self.assertIn("i-1 is up and running", logs.output[0])

    def test_wait_failure_reraised(self):
        error = WaiterError(name="InstanceRunning", reason="Max attempts exceeded", last_response={})
        self.ec2.get_waiter.return_value.wait.side_effect = error

        with self.assertLogs("provisioner.instance_manager", level="ERROR") as logs:
            with self.assertRaises(WaiterError) as ctx:
                wait_for_instance_running(make_config(), "i-1")

        self.assertIs(ctx.exception, error)
        self.assertEqual(len(logs.records), 1)
        self.assertIn("i-1", logs.records[0].getMessage())

    def test_terminate_success(self):
        config = make_config(mode="stop", label="lbl", ec2_instance_id="i-9")
        with self.assertLogs("provisioner.instance_manager", level="INFO") as logs:
            terminate_instance(config)
        self.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-9"])
        self.assertIn("i-9 is terminated", logs.output[0])

    def test_terminate_failure_reraised(self):
        error = client_error("InvalidInstanceID.NotFound", "TerminateInstances")
        self.ec2.terminate_instances.side_effect = error
        config = make_config(mode="stop", label="lbl", ec2_instance_id="i-9")

        with self.assertLogs("provisioner.instance_manager", level="ERROR") as logs:
            with self.assertRaises(ClientError) as ctx:
                terminate_instance(config)

        self.assertIs(ctx.exception, error)
        self.assertIn("i-9", logs.records[0].getMessage())


if __name__ == '__main__':
    unittest.main()
