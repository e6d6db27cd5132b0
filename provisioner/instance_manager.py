# provisioner/instance_manager.py
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from provisioner import status
from provisioner.config_loader import RunnerConfig
from provisioner.user_data import build_user_data_script, encode_user_data

log = logging.getLogger(__name__)


def _ec2_client(config: RunnerConfig):
    return boto3.client("ec2", region_name=config.aws_region)


def resolve_subnets(subnet_id: str | None) -> list[str | None]:
    """
    Split the configured subnet string into launch candidates.
    A single None candidate lets EC2 pick the default subnet.
    """
    if not subnet_id:
        return [None]
    subnets = [s.strip() for s in subnet_id.split(",") if s.strip()]
    return subnets or [None]


def start_instance(config: RunnerConfig, label: str, registration_token: str) -> str | None:
    """
    Launch one runner instance, trying each subnet candidate in order.
    Returns the instance id, or None once every candidate has failed.
    """
    ec2 = _ec2_client(config)

    user_data = encode_user_data(build_user_data_script(registration_token, label, config))
    subnets = resolve_subnets(config.subnet_id)

    launch_spec = {
        "ImageId": config.ec2_image_id,
        "InstanceType": config.ec2_instance_type,
        "UserData": user_data,
        "SecurityGroupIds": [config.security_group_id],
    }
    if config.iam_role_name:
        launch_spec["IamInstanceProfile"] = {"Name": config.iam_role_name}
    tag_specifications = config.tag_specifications
    if tag_specifications:
        launch_spec["TagSpecifications"] = tag_specifications

    for subnet in subnets:
        params = dict(launch_spec)
        if subnet:
            params["SubnetId"] = subnet
        try:
            resp = ec2.run_instances(MinCount=1, MaxCount=1, **params)
        except (ClientError, BotoCoreError) as e:
            log.warning("AWS EC2 instance starting error in subnet %s: %s", subnet or "<default>", e)
            continue

        instance_id = resp["Instances"][0]["InstanceId"]
        log.info("AWS EC2 instance %s is started", instance_id)
        return instance_id

    status.set_failed(f"Failed to launch instance after trying in {len(subnets)} subnets.")
    return None


def wait_for_instance_running(config: RunnerConfig, instance_id: str) -> None:
    ec2 = _ec2_client(config)

    try:
        waiter = ec2.get_waiter("instance_running")
        waiter.wait(InstanceIds=[instance_id])
    except Exception:
        log.error("AWS EC2 instance %s initialization error", instance_id)
        raise
    log.info("AWS EC2 instance %s is up and running", instance_id)


def terminate_instance(config: RunnerConfig) -> None:
    ec2 = _ec2_client(config)
    instance_id = config.ec2_instance_id

    try:
        ec2.terminate_instances(InstanceIds=[instance_id])
    except Exception:
        log.error("AWS EC2 instance %s termination error", instance_id)
        raise
    log.info("AWS EC2 instance %s is terminated", instance_id)
