# provisioner/main.py
import argparse
import logging
import logging.config
import os
import random
import string
import sys

import yaml
from botocore.exceptions import BotoCoreError, ClientError

from provisioner import status
from provisioner.config_loader import ConfigurationError, load_runtime_config
from provisioner.instance_manager import start_instance, terminate_instance, wait_for_instance_running

log = logging.getLogger("provisioner.main")


def load_logging_config(path="config/logging.yaml"):
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f)
        logging.config.dictConfig(cfg)
    except (OSError, yaml.YAMLError, ValueError, TypeError):
        logging.basicConfig(
            level=logging.INFO,
            format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","msg":"%(message)s"}',
        )


def generate_label(length=5):
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def build_parser():
    parser = argparse.ArgumentParser(description="Start or stop an ephemeral EC2 instance running a GitHub Actions runner.")
    parser.add_argument("--mode", choices=["start", "stop"], help="start a runner instance or stop one (default start)")
    parser.add_argument("--config", help="Runtime config YAML path (default config/runtime.yaml)")
    parser.add_argument("--logging-config", default="config/logging.yaml", help="Logging config YAML path")
    parser.add_argument("--registration-token", help="One-time runner registration token (or env RUNNER_REGISTRATION_TOKEN)")
    parser.add_argument("--github-repository", help="Target repository as owner/repo (or env GITHUB_REPOSITORY)")
    parser.add_argument("--ec2-image-id", help="AMI ID for the runner instance")
    parser.add_argument("--ec2-instance-type", help="Instance type for the runner instance")
    parser.add_argument("--subnet-id", help="Subnet ID, or comma-separated subnet IDs tried in order")
    parser.add_argument("--security-group-id", help="Security group ID for the runner instance")
    parser.add_argument("--iam-role-name", help="IAM instance profile name")
    parser.add_argument("--runner-home-dir", help="Directory of a pre-installed actions-runner on the AMI")
    parser.add_argument("--aws-resource-tags", help='JSON list of tags, e.g. [{"Key": "Name", "Value": "runner"}]')
    parser.add_argument("--aws-region", help="AWS region (defaults to the boto3 session region)")
    parser.add_argument("--label", help="Runner label (generated when omitted in start mode)")
    parser.add_argument("--ec2-instance-id", help="Instance ID to terminate (stop mode)")
    return parser


def run_start(config, registration_token):
    if not registration_token:
        status.set_failed("A runner registration token is required in start mode")
        return None

    label = config.label or generate_label()
    instance_id = start_instance(config, label, registration_token)
    if not instance_id:
        return None

    # recorded before the wait so a stop step can still clean up a stuck instance
    status.set_output("label", label)
    status.set_output("ec2-instance-id", instance_id)
    wait_for_instance_running(config, instance_id)
    return instance_id


def run_stop(config):
    terminate_instance(config)


def main(argv=None):
    args = build_parser().parse_args(argv)

    load_logging_config(args.logging_config)

    overrides = {
        "mode": args.mode,
        "github_repository": args.github_repository,
        "ec2_image_id": args.ec2_image_id,
        "ec2_instance_type": args.ec2_instance_type,
        "subnet_id": args.subnet_id,
        "security_group_id": args.security_group_id,
        "iam_role_name": args.iam_role_name,
        "runner_home_dir": args.runner_home_dir,
        "aws_resource_tags": args.aws_resource_tags,
        "aws_region": args.aws_region,
        "label": args.label,
        "ec2_instance_id": args.ec2_instance_id,
    }

    try:
        config = load_runtime_config(overrides, path=args.config)
    except ConfigurationError as e:
        status.set_failed(f"Invalid configuration: {e}")
        return 1

    log.info("Running in %s mode", config.mode)

    try:
        if config.mode == "start":
            registration_token = args.registration_token or os.getenv("RUNNER_REGISTRATION_TOKEN")
            run_start(config, registration_token)
        else:
            run_stop(config)
    except (ClientError, BotoCoreError) as e:
        status.set_failed(str(e))

    return 1 if status.has_failed() else 0


if __name__ == "__main__":
    sys.exit(main())
