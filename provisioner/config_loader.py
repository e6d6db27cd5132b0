# provisioner/config_loader.py
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

RUNTIME_CONFIG_PATH = Path("config/runtime.yaml")

MODES = ("start", "stop")

STRING_FIELDS = (
    "mode",
    "ec2_image_id",
    "ec2_instance_type",
    "subnet_id",
    "security_group_id",
    "iam_role_name",
    "runner_home_dir",
    "ec2_instance_id",
    "label",
    "aws_region",
    "github_owner",
    "github_repo",
    "github_host",
)


class ConfigurationError(ValueError):
    """Raised when the runner configuration is missing or malformed."""


@dataclass(frozen=True)
class RunnerConfig:
    mode: str
    ec2_image_id: str | None = None
    ec2_instance_type: str | None = None
    subnet_id: str | None = None
    security_group_id: str | None = None
    iam_role_name: str | None = None
    runner_home_dir: str | None = None
    ec2_instance_id: str | None = None
    label: str | None = None
    aws_region: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_host: str = "github.com"
    aws_resource_tags: list = field(default_factory=list)

    def __post_init__(self):
        for name in STRING_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(f"{name} must be a string, got {type(value).__name__} {value!r}")

        if not isinstance(self.aws_resource_tags, list):
            raise ConfigurationError("aws_resource_tags must be a list of {'Key', 'Value'} objects")

        if self.mode not in MODES:
            raise ConfigurationError(f"mode must be one of {MODES}, got {self.mode!r}")

        for tag in self.aws_resource_tags:
            if not isinstance(tag, dict) or "Key" not in tag or "Value" not in tag:
                raise ConfigurationError(f"Invalid AWS resource tag {tag!r}; expected {{'Key': ..., 'Value': ...}}")

        if self.mode == "start":
            missing = [
                name
                for name in ("ec2_image_id", "ec2_instance_type", "security_group_id", "github_owner", "github_repo")
                if not getattr(self, name)
            ]
            if missing:
                raise ConfigurationError(f"start mode requires: {', '.join(missing)}")
        else:
            if not self.ec2_instance_id:
                raise ConfigurationError("stop mode requires: ec2_instance_id")

    @property
    def tag_specifications(self):
        """
        Tag specifications for run_instances: the configured tags are applied
        to both the instance and its volumes.
        """
        if not self.aws_resource_tags:
            return []
        tags = [dict(tag) for tag in self.aws_resource_tags]
        return [
            {"ResourceType": "instance", "Tags": tags},
            {"ResourceType": "volume", "Tags": [dict(tag) for tag in tags]},
        ]

    @property
    def repository_url(self):
        return f"https://{self.github_host}/{self.github_owner}/{self.github_repo}"


def _parse_tags(raw):
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"AWS resource tags are not valid JSON: {e}")
    if not isinstance(raw, list):
        raise ConfigurationError("AWS resource tags must be a list of {'Key', 'Value'} objects")
    return raw


def _subnet_text(raw):
    # YAML may list subnets instead of giving comma-separated text
    if isinstance(raw, list):
        if not all(isinstance(s, str) for s in raw):
            raise ConfigurationError(f"subnet_id entries must be strings, got {raw!r}")
        return ",".join(raw)
    return raw


def _split_repository(repository):
    if not repository:
        return None, None
    if not isinstance(repository, str):
        raise ConfigurationError(f"Repository must look like 'owner/repo', got {repository!r}")
    owner, sep, repo = repository.partition("/")
    if not sep or not owner or not repo:
        raise ConfigurationError(f"Repository must look like 'owner/repo', got {repository!r}")
    return owner, repo


def load_runtime_config(overrides=None, path=None):
    """
    Loads the runner configuration.
    Priority:
      1) explicit overrides (CLI flags), when not None
      2) Environment variables
      3) config/runtime.yaml (if present)
    """
    cfg = {}
    config_path = Path(path) if path else RUNTIME_CONFIG_PATH

    if config_path.exists():
        with open(config_path) as f:
            cfg = yaml.safe_load(f) or {}

    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def pick(key, env_var):
        if key in overrides:
            return overrides[key]
        return os.getenv(env_var) or cfg.get(key)

    repository = pick("github_repository", "GITHUB_REPOSITORY")
    github_owner, github_repo = _split_repository(repository)

    return RunnerConfig(
        mode=pick("mode", "MODE") or "start",
        ec2_image_id=pick("ec2_image_id", "EC2_IMAGE_ID"),
        ec2_instance_type=pick("ec2_instance_type", "EC2_INSTANCE_TYPE"),
        subnet_id=_subnet_text(pick("subnet_id", "SUBNET_ID")),
        security_group_id=pick("security_group_id", "SECURITY_GROUP_ID"),
        iam_role_name=pick("iam_role_name", "IAM_ROLE_NAME"),
        runner_home_dir=pick("runner_home_dir", "RUNNER_HOME_DIR"),
        ec2_instance_id=pick("ec2_instance_id", "EC2_INSTANCE_ID"),
        label=pick("label", "LABEL"),
        aws_region=pick("aws_region", "AWS_REGION"),
        github_owner=github_owner,
        github_repo=github_repo,
        github_host=pick("github_host", "GITHUB_HOST") or "github.com",
        aws_resource_tags=_parse_tags(pick("aws_resource_tags", "AWS_RESOURCE_TAGS")),
    )
