# provisioner/user_data.py
import base64

RUNNER_VERSION = "2.307.1"

ARCH_CASE = (
    'case $(uname -m) in aarch64) ARCH="arm64" ;; amd64|x86_64) ARCH="x64" ;; '
    '*) echo "Unsupported architecture: $(uname -m)" >&2; exit 1 ;; esac && export RUNNER_ARCH=${ARCH}'
)


def _register_and_run(registration_token, label, config):
    return [
        "export RUNNER_ALLOW_RUNASROOT=1",
        f"./config.sh --url {config.repository_url} --token {registration_token} "
        f"--pat {registration_token} --labels {label} --unattended --ephemeral",
        "./run.sh",
    ]


def build_user_data_script(registration_token, label, config):
    """
    Build the boot script run as root by cloud-init on the new instance.

    With runner_home_dir set the AMI is expected to ship the actions-runner
    software already, so the script only changes into that directory before
    registering. Otherwise the pinned runner release is downloaded first.
    """
    lines = ["#!/bin/bash", "set -x"]

    if config.runner_home_dir:
        lines.append(f'cd "{config.runner_home_dir}"')
    else:
        archive = f"actions-runner-linux-${{RUNNER_ARCH}}-{RUNNER_VERSION}.tar.gz"
        lines.extend([
            "mkdir actions-runner && cd actions-runner",
            ARCH_CASE,
            f"curl -O -L https://github.com/actions/runner/releases/download/v{RUNNER_VERSION}/{archive}",
            f"tar xzf ./{archive}",
        ])

    lines.extend(_register_and_run(registration_token, label, config))
    return lines


def encode_user_data(lines):
    return base64.b64encode("\n".join(lines).encode("utf-8")).decode("ascii")
