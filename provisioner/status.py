# provisioner/status.py
"""
Pipeline status reporting.

Messages go through the standard logging module; set_failed marks the run as
failed without raising so the caller decides the exit code. Step outputs are
appended to the file named by GITHUB_OUTPUT when the runner provides one.
"""
import logging
import os

log = logging.getLogger("provisioner.status")

_failures = []


def set_failed(message):
    _failures.append(message)
    log.error(message)


def has_failed():
    return bool(_failures)


def failures():
    return list(_failures)


def reset():
    _failures.clear()


def set_output(name, value):
    output_path = os.getenv("GITHUB_OUTPUT")
    if output_path:
        with open(output_path, "a") as f:
            f.write(f"{name}={value}\n")
    log.info("Output %s=%s", name, value)
