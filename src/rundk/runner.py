from __future__ import annotations

import time
from typing import Callable

import click

from rundk import docker
from rundk.errors import ContainerExecutionFailedError, ImagePullFailedError
from rundk.log import LOGGER

RUNNER_ENTRYPOINT = "runner.sh"
DEFAULT_GRACE_SECONDS = 3


def pull_image(image: str) -> None:
    cmd = [docker.DOCKER_COMMAND, "pull", image]
    try:
        returncode = docker._call(cmd)
    except OSError as exc:
        raise ImagePullFailedError(f"Unable to start image pull for {image}: {exc}") from exc
    if returncode != 0:
        raise ImagePullFailedError(f"Image pull for {image} failed with exit code {returncode}")


def execute(invocation: docker.Invocation) -> int:
    try:
        return docker._stream(invocation.argv, invocation.log_file)
    except OSError as exc:
        raise ContainerExecutionFailedError(f"Unable to start container run: {exc}") from exc


def run(
    command: docker.DockerCommand,
    image: str,
    *extra_args: str,
    grace_seconds: int = DEFAULT_GRACE_SECONDS,
    sleep: Callable[[float], None] | None = None,
) -> int:
    try:
        pull_image(image)
    except ImagePullFailedError as exc:
        LOGGER.warning("%s; continuing with the local image if one exists", exc.message)

    invocation = command.finalize(image, RUNNER_ENTRYPOINT, *extra_args)
    click.echo(invocation.render())
    click.echo(f"Starting in {grace_seconds} seconds, ^C to abort!")
    (sleep or time.sleep)(grace_seconds)

    returncode = execute(invocation)
    if returncode != 0:
        LOGGER.error("Container run exited with status %d", returncode)
    return returncode
