from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Iterable

import click

from rundk.cleanup import CleanupStack
from rundk.docker import DOCKER_COMMAND, MOUNT_KIND_BIND, DockerCommand
from rundk.environment import EnvironmentProvider, HostEnvironment, bind, normalize_names, split_names
from rundk.errors import DockerNotFoundError, RepoRootResolutionFailedError, TempDirCreationFailedError
from rundk.log import LOGGER
from rundk.runner import DEFAULT_GRACE_SECONDS, run

DEFAULT_TEST_IMAGE = "gcr.io/knative-tests/test-infra/prow-tests:stable"
DEFAULT_MANDATORY_ENV_VARS = "GOOGLE_APPLICATION_CREDENTIALS"
TMP_DIR_PREFIX = "prow-docker."
LOG_FILE_NAME = "build-log.txt"
KUBE_CONFIG_DIR_NAME = ".kube"
CONTAINER_KUBE_CONFIG_DIR = "/root/.kube"
ARTIFACTS_ENV_VAR = "ARTIFACTS"
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")
SIGNAL_EXIT_BASE = 128


def _configure_logging(level: str) -> None:
    normalized = str(level or "info").strip().lower()
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _to_absolute(value: str, cwd: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (cwd / path).resolve()


def resolve_repo_root(cwd: Path | None = None) -> Path:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=str(cwd) if cwd else None,
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError as exc:
        raise RepoRootResolutionFailedError(f"Error getting the repo's root directory: {exc}") from exc
    root = result.stdout.strip()
    if result.returncode != 0 or not root:
        detail = result.stderr.strip() or f"git exited with code {result.returncode}"
        raise RepoRootResolutionFailedError(f"Error getting the repo's root directory: {detail}")
    return Path(root)


def _exit_status(returncode: int) -> int:
    # Popen reports death by signal N as -N; shells report it as 128+N.
    if returncode < 0:
        return SIGNAL_EXIT_BASE - returncode
    return returncode


def _create_tmp_dir() -> Path:
    try:
        return Path(tempfile.mkdtemp(prefix=TMP_DIR_PREFIX))
    except OSError as exc:
        raise TempDirCreationFailedError(f"Error setting up the temporary directory: {exc}") from exc


def setup(
    *,
    mounts: Iterable[str],
    mandatory_env_vars: Iterable[str],
    optional_env_vars: Iterable[str],
    cleanups: CleanupStack,
    env: EnvironmentProvider | None = None,
    cwd: Path | None = None,
) -> DockerCommand:
    """Build the container command for the current repository.

    Overlay and artifact cleanups are registered on ``cleanups`` as they are
    created, so whatever was set up before a failure is still released by the
    caller.
    """
    provider = env or HostEnvironment()
    working_dir = cwd or Path.cwd().resolve()

    envs = bind(provider, mandatory_env_vars, optional_env_vars)

    tmp_dir = _create_tmp_dir()
    click.echo(f"Logging to {tmp_dir}")
    command = DockerCommand(log_file=tmp_dir / LOG_FILE_NAME)

    for mount in normalize_names(mounts):
        host_path = str(_to_absolute(mount, working_dir))
        command.add_mount(MOUNT_KIND_BIND, host_path, host_path)

    repo_root = str(resolve_repo_root(working_dir))
    cleanups.register(command.add_rw_overlay(repo_root, repo_root))

    # Only .kube is overlaid; the image keeps its own toolchain under /root.
    home = str(provider.get("HOME") or Path.home())
    cleanups.register(command.add_rw_overlay(str(Path(home) / KUBE_CONFIG_DIR_NAME), CONTAINER_KUBE_CONFIG_DIR))

    command.add_workdir(repo_root)

    external_artifacts = str(provider.get(ARTIFACTS_ENV_VAR) or "").strip()
    if external_artifacts:
        artifacts_dir = str(_to_absolute(external_artifacts, working_dir))
    else:
        click.echo(f"Setting local ARTIFACTS directory to {tmp_dir}")
        artifacts_dir = str(tmp_dir)
    command.add_mount(MOUNT_KIND_BIND, artifacts_dir, artifacts_dir)
    envs[ARTIFACTS_ENV_VAR] = artifacts_dir
    cleanups.register(lambda: click.echo(f"Artifacts found at {artifacts_dir}"))

    command.add_env(envs)
    return command


@click.command(
    help="Run the CI test-runner container flow against the local repository",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--test-image",
    default=DEFAULT_TEST_IMAGE,
    show_default=True,
    help="The image used to run the test flow.",
)
@click.option(
    "--mounts",
    default="",
    help="Comma-separated extra host folders or files mounted at the same path inside the container.",
)
@click.option(
    "--mandatory-env-vars",
    default=DEFAULT_MANDATORY_ENV_VARS,
    show_default=True,
    help="Comma-separated env vars that must be set on the host.",
)
@click.option(
    "--optional-env-vars",
    default="",
    help="Comma-separated env vars passed through when set on the host.",
)
@click.option(
    "--grace-seconds",
    default=DEFAULT_GRACE_SECONDS,
    show_default=True,
    type=click.IntRange(min=0),
    help="Seconds to wait after printing the command before starting it.",
)
@click.option(
    "--log-level",
    default="info",
    show_default=True,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
)
@click.argument("container_args", nargs=-1, type=click.UNPROCESSED)
def main(
    test_image: str,
    mounts: str,
    mandatory_env_vars: str,
    optional_env_vars: str,
    grace_seconds: int,
    log_level: str,
    container_args: tuple[str, ...],
) -> None:
    _configure_logging(log_level)
    if shutil.which(DOCKER_COMMAND) is None:
        raise DockerNotFoundError()

    with CleanupStack() as cleanups:
        command = setup(
            mounts=split_names(mounts),
            mandatory_env_vars=split_names(mandatory_env_vars),
            optional_env_vars=split_names(optional_env_vars),
            cleanups=cleanups,
        )
        returncode = run(command, test_image, *container_args, grace_seconds=grace_seconds)

    if returncode != 0:
        sys.exit(_exit_status(returncode))


if __name__ == "__main__":
    main()
