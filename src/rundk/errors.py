from __future__ import annotations

from typing import Iterable

import click


class LauncherError(click.ClickException):
    """Fatal launcher failure; click prints the message and exits non-zero."""


class DockerNotFoundError(LauncherError):
    def __init__(self) -> None:
        super().__init__("docker command not found in PATH")


class MissingMandatoryVariableError(LauncherError):
    def __init__(self, names: Iterable[str]) -> None:
        self.names = [str(name) for name in names]
        super().__init__(f"Missing mandatory argument: environment variable(s) not set: {', '.join(self.names)}")


class TempDirCreationFailedError(LauncherError):
    pass


class RepoRootResolutionFailedError(LauncherError):
    pass


class OverlayCreationFailedError(LauncherError):
    pass


class ImagePullFailedError(LauncherError):
    pass


class ContainerExecutionFailedError(LauncherError):
    pass


class InvocationFinalizedError(RuntimeError):
    pass
