from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

import click

from rundk.cleanup import CleanupAction
from rundk.errors import InvocationFinalizedError, LauncherError, OverlayCreationFailedError
from rundk.log import LOGGER

DOCKER_COMMAND = "docker"
DOCKER_RUN_BASE_ARGS = ("run", "--rm", "-i")
MOUNT_KIND_BIND = "bind"
MOUNT_KIND_RW_OVERLAY = "rw-overlay"
MOUNT_KINDS = (MOUNT_KIND_BIND, MOUNT_KIND_RW_OVERLAY)
OVERLAY_TMP_PREFIX = "overlay."


def _run(cmd: Iterable[str], cwd: Path | None = None) -> None:
    args = [str(arg) for arg in cmd]
    try:
        subprocess.run(args, cwd=str(cwd) if cwd else None, check=True)
    except subprocess.CalledProcessError as exc:
        raise LauncherError(f"Command failed with exit code {exc.returncode}: {' '.join(args)}")
    except OSError as exc:
        raise LauncherError(f"Command could not be started: {' '.join(args)} ({exc})") from exc


def _call(cmd: Iterable[str]) -> int:
    return subprocess.run([str(arg) for arg in cmd], check=False).returncode


def _stream(cmd: Iterable[str], log_file: Path | None = None) -> int:
    args = [str(arg) for arg in cmd]
    if log_file is None:
        return subprocess.run(args, check=False).returncode

    with log_file.open("ab") as log_handle:
        process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        assert process.stdout is not None
        try:
            for chunk in iter(process.stdout.readline, b""):
                sys.stdout.buffer.write(chunk)
                sys.stdout.flush()
                log_handle.write(chunk)
        finally:
            process.stdout.close()
        return process.wait()


def _privileged(cmd: Iterable[str]) -> list[str]:
    args = [str(arg) for arg in cmd]
    if os.geteuid() == 0:
        return args
    return ["sudo", *args]


def _mount_flag(kind: str, source: str, destination: str) -> str:
    return f"type={kind},source={source},target={destination}"


@dataclass(frozen=True)
class MountSpec:
    kind: str
    source: str
    destination: str

    def __post_init__(self) -> None:
        if self.kind not in MOUNT_KINDS:
            raise ValueError(f"Unsupported mount kind: {self.kind!r}")
        for label, value in (("source", self.source), ("destination", self.destination)):
            if not value or not value.startswith("/"):
                raise ValueError(f"Mount {label} must be a non-empty absolute path: {value!r}")


@dataclass(frozen=True)
class Invocation:
    args: tuple[str, ...]
    image: str
    command: tuple[str, ...] = ()
    log_file: Path | None = None

    @property
    def argv(self) -> list[str]:
        return [*self.args, self.image, *self.command]

    def render(self) -> str:
        return shlex.join(self.argv)

    def __str__(self) -> str:
        return self.render()


class DockerCommand:
    """Accumulates a ``docker run`` command line.

    Argument groups land in the order they are added. ``finalize`` appends the
    image and trailing command and hands back an immutable ``Invocation``;
    after that the builder rejects further changes.
    """

    def __init__(self, *, log_file: Path | None = None) -> None:
        self.log_file = log_file
        self._args: list[str] = [DOCKER_COMMAND, *DOCKER_RUN_BASE_ARGS]
        self._mounts: list[MountSpec] = []
        self._invocation: Invocation | None = None

    @property
    def mounts(self) -> tuple[MountSpec, ...]:
        return tuple(self._mounts)

    def _ensure_open(self) -> None:
        if self._invocation is not None:
            raise InvocationFinalizedError("Invocation already finalized; no further arguments may be added")

    def add_args(self, *args: str) -> None:
        self._ensure_open()
        self._args.extend(str(arg) for arg in args)

    def add_mount(self, kind: str, source: str, destination: str) -> MountSpec:
        self._ensure_open()
        spec = MountSpec(kind, str(source), str(destination))
        self._mounts.append(spec)
        self._args.extend(["--mount", _mount_flag(kind, spec.source, spec.destination)])
        return spec

    def add_rw_overlay(self, source: str, destination: str) -> CleanupAction:
        """Mount ``source`` read-write at ``destination`` without touching ``source``.

        Writes land in a throwaway overlay upper layer on the host. The
        returned action unmounts the overlay and deletes its directories; the
        caller owns invoking it.
        """
        self._ensure_open()
        spec = MountSpec(MOUNT_KIND_RW_OVERLAY, str(source), str(destination))
        try:
            overlay_root = Path(tempfile.mkdtemp(prefix=OVERLAY_TMP_PREFIX))
            upper_dir = overlay_root / "upper"
            work_dir = overlay_root / "work"
            merged_dir = overlay_root / "merged"
            for path in (upper_dir, work_dir, merged_dir):
                path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OverlayCreationFailedError(f"Unable to create overlay directories for {spec.source}: {exc}") from exc

        mount_cmd = _privileged(
            [
                "mount",
                "-t",
                "overlay",
                "overlay",
                "-o",
                f"lowerdir={spec.source},upperdir={upper_dir},workdir={work_dir}",
                str(merged_dir),
            ]
        )
        try:
            _run(mount_cmd)
        except LauncherError as exc:
            shutil.rmtree(overlay_root, ignore_errors=True)
            raise OverlayCreationFailedError(f"Unable to mount overlay over {spec.source}: {exc.message}") from exc
        LOGGER.debug("Mounted overlay lower=%s merged=%s target=%s", spec.source, merged_dir, spec.destination)

        self._mounts.append(spec)
        self._args.extend(["--mount", _mount_flag(MOUNT_KIND_BIND, str(merged_dir), spec.destination)])

        def cleanup() -> None:
            click.echo(f"Removing overlay over {spec.source} ({overlay_root})")
            # rm must never run against a still-mounted merged dir.
            _run(_privileged(["umount", str(merged_dir)]))
            _run(_privileged(["rm", "-rf", str(overlay_root)]))

        return cleanup

    def add_workdir(self, path: str) -> None:
        self.add_args("--workdir", str(path))

    def add_env(self, envs: Mapping[str, str]) -> None:
        self._ensure_open()
        for key in sorted(envs):
            value = str(envs[key])
            self._args.extend(["--env", f"{key}={value}"])

    def finalize(self, image: str, *command: str) -> Invocation:
        self._ensure_open()
        self._invocation = Invocation(
            args=tuple(self._args),
            image=str(image),
            command=tuple(str(token) for token in command),
            log_file=self.log_file,
        )
        return self._invocation

    def __str__(self) -> str:
        if self._invocation is not None:
            return self._invocation.render()
        return shlex.join(self._args)
