from __future__ import annotations

import abc
import os
from typing import Iterable, Mapping

from rundk.errors import MissingMandatoryVariableError


class EnvironmentProvider(abc.ABC):
    @abc.abstractmethod
    def get(self, name: str) -> str | None:
        """Returns the value of the variable, or None when it is not set."""
        pass


class HostEnvironment(EnvironmentProvider):
    def get(self, name: str) -> str | None:
        return os.environ.get(name)


class MappingEnvironment(EnvironmentProvider):
    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, name: str) -> str | None:
        return self._values.get(name)


def split_names(value: str | None) -> list[str]:
    if value is None:
        return []
    return normalize_names(value.split(","))


def normalize_names(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for raw in names:
        name = str(raw).strip()
        if not name or name in seen:
            continue
        cleaned.append(name)
        seen.add(name)
    return cleaned


def bind(
    provider: EnvironmentProvider,
    mandatory_names: Iterable[str],
    optional_names: Iterable[str] = (),
) -> dict[str, str]:
    """Copy the named variables out of ``provider``.

    Every mandatory name must be set (an empty value counts as set); all the
    missing ones are reported together. Optional names are copied only when
    set. Blank names are never looked up.
    """
    envs: dict[str, str] = {}
    missing: list[str] = []
    for name in normalize_names(mandatory_names):
        value = provider.get(name)
        if value is None:
            missing.append(name)
            continue
        envs[name] = value
    if missing:
        raise MissingMandatoryVariableError(missing)

    for name in normalize_names(optional_names):
        value = provider.get(name)
        if value is not None:
            envs.setdefault(name, value)
    return envs
