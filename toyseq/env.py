"""Environment loading and the fixed table of instance identifiers."""

from __future__ import annotations

import os
from types import MappingProxyType
from typing import Mapping

__all__ = ["INSTANCE_IDS", "load_env", "instance_id"]

INSTANCE_IDS: Mapping[str, int] = MappingProxyType(
    {"SEQ": 0, "SCRAPPY": 1, "PING": 2, "PONG": 3, "MD": 4}
)


def load_env(path: str | os.PathLike[str] = ".env") -> dict[str, str]:
    """Set ``KEY=VALUE`` lines of ``path`` in the environment, overwriting.

    Empty lines, lines starting with ``#`` and lines without ``=`` are
    ignored. A missing file is not an error. Returns what was set.
    """
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            text = handle.read()
    except OSError:
        return {}
    loaded: dict[str, str] = {}
    for line in text.split("\n"):
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key or "\0" in key or "\0" in value:
            continue
        os.environ[key] = value
        loaded[key] = value
    return loaded


def instance_id(name: str) -> int:
    """Return the instance id for an application name such as ``"PING"``."""
    try:
        return INSTANCE_IDS[name]
    except KeyError:
        raise KeyError(f"unknown instance name: {name!r}") from None