# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_WORK_DIR = ".relayci/work"
DEFAULT_ARTIFACT_DIR = ".relayci/artifacts"
DEFAULT_JOB_TIMEOUT = 3600.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _parse_bool(name: str, raw: str) -> bool:
    low = raw.strip().lower()
    if low in _TRUE:
        return True
    if low in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be true/false, got {raw!r}")


def _parse_number(name: str, raw: str, cast, minimum) -> float:
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    max_workers: int
    job_timeout: Optional[float] = DEFAULT_JOB_TIMEOUT   # None = no budget
    fail_fast: bool = False
    work_dir: str = DEFAULT_WORK_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR            # "memory" = in-process store

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        workers = _default_workers()
        if env.get("RELAYCI_WORKERS"):
            workers = int(_parse_number("RELAYCI_WORKERS", env["RELAYCI_WORKERS"], int, 1))

        timeout: Optional[float] = DEFAULT_JOB_TIMEOUT
        if env.get("RELAYCI_JOB_TIMEOUT"):
            timeout = _parse_number("RELAYCI_JOB_TIMEOUT", env["RELAYCI_JOB_TIMEOUT"], float, 0)
            timeout = timeout or None

        return cls(
            max_workers=workers,
            job_timeout=timeout,
            fail_fast=_parse_bool("RELAYCI_FAIL_FAST", env.get("RELAYCI_FAIL_FAST", "false")),
            work_dir=env.get("RELAYCI_WORK_DIR") or DEFAULT_WORK_DIR,
            artifact_dir=env.get("RELAYCI_ARTIFACT_DIR") or DEFAULT_ARTIFACT_DIR,
        )

    def override(self, **changes) -> "Settings":
        """Apply CLI flags; None means 'not given' and keeps the current value."""
        given = {k: v for k, v in changes.items() if v is not None}
        if "max_workers" in given and given["max_workers"] < 1:
            raise ConfigurationError(f"workers must be >= 1, got {given['max_workers']}")
        if "job_timeout" in given:
            if given["job_timeout"] < 0:
                raise ConfigurationError(f"timeout must be >= 0, got {given['job_timeout']}")
            given["job_timeout"] = given["job_timeout"] or None
        return replace(self, **given)
