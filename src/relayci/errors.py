# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ConfigurationError(Exception):
    """
    A pipeline definition (or run configuration) that can never execute.

    Raised before any job instance is scheduled: cyclic needs, unknown
    needs, duplicate group names, empty matrix axes, bad settings.
    """
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"configuration error: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    """
    A step that halted (or was recorded as failed inside) a job instance.

    kind is one of:
      exit_code            - the command returned nonzero
      artifact_missing     - declared output not on disk, or a download found nothing
      missing_credentials  - a gated step ran without its required environment
      timeout              - the instance exceeded its wall-clock budget
      error                - anything else the step could not do (bad cwd, docker missing)
    """
    kind: str
    job: str
    step: str
    message: str = ""
    exit_code: Optional[int] = None
    output: str = ""

    def __str__(self) -> str:
        head = f"[{self.job}] step '{self.step}' failed ({self.kind}"
        if self.exit_code is not None:
            head += f", exit={self.exit_code}"
        head += ")"
        if self.message:
            head += f": {self.message}"
        return head


class StepTimeout(StepFailure):
    """The instance ran out of wall-clock budget while (or before) running a step."""

    def __init__(self, job: str, step: str, budget: float):
        super().__init__(
            kind="timeout",
            job=job,
            step=step,
            message=f"exceeded job budget of {budget:g}s",
        )
        self.budget = budget


@dataclass
class ArtifactConflict(Exception):
    """A second put() to an artifact key already written in this run."""
    key: Any

    def __str__(self) -> str:
        return f"artifact already exists: {self.key}"


@dataclass
class ArtifactMissing(Exception):
    """get() on a key nobody wrote in this run."""
    key: Any

    def __str__(self) -> str:
        return f"artifact not found: {self.key}"
