"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from ..model import JobInstance, Run, RunDecision


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
                   and captured step output
        """
        self.debug = debug
        # instances report from worker threads; keep lines whole
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(self, run: "Run", pipeline: str, group_count: int) -> None:
        """Print run start information."""
        self._out(
            "",
            "RUN STARTED",
            f"Run ID: {run.run_id}",
            f"Pipeline: {pipeline}",
            f"Event: {run.event.kind.value} ({run.decision.bindings.get('ref', '') or '-'})",
            f"Publish: {run.decision.bindings.get('publish', 'false')}",
            f"Groups: {group_count}",
            "",
        )

    def print_decision(self, decision: "RunDecision") -> None:
        """Print the trigger decision."""
        if decision.start:
            self._out(f"TRIGGER: start ({decision.reason})")
        else:
            self._out(f"TRIGGER: no run ({decision.reason})")

    def print_plan(self, stages: List[List[str]], instances: dict[str, list[str]]) -> None:
        """Print topological stages with each group's expanded instances."""
        self._out("", "PLAN")
        for idx, stage in enumerate(stages, start=1):
            self._out(f"Stage {idx}:")
            for name in stage:
                labels = instances.get(name) or [name]
                self._out(f"  {name} ({len(labels)} instance{'s' if len(labels) != 1 else ''})")
                for label in labels:
                    self._out(f"    - {label}")

    def print_group_ready(self, name: str, count: int) -> None:
        self._out(f"\nGROUP READY: {name} ({count} instance{'s' if count != 1 else ''})")

    def print_group_done(self, name: str, status: str) -> None:
        self._out(f"GROUP {status.upper()}: {name}")

    def print_group_blocked(self, name: str, reason: str) -> None:
        self._out(f"GROUP BLOCKED: {name} ({reason})")

    def print_instance_start(self, instance: "JobInstance") -> None:
        """Print job instance start message."""
        self._out(f"JOB STARTED: {instance.instance_id} on {instance.platform}")

    def print_instance_done(self, instance: "JobInstance") -> None:
        status = instance.status.value
        line = f"JOB {status.upper()}: {instance.instance_id}"
        if instance.failed_step:
            line += f" (step '{instance.failed_step}')"
        elif instance.message and instance.status.value == "cancelled":
            line += f" ({instance.message})"
        self._out(line)

    def print_step(self, instance: "JobInstance", name: str) -> None:
        """Print step start message."""
        self._out(f"[{instance.instance_id}] STEP: {name}")

    def print_step_skipped(self, instance: "JobInstance", name: str) -> None:
        self._out(f"[{instance.instance_id}] STEP SKIPPED: {name} (gate not satisfied)")

    def print_step_failure(self, instance: "JobInstance", failure, tolerated: bool = False) -> None:
        """
        Print failure message.

        Args:
            instance: Job instance the step belongs to
            failure: StepFailure raised by the step
            tolerated: If True, the instance keeps going
        """
        prefix = "STEP FAILED (tolerated)" if tolerated else "STEP FAILED"
        lines = [f"[{instance.instance_id}] {prefix}: {failure.step}"]
        if failure.exit_code is not None:
            lines.append(f"Exit code: {failure.exit_code}")
        lines.append(f"Error: {failure.kind}: {failure.message.splitlines()[0] if failure.message else ''}")
        if self.debug and failure.output:
            lines.append(failure.output)
        self._out(*lines)

    def print_artifact_stored(self, instance: "JobInstance", key: str, digest: str) -> None:
        self._out(f"[{instance.instance_id}] ARTIFACT STORED: {key} ({digest[:12]}...)")

    def print_artifact_fetched(self, instance: "JobInstance", key: str, files: int) -> None:
        self._out(f"[{instance.instance_id}] ARTIFACT FETCHED: {key} ({files} file{'s' if files != 1 else ''})")

    def print_results(self, run: "Run") -> None:
        """Print final per-group / per-platform status matrix."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for group, rows in run.report().items():
            state = run.groups[group]
            lines.append(f"{group}: {state.status.value.upper()}")
            for label, row in rows.items():
                line = f"  {label}: {row['status'].upper()}"
                if row.get("step"):
                    line += f" at '{row['step']}'"
                if row.get("error_kind") and row["error_kind"] != "exit_code":
                    line += f" [{row['error_kind']}]"
                if row.get("exit_code") is not None:
                    line += f" (exit={row['exit_code']})"
                if row.get("reason"):
                    line += f" ({row['reason']})"
                lines.append(line)
        lines.append("")
        lines.append(f"RUN {run.status.value.upper()}: {run.run_id}")
        if run.error:
            lines.append(f"Error: {run.error}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = ["", f"ERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.extend(["", suggestion])
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
