# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

# A matrix binding is an ordered tuple of (key, value) pairs.
# Order is axis order first, then include-derived keys in declaration order.
Binding = Tuple[Tuple[str, str], ...]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def binding_label(binding: Binding) -> str:
    """'os=ubuntu-latest, python=3.11' (empty string for the no-matrix case)."""
    return ", ".join(f"{k}={v}" for k, v in binding)


def project_binding(binding: Binding, keys: Optional[Tuple[str, ...]]) -> Binding:
    """
    Restrict a binding to the given keys, in the order the keys are given.
    keys=None keeps the binding unchanged. A missing key raises KeyError.
    """
    if keys is None:
        return binding
    values = dict(binding)
    return tuple((k, values[k]) for k in keys)


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull-request"
    RELEASE_CREATED = "release-created"
    MANUAL_DISPATCH = "manual-dispatch"


@dataclass(frozen=True)
class Event:
    """The immutable stimulus that starts a run."""
    kind: EventKind
    ref: str = ""
    inputs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # freeze inputs so the event can be shared across worker threads
        object.__setattr__(self, "kind", EventKind(self.kind))
        object.__setattr__(
            self, "inputs", MappingProxyType({str(k): str(v) for k, v in dict(self.inputs).items()})
        )


# ---------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step inside a job group.

    kind:
      "sh"       - run a command
      "upload"   - (optionally run a command, then) store `path` as `artifact`
      "download" - fetch `artifact` produced by group `source` into `path`
    """
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "sh"
    env: Mapping[str, str] = field(default_factory=dict)
    tolerate_failure: bool = False
    when: Any = None  # gate.Predicate | None
    requires_env: Tuple[str, ...] = ()

    # artifact handoff
    artifact: str | None = None
    path: str | None = None
    source: str | None = None
    key_axes: Tuple[str, ...] | None = None

    @property
    def produces(self) -> bool:
        return self.kind == "upload"

    @property
    def consumes(self) -> bool:
        return self.kind == "download"


@dataclass(frozen=True)
class MatrixSpec:
    """
    axes:    ordered (axis name, ordered values) pairs
    include: extra combinations; each is an ordered tuple of (key, value) pairs
    """
    axes: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    include: Tuple[Tuple[Tuple[str, str], ...], ...] = ()

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.axes)


@dataclass
class JobGroup:
    """
    A named template of ordered steps with declared dependencies,
    possibly fanned out over a matrix.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    matrix: MatrixSpec = field(default_factory=MatrixSpec)
    env: Dict[str, str] = field(default_factory=dict)

    # execution placement
    runs_on: str | None = None        # fallback platform label when the matrix has no `os`
    platform_axis: str = "os"         # binding key that names the runner platform
    container: str | None = None      # image; a `container` matrix variable overrides it per instance
    timeout: float | None = None      # seconds; None = use the run-wide default


@dataclass(frozen=True)
class BranchFilter:
    """Ref patterns (fnmatch, `**` matches everything) for push / pull-request triggers."""
    branches: Tuple[str, ...] = ("**",)


@dataclass(frozen=True)
class DispatchInput:
    name: str
    description: str = ""
    required: bool = False
    default: str | None = None


@dataclass(frozen=True)
class Triggers:
    """Which events start a run. None disables that event kind."""
    push: BranchFilter | None = field(default_factory=BranchFilter)
    pull_request: BranchFilter | None = field(default_factory=lambda: BranchFilter(("main",)))
    release_created: bool = True
    manual_dispatch: Tuple[DispatchInput, ...] | None = (
        DispatchInput("publish", description="Publish packages", required=True, default="false"),
    )


@dataclass
class Pipeline:
    name: str
    groups: list[JobGroup]
    triggers: Triggers = field(default_factory=Triggers)


# ---------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------

class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"   # steps: gate unsatisfied
    BLOCKED = "blocked"   # groups: a dependency did not succeed


@dataclass
class StepResult:
    name: str
    status: Status
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    message: str = ""
    output: str = ""
    tolerated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "message": self.message,
            "tolerated": self.tolerated,
        }


@dataclass
class JobInstance:
    """One concretization of a JobGroup for one matrix binding."""
    group: JobGroup = field(repr=False)
    binding: Binding
    index: int
    platform: str
    status: Status = Status.PENDING
    step_cursor: int = 0
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    failed_step: Optional[str] = None
    message: str = ""
    steps: List[StepResult] = field(default_factory=list)
    produced_artifacts: list = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return binding_label(self.binding) or self.group.name

    @property
    def instance_id(self) -> str:
        lbl = binding_label(self.binding)
        return f"{self.group.name}[{lbl}]" if lbl else self.group.name

    @property
    def variables(self) -> Dict[str, str]:
        return dict(self.binding)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.group.name,
            "binding": dict(self.binding),
            "label": self.label,
            "platform": self.platform,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind,
            "failed_step": self.failed_step,
            "message": self.message,
            "artifacts": [str(k) for k in self.produced_artifacts],
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class GroupState:
    name: str
    status: Status = Status.PENDING
    instances: List[JobInstance] = field(default_factory=list)
    reason: str = ""


@dataclass
class RunDecision:
    start: bool
    bindings: Dict[str, str] = field(default_factory=dict)
    reason: str = ""
    event: Optional[Event] = None  # the event with dispatch inputs resolved


@dataclass
class Run:
    """One execution of the whole pipeline for one Event."""
    event: Event
    decision: RunDecision
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: Status = Status.PENDING
    groups: Dict[str, GroupState] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    cancel_requested: bool = False
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    _cancelled_groups: Set[str] = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -----------------------------------------------------------------
    # cooperative cancellation
    # -----------------------------------------------------------------
    def cancel(self) -> None:
        """Stop scheduling; running instances stop after their current step."""
        self.cancel_requested = True
        self._cancel.set()

    def halt(self) -> None:
        """Same signal as cancel(), but the run still ends as failed (fail-fast, fatal errors)."""
        self._cancel.set()

    @property
    def halted(self) -> bool:
        return self._cancel.is_set()

    def cancel_group(self, name: str) -> None:
        """
        Cancel one group: its instances that have not started are cancelled,
        running ones stop after their current step, and every group that
        needs it (directly or not) is cancelled instead of scheduled.
        Unrelated groups keep running.
        """
        if name not in self.groups:
            raise KeyError(name)
        with self._lock:
            self._cancelled_groups.add(name)

    def group_cancelled(self, name: str) -> bool:
        with self._lock:
            return name in self._cancelled_groups

    def cancelled_groups(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._cancelled_groups)

    def abort(self, error: str) -> None:
        """Terminal failure raised outside the scheduler; unscheduled groups are cancelled."""
        self.error = error
        for state in self.groups.values():
            if state.status == Status.PENDING:
                state.status = Status.CANCELLED
                state.reason = "run aborted"
        self.status = Status.FAILED
        self.finished_at = now_utc()

    # -----------------------------------------------------------------
    # reporting
    # -----------------------------------------------------------------
    def instances(self) -> List[JobInstance]:
        out: List[JobInstance] = []
        for g in self.groups.values():
            out.extend(g.instances)
        return out

    def report(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Per group, per instance label: status plus where it failed.

            {"verify": {"os=ubuntu-latest": {"status": "failed", "step": "Test", ...}}}

        Groups that never expanded report a single "*" row with the group status.
        """
        out: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, g in self.groups.items():
            rows: Dict[str, Dict[str, Any]] = {}
            for inst in g.instances:
                rows[inst.label] = {
                    "status": inst.status.value,
                    "platform": inst.platform,
                    "step": inst.failed_step,
                    "exit_code": inst.exit_code,
                    "error_kind": inst.error_kind,
                }
            if not g.instances:
                rows["*"] = {"status": g.status.value, "reason": g.reason}
            out[name] = rows
        return out

    def failed_instances(self) -> List[JobInstance]:
        return [i for i in self.instances() if i.status == Status.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "event": {
                "kind": self.event.kind.value,
                "ref": self.event.ref,
                "inputs": dict(self.event.inputs),
            },
            "bindings": dict(self.decision.bindings),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "groups": {
                name: {
                    "status": g.status.value,
                    "reason": g.reason,
                    "instances": [i.to_dict() for i in g.instances],
                }
                for name, g in self.groups.items()
            },
            "report": self.report(),
        }
