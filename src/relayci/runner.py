# runner.py
from __future__ import annotations

import runpy
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import triggers
from .artifacts import ArtifactStore, open_store
from .dag import build_graph, topo_levels
from .errors import ArtifactConflict
from .executor import CommandRunner, RunnerContext
from .matrix import expand
from .model import Event, GroupState, JobGroup, JobInstance, Pipeline, Run, RunDecision, Status, now_utc
from .settings import Settings
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define one of:
      - workflow() -> Pipeline | List[JobGroup]
      - PIPELINE = Pipeline(...)
      - JOBS = [JobGroup, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"relayci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        loaded = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Pipeline):
        return loaded
    if isinstance(loaded, list) and all(isinstance(g, JobGroup) for g in loaded):
        return Pipeline(name=wf_path.stem, groups=loaded)

    raise TypeError(
        "Workflow must return/define a Pipeline or a List[JobGroup]. "
        "Define workflow() -> Pipeline, PIPELINE = pipeline(...) or JOBS = [group(...), ...]."
    )


# ----------------------------------------------------------------------
# Job graph scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Topological-readiness scheduler over job groups.

    A group expands and submits its instances once every group it needs has
    finished with all instances succeeded. Instances of all eligible groups
    share one worker pool of `max_workers`. A failed group blocks its
    dependents; its running siblings are left to finish unless fail_fast.
    """

    def __init__(
        self,
        groups: List[JobGroup],
        *,
        max_workers: int = 1,
        fail_fast: bool = False,
        console: Console | None = None,
    ):
        # raises ConfigurationError before anything runs
        self.by_name, self.adj, self.indeg = build_graph(groups)
        self.order = [g.name for g in groups]
        self.max_workers = max(1, int(max_workers))
        self.fail_fast = fail_fast
        self.console = console or get_console()

    def stages(self) -> List[List[str]]:
        return topo_levels(self.adj, self.indeg)

    def plan(self) -> Dict[str, List[str]]:
        """Group name -> expanded instance labels, in declaration order."""
        return {name: [i.label for i in expand(self.by_name[name])] for name in self.order}

    def run(self, run: Run, context: RunnerContext) -> Run:
        """Execute the graph for `run`, blocking until every group is terminal."""
        console = self.console
        run.status = Status.RUNNING
        run.started_at = run.started_at or now_utc()
        run.groups = {name: GroupState(name) for name in self.order}

        indeg = dict(self.indeg)
        ready: List[str] = [n for n in self.order if indeg[n] == 0]
        remaining: Dict[str, int] = {}
        in_flight: Dict[Future, JobInstance] = {}
        fatal: Optional[str] = None

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="relayci") as pool:
            while ready or in_flight:
                # expand and submit every group whose needs all succeeded
                while ready and not run.halted:
                    name = ready.pop(0)
                    state = run.groups[name]
                    if name in self._cancelled(run):
                        # left PENDING; _finish reports it and its dependents as cancelled
                        continue
                    state.instances = expand(self.by_name[name])
                    state.status = Status.RUNNING
                    remaining[name] = len(state.instances)
                    console.print_group_ready(name, len(state.instances))
                    for inst in state.instances:
                        in_flight[pool.submit(context.execute, inst)] = inst

                if not in_flight:
                    break

                # wait for at least one completion, then loop to schedule newly-ready groups
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = in_flight.pop(fut)
                    try:
                        fut.result()
                    except ArtifactConflict as e:
                        fatal = f"artifact conflict in {inst.instance_id}: {e}"
                        run.halt()
                    except Exception as e:
                        # executor bug or unexpected environment error; contain it to the instance
                        inst.status = Status.FAILED
                        inst.error_kind = inst.error_kind or "error"
                        inst.message = str(e)
                        inst.finished_at = inst.finished_at or now_utc()
                        console.print_exception(e)

                    if inst.status == Status.FAILED and self.fail_fast:
                        run.halt()

                    name = inst.group.name
                    remaining[name] -= 1
                    if remaining[name] == 0:
                        state = run.groups[name]
                        state.status = self._group_status(state)
                        if state.status == Status.CANCELLED and run.group_cancelled(name):
                            state.reason = "group cancelled"
                        console.print_group_done(name, state.status.value)
                        if state.status == Status.SUCCEEDED:
                            for child in sorted(self.adj[name]):
                                indeg[child] -= 1
                                if indeg[child] == 0:
                                    ready.append(child)

        self._finish(run, fatal)
        return run

    @staticmethod
    def _group_status(state: GroupState) -> Status:
        statuses = [i.status for i in state.instances]
        if all(s == Status.SUCCEEDED for s in statuses):
            return Status.SUCCEEDED
        if any(s == Status.FAILED for s in statuses):
            return Status.FAILED
        return Status.CANCELLED

    def _cancelled(self, run: Run) -> Set[str]:
        """Groups cancelled through Run.cancel_group() plus everything downstream of them."""
        out: Set[str] = set()
        stack = list(run.cancelled_groups())
        while stack:
            name = stack.pop()
            if name in out:
                continue
            out.add(name)
            stack.extend(self.adj[name])
        return out

    def _finish(self, run: Run, fatal: Optional[str]) -> None:
        cancelled = self._cancelled(run)
        for name in self.order:
            state = run.groups[name]
            if state.status != Status.PENDING:
                continue
            if run.halted:
                state.status = Status.CANCELLED
                state.reason = "run cancelled" if run.cancel_requested else "run halted"
            elif name in cancelled:
                state.status = Status.CANCELLED
                state.reason = "group cancelled" if run.group_cancelled(name) else "needs were cancelled"
            else:
                failed = [d for d in self.by_name[name].needs if run.groups[d].status != Status.SUCCEEDED]
                state.status = Status.BLOCKED
                state.reason = f"needs did not succeed: {', '.join(failed)}"
            self.console.print_group_blocked(name, state.reason)

        run.error = fatal
        if fatal:
            run.status = Status.FAILED
        elif all(g.status == Status.SUCCEEDED for g in run.groups.values()):
            run.status = Status.SUCCEEDED
        elif (run.cancel_requested or cancelled) and not run.failed_instances():
            run.status = Status.CANCELLED
        else:
            run.status = Status.FAILED
        run.finished_at = now_utc()


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

class Orchestrator:
    """
    Ties trigger evaluation, scheduling, execution and artifact storage
    together for one pipeline.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Settings | None = None,
        *,
        source_dir: str | Path | None = None,
        command_runner: CommandRunner | None = None,
        store_factory: Callable[[str], ArtifactStore] | None = None,
        console: Console | None = None,
    ):
        self.pipeline = pipeline
        self.settings = settings or Settings.from_env()
        self.console = console or get_console()
        self.scheduler = Scheduler(
            pipeline.groups,
            max_workers=self.settings.max_workers,
            fail_fast=self.settings.fail_fast,
            console=self.console,
        )
        self.source_dir = source_dir
        self.command_runner = command_runner
        self.store_factory = store_factory or (lambda run_id: open_store(self.settings.artifact_dir, run_id))

    def decide(self, event: Event) -> RunDecision:
        return triggers.evaluate(event, self.pipeline.triggers)

    def new_run(self, event: Event, decision: RunDecision) -> Run:
        run = Run(event=decision.event or event, decision=decision)
        run.groups = {g.name: GroupState(g.name) for g in self.pipeline.groups}
        return run

    def execute(self, run: Run) -> Run:
        store = self.store_factory(run.run_id)
        context = RunnerContext(
            run,
            store,
            work_root=self.settings.work_dir,
            source_dir=self.source_dir,
            command_runner=self.command_runner,
            default_timeout=self.settings.job_timeout,
            console=self.console,
        )
        self.console.print_run_started(run, self.pipeline.name, len(self.pipeline.groups))
        return self.scheduler.run(run, context)

    def trigger(self, event: Event) -> Tuple[RunDecision, Optional[Run]]:
        """Evaluate the event and, if it starts a run, execute it to completion."""
        decision = self.decide(event)
        self.console.print_decision(decision)
        if not decision.start:
            return decision, None
        run = self.new_run(event, decision)
        return decision, self.execute(run)


def run_pipeline(
    pipeline: Pipeline,
    event: Event,
    *,
    settings: Settings | None = None,
    source_dir: str | Path | None = None,
    command_runner: CommandRunner | None = None,
    console: Console | None = None,
) -> Optional[Run]:
    """Convenience wrapper: returns the finished Run, or None if the event starts nothing."""
    orch = Orchestrator(
        pipeline,
        settings,
        source_dir=source_dir,
        command_runner=command_runner,
        console=console,
    )
    _decision, run = orch.trigger(event)
    return run
