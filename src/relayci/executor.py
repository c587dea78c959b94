# executor.py
from __future__ import annotations

import os
import re
import shutil
import subprocess
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Callable, Dict, List, Mapping, Optional

from .artifacts import ArtifactKey, ArtifactStore, binding_slug, pack_files, resolve_paths, unpack_blob
from .errors import ArtifactConflict, ArtifactMissing, StepFailure, StepTimeout
from .gate import RunContext, runner_os, satisfied
from .model import JobInstance, Run, Status, Step, StepResult, now_utc, project_binding
from .step_workflows.docker import check_docker_available, container_argv
from .ui.console import Console, get_console

# keep the tail of captured output for reports
OUTPUT_TAIL = 4000

STATE_DIR_NAMES = {".git", ".relayci"}


# ----------------------------------------------------------------------
# Command boundary
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CommandRequest:
    command: str | List[str]
    cwd: Path
    env: Dict[str, str]
    timeout: Optional[float] = None
    shell: bool = True


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        return (self.stdout + self.stderr)[-OUTPUT_TAIL:]


CommandRunner = Callable[[CommandRequest], CommandResult]


def subprocess_runner(req: CommandRequest) -> CommandResult:
    """Run a command synchronously. Raises subprocess.TimeoutExpired past req.timeout."""
    proc = subprocess.run(
        req.command,
        shell=req.shell,
        cwd=str(req.cwd),
        env=req.env,
        text=True,
        capture_output=True,
        timeout=req.timeout,
    )
    return CommandResult(
        exit_code=proc.returncode,
        stdout=(proc.stdout or "")[-OUTPUT_TAIL:],
        stderr=(proc.stderr or "")[-OUTPUT_TAIL:],
    )


@dataclass
class InstanceOutcome:
    status: Status
    exit_code: Optional[int] = None
    produced_artifacts: List[ArtifactKey] = field(default_factory=list)
    error_kind: Optional[str] = None
    failed_step: Optional[str] = None


def _env_name(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", key).upper()


def _expand(path: str, env: Mapping[str, str]) -> str:
    """$VAR / ${VAR} in artifact paths, from the step environment; unknown names stay as-is."""
    return Template(path).safe_substitute(env)


# ----------------------------------------------------------------------
# Runner execution context
# ----------------------------------------------------------------------

class RunnerContext:
    """
    Executes job instances for one run.

    Every instance gets a fresh workspace under <work_root>/<run_id>/, steps
    run strictly in order, and the run's and the group's cancellation flags
    are polled before each step.
    """

    def __init__(
        self,
        run: Run,
        store: ArtifactStore,
        *,
        work_root: str | Path = ".relayci/work",
        source_dir: str | Path | None = None,
        command_runner: CommandRunner | None = None,
        default_timeout: float | None = None,
        base_env: Mapping[str, str] | None = None,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.run = run
        self.store = store
        self.work_root = Path(work_root).resolve()
        self.source_dir = Path(source_dir).resolve() if source_dir is not None else None
        self.command_runner = command_runner or subprocess_runner
        self.default_timeout = default_timeout
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.console = console or get_console()
        self.clock = clock

    # ------------------------------------------------------------------
    # workspace
    # ------------------------------------------------------------------
    def workspace_for(self, instance: JobInstance) -> Path:
        return self.work_root / self.run.run_id / instance.group.name / binding_slug(instance.binding)

    def _prepare_workspace(self, instance: JobInstance) -> Path:
        ws = self.workspace_for(instance)
        if ws.exists():
            shutil.rmtree(ws)
        if self.source_dir is None:
            ws.mkdir(parents=True, exist_ok=True)
            return ws

        work_root = self.work_root

        def _ignore(directory: str, names: List[str]) -> List[str]:
            skip = []
            for n in names:
                if n in STATE_DIR_NAMES or (Path(directory) / n).resolve() == work_root:
                    skip.append(n)
            return skip

        shutil.copytree(self.source_dir, ws, ignore=_ignore)
        return ws

    def _instance_env(self, instance: JobInstance, workspace: Path) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(instance.group.env or {})
        for key, value in instance.binding:
            env[f"MATRIX_{_env_name(key)}"] = value
        bindings = self.run.decision.bindings
        env.update(
            {
                "RELAYCI": "true",
                "RELAYCI_RUN_ID": self.run.run_id,
                "RELAYCI_EVENT": self.run.event.kind.value,
                "RELAYCI_REF": bindings.get("ref", self.run.event.ref),
                "RELAYCI_PUBLISH": bindings.get("publish", "false"),
                "RELAYCI_GROUP": instance.group.name,
                "RELAYCI_INSTANCE": instance.label,
                "RELAYCI_PLATFORM": instance.platform,
                "RELAYCI_RUNNER_OS": runner_os(instance.platform),
                "RELAYCI_WORKSPACE": str(workspace),
            }
        )
        return env

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def execute(self, instance: JobInstance) -> InstanceOutcome:
        """
        Run every step of one instance. Step failures are contained here;
        ArtifactConflict is re-raised because it is fatal to the whole run.
        """
        console = self.console
        group = instance.group

        if self._stopped(instance):
            instance.status = Status.CANCELLED
            instance.message = "cancelled before start"
            instance.finished_at = now_utc()
            console.print_instance_done(instance)
            return self._outcome(instance)

        instance.status = Status.RUNNING
        instance.started_at = now_utc()
        console.print_instance_start(instance)

        try:
            workspace = self._prepare_workspace(instance)
        except OSError as e:
            self._fail(instance, StepFailure(kind="error", job=instance.instance_id, step="<workspace>", message=str(e)))
            instance.finished_at = now_utc()
            console.print_instance_done(instance)
            return self._outcome(instance)

        budget = group.timeout if group.timeout is not None else self.default_timeout
        deadline = self.clock() + budget if budget else None
        ctx = RunContext(
            event=self.run.event,
            bindings=self.run.decision.bindings,
            platform=instance.platform,
            matrix=instance.variables,
        )
        env = self._instance_env(instance, workspace)

        try:
            for idx, step in enumerate(group.steps):
                instance.step_cursor = idx

                if self._stopped(instance):
                    instance.status = Status.CANCELLED
                    instance.message = f"cancelled before step '{step.name}'"
                    break

                if not satisfied(step.when, ctx):
                    instance.steps.append(StepResult(step.name, Status.SKIPPED, message="gate not satisfied"))
                    console.print_step_skipped(instance, step.name)
                    continue

                remaining = None
                if deadline is not None:
                    remaining = deadline - self.clock()

                console.print_step(instance, step.name)
                try:
                    if remaining is not None and remaining <= 0:
                        raise StepTimeout(instance.instance_id, step.name, budget)
                    output = self._run_step(instance, step, workspace, env, remaining, budget)
                except StepFailure as e:
                    tolerated = step.tolerate_failure and e.kind != "timeout"
                    instance.steps.append(
                        StepResult(
                            step.name,
                            Status.FAILED,
                            exit_code=e.exit_code,
                            error_kind=e.kind,
                            message=str(e),
                            output=e.output,
                            tolerated=tolerated,
                        )
                    )
                    console.print_step_failure(instance, e, tolerated=tolerated)
                    if tolerated:
                        continue
                    self._fail(instance, e)
                    break

                instance.steps.append(StepResult(step.name, Status.SUCCEEDED, exit_code=0, output=output))
            else:
                instance.status = Status.SUCCEEDED
                instance.step_cursor = len(group.steps)

        except ArtifactConflict as e:
            instance.status = Status.FAILED
            instance.error_kind = "artifact_conflict"
            instance.failed_step = group.steps[instance.step_cursor].name
            instance.message = str(e)
            raise
        finally:
            instance.finished_at = now_utc()
            console.print_instance_done(instance)

        return self._outcome(instance)

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------
    def _run_step(
        self,
        instance: JobInstance,
        step: Step,
        workspace: Path,
        env: Dict[str, str],
        remaining: Optional[float],
        budget: Optional[float],
    ) -> str:
        step_env = dict(env)
        step_env.update(step.env or {})

        if step.requires_env:
            missing = [n for n in step.requires_env if not step_env.get(n)]
            if missing:
                raise StepFailure(
                    kind="missing_credentials",
                    job=instance.instance_id,
                    step=step.name,
                    message=f"required environment not set: {', '.join(missing)}",
                )

        cwd = (workspace / (step.cwd or ".")).resolve()
        try:
            if step.consumes:
                cwd.mkdir(parents=True, exist_ok=True)
                self._download(instance, step, cwd, step_env)
                return ""

            if not cwd.exists():
                raise StepFailure(
                    kind="error",
                    job=instance.instance_id,
                    step=step.name,
                    message=f"cwd not found: {cwd}",
                )

            output = ""
            if step.run:
                output = self._run_command(instance, step, workspace, cwd, step_env, remaining, budget)
            if step.produces:
                self._upload(instance, step, cwd, step_env)
            return output
        except (OSError, tarfile.TarError, NotImplementedError, ValueError) as e:
            # filesystem and archive errors fail the step like any other error
            raise StepFailure(
                kind="error",
                job=instance.instance_id,
                step=step.name,
                message=f"{type(e).__name__}: {e}",
            ) from e

    def _run_command(
        self,
        instance: JobInstance,
        step: Step,
        workspace: Path,
        cwd: Path,
        env: Dict[str, str],
        remaining: Optional[float],
        budget: Optional[float],
    ) -> str:
        image = instance.variables.get("container") or instance.group.container
        if image:
            check_docker_available(instance.instance_id, step.name)
            req = CommandRequest(
                command=container_argv(image, step.run, workspace=workspace, cwd=step.cwd, env=env),
                cwd=workspace,
                env=env,
                timeout=remaining,
                shell=False,
            )
        else:
            req = CommandRequest(command=step.run, cwd=cwd, env=env, timeout=remaining)

        try:
            result = self.command_runner(req)
        except subprocess.TimeoutExpired:
            raise StepTimeout(instance.instance_id, step.name, budget or 0) from None
        except OSError as e:
            raise StepFailure(kind="error", job=instance.instance_id, step=step.name, message=str(e)) from e

        if result.exit_code != 0:
            raise StepFailure(
                kind="exit_code",
                job=instance.instance_id,
                step=step.name,
                message=step.run,
                exit_code=result.exit_code,
                output=result.output,
            )
        return result.output

    def _key(self, instance: JobInstance, step: Step, group: str) -> ArtifactKey:
        try:
            binding = project_binding(instance.binding, step.key_axes)
        except KeyError as e:
            raise StepFailure(
                kind="error",
                job=instance.instance_id,
                step=step.name,
                message=f"matrix binding has no key {e} for artifact '{step.artifact}'",
            ) from None
        return ArtifactKey(group=group, binding=binding, name=step.artifact or "")

    def _upload(self, instance: JobInstance, step: Step, cwd: Path, env: Dict[str, str]) -> None:
        declared = _expand(step.path or "", env)
        files = resolve_paths(cwd, declared)
        if not files:
            raise StepFailure(
                kind="artifact_missing",
                job=instance.instance_id,
                step=step.name,
                message=f"declared artifact path not found: {declared}",
            )
        key = self._key(instance, step, instance.group.name)
        digest = self.store.put(key, pack_files(files, cwd))
        instance.produced_artifacts.append(key)
        self.console.print_artifact_stored(instance, str(key), digest)

    def _download(self, instance: JobInstance, step: Step, cwd: Path, env: Dict[str, str]) -> None:
        key = self._key(instance, step, step.source or "")
        try:
            blob = self.store.get(key)
        except ArtifactMissing as e:
            raise StepFailure(
                kind="artifact_missing",
                job=instance.instance_id,
                step=step.name,
                message=str(e),
            ) from None
        dest = (cwd / _expand(step.path or ".", env)).resolve()
        files = unpack_blob(blob, dest)
        self.console.print_artifact_fetched(instance, str(key), len(files))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _stopped(self, instance: JobInstance) -> bool:
        return self.run.halted or self.run.group_cancelled(instance.group.name)

    @staticmethod
    def _fail(instance: JobInstance, failure: StepFailure) -> None:
        instance.status = Status.FAILED
        instance.exit_code = failure.exit_code
        instance.error_kind = failure.kind
        instance.failed_step = failure.step
        instance.message = str(failure)

    @staticmethod
    def _outcome(instance: JobInstance) -> InstanceOutcome:
        return InstanceOutcome(
            status=instance.status,
            exit_code=instance.exit_code,
            produced_artifacts=list(instance.produced_artifacts),
            error_kind=instance.error_kind,
            failed_step=instance.failed_step,
        )
