from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .model import Event, EventKind, Run
from .runner import Orchestrator

# finished runs kept for GET /runs/{run_id}
DEFAULT_RETAINED_RUNS = 200

# -------------------- Schemas --------------------


class EventPayload(BaseModel):
    kind: EventKind
    ref: str = ""
    inputs: dict[str, str] = Field(default_factory=dict)

    def to_event(self) -> Event:
        return Event(kind=self.kind, ref=self.ref, inputs=self.inputs)


class EventResponse(BaseModel):
    started: bool
    reason: str
    run_id: str | None = None


class RunResponse(BaseModel):
    run_id: str
    status: str
    event: dict[str, Any]
    error: str | None = None
    report: dict[str, dict[str, dict[str, Any]]]


# -------------------- Registry --------------------


class RunRegistry:
    """
    In-process record of runs started through the webhook.

    Finished runs stay queryable until more than max_runs are held; then the
    oldest finished ones are dropped. Runs still executing are always kept.
    """

    def __init__(self, max_runs: int = DEFAULT_RETAINED_RUNS) -> None:
        self.max_runs = max(1, int(max_runs))
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def add(self, run: Run, thread: threading.Thread) -> None:
        with self._lock:
            self._runs[run.run_id] = run
            self._threads[run.run_id] = thread
            self._prune()

    def finished(self, run_id: str) -> None:
        """Drop the worker thread handle of a run that reached a terminal state."""
        with self._lock:
            self._threads.pop(run_id, None)
            self._prune()

    def _prune(self) -> None:
        excess = len(self._runs) - self.max_runs
        for run_id in list(self._runs):
            if excess <= 0:
                break
            if run_id in self._threads:
                continue
            del self._runs[run_id]
            excess -= 1

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> bool:
        """Block until the run's worker thread exits. Returns False on timeout or unknown run."""
        with self._lock:
            thread = self._threads.get(run_id)
            known = run_id in self._runs
        if thread is None:
            return known
        thread.join(timeout)
        return not thread.is_alive()


# -------------------- App --------------------


def create_app(orchestrator: Orchestrator, *, max_runs: int = DEFAULT_RETAINED_RUNS) -> FastAPI:
    app = FastAPI(title="relayci trigger endpoint")
    registry = RunRegistry(max_runs)
    app.state.runs = registry
    app.state.orchestrator = orchestrator

    def _execute(run: Run) -> None:
        try:
            orchestrator.execute(run)
        except Exception as e:
            # e.g. the artifact store could not be opened; the run must still end
            run.abort(str(e))
            orchestrator.console.print_exception(e)
        finally:
            registry.finished(run.run_id)

    @app.post("/events", response_model=EventResponse)
    def receive_event(payload: EventPayload):
        event = payload.to_event()
        try:
            decision = orchestrator.decide(event)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=e.message)

        orchestrator.console.print_decision(decision)
        if not decision.start:
            return EventResponse(started=False, reason=decision.reason)

        run = orchestrator.new_run(event, decision)
        thread = threading.Thread(target=_execute, args=(run,), name=f"relayci-run-{run.run_id}", daemon=True)
        registry.add(run, thread)
        thread.start()
        return EventResponse(started=True, reason=decision.reason, run_id=run.run_id)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        run = registry.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        data = run.to_dict()
        return RunResponse(
            run_id=run.run_id,
            status=data["status"],
            event=data["event"],
            error=run.error,
            report=data["report"],
        )

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str):
        run = registry.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        run.cancel()
        return {"ok": True, "run_id": run_id}

    @app.post("/runs/{run_id}/groups/{group}/cancel")
    def cancel_group(run_id: str, group: str):
        run = registry.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        try:
            run.cancel_group(group)
        except KeyError:
            raise HTTPException(status_code=404, detail="Job group not found")
        return {"ok": True, "run_id": run_id, "group": group}

    return app
