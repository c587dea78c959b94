from .gate import PUBLISH, EventIs, InputEquals, PlatformIs
from .model import Event, EventKind, JobGroup, Pipeline, Run, Status, Step
from .runner import Orchestrator, load_workflow, run_pipeline
# Imported last: loading the relayci.matrix submodule above rebinds the
# package attribute ``matrix``; the DSL function must win.
from .dsl import download, dispatch_input, group, matrix, on, pipeline, sh, upload

__all__ = [
    "download",
    "dispatch_input",
    "group",
    "matrix",
    "on",
    "pipeline",
    "sh",
    "upload",
    "PUBLISH",
    "EventIs",
    "InputEquals",
    "PlatformIs",
    "Event",
    "EventKind",
    "JobGroup",
    "Pipeline",
    "Run",
    "Status",
    "Step",
    "Orchestrator",
    "load_workflow",
    "run_pipeline",
]
