# triggers.py
from __future__ import annotations

from dataclasses import replace
from fnmatch import fnmatch
from typing import Dict, Optional

from .errors import ConfigurationError
from .gate import PUBLISH, RunContext, satisfied
from .model import BranchFilter, Event, EventKind, RunDecision, Triggers

_REF_PREFIXES = ("refs/heads/", "refs/tags/", "refs/pull/")


def short_ref(ref: str) -> str:
    """refs/heads/main -> main, refs/tags/v1.0 -> v1.0."""
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _ref_allowed(filt: BranchFilter, ref: str) -> bool:
    name = short_ref(ref)
    for pattern in filt.branches:
        if pattern == "**" or fnmatch(name, pattern):
            return True
    return False


def resolve_inputs(event: Event, triggers: Triggers) -> Event:
    """
    Complete a manual-dispatch event's inputs from declared defaults.

    Raises ConfigurationError on unknown inputs, or on a required input
    that has neither a value nor a default.
    """
    declared = {d.name: d for d in (triggers.manual_dispatch or ())}
    unknown = sorted(set(event.inputs) - set(declared))
    if unknown:
        raise ConfigurationError(
            f"unknown dispatch input(s): {', '.join(unknown)}",
            {"declared": sorted(declared)},
        )

    inputs: Dict[str, str] = {}
    for name, decl in declared.items():
        if name in event.inputs:
            inputs[name] = event.inputs[name]
        elif decl.default is not None:
            inputs[name] = decl.default
        elif decl.required:
            raise ConfigurationError(f"missing required dispatch input '{name}'")
    return replace(event, inputs=inputs)


def evaluate(event: Event, triggers: Optional[Triggers] = None) -> RunDecision:
    """
    Decide whether (and how) an event starts a run.

    bindings always carry:
      event    - the event kind
      ref      - the short ref name
      publish  - "true" iff the publish gate is pre-satisfied for this run
    plus one `inputs.<name>` entry per (resolved) dispatch input.
    """
    triggers = triggers or Triggers()
    kind = event.kind

    if kind in (EventKind.PUSH, EventKind.PULL_REQUEST):
        filt = triggers.push if kind == EventKind.PUSH else triggers.pull_request
        if filt is None:
            return RunDecision(start=False, reason=f"{kind.value} events do not trigger this pipeline")
        if not _ref_allowed(filt, event.ref):
            return RunDecision(
                start=False,
                reason=f"{kind.value} ref '{short_ref(event.ref)}' matches none of {list(filt.branches)}",
            )

    elif kind == EventKind.RELEASE_CREATED:
        if not triggers.release_created:
            return RunDecision(start=False, reason="release events do not trigger this pipeline")

    elif kind == EventKind.MANUAL_DISPATCH:
        if triggers.manual_dispatch is None:
            return RunDecision(start=False, reason="manual dispatch is not enabled for this pipeline")
        event = resolve_inputs(event, triggers)

    publish = satisfied(PUBLISH, RunContext(event=event))
    bindings = {
        "event": kind.value,
        "ref": short_ref(event.ref),
        "publish": "true" if publish else "false",
    }
    for name, value in event.inputs.items():
        bindings[f"inputs.{name}"] = value

    scope = "full graph including publish" if publish else "publish excluded"
    return RunDecision(start=True, bindings=bindings, reason=f"{kind.value}: {scope}", event=event)
