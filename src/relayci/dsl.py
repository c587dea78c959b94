# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .gate import Predicate
from .model import (
    BranchFilter,
    DispatchInput,
    JobGroup,
    MatrixSpec,
    Pipeline,
    Step,
    Triggers,
)


def _keys(key_axes: Optional[Iterable[str]]) -> Optional[tuple]:
    return tuple(key_axes) if key_axes is not None else None


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Mapping[str, str]] = None,
    tolerate_failure: bool = False,
    when: Predicate | None = None,
    requires_env: Sequence[str] = (),
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        tolerate_failure=tolerate_failure,
        when=when,
        requires_env=tuple(requires_env),
    )


def upload(
    name: str,
    artifact: str,
    path: str,
    *,
    run: str = "",
    cwd: str | None = None,
    key_axes: Optional[Iterable[str]] = None,
    when: Predicate | None = None,
) -> Step:
    """
    Store `path` (file, dir or glob) as `artifact` for this instance.

    key_axes selects which matrix keys form the artifact key (default: the
    whole binding). Consumers must use the same axes.
    """
    return Step(
        name=name,
        run=run,
        cwd=cwd,
        kind="upload",
        artifact=artifact,
        path=path,
        key_axes=_keys(key_axes),
        when=when,
    )


def download(
    name: str,
    group: str,
    artifact: str,
    dest: str = ".",
    *,
    cwd: str | None = None,
    key_axes: Optional[Iterable[str]] = None,
    when: Predicate | None = None,
) -> Step:
    """Fetch `artifact` produced by `group` for this instance's own binding into dest."""
    return Step(
        name=name,
        cwd=cwd,
        kind="download",
        artifact=artifact,
        path=dest,
        source=group,
        key_axes=_keys(key_axes),
        when=when,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(include: Optional[Iterable[Mapping[str, Any]]] = None, **axes: Iterable[Any]) -> MatrixSpec:
    """
    Build a matrix specification.

        matrix(os=["ubuntu-latest", "macos-latest"], python=["3.11"],
               include=[{"os": "ubuntu-latest", "plat": "manylinux2014_x86_64"}])

    Axis names with dashes can be passed via a dict: matrix(**{"python-version": [...]}).
    Values are stringified; axis and include order are preserved.
    """
    return MatrixSpec(
        axes=tuple((name, tuple(str(v) for v in values)) for name, values in axes.items()),
        include=tuple(tuple((str(k), str(v)) for k, v in entry.items()) for entry in (include or [])),
    )


# ---------------------------------------------------------------------
# Group helper
# ---------------------------------------------------------------------

def group(
    name: str,
    *steps: Step,  # allow: group("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: group("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[MatrixSpec] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    runs_on: str | None = None,
    platform_axis: str = "os",
    container: str | None = None,
    timeout: float | None = None,
) -> JobGroup:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"group({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobGroup(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        matrix=matrix or MatrixSpec(),
        env={k: str(v) for k, v in (env or {}).items()},
        runs_on=runs_on,
        platform_axis=platform_axis,
        container=container,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Triggers + pipeline
# ---------------------------------------------------------------------

def dispatch_input(
    name: str,
    *,
    description: str = "",
    required: bool = False,
    default: str | None = None,
) -> DispatchInput:
    return DispatchInput(name=name, description=description, required=required, default=default)


def on(
    *,
    push: Optional[Sequence[str]] = ("**",),
    pull_request: Optional[Sequence[str]] = ("main",),
    release_created: bool = True,
    manual_dispatch: Optional[Sequence[DispatchInput]] = (),
) -> Triggers:
    """
    Trigger filters. Pass None to disable an event kind.

        on(push=["**"], pull_request=["main"],
           manual_dispatch=[dispatch_input("publish", required=True, default="false")])
    """
    return Triggers(
        push=BranchFilter(tuple(push)) if push is not None else None,
        pull_request=BranchFilter(tuple(pull_request)) if pull_request is not None else None,
        release_created=release_created,
        manual_dispatch=tuple(manual_dispatch) if manual_dispatch is not None else None,
    )


def pipeline(*groups: JobGroup, name: str = "pipeline", triggers: Triggers | None = None) -> Pipeline:
    """
    Workflow definition helper.

        from relayci import pipeline, group, sh

        def workflow():
            return pipeline(
                group(...),
                group(...),
                name="release",
            )
    """
    return Pipeline(name=name, groups=list(groups), triggers=triggers or Triggers())
