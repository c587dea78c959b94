# matrix.py
from __future__ import annotations

import platform as _platform
from itertools import product
from typing import Dict, List

from .errors import ConfigurationError
from .model import Binding, JobGroup, JobInstance, MatrixSpec

# ---------------------------------------------------------------------
# Expansion rules
# ---------------------------------------------------------------------
# 1. cartesian product of the axes, in axis order, values in declared order
# 2. each include entry is compared against the ORIGINAL combinations on the
#    axis keys it names:
#      - every named axis value matches -> merge its extra keys into that combination
#      - no combination matches (partial overlap, or names no axis) -> append it
# 3. no axes and no include -> exactly one instance with an empty binding
#
# Derived keys merged from a later include overwrite those from an earlier one;
# axis values are never overwritten.
# ---------------------------------------------------------------------


def validate_matrix(group_name: str, spec: MatrixSpec) -> None:
    seen = set()
    for axis, values in spec.axes:
        if axis in seen:
            raise ConfigurationError(
                f"group '{group_name}' declares matrix axis '{axis}' twice",
                {"group": group_name},
            )
        seen.add(axis)
        if not values:
            raise ConfigurationError(
                f"group '{group_name}' has matrix axis '{axis}' with zero values",
                {"group": group_name, "axis": axis},
            )
    for entry in spec.include:
        if not entry:
            raise ConfigurationError(
                f"group '{group_name}' has an empty matrix include entry",
                {"group": group_name},
            )


def expand_bindings(group_name: str, spec: MatrixSpec) -> List[Binding]:
    """Deterministic, order-preserving matrix expansion."""
    validate_matrix(group_name, spec)

    axis_names = spec.axis_names
    combos: List[Dict[str, str]] = []
    if spec.axes:
        for values in product(*(vals for _, vals in spec.axes)):
            combos.append(dict(zip(axis_names, values)))
    original = len(combos)

    appended: List[Dict[str, str]] = []
    for entry in spec.include:
        inc = dict(entry)
        named_axes = [k for k in inc if k in axis_names]
        merged = False
        if named_axes:
            for combo in combos[:original]:
                if all(combo[k] == inc[k] for k in named_axes):
                    for k, v in inc.items():
                        if k not in axis_names:
                            combo[k] = v
                    merged = True
        if not merged:
            appended.append(inc)

    if not spec.axes and not appended:
        return [()]

    # dicts keep insertion order: axes first, then derived keys as first seen
    bindings: List[Binding] = [tuple(c.items()) for c in combos + appended]

    seen = set()
    for b in bindings:
        ident = tuple(sorted(b))
        if ident in seen:
            raise ConfigurationError(
                f"group '{group_name}' expands to the same matrix combination twice",
                {"group": group_name, "combination": dict(b)},
            )
        seen.add(ident)
    return bindings


def host_platform() -> str:
    return {"Darwin": "macos-latest", "Windows": "windows-latest"}.get(_platform.system(), "ubuntu-latest")


def expand(group: JobGroup) -> List[JobInstance]:
    """
    Materialize one JobInstance per matrix combination.

    The platform label comes from the binding's platform axis (default `os`),
    then the group's runs_on, then the host.
    """
    out: List[JobInstance] = []
    for idx, binding in enumerate(expand_bindings(group.name, group.matrix)):
        values = dict(binding)
        platform = values.get(group.platform_axis) or group.runs_on or host_platform()
        out.append(JobInstance(group=group, binding=binding, index=idx, platform=platform))
    return out
