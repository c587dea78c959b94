# gate.py
"""
Conditional gates: small, pure boolean predicates over run metadata.

Predicates are frozen dataclasses combined with &, | and ~:

    publish = EventIs("release-created") | (EventIs("manual-dispatch") & InputEquals("publish", "true"))
    audit = PlatformIs("Linux")
"""
from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Mapping, Tuple

from .model import Event, EventKind


# ---------------------------------------------------------------------
# Runner OS families
# ---------------------------------------------------------------------

_OS_FAMILIES = (
    ("Windows", ("windows", "win")),
    ("macOS", ("macos", "osx", "darwin", "mac")),
    ("Linux", ("ubuntu", "linux", "manylinux", "debian", "fedora", "alpine")),
)


def runner_os(label: str) -> str:
    """'ubuntu-latest' -> 'Linux', 'macos-13' -> 'macOS', 'windows-2022' -> 'Windows'."""
    low = (label or "").lower()
    for family, prefixes in _OS_FAMILIES:
        if any(low.startswith(p) for p in prefixes):
            return family
    return label


# ---------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RunContext:
    """A snapshot of what a gate may look at."""
    event: Event
    bindings: Mapping[str, str] = field(default_factory=dict)
    platform: str = ""
    matrix: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "bindings", MappingProxyType(dict(self.bindings)))
        object.__setattr__(self, "matrix", MappingProxyType(dict(self.matrix)))

    @property
    def runner_os(self) -> str:
        return runner_os(self.platform)


# ---------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------

class Predicate:
    def evaluate(self, ctx: RunContext) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "Predicate":
        return AllOf((self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return AnyOf((self, other))

    def __invert__(self) -> "Predicate":
        return Not(self)


@dataclass(frozen=True)
class Always(Predicate):
    value: bool = True

    def evaluate(self, ctx: RunContext) -> bool:
        return self.value


@dataclass(frozen=True)
class EventIs(Predicate):
    kinds: Tuple[EventKind, ...]

    def __init__(self, *kinds: str | EventKind):
        object.__setattr__(self, "kinds", tuple(EventKind(k) for k in kinds))

    def evaluate(self, ctx: RunContext) -> bool:
        return ctx.event.kind in self.kinds


@dataclass(frozen=True)
class InputEquals(Predicate):
    """Manual-dispatch input comparison; absent inputs never match."""
    name: str
    value: str

    def evaluate(self, ctx: RunContext) -> bool:
        return ctx.event.inputs.get(self.name) == self.value


@dataclass(frozen=True)
class BindingEquals(Predicate):
    """Compare a value the trigger evaluator bound for this run (e.g. publish)."""
    name: str
    value: str

    def evaluate(self, ctx: RunContext) -> bool:
        return ctx.bindings.get(self.name) == self.value


@dataclass(frozen=True)
class MatrixEquals(Predicate):
    name: str
    value: str

    def evaluate(self, ctx: RunContext) -> bool:
        return ctx.matrix.get(self.name) == self.value


@dataclass(frozen=True)
class PlatformIs(Predicate):
    """Runner OS family ('Linux', 'macOS', 'Windows') or an exact platform label."""
    name: str

    def evaluate(self, ctx: RunContext) -> bool:
        return self.name in (ctx.runner_os, ctx.platform)


@dataclass(frozen=True)
class RefMatches(Predicate):
    pattern: str

    def evaluate(self, ctx: RunContext) -> bool:
        return fnmatch(ctx.event.ref, self.pattern)


@dataclass(frozen=True)
class AllOf(Predicate):
    parts: Tuple[Predicate, ...]

    def evaluate(self, ctx: RunContext) -> bool:
        return all(p.evaluate(ctx) for p in self.parts)


@dataclass(frozen=True)
class AnyOf(Predicate):
    parts: Tuple[Predicate, ...]

    def evaluate(self, ctx: RunContext) -> bool:
        return any(p.evaluate(ctx) for p in self.parts)


@dataclass(frozen=True)
class Not(Predicate):
    inner: Predicate

    def evaluate(self, ctx: RunContext) -> bool:
        return not self.inner.evaluate(ctx)


def satisfied(predicate: Predicate | None, ctx: RunContext) -> bool:
    """A missing predicate is always satisfied."""
    if predicate is None:
        return True
    return bool(predicate.evaluate(ctx))


# release, or a manual dispatch that asked for it
PUBLISH = EventIs(EventKind.RELEASE_CREATED) | (
    EventIs(EventKind.MANUAL_DISPATCH) & InputEquals("publish", "true")
)
