"""Shared fixtures: a fake command runner and the release pipeline used in scenario tests."""

from __future__ import annotations

import itertools
import threading
from pathlib import Path
from typing import Callable, Dict, List, Union

import pytest

from relayci import PUBLISH, PlatformIs, download, group, matrix, on, pipeline, sh, upload, dispatch_input
from relayci.executor import CommandRequest, CommandResult
from relayci.settings import Settings
from relayci.ui.console import Console, set_console

OSES = ["macos-latest", "windows-latest", "ubuntu-latest"]
LIBS = {
    "ubuntu-latest": "libaries_askar.so",
    "macos-latest": "libaries_askar.dylib",
    "windows-latest": "aries_askar.dll",
}

Rule = Union[int, Callable[[CommandRequest], Union[int, CommandResult, None]]]


class FakeRunner:
    """
    Stands in for subprocess execution.

    rules map a command string to an exit code or a callable taking the
    request; unknown commands succeed. Every call is recorded in order.
    """

    def __init__(self, rules: Dict[str, Rule] | None = None):
        self.rules = dict(rules or {})
        self.calls: List[dict] = []
        self._lock = threading.Lock()
        self._seq = itertools.count()

    def __call__(self, req: CommandRequest) -> CommandResult:
        with self._lock:
            self.calls.append(
                {
                    "seq": next(self._seq),
                    "command": req.command,
                    "group": req.env.get("RELAYCI_GROUP"),
                    "platform": req.env.get("RELAYCI_PLATFORM"),
                    "instance": req.env.get("RELAYCI_INSTANCE"),
                    "cwd": Path(req.cwd),
                    "env": dict(req.env),
                }
            )
        rule = self.rules.get(req.command, 0)
        out = rule(req) if callable(rule) else rule
        if isinstance(out, CommandResult):
            return out
        return CommandResult(exit_code=out or 0)

    def commands(self, group: str | None = None) -> List[str]:
        return [c["command"] for c in self.calls if group is None or c["group"] == group]

    def groups_in_order(self) -> List[str]:
        return [c["group"] for c in sorted(self.calls, key=lambda c: c["seq"])]


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        max_workers=4,
        job_timeout=None,
        fail_fast=False,
        work_dir=str(tmp_path / "work"),
        artifact_dir="memory",
    )


def build_library(req: CommandRequest) -> int:
    lib = req.env["MATRIX_LIB"]
    out = Path(req.cwd) / "target" / "release"
    out.mkdir(parents=True, exist_ok=True)
    (out / lib).write_bytes(f"native:{req.env['RELAYCI_PLATFORM']}".encode())
    return 0


def make_wheel_builder(seen: Dict[str, List[str]]):
    def build_wheel(req: CommandRequest) -> int:
        cwd = Path(req.cwd)
        seen[req.env["RELAYCI_PLATFORM"]] = sorted(p.name for p in (cwd / "aries_askar").iterdir())
        dist = cwd / "dist"
        dist.mkdir(parents=True, exist_ok=True)
        (dist / f"aries_askar-0.1-py3-none-{req.env['MATRIX_PLAT_NAME']}.whl").write_bytes(b"wheel")
        return 0

    return build_wheel


def release_pipeline():
    """The native-library release pipeline with fakeable command names."""
    return pipeline(
        group(
            "verify",
            sh("Cargo check", "cargo check"),
            sh("Test", "cargo test"),
            matrix=matrix(os=OSES),
        ),
        group(
            "build-native",
            sh("Build library", "build-lib"),
            upload("Upload library artifacts", "library", "target/release/${MATRIX_LIB}", key_axes=["os"]),
            needs=["verify"],
            matrix=matrix(include=[{"os": os_, "lib": lib} for os_, lib in LIBS.items()]),
        ),
        group(
            "package",
            download("Fetch library artifacts", "build-native", "library", "wrappers/python/aries_askar/", key_axes=["os"]),
            sh("Build and test python package", "build-wheel", cwd="wrappers/python"),
            sh("Auditwheel", "auditwheel", when=PlatformIs("Linux")),
            upload("Upload python package", "python", "dist/*", cwd="wrappers/python", key_axes=["os"]),
            sh(
                "Publish python package",
                "twine upload",
                cwd="wrappers/python",
                when=PUBLISH,
                requires_env=["TWINE_USERNAME", "TWINE_PASSWORD"],
            ),
            needs=["build-native"],
            matrix=matrix(
                os=OSES,
                **{"python-version": ["3.6"]},
                include=[
                    {"os": "ubuntu-latest", "plat-name": "manylinux2014_x86_64"},
                    {"os": "macos-latest", "plat-name": "macosx_10_9_x86_64"},
                    {"os": "windows-latest", "plat-name": "win_amd64"},
                ],
            ),
        ),
        name="aries-askar",
        triggers=on(manual_dispatch=[dispatch_input("publish", required=True, default="false")]),
    )


@pytest.fixture
def release():
    return release_pipeline()


@pytest.fixture
def wheel_seen() -> Dict[str, List[str]]:
    return {}


@pytest.fixture
def release_runner(wheel_seen) -> FakeRunner:
    return FakeRunner({"build-lib": build_library, "build-wheel": make_wheel_builder(wheel_seen)})
