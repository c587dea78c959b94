# step_workflows/docker.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List

from ..errors import StepFailure

CONTAINER_WORKDIR = "/workspace"

# variables that only make sense on the host
_HOST_ONLY_ENV = {"PATH", "HOME", "PWD", "OLDPWD", "SHLVL", "TMPDIR", "TEMP", "TMP", "_"}


def check_docker_available(job: str, step: str) -> None:
    """Check if Docker is available, raise a step failure with a hint if not."""
    try:
        subprocess.run(
            ["docker", "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise StepFailure(
            kind="error",
            job=job,
            step=step,
            message="Docker is not available. Install Docker and ensure the daemon is running.",
        )


def container_argv(
    image: str,
    cmd: str,
    *,
    workspace: Path,
    cwd: str | None,
    env: Dict[str, str],
) -> List[str]:
    """
    Build `docker run` argv for a command step.

    The instance workspace is mounted at /workspace; the step's cwd is
    resolved inside it. Variables are forwarded by name only (`-e KEY`):
    docker copies the values from its own environment, so secrets never
    appear on the command line. The docker client must therefore be started
    with `env`. Host-only variables (PATH, HOME, ...) are not forwarded so
    the image's own values stay in effect.
    """
    argv = ["docker", "run", "--rm"]
    argv.extend(["-v", f"{Path(workspace).resolve()}:{CONTAINER_WORKDIR}"])

    step_cwd = cwd or "."
    container_cwd = f"{CONTAINER_WORKDIR}/{step_cwd}".replace("//", "/")
    argv.extend(["-w", container_cwd])

    for key in sorted(env):
        if key in _HOST_ONLY_ENV:
            continue
        argv.extend(["-e", key])

    argv.append(image)
    argv.extend(["sh", "-c", cmd])
    return argv
