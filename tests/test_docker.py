from pathlib import Path

from relayci.step_workflows.docker import container_argv


def test_env_is_forwarded_by_name_only(tmp_path):
    env = {
        "TWINE_USERNAME": "__token__",
        "TWINE_PASSWORD": "pypi-secret",
        "MATRIX_OS": "ubuntu-latest",
        "PATH": "/usr/bin",
    }
    argv = container_argv("img", "twine upload", workspace=tmp_path, cwd=None, env=env)

    assert argv[-4:] == ["img", "sh", "-c", "twine upload"]
    forwarded = [argv[i + 1] for i, a in enumerate(argv) if a == "-e"]
    assert forwarded == ["MATRIX_OS", "TWINE_PASSWORD", "TWINE_USERNAME"]
    for value in env.values():
        assert not any(value in a for a in argv)


def test_workspace_is_mounted_and_cwd_resolved_inside_it(tmp_path):
    argv = container_argv("img", "make", workspace=tmp_path, cwd="wrappers/python", env={})

    assert argv[argv.index("-v") + 1] == f"{Path(tmp_path).resolve()}:/workspace"
    assert argv[argv.index("-w") + 1] == "/workspace/wrappers/python"
    assert "-e" not in argv
