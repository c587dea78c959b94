import pytest

from relayci.errors import ConfigurationError
from relayci.settings import DEFAULT_ARTIFACT_DIR, DEFAULT_JOB_TIMEOUT, DEFAULT_WORK_DIR, Settings


def test_defaults_from_empty_environment():
    s = Settings.from_env({})
    assert s.max_workers >= 1
    assert s.job_timeout == DEFAULT_JOB_TIMEOUT
    assert s.fail_fast is False
    assert s.work_dir == DEFAULT_WORK_DIR
    assert s.artifact_dir == DEFAULT_ARTIFACT_DIR


def test_values_from_environment():
    s = Settings.from_env(
        {
            "RELAYCI_WORKERS": "3",
            "RELAYCI_JOB_TIMEOUT": "90",
            "RELAYCI_FAIL_FAST": "yes",
            "RELAYCI_WORK_DIR": "/tmp/w",
            "RELAYCI_ARTIFACT_DIR": "memory",
        }
    )
    assert s == Settings(max_workers=3, job_timeout=90.0, fail_fast=True, work_dir="/tmp/w", artifact_dir="memory")


def test_zero_timeout_means_no_budget():
    assert Settings.from_env({"RELAYCI_JOB_TIMEOUT": "0"}).job_timeout is None


@pytest.mark.parametrize(
    "env",
    [
        {"RELAYCI_WORKERS": "0"},
        {"RELAYCI_WORKERS": "many"},
        {"RELAYCI_JOB_TIMEOUT": "-1"},
        {"RELAYCI_FAIL_FAST": "maybe"},
    ],
)
def test_bad_values_are_configuration_errors(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_override_keeps_values_not_given():
    base = Settings(max_workers=2, job_timeout=60)
    s = base.override(max_workers=None, job_timeout=0, fail_fast=True, work_dir=None)
    assert s.max_workers == 2
    assert s.job_timeout is None
    assert s.fail_fast is True
    assert s.work_dir == base.work_dir


def test_override_validates():
    with pytest.raises(ConfigurationError):
        Settings(max_workers=2).override(max_workers=0)
    with pytest.raises(ConfigurationError):
        Settings(max_workers=2).override(job_timeout=-5)
