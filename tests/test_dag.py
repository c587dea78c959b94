import pytest

from relayci import download, group, matrix, pipeline, sh
from relayci.dag import build_graph, topo_levels
from relayci.errors import ConfigurationError
from relayci.model import Event, EventKind, JobGroup
from relayci.runner import Orchestrator

from .conftest import FakeRunner


def test_stages_follow_needs():
    groups = [
        group("a", sh("s", "a")),
        group("b", sh("s", "b"), needs=["a"]),
        group("c", sh("s", "c"), needs=["a"]),
        group("d", sh("s", "d"), needs=["b", "c"]),
    ]
    _by_name, adj, indeg = build_graph(groups)
    assert adj["a"] == {"b", "c"}
    assert indeg == {"a": 0, "b": 1, "c": 1, "d": 2}
    assert topo_levels(adj, indeg) == [["a"], ["b", "c"], ["d"]]


def test_repeated_need_counts_once():
    _by_name, _adj, indeg = build_graph([group("a", sh("s", "a")), group("b", sh("s", "b"), needs=["a", "a"])])
    assert indeg["b"] == 1


def test_cycle_is_rejected_before_anything_runs(settings):
    runner = FakeRunner()
    cyclic = pipeline(
        group("a", sh("s", "a"), needs=["c"]),
        group("b", sh("s", "b"), needs=["a"]),
        group("c", sh("s", "c"), needs=["b"]),
        group("free", sh("s", "free")),
    )
    with pytest.raises(ConfigurationError) as exc:
        Orchestrator(cyclic, settings, command_runner=runner).trigger(Event(EventKind.PUSH, "main"))
    assert "cycle" in exc.value.message
    assert exc.value.details["stuck"] == ["a", "b", "c"]
    assert runner.calls == []


def test_self_need_is_a_cycle():
    with pytest.raises(ConfigurationError):
        build_graph([group("a", sh("s", "a"), needs=["a"])])


def test_missing_need():
    with pytest.raises(ConfigurationError) as exc:
        build_graph([group("b", sh("s", "b"), needs=["nope"])])
    assert "nope" in exc.value.message


def test_duplicate_group_names():
    with pytest.raises(ConfigurationError) as exc:
        build_graph([group("a", sh("s", "1")), group("a", sh("s", "2"))])
    assert exc.value.details["groups"] == ["a"]


def test_group_without_steps():
    with pytest.raises(ConfigurationError):
        build_graph([JobGroup(name="empty", steps=[])])


def test_bad_matrix_is_rejected_at_build_time():
    with pytest.raises(ConfigurationError):
        build_graph([group("a", sh("s", "a"), matrix=matrix(os=[]))])


def test_download_must_come_from_a_needed_group():
    groups = [
        group("build", sh("s", "b")),
        group("pkg", download("fetch", "build", "lib")),
    ]
    with pytest.raises(ConfigurationError) as exc:
        build_graph(groups)
    assert "not in its needs" in exc.value.message

    groups[1] = group("pkg", download("fetch", "build", "lib"), needs=["build"])
    build_graph(groups)
