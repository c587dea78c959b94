import pytest

from relayci import group, matrix, sh
from relayci.errors import ConfigurationError
from relayci.matrix import expand, expand_bindings, host_platform
from relayci.model import MatrixSpec


def _group(**kw):
    return group("g", sh("s", "true"), **kw)


def test_no_matrix_expands_to_one_instance_with_empty_binding():
    instances = expand(_group())
    assert len(instances) == 1
    assert instances[0].binding == ()
    assert instances[0].label == "g"
    assert instances[0].instance_id == "g"


def test_cartesian_product_preserves_axis_and_value_order():
    spec = matrix(os=["macos", "windows", "linux"], toolchain=["stable", "beta"])
    bindings = expand_bindings("g", spec)
    assert [dict(b) for b in bindings] == [
        {"os": "macos", "toolchain": "stable"},
        {"os": "macos", "toolchain": "beta"},
        {"os": "windows", "toolchain": "stable"},
        {"os": "windows", "toolchain": "beta"},
        {"os": "linux", "toolchain": "stable"},
        {"os": "linux", "toolchain": "beta"},
    ]
    assert bindings[0] == (("os", "macos"), ("toolchain", "stable"))


def test_expansion_is_deterministic():
    g = _group(
        matrix=matrix(
            os=["a", "b"],
            py=["3.10", "3.11"],
            include=[{"os": "a", "extra": "x"}, {"os": "c", "py": "3.12"}],
        )
    )
    first = [(i.binding, i.index, i.platform) for i in expand(g)]
    second = [(i.binding, i.index, i.platform) for i in expand(g)]
    assert first == second


def test_include_merges_into_every_matching_combination():
    spec = matrix(
        os=["ubuntu-latest", "macos-latest"],
        **{"python-version": ["3.6", "3.7"]},
        include=[{"os": "ubuntu-latest", "plat-name": "manylinux2014_x86_64"}],
    )
    rows = [dict(b) for b in expand_bindings("g", spec)]
    assert len(rows) == 4
    assert rows[0] == {"os": "ubuntu-latest", "python-version": "3.6", "plat-name": "manylinux2014_x86_64"}
    assert rows[1]["plat-name"] == "manylinux2014_x86_64"
    assert "plat-name" not in rows[2]
    assert "plat-name" not in rows[3]


def test_include_with_partial_overlap_is_appended():
    spec = matrix(
        os=["linux", "macos"],
        toolchain=["stable"],
        include=[{"os": "linux", "toolchain": "nightly", "target": "aarch64"}],
    )
    rows = [dict(b) for b in expand_bindings("g", spec)]
    assert rows == [
        {"os": "linux", "toolchain": "stable"},
        {"os": "macos", "toolchain": "stable"},
        {"os": "linux", "toolchain": "nightly", "target": "aarch64"},
    ]


def test_include_naming_no_axis_is_appended():
    spec = matrix(os=["linux"], include=[{"lib": "libx.so"}])
    assert [dict(b) for b in expand_bindings("g", spec)] == [{"os": "linux"}, {"lib": "libx.so"}]


def test_include_only_matrix_keeps_declared_order_and_keys():
    spec = matrix(
        include=[
            {"os": "ubuntu-latest", "lib": "libfoo.so", "container": "manylinux"},
            {"os": "macos-latest", "lib": "libfoo.dylib", "toolchain": "stable"},
        ]
    )
    bindings = expand_bindings("g", spec)
    assert bindings == [
        (("os", "ubuntu-latest"), ("lib", "libfoo.so"), ("container", "manylinux")),
        (("os", "macos-latest"), ("lib", "libfoo.dylib"), ("toolchain", "stable")),
    ]


def test_later_include_overwrites_derived_value_but_never_axis_value():
    spec = matrix(os=["linux"], include=[{"os": "linux", "lib": "a"}, {"os": "linux", "lib": "b"}])
    assert [dict(b) for b in expand_bindings("g", spec)] == [{"os": "linux", "lib": "b"}]


def test_axis_with_zero_values_is_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        expand(_group(matrix=matrix(os=[])))
    assert "zero values" in exc.value.message


def test_duplicate_combination_is_configuration_error():
    spec = matrix(include=[{"os": "linux"}, {"os": "linux"}])
    with pytest.raises(ConfigurationError):
        expand_bindings("g", spec)


def test_duplicate_axis_is_configuration_error():
    spec = MatrixSpec(axes=(("os", ("a",)), ("os", ("b",))))
    with pytest.raises(ConfigurationError):
        expand_bindings("g", spec)


def test_platform_comes_from_os_axis_then_runs_on_then_host():
    by_axis = expand(_group(matrix=matrix(os=["windows-latest"])))
    assert by_axis[0].platform == "windows-latest"

    by_runs_on = expand(_group(runs_on="macos-latest"))
    assert by_runs_on[0].platform == "macos-latest"

    assert expand(_group())[0].platform == host_platform()


def test_instance_labels_name_the_combination():
    inst = expand(_group(matrix=matrix(os=["linux"], py=["3.11"])))[0]
    assert inst.label == "os=linux, py=3.11"
    assert inst.instance_id == "g[os=linux, py=3.11]"
