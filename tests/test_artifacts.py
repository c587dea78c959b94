import json
import threading

import pytest

from relayci.artifacts import (
    ArtifactKey,
    ArtifactStore,
    FileArtifactStore,
    binding_slug,
    open_store,
    pack_files,
    resolve_paths,
    unpack_blob,
)
from relayci.errors import ArtifactConflict, ArtifactMissing

LINUX = (("os", "ubuntu-latest"),)
MACOS = (("os", "macos-latest"),)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return ArtifactStore()
    return FileArtifactStore(tmp_path / "artifacts" / "run1")


def test_put_then_get_returns_same_blob(store):
    key = ArtifactKey("build-native", LINUX, "library")
    store.put(key, b"libaries_askar.so bytes")
    assert store.get(key) == b"libaries_askar.so bytes"
    assert store.exists(key)


def test_second_put_is_rejected_and_keeps_first_blob(store):
    key = ArtifactKey("build-native", LINUX, "library")
    store.put(key, b"first")
    with pytest.raises(ArtifactConflict) as exc:
        store.put(key, b"second")
    assert exc.value.key == key
    assert store.get(key) == b"first"


def test_get_requires_exact_key(store):
    store.put(ArtifactKey("build-native", LINUX, "library"), b"linux")
    with pytest.raises(ArtifactMissing):
        store.get(ArtifactKey("build-native", MACOS, "library"))
    with pytest.raises(ArtifactMissing):
        store.get(ArtifactKey("build-native", (), "library"))
    with pytest.raises(ArtifactMissing):
        store.get(ArtifactKey("package", LINUX, "library"))


def test_same_name_different_platforms_are_distinct(store):
    store.put(ArtifactKey("build-native", LINUX, "library"), b"so")
    store.put(ArtifactKey("build-native", MACOS, "library"), b"dylib")
    assert store.get(ArtifactKey("build-native", MACOS, "library")) == b"dylib"
    assert len(store.keys()) == 2


def test_concurrent_puts_to_one_key_admit_exactly_one(store):
    key = ArtifactKey("g", LINUX, "a")
    results = []
    barrier = threading.Barrier(8)

    def writer(i):
        barrier.wait()
        try:
            store.put(key, f"blob-{i}".encode())
            results.append(("ok", i))
        except ArtifactConflict:
            results.append(("conflict", i))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [i for status, i in results if status == "ok"]
    assert len(winners) == 1
    assert store.get(key) == f"blob-{winners[0]}".encode()


def test_file_store_writes_manifest_with_digest(tmp_path):
    store = FileArtifactStore(tmp_path / "run1")
    key = ArtifactKey("package", LINUX, "python")
    digest = store.put(key, b"wheel")
    manifest = json.loads(store.manifest_path(key).read_text())
    assert manifest["sha256"] == digest
    assert manifest["size"] == 5
    assert manifest["key"]["name"] == "python"
    assert store.manifest(key)["key"]["group"] == "package"


def test_file_store_rejects_blob_left_by_earlier_process(tmp_path):
    key = ArtifactKey("g", LINUX, "a")
    FileArtifactStore(tmp_path / "run1").put(key, b"x")
    with pytest.raises(ArtifactConflict):
        FileArtifactStore(tmp_path / "run1").put(key, b"y")


def test_failed_write_does_not_reserve_the_key(tmp_path):
    store = FileArtifactStore(tmp_path / "run1")
    key = ArtifactKey("package", LINUX, "python")
    # a plain file where the group directory should go makes the write fail
    blocker = store.blob_path(key).parent.parent
    blocker.write_text("in the way")
    with pytest.raises(OSError):
        store.put(key, b"wheel")
    assert not store.exists(key)

    blocker.unlink()
    digest = store.put(key, b"wheel")
    assert store.get(key) == b"wheel"
    assert store.manifest(key)["sha256"] == digest


def test_open_store(tmp_path):
    assert type(open_store("memory", "r1")) is ArtifactStore
    assert type(open_store(None, "r1")) is ArtifactStore
    fs = open_store(tmp_path, "r1")
    assert isinstance(fs, FileArtifactStore)
    assert fs.root == (tmp_path / "r1").resolve()


def test_binding_slug_is_filesystem_safe_and_distinct():
    a = binding_slug((("os", "ubuntu-latest"), ("py", "3.11")))
    b = binding_slug((("os", "ubuntu-latest"), ("py", "3/11")))
    assert "/" not in a and "/" not in b
    assert a != b
    assert binding_slug(()) == "_"


def test_pack_and_unpack_files(tmp_path):
    src = tmp_path / "src"
    (src / "target" / "release").mkdir(parents=True)
    (src / "target" / "release" / "libfoo.so").write_bytes(b"lib")
    (src / "dist" / "sub").mkdir(parents=True)
    (src / "dist" / "a.whl").write_bytes(b"a")
    (src / "dist" / "sub" / "b.txt").write_bytes(b"b")

    lib_blob = pack_files(resolve_paths(src, "target/release/libfoo.so"), src)
    out = unpack_blob(lib_blob, tmp_path / "out1")
    assert [p.name for p in out] == ["libfoo.so"]
    assert (tmp_path / "out1" / "libfoo.so").read_bytes() == b"lib"

    dist_blob = pack_files(resolve_paths(src, "dist"), src)
    unpack_blob(dist_blob, tmp_path / "out2")
    assert (tmp_path / "out2" / "a.whl").read_bytes() == b"a"
    assert (tmp_path / "out2" / "sub" / "b.txt").read_bytes() == b"b"


def test_pack_is_deterministic(tmp_path):
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "x.whl").write_bytes(b"x")
    files = resolve_paths(tmp_path, "dist/*.whl")
    assert pack_files(files, tmp_path) == pack_files(files, tmp_path)


def test_resolve_paths_with_no_match_is_empty(tmp_path):
    assert resolve_paths(tmp_path, "dist/*") == []
    assert resolve_paths(tmp_path, "") == []
