# artifacts.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import re
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import ArtifactConflict, ArtifactMissing
from .model import Binding, binding_label

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# An artifact is an immutable blob keyed by
#   (producing group, matrix binding, artifact name)
#
# Write-once per run: put() is an atomic check-and-insert. Reads are exact
# key matches only; there is no "latest" or cross-platform fallback.
#
# Blobs are usually tar.gz archives of workspace files (see pack_files),
# but the store itself does not care what the bytes are.
#
# File-backed layout:
#   root/
#     <group>/
#       <binding-slug>/
#         <name>.blob
#         <name>.manifest.json
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ArtifactKey:
    group: str
    binding: Binding
    name: str

    def __str__(self) -> str:
        lbl = binding_label(self.binding)
        return f"{self.group}[{lbl}]/{self.name}" if lbl else f"{self.group}/{self.name}"

    def to_dict(self) -> Dict:
        return {"group": self.group, "binding": [list(p) for p in self.binding], "name": self.name}


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


_UNSAFE = re.compile(r"[^A-Za-z0-9._=-]+")


def _slug(text: str) -> str:
    return _UNSAFE.sub("_", text).strip("_") or "_"


def binding_slug(binding: Binding) -> str:
    """Readable, filesystem-safe and collision-free directory name for a binding."""
    if not binding:
        return "_"
    label = binding_label(binding)
    return f"{_slug(label.replace(', ', ','))}-{_sha256_bytes(label.encode('utf-8'))[:8]}"


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class ArtifactStore:
    """In-memory write-once store. One instance per run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[ArtifactKey, bytes] = {}

    def put(self, key: ArtifactKey, blob: bytes) -> str:
        """Store blob under key. Returns its sha256. Raises ArtifactConflict if key exists."""
        blob = bytes(blob)
        with self._lock:
            if key in self._blobs:
                raise ArtifactConflict(key)
            self._blobs[key] = blob
        return _sha256_bytes(blob)

    def get(self, key: ArtifactKey) -> bytes:
        with self._lock:
            try:
                return self._blobs[key]
            except KeyError:
                raise ArtifactMissing(key) from None

    def exists(self, key: ArtifactKey) -> bool:
        with self._lock:
            return key in self._blobs

    def keys(self) -> List[ArtifactKey]:
        with self._lock:
            return list(self._blobs)


class FileArtifactStore(ArtifactStore):
    """
    Same contract, persisted under root (normally <artifact_dir>/<run_id>).

    Blobs are written to a tmp file then renamed, so a reader never sees a
    half-written blob. The in-process index is the source of truth for
    write-once; files already on disk from an earlier process also count.
    """

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._written: Dict[ArtifactKey, str] = {}

    def _dir(self, key: ArtifactKey) -> Path:
        return self.root / _slug(key.group) / binding_slug(key.binding)

    def blob_path(self, key: ArtifactKey) -> Path:
        return self._dir(key) / f"{_slug(key.name)}.blob"

    def manifest_path(self, key: ArtifactKey) -> Path:
        return self._dir(key) / f"{_slug(key.name)}.manifest.json"

    def put(self, key: ArtifactKey, blob: bytes) -> str:
        blob = bytes(blob)
        digest = _sha256_bytes(blob)
        art = self.blob_path(key)
        man = self.manifest_path(key)

        with self._lock:
            if key in self._written or art.exists():
                raise ArtifactConflict(key)
            # reserve the key before touching disk
            self._written[key] = digest

        tmp = art.with_suffix(".blob.tmp")
        stored = False
        try:
            art.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(blob)
            tmp.replace(art)
            stored = True
            manifest = {
                "key": key.to_dict(),
                "sha256": digest,
                "size": len(blob),
                "stored_at_unix": int(time.time()),
            }
            man.write_text(_json_dumps_stable(manifest), encoding="utf-8")
        except OSError:
            # release the key so a retry is not reported as a conflict
            if stored:
                art.unlink(missing_ok=True)
            with self._lock:
                self._written.pop(key, None)
            raise
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return digest

    def get(self, key: ArtifactKey) -> bytes:
        art = self.blob_path(key)
        if not art.exists():
            raise ArtifactMissing(key)
        return art.read_bytes()

    def exists(self, key: ArtifactKey) -> bool:
        return self.blob_path(key).exists()

    def keys(self) -> List[ArtifactKey]:
        with self._lock:
            return list(self._written)

    def manifest(self, key: ArtifactKey) -> Dict:
        man = self.manifest_path(key)
        if not man.exists():
            raise ArtifactMissing(key)
        return json.loads(man.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------
# Packing workspace files into blobs
# ---------------------------------------------------------------------

def resolve_paths(base: Path, pattern: str) -> List[Path]:
    """
    Expand a declared artifact path relative to base.
      - file path: "target/release/libfoo.so"
      - dir path:  "dist/"
      - glob:      "dist/*.whl"
    """
    pattern = pattern.strip()
    if not pattern:
        return []
    if Path(pattern).is_absolute():
        raise ValueError(f"artifact path must be relative to the step directory: {pattern}")
    p = base / pattern
    if p.exists():
        return [p]
    return sorted(m for m in base.glob(pattern) if m.exists())


def _iter_files(paths: Iterable[Path]) -> Iterable[Path]:
    for p in paths:
        if p.is_file():
            yield p
        elif p.is_dir():
            # deterministic traversal
            for f in sorted(p.rglob("*")):
                if f.is_file():
                    yield f


def pack_files(paths: Iterable[Path], base: Path) -> bytes:
    """
    Deterministic tar.gz of the given files/dirs.

    A matched file is stored under its basename (`target/release/libfoo.so`
    -> `libfoo.so`); a matched directory contributes its contents relative
    to itself (`dist/` -> `pkg.whl`, `sub/x.txt`).
    """
    buf = io.BytesIO()
    entries: List[tuple[str, Path]] = []
    for matched in paths:
        matched = matched.resolve()
        anchor = matched.parent if matched.is_file() else matched
        for f in _iter_files([matched]):
            entries.append((str(f.resolve().relative_to(anchor)).replace("\\", "/"), f))
    entries.sort(key=lambda e: e[0])

    # fixed gzip mtime so identical inputs give identical blobs
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz, tarfile.open(fileobj=gz, mode="w") as tar:
        seen = set()
        for arcname, f in entries:
            if arcname in seen:
                continue
            seen.add(arcname)
            data = f.read_bytes()
            info = tarfile.TarInfo(name=arcname)
            info.size = len(data)
            info.mode = 0o755 if (f.stat().st_mode & 0o111) else 0o644
            info.mtime = 0
            tar.addfile(info, fileobj=io.BytesIO(data))
    return buf.getvalue()


def unpack_blob(blob: bytes, dest: Path) -> List[Path]:
    """Extract a pack_files() blob into dest. Returns the extracted paths."""
    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    out: List[Path] = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = []
        for m in tar.getmembers():
            target = (dest / m.name).resolve()
            if not m.isfile() or dest not in target.parents:
                continue
            members.append(m)
            out.append(target)
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(dest), members=members, filter="data")
        else:
            tar.extractall(path=str(dest), members=members)
    return out


def open_store(artifact_dir: Optional[str | Path], run_id: str) -> ArtifactStore:
    """'memory' (or None) -> in-memory store; otherwise a file store under <dir>/<run_id>."""
    if artifact_dir is None or str(artifact_dir) == "memory":
        return ArtifactStore()
    return FileArtifactStore(Path(artifact_dir) / run_id)
