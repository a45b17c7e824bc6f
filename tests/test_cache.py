from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from runway.cache import CacheStore, compute_cache_key, restore_prefix
from runway.errors import CacheWriteError
from runway.model import CacheKeySpec


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    (ws / "target").mkdir(parents=True)
    (ws / "target" / "lib.rlib").write_bytes(b"x" * 2048)
    (ws / "Cargo.lock").write_text("serde = 1.0\n", encoding="utf-8")
    return ws


SPEC = CacheKeySpec(prefix="rust", paths=("Cargo.lock",), cache_dirs=("target",))


def test_key_depends_on_inputs_and_scope(workspace: Path):
    key, manifest = compute_cache_key(SPEC, "rust-stable", root=workspace)
    again, _ = compute_cache_key(SPEC, "rust-stable", root=workspace)
    other_scope, _ = compute_cache_key(SPEC, "rust-1.75", root=workspace)

    assert key == again
    assert key.startswith(restore_prefix(SPEC, "rust-stable"))
    assert other_scope != key
    assert manifest["files"][0][0] == "Cargo.lock"

    (workspace / "Cargo.lock").write_text("serde = 2.0\n", encoding="utf-8")
    changed, _ = compute_cache_key(SPEC, "rust-stable", root=workspace)
    assert changed != key


def test_save_then_restore(tmp_path: Path, workspace: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", clock=clock)
    key, inputs = compute_cache_key(SPEC, "rust-stable", root=workspace)
    entry = store.save(key, workspace, SPEC.cache_dirs, prefix="rust-", inputs=inputs)
    assert entry.size > 0

    dest = tmp_path / "fresh"
    dest.mkdir()
    hit = store.restore(key, dest)
    assert hit.exact and hit.status == "hit"
    assert (dest / "target" / "lib.rlib").read_bytes() == b"x" * 2048


def test_miss_and_partial_restore(tmp_path: Path, workspace: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", clock=clock)
    prefix = restore_prefix(SPEC, "rust-stable")
    store.save(prefix + "old", workspace, SPEC.cache_dirs, prefix=prefix)

    dest = tmp_path / "dest"
    dest.mkdir()
    assert store.restore("unrelated-key", dest).status == "miss"

    partial = store.restore(prefix + "new", dest, restore_prefixes=[prefix])
    assert partial.hit and not partial.exact
    assert partial.status == "partial"
    assert partial.matched_key == prefix + "old"


def test_raw_payload_round_trip(tmp_path: Path):
    store = CacheStore(tmp_path / "cache")
    store.save_payload("k1", b"payload")
    assert store.restore_payload("k1") == b"payload"
    assert store.restore_payload("absent") is None


def test_lru_eviction_under_quota(tmp_path: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", clock=clock)
    store.save_payload("a", b"1" * 100)
    store.save_payload("b", b"2" * 100)
    store.save_payload("c", b"3" * 100)

    # touching "a" makes "b" the least recently used
    assert store.restore_payload("a") is not None

    removed = store.evict(quota=200)
    assert removed == ["b"]
    assert store.get("b") is None
    assert store.restore_payload("a") == b"1" * 100
    assert store.restore_payload("c") == b"3" * 100


def test_pinned_entry_is_not_evicted(tmp_path: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", clock=clock)
    store.save_payload("a", b"1" * 100)
    store.save_payload("b", b"2" * 100)

    store._pin("a")
    try:
        assert store.evict(quota=0) == ["b"]
    finally:
        store._unpin("a")
    assert store.get("a") is not None


def test_quota_applied_on_save(tmp_path: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", quota=150, clock=clock)
    store.save_payload("old", b"o" * 100)
    store.save_payload("new", b"n" * 100)
    assert [e.key for e in store.entries()] == ["new"]


def test_prune_keeps_newest_per_prefix(tmp_path: Path, clock: FakeClock):
    store = CacheStore(tmp_path / "cache", clock=clock)
    for i in range(4):
        store.save_payload(f"rust-{i}", b"r", prefix="rust-")
    store.save_payload("node-0", b"n", prefix="node-")

    removed = store.prune(keep=2)
    assert sorted(removed) == ["rust-0", "rust-1"]
    assert {e.key for e in store.entries()} == {"rust-2", "rust-3", "node-0"}


def test_failed_save_raises_and_keeps_previous_entry(tmp_path: Path, workspace: Path, monkeypatch):
    store = CacheStore(tmp_path / "cache")
    store.save_payload("k", b"before")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("runway.cache.os.replace", broken_replace)
    with pytest.raises(CacheWriteError):
        store.save("k", workspace, ["target"])
    monkeypatch.undo()

    assert store.restore_payload("k") == b"before"
    assert not [p for p in store.root.iterdir() if p.name.endswith(".tmp")]


def test_corrupt_entry_restores_as_miss(tmp_path: Path):
    store = CacheStore(tmp_path / "cache")
    store.save_payload("bad", b"not a tarball")
    dest = tmp_path / "d"
    dest.mkdir()
    hit = store.restore("bad", dest)
    assert not hit.hit
    assert "restore failed" in hit.reason


def _tar_gz(members: list) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def test_restore_failing_midway_leaves_dest_untouched(tmp_path: Path):
    store = CacheStore(tmp_path / "cache")
    # the second member needs `target` to be a directory, but it is a file by then
    store.save_payload("half", _tar_gz([("target", b"first"), ("target/lib.rlib", b"second")]))
    dest = tmp_path / "ws"
    dest.mkdir()
    (dest / "keep.txt").write_text("mine", encoding="utf-8")

    hit = store.restore("half", dest)

    assert not hit.hit
    assert "restore failed" in hit.reason
    assert sorted(p.name for p in dest.iterdir()) == ["keep.txt"]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cache", "ws"]


def test_restore_merges_into_existing_workspace(tmp_path: Path):
    store = CacheStore(tmp_path / "cache")
    store.save_payload("ok", _tar_gz([("target/lib.rlib", b"cached"), ("target/deps/a.d", b"dep")]))
    dest = tmp_path / "ws"
    (dest / "target").mkdir(parents=True)
    (dest / "target" / "lib.rlib").write_bytes(b"stale")
    (dest / "src.rs").write_text("fn main() {}", encoding="utf-8")

    assert store.restore("ok", dest).exact

    assert (dest / "target" / "lib.rlib").read_bytes() == b"cached"
    assert (dest / "target" / "deps" / "a.d").read_bytes() == b"dep"
    assert (dest / "src.rs").exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cache", "ws"]
