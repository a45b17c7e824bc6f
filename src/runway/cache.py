# cache.py
from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tarfile
import threading
import time
import uuid
import zlib
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CacheWriteError
from .logging import get_logger
from .model import CacheKeySpec

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching, shared across jobs and runs:
#   cache_key = "<prefix>-<scope>-" + sha256(
#       contents of the spec's key files/dirs (globs),
#       scope (toolchain name + version),
#   )
#
# Cache artifact:
#   a tar.gz containing the spec's "cache_dirs", next to a manifest.json
#   that records size, creation time and last use (for LRU eviction).
#
# Concurrency:
#   every write goes to a temp file that is renamed into place, so readers
#   see either the old entry or the new one, never a partial write. Locks are
#   per key; an entry pinned by an in-progress restore is never evicted.
#
# Layout:
#   root/
#     <key>.tar.gz
#     <key>.json
# ---------------------------------------------------------------------

logger = get_logger("runway.cache")

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".runway/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str                 # the key that was asked for
    reason: str              # human readable
    matched_key: str = ""    # the entry actually restored ("" on miss)

    @property
    def exact(self) -> bool:
        return self.hit and self.matched_key == self.key

    @property
    def status(self) -> str:
        if not self.hit:
            return "miss"
        return "hit" if self.exact else "partial"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    prefix: str
    payload: Path
    size: int
    created_at: float
    last_used_at: float
    cache_dirs: Tuple[str, ...] = ()
    inputs: Dict = field(default_factory=dict)


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand key file patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "crates/**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _hash_inputs(root: Path, patterns: Sequence[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Hash the declared key files deterministically (relative path + content).
    Patterns that match nothing are recorded as missing, so adding the file
    later changes the key.
    """
    file_fps: List[Tuple[str, str]] = []
    missing: List[str] = []

    for pat in patterns:
        if not _resolve_globs(root, [pat]):
            missing.append(pat)

    for p in _resolve_globs(root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {"files": file_fps, "missing": sorted(missing)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def restore_prefix(spec: CacheKeySpec, scope: str) -> str:
    return f"{_UNSAFE.sub('_', spec.prefix)}-{_UNSAFE.sub('_', scope)}-"


def compute_cache_key(
    spec: CacheKeySpec,
    scope: str,
    *,
    root: str | Path = ".",
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, inputs_manifest). Same spec + scope + file contents
    always give the same key.
    """
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES)
    if excludes:
        exclude_globs.extend(excludes)
    inputs_hash, inputs_manifest = _hash_inputs(Path(root).resolve(), spec.paths, excludes=exclude_globs)
    digest = _sha256_str(_json_dumps_stable({"v": 1, "scope": scope, "inputs": inputs_hash}))
    return restore_prefix(spec, scope) + digest[:40], inputs_manifest


def _safe_extract(tar: tarfile.TarFile, dest: Path) -> None:
    dest = dest.resolve()
    for member in tar.getmembers():
        target = (dest / member.name).resolve()
        if target != dest and dest not in target.parents:
            raise tarfile.TarError(f"refusing to extract outside destination: {member.name}")
        if member.issym() or member.islnk():
            raise tarfile.TarError(f"refusing to extract link: {member.name}")
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(dest), filter="data")
    else:
        tar.extractall(path=str(dest))


def _merge_into(staging: Path, dest: Path) -> None:
    """Move every file of staging into dest, replacing what is there."""
    for dirpath, _dirnames, filenames in os.walk(staging):
        rel = Path(dirpath).relative_to(staging)
        (dest / rel).mkdir(parents=True, exist_ok=True)
        for name in filenames:
            os.replace(Path(dirpath) / name, dest / rel / name)


class CacheStore:
    """
    File-based, content-addressed cache store with LRU eviction.

    quota is the maximum total payload size in bytes (None: unbounded).
    clock is injectable so eviction order can be tested deterministically.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        quota: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.quota = quota
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry = threading.Lock()  # guards _locks and _pins bookkeeping only
        self._pins: Counter = Counter()

    # ---- paths / bookkeeping ----

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def _lock(self, key: str) -> threading.Lock:
        with self._registry:
            return self._locks[key]

    def _pin(self, key: str) -> None:
        with self._registry:
            self._pins[key] += 1

    def _unpin(self, key: str) -> None:
        with self._registry:
            self._pins[key] -= 1
            if self._pins[key] <= 0:
                del self._pins[key]

    def _pinned(self, key: str) -> bool:
        with self._registry:
            return self._pins.get(key, 0) > 0

    def _read_manifest(self, key: str) -> Optional[Dict]:
        try:
            return json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _write_atomic(self, target: Path, data: bytes) -> None:
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)

    def _touch(self, key: str, manifest: Dict) -> None:
        manifest = dict(manifest, last_used_at=self._clock())
        self._write_atomic(self.manifest_path(key), json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8"))

    def _entry(self, key: str, manifest: Dict) -> CacheEntry:
        return CacheEntry(
            key=key,
            prefix=manifest.get("prefix", ""),
            payload=self.artifact_path(key),
            size=int(manifest.get("size", 0)),
            created_at=float(manifest.get("created_at", 0.0)),
            last_used_at=float(manifest.get("last_used_at", 0.0)),
            cache_dirs=tuple(manifest.get("cache_dirs", ())),
            inputs=manifest.get("inputs", {}),
        )

    def entries(self) -> List[CacheEntry]:
        """All complete entries, least recently used first."""
        out: List[CacheEntry] = []
        for man in self.root.glob("*.json"):
            key = man.name[: -len(".json")]
            manifest = self._read_manifest(key)
            if manifest is None or not self.artifact_path(key).exists():
                continue
            out.append(self._entry(key, manifest))
        out.sort(key=lambda e: (e.last_used_at, e.created_at, e.key))
        return out

    def total_size(self) -> int:
        return sum(e.size for e in self.entries())

    def get(self, key: str) -> Optional[CacheEntry]:
        manifest = self._read_manifest(key)
        if manifest is None or not self.artifact_path(key).exists():
            return None
        return self._entry(key, manifest)

    # ---- restore ----

    def _find_candidate(self, key: str, prefixes: Sequence[str]) -> Optional[str]:
        if self.get(key) is not None:
            return key
        best: Optional[CacheEntry] = None
        for e in self.entries():
            if any(e.key.startswith(p) for p in prefixes if p):
                if best is None or (e.last_used_at, e.created_at) >= (best.last_used_at, best.created_at):
                    best = e
        return best.key if best else None

    def restore(
        self,
        key: str,
        dest: str | Path,
        *,
        restore_prefixes: Sequence[str] = (),
    ) -> CacheHit:
        """
        Restore the entry for `key` into dest. On miss, fall back to the most
        recently used entry sharing one of `restore_prefixes`. Never raises:
        a broken or vanished entry is reported as a miss.
        """
        dest_p = Path(dest).resolve()
        candidate = self._find_candidate(key, restore_prefixes)
        if candidate is None:
            return CacheHit(hit=False, key=key, reason="cache miss")

        self._pin(candidate)
        try:
            with self._lock(candidate):
                manifest = self._read_manifest(candidate)
                art = self.artifact_path(candidate)
                if manifest is None or not art.exists():
                    return CacheHit(hit=False, key=key, reason="cache miss (entry evicted)")
                # extract next to dest; dest only changes once the whole archive is readable
                staging = dest_p.parent / f".{dest_p.name}.restore-{uuid.uuid4().hex[:8]}"
                try:
                    with tarfile.open(str(art), mode="r:gz") as tar:
                        _safe_extract(tar, staging)
                    dest_p.mkdir(parents=True, exist_ok=True)
                    _merge_into(staging, dest_p)
                except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
                    logger.warning("cache entry %s unreadable: %s", candidate, e)
                    return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}")
                finally:
                    shutil.rmtree(staging, ignore_errors=True)
                try:
                    self._touch(candidate, manifest)
                except OSError as e:
                    logger.warning("could not update last use of %s: %s", candidate, e)
        finally:
            self._unpin(candidate)

        if candidate == key:
            return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", matched_key=candidate)
        return CacheHit(hit=True, key=key, reason=f"partial hit: restored {candidate}", matched_key=candidate)

    def restore_payload(self, key: str) -> Optional[bytes]:
        """Exact-key lookup returning the raw payload bytes."""
        self._pin(key)
        try:
            with self._lock(key):
                manifest = self._read_manifest(key)
                art = self.artifact_path(key)
                if manifest is None or not art.exists():
                    return None
                data = art.read_bytes()
                self._touch(key, manifest)
                return data
        finally:
            self._unpin(key)

    # ---- save ----

    def save(
        self,
        key: str,
        src: str | Path,
        cache_dirs: Sequence[str],
        *,
        prefix: str = "",
        inputs: Optional[Dict] = None,
        excludes: Optional[List[str]] = None,
    ) -> CacheEntry:
        """
        Save cache_dirs (relative to src) as the entry for `key`, replacing any
        previous entry atomically. Raises CacheWriteError on failure.
        """
        root = Path(src).resolve()
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        art = self.artifact_path(key)
        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        now = self._clock()

        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in cache_dirs:
                    path = (root / entry).resolve()
                    if not path.exists():
                        continue
                    files = [path] if path.is_file() else list(_iter_files_under(path))
                    for f in files:
                        rel = _relpath(f, root)
                        if _matches_any_glob(rel, exclude_globs):
                            continue
                        tar.add(str(f), arcname=rel, recursive=False)
            size = tmp.stat().st_size
            manifest = {
                "key": key,
                "prefix": prefix,
                "size": size,
                "created_at": now,
                "last_used_at": now,
                "cache_dirs": list(cache_dirs),
                "inputs": inputs or {},
            }
            with self._lock(key):
                os.replace(tmp, art)
                self._write_atomic(
                    self.manifest_path(key),
                    json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8"),
                )
        except (OSError, tarfile.TarError, ValueError) as e:
            raise CacheWriteError(f"could not save cache entry: {e}", details={"key": key}) from e
        finally:
            tmp.unlink(missing_ok=True)

        self.evict()
        return self._entry(key, manifest)

    def save_payload(self, key: str, payload: bytes, *, prefix: str = "") -> CacheEntry:
        """Store raw bytes as an entry (used for non-directory payloads)."""
        now = self._clock()
        manifest = {
            "key": key,
            "prefix": prefix,
            "size": len(payload),
            "created_at": now,
            "last_used_at": now,
            "cache_dirs": [],
            "inputs": {},
        }
        try:
            with self._lock(key):
                self._write_atomic(self.artifact_path(key), payload)
                self._write_atomic(
                    self.manifest_path(key),
                    json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8"),
                )
        except OSError as e:
            raise CacheWriteError(f"could not save cache entry: {e}", details={"key": key}) from e
        self.evict()
        return self._entry(key, manifest)

    # ---- eviction ----

    def _delete(self, key: str) -> bool:
        lock = self._lock(key)
        if not lock.acquire(blocking=False):
            return False  # in use
        try:
            if self._pinned(key):
                return False
            self.artifact_path(key).unlink(missing_ok=True)
            self.manifest_path(key).unlink(missing_ok=True)
            return True
        finally:
            lock.release()

    def evict(self, quota: int | None = None) -> List[str]:
        """
        Remove least-recently-used entries until the total size fits the quota.
        Entries that are being restored are skipped.
        """
        quota = self.quota if quota is None else quota
        if quota is None:
            return []
        entries = self.entries()
        total = sum(e.size for e in entries)
        removed: List[str] = []
        for e in entries:
            if total <= quota:
                break
            if self._delete(e.key):
                total -= e.size
                removed.append(e.key)
                logger.info("evicted cache entry %s (%d bytes)", e.key, e.size)
        return removed

    def prune(self, keep: int = 3) -> List[str]:
        """
        Keep only the N most recently used entries per prefix.
        """
        groups: Dict[str, List[CacheEntry]] = defaultdict(list)
        for e in self.entries():
            groups[e.prefix].append(e)
        removed: List[str] = []
        for group in groups.values():
            newest_first = sorted(group, key=lambda e: (e.last_used_at, e.created_at), reverse=True)
            for e in newest_first[keep:]:
                if self._delete(e.key):
                    removed.append(e.key)
        return removed
