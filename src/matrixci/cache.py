# cache.py
from __future__ import annotations

import hashlib
import io
import os
import platform
import tarfile
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import CacheUnavailable
from .model import CacheKey

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# cache key = <os>-<namespace>-sha256(sorted(sha256(file) for file in inputs))
#
# Key derivation never touches a store. Stores only move bytes:
#   get(key) -> bytes | None
#   put(key, bytes)
# Writes are idempotent: the same key always carries the same bytes, so
# concurrent writers need no locking and the last writer wins.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
DEFAULT_REDIS_TIMEOUT = 5.0  # seconds, for connect and for each command

_OS_NAMES = {
    "Linux": "Linux",
    "Windows": "Windows",
    "Darwin": "macOS",
}


def host_os() -> str:
    """OS identifier used in cache keys when the caller doesn't pin one."""
    system = platform.system()
    return _OS_NAMES.get(system, system or "unknown")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def resolve(
    namespace: str,
    input_paths: Iterable[str | Path],
    *,
    os_name: Optional[str] = None,
) -> CacheKey:
    """
    Derive a deterministic cache key from file contents.

    Per-file digests are sorted before being combined, so the order of
    `input_paths` never changes the key. Raises FileNotFoundError if an
    input is missing.
    """
    digests = sorted(_hash_file_contents(Path(p)) for p in input_paths)
    combined = _sha256_bytes("\n".join(digests).encode("ascii"))
    return CacheKey(namespace=namespace, os=os_name or host_os(), digest=combined)


def resolve_globs(root: str | Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand input patterns into existing files (hashFiles-style).
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"  (every file below it)
      - glob:      "**/Cargo.lock"
    """
    root = Path(root)
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.is_file():
            out.append(p)
            continue
        if p.is_dir():
            out.extend(f for f in sorted(p.rglob("*")) if f.is_file())
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.is_file())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, value: bytes) -> None: ...


class FileCacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailable(f"cache read failed for {key}: {e}") from e

    def put(self, key: str, value: bytes) -> None:
        p = self.path_for(key)
        # unique tmp name per writer, then atomic rename (last writer wins)
        tmp = p.with_name(f"{p.name}.{uuid.uuid4().hex}.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(value)
            tmp.replace(p)
        except OSError as e:
            raise CacheUnavailable(f"cache write failed for {key}: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)


class MemoryCacheStore:
    """In-process store, mostly for tests and one-shot runs."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = value

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class RedisCacheStore:
    """
    Shared store backed by Redis, for runners on different hosts.

    Every call is bounded by `timeout`; a stalled server surfaces as
    CacheUnavailable instead of blocking the instance.
    """

    def __init__(
        self,
        url: str,
        *,
        prefix: str = "matrixci:cache:",
        ttl_seconds: int | None = None,
        timeout: float = DEFAULT_REDIS_TIMEOUT,
    ):
        import redis

        self._redis_errors = (redis.RedisError,)
        self.client = redis.Redis.from_url(url, socket_timeout=timeout, socket_connect_timeout=timeout)
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.client.get(self.prefix + key)
        except self._redis_errors as e:
            raise CacheUnavailable(f"redis get failed for {key}: {e}") from e

    def put(self, key: str, value: bytes) -> None:
        try:
            self.client.set(self.prefix + key, value, ex=self.ttl_seconds)
        except self._redis_errors as e:
            raise CacheUnavailable(f"redis put failed for {key}: {e}") from e


# ---------------------------------------------------------------------
# Archives (what goes into the store)
# ---------------------------------------------------------------------

_HOME_PREFIX = "~"


def _split_cache_path(root: Path, entry: str) -> tuple[Path, Path, str]:
    """Return (base dir, absolute source, archive prefix) for a cache path entry."""
    if entry.startswith("~"):
        home = Path.home()
        rel = entry[1:].lstrip("/\\")
        return home, home / rel, _HOME_PREFIX
    return root, root / entry, ""


def _arcname(prefix: str, rel: Path) -> str:
    name = rel.as_posix()
    return f"{prefix}/{name}" if prefix else name


def pack_paths(root: str | Path, paths: Iterable[str]) -> bytes:
    """
    Build a tar.gz of the declared cache paths.

    Workspace paths are stored relative to `root`; "~/..." paths relative
    to the home directory so they restore on another machine's home.
    Missing paths are skipped.
    """
    root = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            base, src, prefix = _split_cache_path(root, entry)
            if not src.exists():
                continue
            files = [src] if src.is_file() else [f for f in sorted(src.rglob("*")) if f.is_file()]
            for f in files:
                rel = f.resolve().relative_to(base.resolve())
                tar.add(str(f), arcname=_arcname(prefix, rel), recursive=False)
    return buf.getvalue()


def unpack_paths(root: str | Path, data: bytes) -> int:
    """Extract a pack_paths() archive. Returns the number of files restored."""
    root = Path(root).resolve()
    home = Path.home().resolve()
    restored = 0
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            name = member.name
            if name == _HOME_PREFIX or name.startswith(_HOME_PREFIX + "/"):
                base, rel = home, name[len(_HOME_PREFIX) + 1:]
            else:
                base, rel = root, name
            dest = (base / rel).resolve()
            if base not in dest.parents:
                # refuse entries that escape their base directory
                continue
            src = tar.extractfile(member)
            if src is None:
                continue
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(src.read())
            os.utime(dest, (time.time(), member.mtime))
            restored += 1
    return restored
