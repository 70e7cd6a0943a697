# stores.py
from __future__ import annotations

import hashlib
import itertools
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import redis

DEFAULT_CACHE_DIR = ".ciflow/cache"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str                       # the key that matched ("" on miss)
    reason: str                    # human readable
    blob: Optional[bytes] = None
    exact: bool = False            # matched the primary key itself


class CacheStore:
    """
    Key/value blob store probed with a resolved key chain.

    Subclasses implement get / put / entries. restore() performs the walk:
      - the primary key (first candidate) must match exactly
      - every fallback is a prefix filter over stored keys; the most
        recently written match wins
    Entries are immutable once written; concurrent writers of the same key
    simply race (last write wins).
    """

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, blob: bytes) -> None:
        raise NotImplementedError

    def entries(self) -> List[Tuple[str, float]]:
        """(key, write order) for every stored entry."""
        raise NotImplementedError

    def keys(self) -> List[str]:
        return [k for k, _ in self.entries()]

    def restore(self, candidates: Sequence[str]) -> CacheHit:
        if not candidates:
            return CacheHit(hit=False, key="", reason="no cache keys")

        primary, fallbacks = candidates[0], candidates[1:]
        blob = self.get(primary)
        if blob is not None:
            return CacheHit(hit=True, key=primary, reason="cache hit: primary key", blob=blob, exact=True)

        if fallbacks:
            newest_first = sorted(self.entries(), key=lambda e: (e[1], e[0]), reverse=True)
            for prefix in fallbacks:
                for key, _written in newest_first:
                    if key.startswith(prefix):
                        blob = self.get(key)
                        if blob is not None:
                            return CacheHit(
                                hit=True,
                                key=key,
                                reason=f"cache hit: restore key '{prefix}'",
                                blob=blob,
                            )

        return CacheHit(hit=False, key="", reason="cache miss")


class MemoryCacheStore(CacheStore):
    """In-process store; handy for tests and dry runs."""

    def __init__(self, items: Optional[Dict[str, bytes]] = None):
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._data: Dict[str, Tuple[bytes, int]] = {}
        for k, v in (items or {}).items():
            self.put(k, v)

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            item = self._data.get(key)
        return item[0] if item else None

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            self._data[key] = (bytes(blob), next(self._seq))

    def entries(self) -> List[Tuple[str, float]]:
        with self._lock:
            return [(k, float(seq)) for k, (_b, seq) in self._data.items()]


class LocalCacheStore(CacheStore):
    """
    File-based cache store:
      root/
        <sha256(key)>.blob
        <sha256(key)>.manifest.json     {"key": ..., "written_at_ns": ...}
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _name(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{self._name(key)}.blob"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{self._name(key)}.manifest.json"

    def get(self, key: str) -> Optional[bytes]:
        art = self.artifact_path(key)
        if not art.exists() or not self.manifest_path(key).exists():
            return None
        return art.read_bytes()

    def put(self, key: str, blob: bytes) -> None:
        art = self.artifact_path(key)
        man = self.manifest_path(key)

        # write to tmp, then atomic rename
        tmp = art.with_suffix(f".blob.{threading.get_ident()}.tmp")
        try:
            tmp.write_bytes(blob)
            tmp.replace(art)
            manifest = {"key": key, "written_at_ns": time.time_ns(), "size": len(blob)}
            man_tmp = man.with_suffix(f".{threading.get_ident()}.tmp")
            man_tmp.write_text(json.dumps(manifest, sort_keys=True), encoding="utf-8")
            man_tmp.replace(man)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def entries(self) -> List[Tuple[str, float]]:
        out: List[Tuple[str, float]] = []
        for man in sorted(self.root.glob("*.manifest.json")):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                # half-written or foreign file; not an entry
                continue
            out.append((data["key"], float(data.get("written_at_ns", 0))))
        return out


class RedisCacheStore(CacheStore):
    """
    Redis-backed store:
      <ns>:blobs     hash   key -> blob
      <ns>:written   zset   key -> write sequence
      <ns>:seq       counter
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        namespace: str = "ciflow:cache",
        client: Optional[redis.Redis] = None,
    ):
        self.r = client if client is not None else redis.Redis.from_url(url)
        self.ns = namespace

    def _k(self, suffix: str) -> str:
        return f"{self.ns}:{suffix}"

    def get(self, key: str) -> Optional[bytes]:
        value = self.r.hget(self._k("blobs"), key)
        if value is None:
            return None
        return value if isinstance(value, bytes) else str(value).encode("utf-8")

    def put(self, key: str, blob: bytes) -> None:
        seq = self.r.incr(self._k("seq"))
        pipe = self.r.pipeline()
        pipe.hset(self._k("blobs"), key, blob)
        pipe.zadd(self._k("written"), {key: seq})
        pipe.execute()

    def entries(self) -> List[Tuple[str, float]]:
        rows: Iterable = self.r.zrange(self._k("written"), 0, -1, withscores=True)
        return [(_text(member), float(score)) for member, score in rows]


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def open_store(cache_dir: str | Path | None = None, redis_url: str | None = None) -> CacheStore:
    """Redis when a URL is configured, else the local directory store."""
    if redis_url:
        return RedisCacheStore(redis_url)
    return LocalCacheStore(cache_dir or DEFAULT_CACHE_DIR)
