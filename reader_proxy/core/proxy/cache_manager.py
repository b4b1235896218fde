# core/proxy/cache_manager.py
"""Named response caches for the offline proxy"""

import base64
import hashlib
import json
import logging
import os
import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional
from urllib.parse import urlsplit

from aiohttp import web
from multidict import CIMultiDict

from reader_proxy.core.proxy.errors import CacheMiss

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


def request_key(method: str, url: str) -> str:
    """
    Normalized request identity: method + path + query string

    Scheme and host are dropped so that an absolute URL and the path the
    proxy sees for the same resource map to the same entry.

    Args:
        method: HTTP method
        url: Absolute URL or path with optional query

    Returns:
        str: Cache key, e.g. "GET /getBookContent?url=X&index=3"
    """
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return f"{method.upper()} {path}"


def _key_digest(key: str) -> str:
    return hashlib.md5(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CachedResponse:
    """
    Full snapshot of a response: status, headers and body

    Headers are kept as a CIMultiDict so repeated headers (Set-Cookie) keep
    every value in their original order.
    """

    status: int
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: bytes = b""

    def __post_init__(self):
        if not isinstance(self.headers, CIMultiDict):
            object.__setattr__(self, 'headers', CIMultiDict(self.headers))

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "")

    def clone(self) -> "CachedResponse":
        return CachedResponse(status=self.status, headers=CIMultiDict(self.headers), body=bytes(self.body))

    def json(self):
        return json.loads(self.body.decode("utf-8"))

    def to_web_response(self) -> web.Response:
        """Builds a fresh aiohttp response; the snapshot itself is never consumed"""
        return web.Response(body=self.body, status=self.status, headers=CIMultiDict(self.headers))

    def to_record(self, key: str) -> dict:
        return {
            "key": key,
            "status": self.status,
            "headers": [[name, value] for name, value in self.headers.items()],
            "body": base64.b64encode(self.body).decode("ascii"),
        }

    @classmethod
    def from_record(cls, record: dict) -> "CachedResponse":
        headers = record.get("headers") or []
        if isinstance(headers, dict):
            headers = headers.items()
        return cls(
            status=int(record["status"]),
            headers=CIMultiDict((name, value) for name, value in headers),
            body=base64.b64decode(record.get("body", "")),
        )


def _write_json(path: Path, data):
    """Atomic write: temp file + os.replace"""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f)
    os.replace(tmp_path, path)


def _log_write_error(future: Future):
    error = future.exception()
    if error is not None:
        logger.error(f"❌ Cache write to disk failed: {error}", exc_info=error)


class Cache:
    """One cache namespace: key -> CachedResponse"""

    def __init__(self, name: str, directory: Optional[Path] = None, writer: Optional[ThreadPoolExecutor] = None):
        """
        Args:
            name: Namespace name
            directory: Where entries are persisted (None = memory only)
            writer: Executor running disk writes in submission order (None = write inline)
        """
        self.name = name
        self.directory = directory
        self.writer = writer
        self.entries = {}
        self.hits = 0
        self.misses = 0

        if self.directory is not None and self.directory.is_dir():
            self._load()

    def _load(self):
        for entry_path in self.directory.glob("*.json"):
            try:
                with open(entry_path, "r", encoding="utf-8") as f:
                    record = json.load(f)
                self.entries[record["key"]] = CachedResponse.from_record(record)
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"⚠️ Skipping unreadable cache entry {entry_path}: {e}")

        logger.debug(f"Cache '{self.name}' loaded: {len(self.entries)} entries")

    def _persist(self, fn, *args):
        if self.writer is None:
            fn(*args)
        else:
            self.writer.submit(fn, *args).add_done_callback(_log_write_error)

    def match(self, key: str) -> Optional[CachedResponse]:
        """
        Looks up an entry

        Returns:
            CachedResponse or None: a clone of the stored response
        """
        cached = self.entries.get(key)
        if cached is None:
            self.misses += 1
            logger.debug(f"Cache MISS [{self.name}]: {key}")
            return None

        self.hits += 1
        logger.debug(f"Cache HIT [{self.name}]: {key}")
        return cached.clone()

    def require(self, key: str) -> CachedResponse:
        """Same as match(), but raises CacheMiss when absent"""
        cached = self.match(key)
        if cached is None:
            raise CacheMiss(key)
        return cached

    def put(self, key: str, response: CachedResponse):
        """
        Stores a clone of the response under key (last write wins)

        The entry is visible immediately; the file write runs on the
        storage's writer thread when there is one.
        """
        snapshot = response.clone()
        self.entries[key] = snapshot

        if self.directory is not None:
            self._persist(_write_json, self.directory / f"{_key_digest(key)}.json", snapshot.to_record(key))
        logger.debug(f"Cache PUT [{self.name}]: {key} ({len(snapshot.body)} bytes)")

    def delete(self, key: str) -> bool:
        if key not in self.entries:
            return False

        del self.entries[key]
        if self.directory is not None:
            self._persist((self.directory / f"{_key_digest(key)}.json").unlink, True)
        return True

    def keys(self) -> List[str]:
        return list(self.entries)

    def size_bytes(self) -> int:
        return sum(len(entry.body) for entry in self.entries.values())

    def get_stats(self) -> dict:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0

        return {
            'entries': len(self.entries),
            'bytes': self.size_bytes(),
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': f"{hit_rate:.1f}%",
        }

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: str) -> bool:
        return key in self.entries


class CacheStorage:
    """
    Namespace-by-name lookup over Cache objects

    Namespaces are created lazily by open() and removed as a unit by
    delete(). With a root directory every namespace is persisted in its own
    sub-directory and restored on construction. Disk writes go through a
    single writer thread, so they never block the event loop and land in
    the order they were made; flush() waits for them.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else None
        self._caches = {}
        self._writer = None

        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-writer")
            for name in self._read_index():
                self._caches[name] = Cache(name, self.root / name, self._writer)
            logger.info(f"📦 Cache storage at {self.root}: {len(self._caches)} namespaces")

    def _read_index(self) -> List[str]:
        index_path = self.root / INDEX_FILE
        if not index_path.exists():
            return []
        try:
            with open(index_path, "r", encoding="utf-8") as f:
                return list(json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"❌ Cache index unreadable, starting empty: {e}")
            return []

    def _write_index(self):
        if self._writer is None:
            return
        self._writer.submit(_write_json, self.root / INDEX_FILE, list(self._caches)).add_done_callback(_log_write_error)

    def open(self, name: str) -> Cache:
        """Returns the namespace, creating it on first open"""
        cache = self._caches.get(name)
        if cache is None:
            directory = self.root / name if self.root is not None else None
            cache = Cache(name, directory, self._writer)
            self._caches[name] = cache
            self._write_index()
            logger.debug(f"Cache namespace created: {name}")
        return cache

    def has(self, name: str) -> bool:
        return name in self._caches

    def delete(self, name: str) -> bool:
        """Deletes a whole namespace; returns False if it did not exist"""
        cache = self._caches.pop(name, None)
        if cache is None:
            return False

        if cache.directory is not None:
            self._writer.submit(shutil.rmtree, cache.directory, True).add_done_callback(_log_write_error)
        self._write_index()
        logger.info(f"🗑️ Cache namespace deleted: {name} ({len(cache)} entries)")
        return True

    def flush(self):
        """Blocks until every queued disk write has completed"""
        if self._writer is not None:
            self._writer.submit(lambda: None).result()

    def keys(self) -> List[str]:
        """Namespace names in creation order"""
        return list(self._caches)

    def match(self, key: str) -> Optional[CachedResponse]:
        """Searches every namespace in creation order"""
        for cache in self._caches.values():
            if key in cache:
                return cache.match(key)
        return None

    def get_stats(self) -> dict:
        namespaces = {name: cache.get_stats() for name, cache in self._caches.items()}
        total_bytes = sum(stats['bytes'] for stats in namespaces.values())
        return {
            'namespaces': namespaces,
            'total_entries': sum(stats['entries'] for stats in namespaces.values()),
            'total_bytes': total_bytes,
            'total_size': format_cache_size(total_bytes),
        }

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


def format_cache_size(size: int) -> str:
    """Human readable size: B, KB, MB or GB"""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"
