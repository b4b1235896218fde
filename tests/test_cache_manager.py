"""
Tests for the named response caches
"""

import asyncio
import json
import threading
from unittest.mock import patch

import pytest
from multidict import CIMultiDict

from reader_proxy.core.proxy import cache_manager
from reader_proxy.core.proxy.cache_manager import (
    CachedResponse,
    CacheStorage,
    format_cache_size,
    request_key,
)
from reader_proxy.core.proxy.errors import CacheMiss


class TestRequestKey:

    def test_keeps_query_parameters(self):
        assert request_key("get", "/getBookContent?url=X&index=3") == "GET /getBookContent?url=X&index=3"

    def test_absolute_and_relative_urls_match(self):
        assert request_key("GET", "http://localhost:8080/api/shelf?x=1") == request_key("GET", "/api/shelf?x=1")

    def test_method_is_part_of_the_key(self):
        assert request_key("GET", "/api/save") != request_key("POST", "/api/save")

    def test_empty_path_is_root(self):
        assert request_key("GET", "http://localhost:8080") == "GET /"


class TestCachedResponse:

    def test_ok_range(self):
        assert CachedResponse(status=200).ok
        assert CachedResponse(status=204).ok
        assert not CachedResponse(status=304).ok
        assert not CachedResponse(status=503).ok

    def test_clone_is_independent(self):
        original = CachedResponse(status=200, headers={'X-A': '1'}, body=b"data")
        clone = original.clone()
        clone.headers['X-A'] = '2'

        assert original.headers['X-A'] == '1'
        assert clone == CachedResponse(status=200, headers={'X-A': '2'}, body=b"data")

    def test_every_web_response_is_fresh(self):
        snapshot = CachedResponse(status=200, headers={'Content-Type': 'text/plain'}, body=b"hello")

        first = snapshot.to_web_response()
        second = snapshot.to_web_response()

        assert first is not second
        assert first.body == second.body == b"hello"
        assert first.status == 200

    def test_record_round_trip_binary_body(self):
        snapshot = CachedResponse(status=201, headers={'Content-Type': 'image/png'}, body=bytes(range(256)))
        assert CachedResponse.from_record(snapshot.to_record("GET /a.png")) == snapshot

    def test_repeated_headers_survive_record_and_web_response(self):
        headers = CIMultiDict([('Set-Cookie', 'a=1; Path=/'), ('Set-Cookie', 'b=2; Path=/')])
        snapshot = CachedResponse(status=200, headers=headers, body=b"ok")

        restored = CachedResponse.from_record(json.loads(json.dumps(snapshot.to_record("POST /login"))))

        assert restored.headers.getall('set-cookie') == ['a=1; Path=/', 'b=2; Path=/']
        assert snapshot.to_web_response().headers.getall('Set-Cookie') == ['a=1; Path=/', 'b=2; Path=/']

    def test_record_with_header_mapping_still_loads(self):
        record = {"key": "GET /a", "status": 200, "headers": {"Content-Type": "text/plain"}, "body": ""}
        assert CachedResponse.from_record(record).content_type == "text/plain"


class TestCache:

    def test_match_miss_and_hit_statistics(self, storage):
        cache = storage.open("ns")
        assert cache.match("GET /a") is None

        cache.put("GET /a", CachedResponse(status=200, body=b"a"))
        assert cache.match("GET /a").body == b"a"

        stats = cache.get_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1
        assert stats['hit_rate'] == "50.0%"
        assert stats['entries'] == 1
        assert stats['bytes'] == 1

    def test_require_raises_cache_miss(self, storage):
        with pytest.raises(CacheMiss) as exc_info:
            storage.open("ns").require("GET /nothing")
        assert exc_info.value.key == "GET /nothing"

    def test_last_write_wins(self, storage):
        cache = storage.open("ns")
        cache.put("GET /a", CachedResponse(status=200, body=b"1"))
        cache.put("GET /a", CachedResponse(status=200, body=b"2"))

        assert len(cache) == 1
        assert cache.match("GET /a").body == b"2"

    def test_delete_entry(self, storage):
        cache = storage.open("ns")
        cache.put("GET /a", CachedResponse(status=200))

        assert cache.delete("GET /a") is True
        assert cache.delete("GET /a") is False
        assert "GET /a" not in cache


class TestCacheStorage:

    def test_open_is_lazy_and_idempotent(self, storage):
        assert not storage.has("ns")
        cache = storage.open("ns")

        assert storage.has("ns")
        assert storage.open("ns") is cache

    def test_delete_namespace(self, storage):
        storage.open("ns").put("GET /a", CachedResponse(status=200))

        assert storage.delete("ns") is True
        assert storage.delete("ns") is False
        assert storage.match("GET /a") is None
        assert len(storage.open("ns")) == 0

    def test_match_searches_namespaces_in_creation_order(self, storage):
        storage.open("first").put("GET /a", CachedResponse(status=200, body=b"first"))
        storage.open("second").put("GET /a", CachedResponse(status=200, body=b"second"))
        storage.open("second").put("GET /b", CachedResponse(status=200, body=b"only-second"))

        assert storage.keys() == ["first", "second"]
        assert storage.match("GET /a").body == b"first"
        assert storage.match("GET /b").body == b"only-second"

    def test_stats(self, storage):
        storage.open("ns").put("GET /a", CachedResponse(status=200, body=b"x" * 2048))

        stats = storage.get_stats()
        assert stats['total_entries'] == 1
        assert stats['total_bytes'] == 2048
        assert stats['total_size'] == "2.0 KB"
        assert "ns" in stats['namespaces']


class TestPersistence:

    def test_entries_survive_reload(self, tmp_path):
        storage = CacheStorage(tmp_path)
        storage.open("reader-chapters").put(
            "GET /getBookContent?url=X&index=3",
            CachedResponse(status=200, headers={'Content-Type': 'application/json'}, body=b'{"isSuccess": true}')
        )
        storage.open("reader-cache-v1")
        storage.flush()

        reloaded = CacheStorage(tmp_path)

        assert reloaded.keys() == ["reader-chapters", "reader-cache-v1"]
        cached = reloaded.open("reader-chapters").match("GET /getBookContent?url=X&index=3")
        assert cached.status == 200
        assert cached.json() == {'isSuccess': True}

    def test_deleted_namespace_is_removed_from_disk(self, tmp_path):
        storage = CacheStorage(tmp_path)
        storage.open("old").put("GET /a", CachedResponse(status=200))

        storage.delete("old")
        storage.flush()

        assert not (tmp_path / "old").exists()
        assert CacheStorage(tmp_path).keys() == []

    def test_deleted_entry_is_removed_from_disk(self, tmp_path):
        storage = CacheStorage(tmp_path)
        cache = storage.open("ns")
        cache.put("GET /a", CachedResponse(status=200))
        cache.delete("GET /a")
        storage.flush()

        assert list((tmp_path / "ns").glob("*.json")) == []

    def test_corrupt_entry_is_skipped(self, tmp_path):
        storage = CacheStorage(tmp_path)
        storage.open("ns").put("GET /a", CachedResponse(status=200, body=b"a"))
        storage.flush()
        (tmp_path / "ns" / "broken.json").write_text("{not json", encoding="utf-8")

        reloaded = CacheStorage(tmp_path)

        assert reloaded.open("ns").keys() == ["GET /a"]

    @pytest.mark.asyncio
    async def test_put_from_event_loop_writes_on_writer_thread(self, tmp_path):
        storage = CacheStorage(tmp_path)
        write_threads = []
        real_write = cache_manager._write_json

        def recording_write(path, data):
            write_threads.append(threading.current_thread().name)
            real_write(path, data)

        with patch.object(cache_manager, '_write_json', side_effect=recording_write):
            storage.open("ns").put("GET /a", CachedResponse(status=200, body=b"a"))
            # visible in memory before the file lands
            assert storage.open("ns").match("GET /a").body == b"a"
            await asyncio.get_running_loop().run_in_executor(None, storage.flush)

        assert write_threads
        assert all(name.startswith("cache-writer") for name in write_threads)
        assert CacheStorage(tmp_path).open("ns").match("GET /a").body == b"a"

    def test_write_failure_is_logged_not_raised(self, tmp_path, caplog):
        storage = CacheStorage(tmp_path)

        with patch.object(cache_manager, '_write_json', side_effect=OSError("disk full")):
            storage.open("ns").put("GET /a", CachedResponse(status=200, body=b"a"))
            storage.flush()

        assert storage.open("ns").match("GET /a").body == b"a"
        assert "disk full" in caplog.text

    def test_corrupt_index_starts_empty(self, tmp_path):
        (tmp_path / "index.json").write_text("[", encoding="utf-8")
        assert CacheStorage(tmp_path).keys() == []

    def test_index_written_as_json_list(self, tmp_path):
        storage = CacheStorage(tmp_path)
        storage.open("a")
        storage.open("b")
        storage.flush()

        with open(tmp_path / "index.json", encoding="utf-8") as f:
            assert json.load(f) == ["a", "b"]


@pytest.mark.parametrize("size, expected", [
    (0, "0 B"),
    (1023, "1023 B"),
    (1536, "1.5 KB"),
    (5 * 1024 * 1024, "5.0 MB"),
    (3 * 1024 * 1024 * 1024, "3.0 GB"),
])
def test_format_cache_size(size, expected):
    assert format_cache_size(size) == expected
