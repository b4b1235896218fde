import json

import httpx
import pytest

from reader_proxy.core.control_client import ControlClient


def make_client(handler):
    return ControlClient('http://127.0.0.1:61001', transport=httpx.MockTransport(handler))


def test_cache_chapter_posts_command():
    seen = []

    def handler(request: httpx.Request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(202, json={'applied': True})

    with make_client(handler) as client:
        assert client.cache_chapter('/getBookContent?url=X&index=3', 'text') is True

    assert seen == [(
        'POST',
        '/__proxy__/message',
        {'type': 'CACHE_CHAPTER', 'url': '/getBookContent?url=X&index=3', 'content': 'text'}
    )]


def test_clear_chapter_cache():
    def handler(request: httpx.Request):
        assert json.loads(request.content) == {'type': 'CLEAR_CHAPTER_CACHE'}
        return httpx.Response(202, json={'applied': True})

    with make_client(handler) as client:
        assert client.clear_chapter_cache() is True


def test_rejected_command():
    with make_client(lambda request: httpx.Response(202, json={'applied': False})) as client:
        assert client.send_message({'type': 'NOPE'}) is False


def test_stats():
    def handler(request: httpx.Request):
        assert request.url.path == '/__proxy__/stats'
        return httpx.Response(200, json={'lifecycle': 'active'})

    with make_client(handler) as client:
        assert client.stats() == {'lifecycle': 'active'}


def test_error_status_raises():
    with make_client(lambda request: httpx.Response(500)) as client:
        with pytest.raises(httpx.HTTPStatusError):
            client.stats()
