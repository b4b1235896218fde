"""
Shared fixtures for the proxy tests.
"""

import asyncio
import json
from typing import Dict, List, Optional

import pytest

from reader_proxy.core.proxy.cache_manager import CachedResponse, CacheStorage
from reader_proxy.core.proxy.errors import NetworkFailure
from reader_proxy.core.proxy.lifecycle import CacheSettings
from reader_proxy.core.proxy.scheduler import BackgroundScheduler


def json_response(payload, status: int = 200) -> CachedResponse:
    return CachedResponse(
        status=status,
        headers={'Content-Type': 'application/json'},
        body=json.dumps(payload).encode('utf-8')
    )


class FakeNetwork:
    """Programmable stand-in for the upstream"""

    def __init__(self):
        self.responses: Dict[str, CachedResponse] = {}
        self.online = True
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    def set(self, path: str, response: CachedResponse):
        self.responses[path] = response

    def fetcher(self, path: str):
        async def fetch() -> CachedResponse:
            self.calls.append(path)
            if self.gate is not None:
                await self.gate.wait()
            if not self.online:
                raise NetworkFailure(path, "offline")
            return self.responses.get(path, CachedResponse(status=404, body=b"not found"))

        return fetch

    async def fetch_asset(self, path: str) -> CachedResponse:
        return await self.fetcher(path)()


@pytest.fixture
def settings():
    return CacheSettings()


@pytest.fixture
def storage():
    return CacheStorage()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def scheduler():
    return BackgroundScheduler(max_concurrent=4, max_pending=16, timeout=5)
