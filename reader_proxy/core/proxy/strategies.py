# core/proxy/strategies.py
"""
The three caching strategies.

Every strategy receives the storage, the namespace it writes to, the request
key and a zero-argument ``fetch`` coroutine factory that performs the
network request and raises NetworkFailure when the transport fails. No
strategy lets a NetworkFailure or a failed cache write escape: the caller
always gets a response.
"""

import logging
from typing import Awaitable, Callable

from reader_proxy.core.proxy import envelope
from reader_proxy.core.proxy.cache_manager import CachedResponse, CacheStorage
from reader_proxy.core.proxy.errors import CacheMiss, NetworkFailure
from reader_proxy.core.proxy.scheduler import BackgroundScheduler

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[CachedResponse]]

CHAPTER_OFFLINE_MESSAGE = "Network unavailable and this chapter is not cached"
API_OFFLINE_MESSAGE = "Network unavailable"
STATIC_OFFLINE_MESSAGE = "Offline"


async def cache_first_with_revalidate(
        storage: CacheStorage,
        namespace: str,
        key: str,
        fetch: Fetch,
        scheduler: BackgroundScheduler,
) -> CachedResponse:
    """
    Chapter content: serve from cache, refresh in the background.

    A hit returns immediately and starts a detached revalidation that
    overwrites the entry only if the fresh response is ok. A miss waits for
    the network and stores an ok response; a network failure on a miss
    yields a 503 failure envelope.
    """
    cached = storage.open(namespace).match(key)

    if cached is not None:
        async def revalidate():
            try:
                response = await fetch()
            except NetworkFailure as e:
                logger.debug(f"Revalidation skipped, network unavailable: {key} ({e.reason})")
                return
            if response.ok:
                if _store(storage, namespace, key, response):
                    logger.debug(f"🔄 Revalidated: {key}")

        scheduler.submit(revalidate(), name=f"revalidate {key}")
        return cached

    try:
        response = await fetch()
    except NetworkFailure as e:
        logger.warning(f"⚠️ Chapter unavailable offline: {key} ({e.reason})")
        return envelope.failure(CHAPTER_OFFLINE_MESSAGE)

    if response.ok:
        _store(storage, namespace, key, response)
    return response


async def network_first_with_fallback(
        storage: CacheStorage,
        key: str,
        fetch: Fetch,
) -> CachedResponse:
    """
    API requests: the network answer is returned as is and never cached.

    Only when the transport fails is the last known response for the same
    key served, searched across every namespace.
    """
    try:
        return await fetch()
    except NetworkFailure as e:
        logger.debug(f"API network failure, trying cache: {key} ({e.reason})")

    try:
        cached = _require_any(storage, key)
    except CacheMiss:
        logger.warning(f"⚠️ API request failed offline with no cached copy: {key}")
        return envelope.failure(API_OFFLINE_MESSAGE)

    logger.info(f"📴 Serving last known API response: {key}")
    return cached


def _require_any(storage: CacheStorage, key: str) -> CachedResponse:
    cached = storage.match(key)
    if cached is None:
        raise CacheMiss(key)
    return cached


async def stale_while_revalidate(
        storage: CacheStorage,
        namespace: str,
        key: str,
        fetch: Fetch,
        scheduler: BackgroundScheduler,
) -> CachedResponse:
    """
    Static assets: answer from cache when possible while the network
    refreshes the static namespace.

    With a cached copy the caller never waits for the network. Without one
    the network result is awaited; if that fails too a 503 offline envelope
    is returned.
    """
    cached = storage.match(key)

    async def refresh() -> CachedResponse:
        response = await fetch()
        if response.ok:
            _store(storage, namespace, key, response)
        return response

    if cached is not None:
        async def background_refresh():
            try:
                await refresh()
            except NetworkFailure as e:
                logger.debug(f"Static refresh skipped, network unavailable: {key} ({e.reason})")

        scheduler.submit(background_refresh(), name=f"refresh {key}")
        return cached

    try:
        return await refresh()
    except NetworkFailure as e:
        logger.warning(f"⚠️ Static resource unavailable offline: {key} ({e.reason})")
        return envelope.failure(STATIC_OFFLINE_MESSAGE)


async def network_only(key: str, fetch: Fetch) -> CachedResponse:
    """
    Requests that are never cached (non-GET methods, traffic before the
    proxy claims its clients): the network answer or a 503 envelope.
    """
    try:
        return await fetch()
    except NetworkFailure as e:
        logger.warning(f"⚠️ Request failed, network unavailable: {key} ({e.reason})")
        return envelope.failure(API_OFFLINE_MESSAGE)


def _store(storage: CacheStorage, namespace: str, key: str, response: CachedResponse) -> bool:
    """Cache write that never costs the caller its response"""
    try:
        storage.open(namespace).put(key, response)
    except OSError as e:
        logger.error(f"❌ Could not cache {key} in {namespace}: {e}")
        return False
    return True
