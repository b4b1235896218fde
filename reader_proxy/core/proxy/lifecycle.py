# core/proxy/lifecycle.py
"""Install / activate lifecycle of the cache namespaces"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Tuple

from reader_proxy.core.proxy.cache_manager import CachedResponse, CacheStorage, request_key
from reader_proxy.core.proxy.errors import NetworkFailure, ProxyError

logger = logging.getLogger(__name__)

AssetFetch = Callable[[str], Awaitable[CachedResponse]]


class LifecycleState(enum.Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    WAITING = "waiting"
    ACTIVE = "active"
    REDUNDANT = "redundant"


@dataclass(frozen=True)
class CacheSettings:
    """The two namespaces this version recognizes and the assets it pre-caches"""

    version: int = 1
    static_prefix: str = "reader-cache-v"
    chapter_name: str = "reader-chapters"
    precache_assets: Tuple[str, ...] = field(default=("/", "/index.html"))
    precache_timeout: float = 15.0

    @property
    def static_name(self) -> str:
        return f"{self.static_prefix}{self.version}"

    @property
    def recognized(self) -> Tuple[str, str]:
        return self.static_name, self.chapter_name

    @classmethod
    def from_config(cls, cache_config: dict) -> "CacheSettings":
        defaults = cls()
        return cls(
            version=int(cache_config.get('version', defaults.version)),
            static_prefix=cache_config.get('static_prefix', defaults.static_prefix),
            chapter_name=cache_config.get('chapter_name', defaults.chapter_name),
            precache_assets=tuple(cache_config.get('precache_assets', defaults.precache_assets)),
            precache_timeout=float(cache_config.get('precache_timeout', defaults.precache_timeout)),
        )


class LifecycleManager:
    def __init__(self, storage: CacheStorage, settings: CacheSettings, fetch_asset: AssetFetch):
        """
        Args:
            storage: Cache storage shared with the strategies
            settings: Namespace names and pre-cache list
            fetch_asset: Coroutine factory fetching one asset path from the network
        """
        self.storage = storage
        self.settings = settings
        self.fetch_asset = fetch_asset

        self.state = LifecycleState.PARSED
        self.skip_waiting_requested = False
        self.controlling = False

    def _transition(self, expected: Tuple[LifecycleState, ...], new_state: LifecycleState):
        if self.state not in expected:
            raise ProxyError(f"Illegal lifecycle transition {self.state.value} -> {new_state.value}")
        logger.info(f"🔁 Lifecycle: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def install(self) -> bool:
        """
        Opens the static namespace and pre-caches the asset list

        The asset list is stored all-or-nothing and must arrive within
        settings.precache_timeout seconds. A failed pre-cache is logged and
        does not fail the installation.

        Returns:
            bool: True if every asset was pre-cached
        """
        self._transition((LifecycleState.PARSED,), LifecycleState.INSTALLING)
        cache = self.storage.open(self.settings.static_name)

        precached = True
        try:
            fetched = await asyncio.wait_for(self._fetch_precache(), self.settings.precache_timeout)
            for key, response in fetched:
                cache.put(key, response)
            logger.info(f"✅ Pre-cached {len(fetched)} assets into {self.settings.static_name}")

        except asyncio.TimeoutError:
            precached = False
            logger.error(f"❌ Pre-cache timed out after {self.settings.precache_timeout}s")
        except NetworkFailure as e:
            precached = False
            logger.error(f"❌ Failed to pre-cache static assets: {e}")
        except OSError as e:
            precached = False
            logger.error(f"❌ Could not store pre-cached assets: {e}")

        self._transition((LifecycleState.INSTALLING,), LifecycleState.WAITING)
        self.skip_waiting()
        return precached

    async def _fetch_precache(self) -> List[Tuple[str, CachedResponse]]:
        fetched = []
        for asset in self.settings.precache_assets:
            response = await self.fetch_asset(asset)
            if not response.ok:
                raise NetworkFailure(asset, f"HTTP {response.status}")
            fetched.append((request_key('GET', asset), response))
        return fetched

    def skip_waiting(self):
        """Asks to leave the waiting state as soon as installation is done"""
        self.skip_waiting_requested = True

    @property
    def should_activate(self) -> bool:
        return self.state == LifecycleState.WAITING and self.skip_waiting_requested

    async def activate(self) -> List[str]:
        """
        Deletes every namespace this version does not recognize, then claims
        the clients

        Returns:
            List[str]: Deleted namespace names
        """
        self._transition((LifecycleState.WAITING,), LifecycleState.ACTIVE)

        recognized = self.settings.recognized
        deleted = []
        for name in self.storage.keys():
            if name not in recognized:
                logger.info(f"🧹 Deleting outdated cache: {name}")
                self.storage.delete(name)
                deleted.append(name)

        self.claim()
        return deleted

    def claim(self):
        """From now on requests are routed through the caching strategies"""
        self.controlling = True
        logger.info("✅ Proxy controls all clients")

    def retire(self):
        if self.state == LifecycleState.REDUNDANT:
            return
        self.controlling = False
        logger.info(f"🔁 Lifecycle: {self.state.value} -> {LifecycleState.REDUNDANT.value}")
        self.state = LifecycleState.REDUNDANT
