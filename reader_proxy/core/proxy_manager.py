# proxy_manager.py
import asyncio
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from aiohttp import web
from multidict import CIMultiDict

from reader_proxy.core.config_manager import ConfigManager, get_app_data_dir, get_config
from reader_proxy.core.proxy import envelope, strategies
from reader_proxy.core.proxy.cache_manager import CachedResponse, CacheStorage, request_key
from reader_proxy.core.proxy.classifier import Classifier, RequestClass
from reader_proxy.core.proxy.lifecycle import CacheSettings, LifecycleManager
from reader_proxy.core.proxy.scheduler import BackgroundScheduler
from reader_proxy.core.proxy.side_channel import SideChannel
from reader_proxy.core.proxy.upstream import Upstream
from reader_proxy.utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)

# Only these methods are read from or written to a cache
CACHEABLE_METHODS = ('GET',)

# Binding the site; install/activate runs afterwards
STARTUP_TIMEOUT = 10


class EventKind(enum.Enum):
    INSTALL = "install"
    ACTIVATE = "activate"
    FETCH = "fetch"
    MESSAGE = "message"


@dataclass
class FetchEvent:
    method: str
    path_qs: str
    headers: CIMultiDict
    body: bytes = b""


class OfflineProxy:
    def __init__(self, storage: CacheStorage, settings: CacheSettings, classifier: Classifier,
                 upstream: Upstream, scheduler: BackgroundScheduler, control_path: str = '/__proxy__'):
        """
        Args:
            storage: Cache namespaces
            settings: Names of the static and chapter namespaces
            classifier: Request -> strategy class
            upstream: Reader backend
            scheduler: Runner for background revalidation
            control_path: Path prefix of the side channel and stats endpoints
        """
        self.storage = storage
        self.settings = settings
        self.classifier = classifier
        self.upstream = upstream
        self.scheduler = scheduler
        self.control_path = control_path.rstrip('/')

        self.lifecycle = LifecycleManager(storage, settings, self._fetch_asset)
        self.lifecycle_task = None
        self.side_channel = SideChannel(storage, settings.chapter_name)

        self.handlers = {
            EventKind.INSTALL: self._on_install,
            EventKind.ACTIVATE: self._on_activate,
            EventKind.FETCH: self._on_fetch,
            EventKind.MESSAGE: self._on_message,
        }

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'errors': 0,
            'by_class': {request_class.value: 0 for request_class in RequestClass},
            'passthrough': 0
        }

    @classmethod
    def from_config(cls, config: ConfigManager) -> "OfflineProxy":
        cache_config = config.get_cache_config()
        classifier_config = config.get_classifier_config()
        upstream_config = config.get_upstream_config()
        revalidation_config = config.get_revalidation_config()

        storage_root = get_app_data_dir() / 'caches' if cache_config.get('persist', True) else None

        return cls(
            storage=CacheStorage(storage_root),
            settings=CacheSettings.from_config(cache_config),
            classifier=Classifier(
                chapter_marker=classifier_config.get('chapter_marker', '/getBookContent'),
                api_prefixes=classifier_config.get('api_prefixes', ['/reader3/', '/api/'])
            ),
            upstream=Upstream(config.get('proxy.upstream_url'), **upstream_config),
            scheduler=BackgroundScheduler(**revalidation_config),
            control_path=config.get('proxy.control_path', '/__proxy__')
        )

    async def dispatch(self, kind: EventKind, *args):
        return await self.handlers[kind](*args)

    async def install_and_activate(self):
        await self.dispatch(EventKind.INSTALL)
        if self.lifecycle.should_activate:
            await self.dispatch(EventKind.ACTIVATE)

    async def start(self):
        """Connection pool, install and, once waiting is skipped, activate"""
        await self.upstream.initialize()
        await self.install_and_activate()

    def start_in_background(self):
        """
        Runs install/activate as a task so the server can listen right away

        Until activation claims the clients every request is passed
        straight to the network.
        """
        self.lifecycle_task = asyncio.ensure_future(self.install_and_activate())
        self.lifecycle_task.add_done_callback(self._on_lifecycle_done)

    def _on_lifecycle_done(self, task: asyncio.Task):
        if task.cancelled():
            logger.info("Install/activate cancelled")
        elif task.exception() is not None:
            logger.error(f"❌ Install/activate failed: {task.exception()}", exc_info=task.exception())

    async def cleanup(self, drain_timeout: float = 5.0):
        if self.lifecycle_task is not None and not self.lifecycle_task.done():
            self.lifecycle_task.cancel()
            await asyncio.gather(self.lifecycle_task, return_exceptions=True)

        try:
            await asyncio.wait_for(self.scheduler.drain(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ {self.scheduler.pending} background jobs still running, cancelling")
            await self.scheduler.cancel_all()
        await self.upstream.cleanup()
        await asyncio.get_running_loop().run_in_executor(None, self.storage.flush)
        self.lifecycle.retire()

    async def _fetch_asset(self, path: str) -> CachedResponse:
        return await self.upstream.fetch('GET', path)

    async def _on_install(self):
        return await self.lifecycle.install()

    async def _on_activate(self):
        return await self.lifecycle.activate()

    async def _on_message(self, data):
        return self.side_channel.handle_message(data)

    async def _on_fetch(self, event: FetchEvent) -> CachedResponse:
        async def fetch() -> CachedResponse:
            return await self.upstream.fetch(event.method, event.path_qs, event.headers, event.body)

        key = request_key(event.method, event.path_qs)
        if not self.lifecycle.controlling or event.method.upper() not in CACHEABLE_METHODS:
            self.stats['passthrough'] += 1
            return await strategies.network_only(key, fetch)

        request_class = self.classifier.classify(event.path_qs)
        self.stats['by_class'][request_class.value] += 1
        logger.debug(f"{request_class.value}: {key}")

        if request_class is RequestClass.CHAPTER_CONTENT:
            return await strategies.cache_first_with_revalidate(
                self.storage, self.settings.chapter_name, key, fetch, self.scheduler)

        if request_class is RequestClass.API:
            return await strategies.network_first_with_fallback(self.storage, key, fetch)

        return await strategies.stale_while_revalidate(
            self.storage, self.settings.static_name, key, fetch, self.scheduler)

    async def handle_http(self, request: web.Request) -> web.StreamResponse:
        """Entry point for every request reaching the proxy"""
        self.stats['total_requests'] += 1

        try:
            if request.path == self.control_path or request.path.startswith(f"{self.control_path}/"):
                return await self._handle_control(request)

            body = await request.read()
            event = FetchEvent(
                method=request.method,
                path_qs=request.path_qs,
                headers=CIMultiDict(request.headers),
                body=body
            )
            response = await self.dispatch(EventKind.FETCH, event)
            self.stats['total_responses'] += 1
            return response.to_web_response()

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Unhandled proxy error for {request.method} {request.path_qs}: {e}", exc_info=True)
            return envelope.failure(f"Proxy error: {e}").to_web_response()

    async def _handle_control(self, request: web.Request) -> web.Response:
        action = request.path[len(self.control_path):].strip('/')

        if action == 'message' and request.method == 'POST':
            try:
                data = await request.json()
            except ValueError:
                data = None
            applied = await self.dispatch(EventKind.MESSAGE, data)
            return web.json_response({'applied': applied}, status=202)

        if action == 'stats' and request.method == 'GET':
            stats = self.get_full_stats()
            stats['upstream'] = await self.upstream.check_health()
            return web.json_response(stats)

        return web.json_response({'isSuccess': False, 'errorMsg': f"Unknown control endpoint: {action}"}, status=404)

    async def router(self, request):
        return await self.handle_http(request)

    def get_full_stats(self) -> dict:
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'errors': self.stats['errors'],
            'by_class': dict(self.stats['by_class']),
            'passthrough': self.stats['passthrough'],
            'lifecycle': self.lifecycle.state.value,
            'revalidation': {**self.scheduler.stats, 'pending': self.scheduler.pending},
            'cache': self.storage.get_stats()
        }


def create_app(proxy: OfflineProxy, background_install: bool = False) -> web.Application:
    """
    aiohttp application routing every path through the proxy

    Args:
        proxy: The proxy serving every request
        background_install: Do not hold up startup for install/activate
    """
    app = web.Application()
    app.router.add_route('*', '/{path:.*}', proxy.router)

    async def on_startup(_app):
        if background_install:
            await proxy.upstream.initialize()
            proxy.start_in_background()
        else:
            await proxy.start()

    async def on_cleanup(_app):
        await proxy.cleanup()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


class ProxyManager:
    """Runs the proxy in a background thread with its own event loop"""

    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config
        self.is_running = False
        self.host = '127.0.0.1'
        self.local_port = 61001
        self.proxy = None
        self.runner = None
        self.site = None
        self.loop = None
        self.thread = None
        self.startup_task = None

        self.last_error_type = None  # 'port', 'startup'
        self.last_error_details = None

    def start(self) -> bool:
        """
        Starts the proxy server

        Returns:
            bool: True if the server is listening
        """
        if self.is_running:
            logger.warning("⚠️ Proxy is already running")
            return False

        config = self.config or get_config()
        proxy_config = config.get_proxy_config()
        self.host = proxy_config.get('host', '127.0.0.1')
        self.local_port = int(proxy_config.get('local_port', 61001))
        self.last_error_type = None
        self.last_error_details = None

        port_available, port_message = check_port_availability(self.local_port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            process_info = get_process_using_port(self.local_port)
            if process_info:
                logger.info(
                    f"📌 Process on port {self.local_port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}"
                )
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        self.proxy = OfflineProxy.from_config(config)
        self.thread = threading.Thread(target=self._run_server, daemon=True)
        self.thread.start()

        deadline = time.monotonic() + STARTUP_TIMEOUT
        while time.monotonic() < deadline:
            if self.is_running or self.last_error_type:
                break
            time.sleep(0.1)

        if not self.is_running:
            if not self.last_error_type:
                logger.error("❌ Proxy did not start in time")
                self.last_error_type = 'startup'
                self.last_error_details = f"not listening after {STARTUP_TIMEOUT}s"
            self._abort_startup()
            return False

        logger.info(f"✅ Proxy started on http://{self.host}:{self.local_port} -> {self.proxy.upstream.base_url}")
        return True

    def _run_server(self):
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self.startup_task = self.loop.create_task(self._start_server())
            self.loop.run_until_complete(self.startup_task)
            if self.is_running:
                self.loop.run_forever()
        except asyncio.CancelledError:
            logger.warning("⚠️ Server startup cancelled")
            self.is_running = False
        except Exception as e:
            logger.error(f"❌ Event loop error: {e}", exc_info=True)
            self.is_running = False
        finally:
            if self.loop:
                self.loop.close()

    async def _start_server(self):
        try:
            app = create_app(self.proxy, background_install=True)

            self.runner = web.AppRunner(app, access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, host=self.host, port=self.local_port)
            await self.site.start()
            self.is_running = True
            logger.info(f"📊 Connection pool: limit={self.proxy.upstream.limit}, per_host={self.proxy.upstream.limit_per_host}")

        except asyncio.CancelledError:
            await self._release_runner()
            raise
        except Exception as e:
            logger.error(f"❌ Failed to start server: {e}", exc_info=True)
            self.last_error_type = 'startup'
            self.last_error_details = str(e)
            self.is_running = False
            await self._release_runner()

    async def _release_runner(self):
        if self.runner:
            await self.runner.cleanup()
        self.runner = None
        self.site = None

    def _abort_startup(self):
        """Cancels a startup still in progress on the server thread and waits for the thread"""
        if self.loop and self.startup_task and not self.startup_task.done():
            try:
                self.loop.call_soon_threadsafe(self.startup_task.cancel)
            except RuntimeError:
                # loop already closed: the thread is exiting on its own
                pass

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=10)

    def stop(self):
        if self.loop and self.loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._stop_server(), self.loop)
            try:
                future.result(timeout=10)
            except Exception as e:
                logger.error(f"❌ Error stopping server: {e}")
            self.loop.call_soon_threadsafe(self.loop.stop)

        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)

        was_running = self.is_running
        self.is_running = False

        if was_running and self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats['requests']}\n"
                f"   Total responses: {stats['responses']}\n"
                f"   Errors: {stats['errors']}\n"
                f"   Cached entries: {stats['cache']['total_entries']} ({stats['cache']['total_size']})"
            )
            logger.info("✅ Proxy stopped")

    async def _stop_server(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            # runs on_cleanup: drains revalidation and retires the lifecycle
            await self.runner.cleanup()

    def get_status(self) -> dict:
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.local_port,
        }

        if self.last_error_type:
            status['error'] = {'type': self.last_error_type, 'details': self.last_error_details}

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()

        return status


# Singleton for global access
_proxy_manager = None


def get_proxy_manager() -> ProxyManager:
    global _proxy_manager
    if _proxy_manager is None:
        _proxy_manager = ProxyManager()
    return _proxy_manager
