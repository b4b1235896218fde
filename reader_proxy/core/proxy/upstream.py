# core/proxy/upstream.py
"""Network side of the proxy: forwards requests to the reader backend"""

import asyncio
import logging
from typing import Mapping, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector
from multidict import CIMultiDict

from reader_proxy.core.proxy.cache_manager import CachedResponse
from reader_proxy.core.proxy.errors import NetworkFailure

logger = logging.getLogger(__name__)

# Not forwarded upstream
REQUEST_SKIP_HEADERS = {'host', 'connection', 'content-length', 'transfer-encoding', 'keep-alive'}

# Not stored or replayed; the body is already decoded and fully read
RESPONSE_SKIP_HEADERS = {'content-encoding', 'transfer-encoding', 'connection', 'keep-alive', 'content-length'}


class Upstream:
    def __init__(self, base_url: str, total_timeout: float = 90, connect_timeout: float = 10,
                 limit: int = 100, limit_per_host: int = 50):
        """
        Args:
            base_url: Backend URL every request path is appended to
            total_timeout: Total request timeout, seconds
            connect_timeout: Connect timeout, seconds
            limit: Connection pool size
            limit_per_host: Connection pool size per host
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = ClientTimeout(total=total_timeout, connect=connect_timeout)
        self.limit = limit
        self.limit_per_host = limit_per_host

        self.connector = None
        self.session = None

    async def initialize(self):
        """Creates the connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=self.limit,
                limit_per_host=self.limit_per_host,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )

        if self.session is None:
            self.session = ClientSession(connector=self.connector, timeout=self.timeout)

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    async def fetch(self, method: str, path_qs: str, headers: Optional[Mapping[str, str]] = None,
                    body: Optional[bytes] = None) -> CachedResponse:
        """
        Performs the request and reads the whole response

        Any HTTP status is a completed fetch; only transport problems raise.

        Raises:
            NetworkFailure: connection refused, DNS failure, timeout, reset
        """
        await self.initialize()

        url = f"{self.base_url}{path_qs}"
        forward_headers = CIMultiDict()
        for key, value in (headers or {}).items():
            if key.lower() not in REQUEST_SKIP_HEADERS:
                forward_headers.add(key, value)

        try:
            async with self.session.request(
                    method=method,
                    url=url,
                    headers=forward_headers,
                    data=body or None,
                    allow_redirects=False
            ) as upstream_response:
                content = await upstream_response.read()

                response_headers = CIMultiDict()
                for key, value in upstream_response.headers.items():
                    if key.lower() not in RESPONSE_SKIP_HEADERS:
                        response_headers.add(key, value)

                logger.debug(f"Upstream {method} {path_qs}: {upstream_response.status}")
                return CachedResponse(status=upstream_response.status, headers=response_headers, body=content)

        except (ClientError, asyncio.TimeoutError, OSError) as e:
            raise NetworkFailure(url, str(e) or type(e).__name__) from e

    async def check_health(self, timeout: float = 5) -> dict:
        """
        Args:
            timeout: Seconds to wait for the backend root page

        Returns:
            dict: {'status': 'healthy'|'unreachable', 'http_status': int or None, 'error': str or None}
        """
        try:
            response = await asyncio.wait_for(self.fetch('GET', '/'), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Upstream health check timed out after {timeout}s")
            return {'status': 'unreachable', 'http_status': None, 'error': 'timeout'}
        except NetworkFailure as e:
            logger.debug(f"Upstream health check failed: {e}")
            return {'status': 'unreachable', 'http_status': None, 'error': e.reason}

        return {
            'status': 'healthy' if response.status < 500 else 'unreachable',
            'http_status': response.status,
            'error': None
        }
