"""Client for the side-channel endpoints of a running proxy"""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ControlClient:
    def __init__(self, base_url: str, control_path: str = '/__proxy__', timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.control_path = control_path.rstrip('/')
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            trust_env=False  # the proxy is local, ignore system proxies
        )

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def send_message(self, message: dict) -> bool:
        """
        Returns:
            bool: True if the proxy applied the command

        Raises:
            httpx.HTTPError: proxy unreachable or answered with an error status
        """
        response = self.client.post(f"{self.control_path}/message", json=message)
        response.raise_for_status()
        applied = bool(response.json().get('applied'))
        logger.debug(f"Message {message.get('type')} applied={applied}")
        return applied

    def cache_chapter(self, url: str, content: Any) -> bool:
        return self.send_message({'type': 'CACHE_CHAPTER', 'url': url, 'content': content})

    def clear_chapter_cache(self) -> bool:
        return self.send_message({'type': 'CLEAR_CHAPTER_CACHE'})

    def stats(self) -> dict:
        response = self.client.get(f"{self.control_path}/stats")
        response.raise_for_status()
        return response.json()
