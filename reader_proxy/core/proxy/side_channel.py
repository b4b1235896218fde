# core/proxy/side_channel.py
"""Out-of-band cache commands sent by the reader application"""

import logging
from dataclasses import dataclass
from typing import Any, Union

from reader_proxy.core.proxy import envelope
from reader_proxy.core.proxy.cache_manager import CacheStorage, request_key
from reader_proxy.core.proxy.errors import MalformedCommand

logger = logging.getLogger(__name__)

CACHE_CHAPTER = "CACHE_CHAPTER"
CLEAR_CHAPTER_CACHE = "CLEAR_CHAPTER_CACHE"


@dataclass(frozen=True)
class CacheChapter:
    url: str
    content: Any


@dataclass(frozen=True)
class ClearChapterCache:
    pass


Command = Union[CacheChapter, ClearChapterCache]


def parse_command(data: Any) -> Command:
    """
    Raises:
        MalformedCommand: data is not one of the known command shapes
    """
    if not isinstance(data, dict):
        raise MalformedCommand(f"Command must be an object, got {type(data).__name__}")

    command_type = data.get('type')

    if command_type == CACHE_CHAPTER:
        url = data.get('url')
        if not isinstance(url, str) or not url:
            raise MalformedCommand("CACHE_CHAPTER requires a non-empty 'url'")
        if 'content' not in data:
            raise MalformedCommand("CACHE_CHAPTER requires 'content'")
        return CacheChapter(url=url, content=data['content'])

    if command_type == CLEAR_CHAPTER_CACHE:
        return ClearChapterCache()

    raise MalformedCommand(f"Unknown command type: {command_type!r}")


class SideChannel:
    def __init__(self, storage: CacheStorage, chapter_namespace: str):
        self.storage = storage
        self.chapter_namespace = chapter_namespace

    def handle_message(self, data: Any) -> bool:
        """
        Applies a command; malformed ones are dropped. Never raises.

        Returns:
            bool: True if a command was applied
        """
        try:
            command = parse_command(data)
        except MalformedCommand as e:
            logger.debug(f"Ignoring side-channel message: {e}")
            return False

        try:
            if isinstance(command, CacheChapter):
                key = request_key('GET', command.url)
                self.storage.open(self.chapter_namespace).put(key, envelope.success(command.content))
                logger.info(f"📥 Chapter pre-cached: {key}")
            else:
                self.storage.delete(self.chapter_namespace)
                logger.info("🗑️ Chapter cache cleared")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"❌ Side-channel command failed: {e}", exc_info=True)
            return False

        return True
