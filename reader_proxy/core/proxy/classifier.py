# core/proxy/classifier.py
"""Maps a request URL to the caching strategy class that serves it"""

import enum
from typing import Iterable
from urllib.parse import urlsplit


class RequestClass(enum.Enum):
    CHAPTER_CONTENT = "chapter_content"
    API = "api"
    STATIC = "static"


class Classifier:
    """
    First match wins, most specific first: chapter content is also served
    under the API prefixes and must never fall through to the API strategy.
    """

    def __init__(self, chapter_marker: str = "/getBookContent", api_prefixes: Iterable[str] = ("/reader3/", "/api/")):
        self.chapter_marker = chapter_marker
        self.api_prefixes = tuple(api_prefixes)

    def classify(self, url: str) -> RequestClass:
        path = urlsplit(url).path or "/"

        if self.chapter_marker in path:
            return RequestClass.CHAPTER_CONTENT

        if path.startswith(self.api_prefixes):
            return RequestClass.API

        return RequestClass.STATIC
