"""Exceptions raised inside the caching proxy"""


class ProxyError(Exception):
    """Base error of the proxy"""


class NetworkFailure(ProxyError):
    """Upstream rejected the connection, was unreachable or timed out"""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        super().__init__(f"Network failure for {url}: {reason}" if reason else f"Network failure for {url}")


class CacheMiss(ProxyError):
    """No entry stored for a key"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Cache miss: {key}")


class MalformedCommand(ProxyError):
    """Side-channel message of an unrecognized shape"""
