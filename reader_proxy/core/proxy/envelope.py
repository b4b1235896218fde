# core/proxy/envelope.py
"""
JSON envelope {isSuccess, data | errorMsg} used for chapter content and for
every response the proxy synthesizes itself.
"""

import json
from typing import Any

from reader_proxy.core.proxy.cache_manager import CachedResponse

JSON_HEADERS = {'Content-Type': 'application/json'}


def _encode(payload: dict) -> bytes:
    return json.dumps(payload, ensure_ascii=False).encode('utf-8')


def success(data: Any, status: int = 200) -> CachedResponse:
    return CachedResponse(status=status, headers=dict(JSON_HEADERS), body=_encode({'isSuccess': True, 'data': data}))


def failure(error_msg: str, status: int = 503) -> CachedResponse:
    return CachedResponse(status=status, headers=dict(JSON_HEADERS), body=_encode({'isSuccess': False, 'errorMsg': error_msg}))
