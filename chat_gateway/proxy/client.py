import threading

import httpx
from openai import OpenAI

from .config import ANTHROPIC_TIMEOUT, KIMI_BASE_URL, KIMI_MAX_RETRIES, KIMI_TIMEOUT

CLIENT_CACHE = {}
_HTTP_CLIENT = None
_HTTP_CLIENT_LOCK = threading.Lock()


def _get_client(api_key):
    """Return the cached Kimi client for ``api_key``."""
    client = CLIENT_CACHE.get(api_key)
    if client is None:
        client = OpenAI(
            api_key=api_key,
            base_url=KIMI_BASE_URL,
            timeout=KIMI_TIMEOUT,
            max_retries=KIMI_MAX_RETRIES,
        )
        CLIENT_CACHE[api_key] = client
    return client


def _get_http_client():
    """Return the process-wide client used for the Anthropic Messages API."""
    global _HTTP_CLIENT
    if _HTTP_CLIENT is None:
        with _HTTP_CLIENT_LOCK:
            if _HTTP_CLIENT is None:
                _HTTP_CLIENT = httpx.Client(timeout=httpx.Timeout(ANTHROPIC_TIMEOUT, connect=10.0))
    return _HTTP_CLIENT


def _resolve_upstream_key(incoming_token, configured_key, name):
    from .config import PROXY_FORWARD_AUTH_HEADER

    if PROXY_FORWARD_AUTH_HEADER and incoming_token:
        return incoming_token
    if configured_key:
        return configured_key
    raise ValueError(f"{name} is not set and no Authorization header was forwarded.")
