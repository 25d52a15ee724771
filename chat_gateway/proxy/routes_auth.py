import re

from flask import request

from .errors import AUTHENTICATION_ERROR, _error

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def _extract_bearer_token():
    match = _BEARER_RE.match(request.headers.get("Authorization", "").strip())
    if match:
        return match.group(1).strip()
    return None


def _authorize_request():
    """Validate the ``Authorization`` header; returns ``(token, error_response)``."""
    from .config import PROXY_API_KEYS, PROXY_REQUIRE_API_KEY

    token = _extract_bearer_token()
    if not PROXY_REQUIRE_API_KEY:
        return token, None
    if not request.headers.get("Authorization"):
        return token, _error(
            "Missing authentication credentials",
            status=401,
            error_type=AUTHENTICATION_ERROR,
            code="invalid_api_key",
            param="Authorization",
        )
    if not token:
        return token, _error(
            "Invalid authorization header format. Expected format: Bearer YOUR_API_KEY",
            status=401,
            error_type=AUTHENTICATION_ERROR,
            code="invalid_api_key",
            param="Authorization",
        )
    if PROXY_API_KEYS and token not in PROXY_API_KEYS:
        return token, _error("Invalid API key.", status=401, error_type=AUTHENTICATION_ERROR, code="invalid_api_key")
    return token, None
