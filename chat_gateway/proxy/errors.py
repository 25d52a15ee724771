"""OpenAI error envelopes.

Every failure that reaches a client leaves through :func:`map_error`, which
turns an internal :class:`APIException`, a plain exception, a string, or
anything else into ``({"error": {...}}, http_status)``. It never raises.
"""

import httpx
import openai
from flask import jsonify

from . import exceptions as EX
from .exceptions import APIException
from .logger import logger

INVALID_API_KEY = "invalid_api_key"
INVALID_REQUEST_ERROR = "invalid_request_error"
AUTHENTICATION_ERROR = "authentication_error"
PERMISSION_ERROR = "permission_error"
RATE_LIMIT_ERROR = "rate_limit_error"
QUOTA_EXCEEDED_ERROR = "quota_exceeded_error"
API_ERROR = "api_error"
SERVICE_UNAVAILABLE = "service_unavailable"
INTERNAL_SERVER_ERROR = "internal_server_error"
INVALID_REQUEST = "invalid_request"
MODEL_NOT_FOUND = "model_not_found"
CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
TIMEOUT_ERROR = "timeout_error"
CONNECTION_ERROR = "connection_error"

ERROR_CODE_MAPPING = {
    -1000: {"type": INTERNAL_SERVER_ERROR, "status": 500},
    -1001: {"type": INVALID_REQUEST, "status": 400},
    -1002: {"type": INVALID_REQUEST, "status": 404},
    -2001: {"type": AUTHENTICATION_ERROR, "status": 401, "code": "invalid_api_key"},
    -2002: {"type": AUTHENTICATION_ERROR, "status": 401, "code": "expired_api_key"},
    -2003: {"type": PERMISSION_ERROR, "status": 403},
    -2004: {"type": RATE_LIMIT_ERROR, "status": 429, "code": "rate_limit_exceeded"},
    -2005: {"type": QUOTA_EXCEEDED_ERROR, "status": 429, "code": "quota_exceeded"},
    -2006: {"type": MODEL_NOT_FOUND, "status": 404, "code": "model_not_found"},
    -2007: {"type": CONTEXT_LENGTH_EXCEEDED, "status": 400, "code": "context_length_exceeded"},
    -2008: {"type": SERVICE_UNAVAILABLE, "status": 503},
    -2009: {"type": TIMEOUT_ERROR, "status": 504, "code": "timeout"},
    -2010: {"type": CONNECTION_ERROR, "status": 502, "code": "connection_error"},
    -2011: {"type": API_ERROR, "status": 500},
    -2012: {"type": INVALID_REQUEST_ERROR, "status": 400},
    -2013: {"type": INVALID_REQUEST_ERROR, "status": 400},
    -2100: {"type": API_ERROR, "status": 500},
    -2101: {"type": API_ERROR, "status": 500},
    -2102: {"type": API_ERROR, "status": 500},
    -2103: {"type": API_ERROR, "status": 500},
    -2104: {"type": API_ERROR, "status": 500},
    -2105: {"type": API_ERROR, "status": 500},
}

# Evaluated top to bottom; the first rule with a matching substring wins.
_MESSAGE_RULES = (
    (("api key", "api_key"), INVALID_API_KEY),
    (("authentication", "unauthorized"), AUTHENTICATION_ERROR),
    (("permission", "forbidden"), PERMISSION_ERROR),
    (("rate limit",), RATE_LIMIT_ERROR),
    (("quota",), QUOTA_EXCEEDED_ERROR),
    (("invalid request", "bad request"), INVALID_REQUEST),
    (("model not found", "model_not_found"), MODEL_NOT_FOUND),
    (("context length", "token limit"), CONTEXT_LENGTH_EXCEEDED),
    (("timeout", "timed out"), TIMEOUT_ERROR),
    (("connection",), CONNECTION_ERROR),
    (("service unavailable", "temporarily unavailable"), SERVICE_UNAVAILABLE),
)

_STATUS_BY_TYPE = {
    INVALID_API_KEY: 401,
    AUTHENTICATION_ERROR: 401,
    PERMISSION_ERROR: 403,
    RATE_LIMIT_ERROR: 429,
    QUOTA_EXCEEDED_ERROR: 429,
    INVALID_REQUEST: 400,
    INVALID_REQUEST_ERROR: 400,
    CONTEXT_LENGTH_EXCEEDED: 400,
    MODEL_NOT_FOUND: 404,
    SERVICE_UNAVAILABLE: 503,
    TIMEOUT_ERROR: 504,
    CONNECTION_ERROR: 502,
}

_CODE_BY_TYPE = {
    INVALID_API_KEY: "invalid_api_key",
    RATE_LIMIT_ERROR: "rate_limit_exceeded",
    QUOTA_EXCEEDED_ERROR: "quota_exceeded",
    MODEL_NOT_FOUND: "model_not_found",
    CONTEXT_LENGTH_EXCEEDED: "context_length_exceeded",
    TIMEOUT_ERROR: "timeout",
    CONNECTION_ERROR: "connection_error",
}

_EXCEPTION_BY_STATUS = {
    400: EX.API_INVALID_REQUEST,
    401: EX.API_INVALID_API_KEY,
    403: EX.API_PERMISSION_DENIED,
    404: EX.API_MODEL_NOT_FOUND,
    408: EX.API_TIMEOUT,
    413: EX.API_CONTEXT_LENGTH_EXCEEDED,
    429: EX.API_RATE_LIMIT_EXCEEDED,
    502: EX.API_CONNECTION_ERROR,
    503: EX.API_SERVICE_UNAVAILABLE,
    504: EX.API_TIMEOUT,
}


def _error_payload(message, error_type=API_ERROR, code=None, param=None):
    return {"error": {"message": message, "type": error_type, "param": param, "code": code}}


def create_error(message, error_type=API_ERROR, status=500, param=None, code=None):
    return _error_payload(message, error_type=error_type, code=code, param=param), status


def _error(message, status=400, error_type=INVALID_REQUEST_ERROR, code=None, param=None):
    payload, status = create_error(message, error_type=error_type, status=status, param=param, code=code)
    return jsonify(payload), status


def _infer_error_type(message):
    lowered = (message or "").lower()
    for needles, error_type in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return error_type
    return API_ERROR


def map_error(error, param=None):
    """Return ``(envelope, http_status)`` for any error value."""
    param = param or None
    if isinstance(error, APIException):
        mapping = ERROR_CODE_MAPPING.get(error.errcode)
        if mapping:
            return create_error(
                error.errmsg,
                error_type=mapping["type"],
                status=error.http_status or mapping["status"],
                param=param,
                code=mapping.get("code"),
            )
        return create_error(
            error.errmsg,
            error_type=API_ERROR,
            status=error.http_status or 500,
            param=param,
            code="internal_error",
        )
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        error_type = _infer_error_type(message)
        return create_error(
            message,
            error_type=error_type,
            status=_STATUS_BY_TYPE.get(error_type, 500),
            param=param,
            code=_CODE_BY_TYPE.get(error_type),
        )
    if isinstance(error, str):
        return create_error(error, error_type=API_ERROR, status=500, param=param)
    return create_error(
        "An unknown error occurred",
        error_type=API_ERROR,
        status=500,
        param=param,
        code="unknown_error",
    )


def _body_message(body):
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
        if isinstance(inner, str) and inner:
            return inner
        if body.get("message"):
            return str(body["message"])
    return None


def status_exception(status, message, body=None):
    exception = _EXCEPTION_BY_STATUS.get(status)
    if exception is None:
        exception = EX.API_SERVICE_UNAVAILABLE if status >= 500 else EX.API_INTERNAL_ERROR
    return APIException(exception, _body_message(body) or message)


def upstream_exception(error):
    """Translate a backend client exception into an :class:`APIException`.

    Errors the clients do not know about are returned unchanged so that
    :func:`map_error` can still infer a type from their message.
    """
    if isinstance(error, APIException):
        return error
    if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException)):
        return APIException(EX.API_TIMEOUT, f"Upstream request timed out: {error}")
    if isinstance(error, (openai.APIConnectionError, httpx.TransportError)):
        return APIException(EX.API_CONNECTION_ERROR, f"Upstream connection failed: {error}")
    if isinstance(error, openai.APIStatusError):
        return status_exception(error.status_code, error.message, getattr(error, "body", None))
    if isinstance(error, httpx.HTTPStatusError):
        return status_exception(error.response.status_code, str(error))
    return error


def _handle_upstream_error(error, param=None):
    payload, status = map_error(upstream_exception(error), param=param)
    logger.warning(
        "Mapped error type=%s status=%s message=%s",
        payload["error"]["type"],
        status,
        payload["error"]["message"],
    )
    return jsonify(payload), status


def raise_upstream(error):
    mapped = upstream_exception(error)
    if mapped is error:
        raise error
    raise mapped from error
