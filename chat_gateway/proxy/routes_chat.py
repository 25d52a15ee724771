import time
import uuid

from flask import Response, g, jsonify, request, stream_with_context

from . import exceptions as EX
from .errors import _error, _handle_upstream_error, map_error
from .exceptions import APIException
from .logger import logger
from .logging_utils import _log_payload
from .normalize import _apply_param_rules
from .provider_anthropic import AnthropicProvider, is_claude_model
from .provider_kimi import KimiProvider
from .routes_auth import _authorize_request
from .streaming import _safe_stream

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


def _select_provider(payload, token, request_id):
    if is_claude_model(payload.get("model")):
        return AnthropicProvider(payload, token=token, request_id=request_id)
    return KimiProvider(payload, token=token, request_id=request_id)


def register_chat_routes(app):
    @app.post("/v1/chat/completions")
    def create_chat_completion():
        token, auth_error = _authorize_request()
        if auth_error:
            return auth_error
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error("Invalid or missing JSON body.", status=400, param="body")
        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            error = APIException(EX.API_MISSING_REQUIRED_PARAM, "'messages' must be a non-empty array.")
            envelope, status = map_error(error, param="messages")
            return jsonify(envelope), status

        _log_payload("incoming.raw", payload)
        payload = _apply_param_rules(payload)
        _log_payload("incoming.final", payload)
        stream = bool(payload.get("stream", False))
        request_id = getattr(g, "request_id", uuid.uuid4().hex)
        try:
            provider = _select_provider(payload, token, request_id)
            logger.info(
                "chat.dispatch request_id=%s provider=%s model=%s stream=%s",
                request_id,
                provider.name,
                provider.model,
                stream,
            )
            if stream:
                frames, close = provider.stream()
                safe_stream = _safe_stream(
                    frames,
                    request_id,
                    getattr(g, "start_time", time.time()),
                    request.method,
                    request.path,
                    on_close=close,
                )
                return Response(
                    stream_with_context(safe_stream),
                    mimetype="text/event-stream",
                    headers=SSE_HEADERS,
                )
            return jsonify(provider.complete())
        except Exception as exc:
            logger.exception("Upstream error on /v1/chat/completions.")
            return _handle_upstream_error(exc)
