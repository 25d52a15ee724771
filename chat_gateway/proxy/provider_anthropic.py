from . import exceptions as EX
from .client import _get_http_client, _resolve_upstream_key
from .errors import raise_upstream, status_exception
from .exceptions import APIException
from .formatter import anthropic_to_openai
from .logger import logger
from .logging_utils import _log_payload
from .normalize import (
    ToolIdMap,
    format_openai_to_anthropic,
    format_tool_choice_for_anthropic,
    format_tools_for_anthropic,
    prepare_messages,
)
from .streaming import ChatStreamTranscoder, stream_anthropic_events


def is_claude_model(model):
    return (model or "").lower().startswith("claude")


def _json_or_none(response):
    try:
        return response.json()
    except ValueError:
        return None


class AnthropicProvider:
    """Adapter for the Anthropic Messages API (``POST /v1/messages``)."""

    name = "anthropic"

    def __init__(self, payload, token=None, request_id=None, http_client=None):
        self.payload = payload
        self.model = payload.get("model")
        self.token = token
        self.request_id = request_id
        self.messages = prepare_messages(payload.get("messages"))
        self.tool_ids = ToolIdMap()
        self._http_client = http_client

    @property
    def url(self):
        from .config import ANTHROPIC_BASE_URL

        return f"{ANTHROPIC_BASE_URL}/v1/messages"

    def _client(self):
        if self._http_client is None:
            self._http_client = _get_http_client()
        return self._http_client

    def _headers(self, stream=False):
        from .config import ANTHROPIC_API_KEY, ANTHROPIC_VERSION

        headers = {
            "content-type": "application/json",
            "x-api-key": _resolve_upstream_key(self.token, ANTHROPIC_API_KEY, "ANTHROPIC_API_KEY"),
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if stream:
            headers["accept"] = "text/event-stream"
        if self.request_id:
            headers["x-request-id"] = self.request_id
        return headers

    def build_request(self, stream=False):
        from .config import ANTHROPIC_DEFAULT_MAX_TOKENS

        system, messages = format_openai_to_anthropic(self.messages, self.tool_ids)
        body = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.payload.get("max_tokens") or ANTHROPIC_DEFAULT_MAX_TOKENS,
        }
        if system:
            body["system"] = system
        tools = format_tools_for_anthropic(self.payload)
        tool_choice = format_tool_choice_for_anthropic(self.payload)
        if tools and tool_choice != "none":
            body["tools"] = tools
            if tool_choice:
                body["tool_choice"] = tool_choice
        for key in ("temperature", "top_p"):
            if self.payload.get(key) is not None:
                body[key] = self.payload[key]
        stop = self.payload.get("stop")
        if stop:
            body["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        if stream:
            body["stream"] = True
        return body

    def complete(self):
        body = self.build_request(stream=False)
        headers = self._headers()
        _log_payload("anthropic.request", body)
        try:
            response = self._client().post(self.url, headers=headers, json=body)
        except Exception as exc:
            raise_upstream(exc)
        if response.status_code >= 400:
            raise status_exception(
                response.status_code,
                f"Anthropic upstream error {response.status_code}: {response.reason_phrase}",
                _json_or_none(response),
            )
        data = _json_or_none(response)
        if not isinstance(data, dict):
            raise APIException(EX.API_INTERNAL_ERROR, "Anthropic returned a malformed response body.")
        return anthropic_to_openai(data, self.model, self.tool_ids)

    def stream(self):
        """Open the upstream SSE stream; returns ``(frames, close)``."""
        body = self.build_request(stream=True)
        headers = self._headers(stream=True)
        _log_payload("anthropic.request", body)
        client = self._client()
        request = client.build_request("POST", self.url, headers=headers, json=body)
        try:
            response = client.send(request, stream=True)
        except Exception as exc:
            raise_upstream(exc)
        transcoder = ChatStreamTranscoder(self.model, self.tool_ids)
        if response.status_code >= 400:
            try:
                response.read()
                detail = _json_or_none(response)
            finally:
                response.close()
            logger.warning("Anthropic rejected stream status=%s body=%s", response.status_code, detail)
            message = f"Anthropic upstream error {response.status_code}: {response.reason_phrase}"
            return iter(transcoder.reject(message)), None
        return stream_anthropic_events(response.iter_lines(), transcoder), response.close
