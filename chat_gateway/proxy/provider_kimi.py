import openai

from .client import _get_client, _resolve_upstream_key
from .errors import raise_upstream
from .formatter import format_kimi_to_openai, map_model_name
from .logger import logger
from .logging_utils import _log_payload
from .normalize import (
    _requested_tool_choice,
    format_openai_to_kimi,
    format_tools_for_kimi,
    has_tools,
    prepare_messages,
)
from .streaming import ChatStreamTranscoder, stream_kimi_chunks

_PASSTHROUGH_PARAMS = (
    "temperature",
    "top_p",
    "n",
    "stop",
    "max_tokens",
    "presence_penalty",
    "frequency_penalty",
    "response_format",
    "seed",
    "user",
)


class KimiProvider:
    """Adapter for the Kimi chat backend.

    Kimi speaks the OpenAI chat shape but has no tool role. Tool history is
    folded into plain text on the way in; replies may carry tool calls natively
    or as inline markers, and both come back out as OpenAI tool calls.
    """

    name = "kimi"

    def __init__(self, payload, token=None, request_id=None, client=None):
        self.payload = payload
        self.model = payload.get("model") or "kimi"
        self.token = token
        self.request_id = request_id
        self.messages = prepare_messages(payload.get("messages"))
        self.include_tool_calls = has_tools(payload)
        self._client = client

    def _get_client(self):
        from .config import KIMI_API_KEY

        if self._client is None:
            api_key = _resolve_upstream_key(self.token, KIMI_API_KEY, "KIMI_API_KEY")
            self._client = _get_client(api_key)
        return self._client

    def build_request(self, stream=False):
        body = {
            "model": map_model_name(self.model),
            "messages": format_openai_to_kimi(self.messages),
            "stream": stream,
        }
        for key in _PASSTHROUGH_PARAMS:
            if self.payload.get(key) is not None:
                body[key] = self.payload[key]
        tools = format_tools_for_kimi(self.payload)
        if tools:
            body["tools"] = tools
            tool_choice = _requested_tool_choice(self.payload)
            if tool_choice is not None:
                body["tool_choice"] = tool_choice
        return body

    def complete(self):
        body = self.build_request(stream=False)
        _log_payload("kimi.request", body)
        try:
            response = self._get_client().chat.completions.create(**body)
        except Exception as exc:
            raise_upstream(exc)
        return format_kimi_to_openai(
            response,
            self.model,
            include_tool_calls=self.include_tool_calls,
            prompt_messages=body["messages"],
        )

    def stream(self):
        """Open the upstream stream; returns ``(frames, close)``."""
        body = self.build_request(stream=True)
        _log_payload("kimi.request", body)
        transcoder = ChatStreamTranscoder(self.model)
        try:
            chunks = self._get_client().chat.completions.create(**body)
        except openai.APIStatusError as exc:
            logger.warning("Kimi rejected stream status=%s body=%s", exc.status_code, exc.body)
            message = f"Kimi upstream error {exc.status_code}: {exc.response.reason_phrase}"
            return iter(transcoder.reject(message)), None
        except Exception as exc:
            raise_upstream(exc)
        frames = stream_kimi_chunks(chunks, transcoder, include_tool_calls=self.include_tool_calls)
        return frames, getattr(chunks, "close", None)
