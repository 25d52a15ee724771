import json
from types import SimpleNamespace

import httpx


def parse_sse(frames):
    """Split SSE text (or a list of frames) into decoded payloads and ``[DONE]``."""
    text = frames if isinstance(frames, str) else "".join(frames)
    events = []
    for block in text.split("\n\n"):
        block = block.strip()
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


def deltas(events):
    return [event["choices"][0]["delta"] for event in events if event != "[DONE]"]


def anthropic_sse(*events):
    lines = []
    for event in events:
        lines.append(f"event: {event['type']}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode("utf-8")


def text_delta(index, text):
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def tool_start(index, name, tool_id):
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
    }


def tool_delta(index, partial_json):
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial_json},
    }


MESSAGE_START = {"type": "message_start", "message": {"id": "msg_1", "role": "assistant", "content": []}}
MESSAGE_STOP = {"type": "message_stop"}


def message_delta(stop_reason):
    return {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 5}}


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler):
        self.requests = []

        def _record(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


def kimi_chunk(content=None, finish_reason=None):
    return {
        "id": "cmpl-kimi",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "moonshot-v1-8k",
        "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": finish_reason}],
    }


class FakeStream:
    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error
        self.closed = False

    def __iter__(self):
        yield from self._chunks
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, response=None, chunks=None, error=None, stream_error=None):
        self.response = response
        self.chunks = chunks or []
        self.error = error
        self.stream_error = stream_error
        self.calls = []
        self.stream = None

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            self.stream = FakeStream(self.chunks, self.stream_error)
            return self.stream
        return self.response


def fake_kimi_client(**kwargs):
    completions = FakeCompletions(**kwargs)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))
