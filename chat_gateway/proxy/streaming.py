"""Streaming transcoder: backend stream events in, OpenAI chunk SSE frames out."""

import json
import time
import uuid

from .errors import map_error, upstream_exception
from .formatter import _marker_pattern
from .logger import logger
from .logging_utils import _log_stream_event, _log_tool_call
from .normalize import _content_to_text, _serialize_model

SSE_DONE = "data: [DONE]\n\n"

STATE_INIT = "INIT"
STATE_STREAMING = "STREAMING"
STATE_DONE = "DONE"


def _sse(payload):
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class ChatStreamTranscoder:
    """Per-stream state machine emitting ``chat.completion.chunk`` frames.

    Every method returns the list of SSE frames it produced, in order. Once the
    stream is ``DONE`` every method returns an empty list, so the terminal
    chunk and the ``[DONE]`` sentinel go out exactly once.
    """

    def __init__(self, model, tool_ids=None):
        self.model = model
        self.tool_ids = tool_ids
        self.response_id = f"chatcmpl-{uuid.uuid4().hex}"
        self.state = STATE_INIT
        self.tool_index_by_block = {}
        self.arguments_by_slot = {}
        self.tool_calls = {}
        self.tool_count = 0
        self.saw_tool_use = False
        self.stop_reason = None

    def _chunk(self, delta, finish_reason=None):
        return _sse(
            {
                "id": self.response_id,
                "object": "chat.completion.chunk",
                "created": int(time.time()),
                "model": self.model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason, "logprobs": None}],
            }
        )

    @property
    def done(self):
        return self.state == STATE_DONE

    def start(self):
        if self.state != STATE_INIT:
            return []
        self.state = STATE_STREAMING
        return [self._chunk({"role": "assistant"})]

    def _ensure_started(self):
        return self.start() if self.state == STATE_INIT else []

    def text(self, text):
        if self.done or not text:
            return []
        frames = self._ensure_started()
        frames.append(self._chunk({"content": text}))
        return frames

    def tool_start(self, block_index, name, tool_id=None):
        if self.done:
            return []
        frames = self._ensure_started()
        slot = self.tool_count
        self.tool_count += 1
        self.tool_index_by_block[block_index] = slot
        self.arguments_by_slot[slot] = ""
        self.saw_tool_use = True
        local_id = self.tool_ids.to_local(tool_id) if (self.tool_ids is not None and tool_id) else None
        call_id = local_id or tool_id or f"toolu_{uuid.uuid4().hex}"
        self.tool_calls[slot] = {"id": call_id, "name": name or "unknown"}
        frames.append(
            self._chunk(
                {
                    "tool_calls": [
                        {"index": slot, "id": call_id, "type": "function", "function": {"name": self.tool_calls[slot]["name"]}}
                    ]
                }
            )
        )
        return frames

    def tool_arguments(self, block_index, fragment):
        if self.done:
            return []
        slot = self.tool_index_by_block.get(block_index)
        if slot is None:
            return []
        fragment = fragment or ""
        self.arguments_by_slot[slot] += fragment
        return [self._chunk({"tool_calls": [{"index": slot, "function": {"arguments": fragment}}]})]

    def metadata(self, stop_reason):
        if stop_reason:
            self.stop_reason = stop_reason
        return []

    def finish(self):
        if self.done:
            return []
        frames = self._ensure_started()
        self.state = STATE_DONE
        frames.append(self._chunk({}, finish_reason="tool_calls" if self.saw_tool_use else "stop"))
        frames.append(SSE_DONE)
        return frames

    def fail(self, message):
        """Close the stream after an upstream failure, reporting it in-band."""
        if self.done:
            return []
        if self.state == STATE_INIT:
            self.state = STATE_DONE
            return [self._chunk({"role": "assistant", "content": f"Error: {message}"}), SSE_DONE]
        frames = [self._chunk({"content": f"\n\nError: {message}"})]
        frames.extend(self.finish())
        return frames

    def reject(self, message):
        """Report an upstream that refused the stream before sending any event."""
        if self.state != STATE_INIT:
            return self.fail(message)
        self.state = STATE_DONE
        return [self._chunk({"content": f"Error: {message}"}), SSE_DONE]


def _error_message(error):
    payload, _ = map_error(upstream_exception(error))
    return payload["error"]["message"]


def _iter_sse_data(lines):
    """Yield decoded JSON payloads from the ``data:`` lines of an SSE stream."""
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            continue
        raw = line[5:].strip()
        if not raw or raw == "[DONE]":
            continue
        try:
            yield json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE payload: %s", raw[:200])


def stream_anthropic_events(lines, transcoder):
    """Transcode Anthropic Messages SSE lines into OpenAI chunk frames."""
    yield from transcoder.start()
    try:
        for data in _iter_sse_data(lines):
            if not isinstance(data, dict):
                continue
            event_type = data.get("type")
            _log_stream_event(event_type or "unknown", data)

            if event_type == "content_block_start":
                block = data.get("content_block") or {}
                if block.get("type") == "tool_use":
                    yield from transcoder.tool_start(data.get("index", 0), block.get("name"), block.get("id"))
            elif event_type == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta":
                    yield from transcoder.text(delta.get("text") or "")
                elif delta.get("type") == "input_json_delta":
                    yield from transcoder.tool_arguments(data.get("index", 0), delta.get("partial_json") or "")
            elif event_type == "message_delta":
                yield from transcoder.metadata((data.get("delta") or {}).get("stop_reason"))
            elif event_type == "message_stop":
                yield from transcoder.finish()
                break
            elif event_type == "error":
                error = data.get("error") or {}
                yield from transcoder.fail(error.get("message") or "Upstream stream error")
                break
    except Exception as exc:
        logger.warning("Anthropic stream interrupted: %s", exc)
        yield from transcoder.fail(_error_message(exc))
    else:
        if not transcoder.done:
            logger.warning("Anthropic stream closed before message_stop.")
    yield from transcoder.finish()
    _log_tool_arguments(transcoder, "anthropic.stream")


class InlineToolCallScanner:
    """Turns inline tool-call markers in streamed Kimi text into tool-call deltas.

    Text that could still grow into a marker is held back until it either
    completes or is ruled out; everything else goes straight to the client.
    """

    def __init__(self, transcoder):
        self.transcoder = transcoder
        self.buffer = ""
        self.marker_count = 0
        self._trim_next = False
        self._decoder = json.JSONDecoder()

    def _emit_text(self, text):
        if self._trim_next:
            text = text.lstrip()
            if text:
                self._trim_next = False
        return self.transcoder.text(text)

    def _emit_tool(self, name, arguments):
        block = ("marker", self.marker_count)
        self.marker_count += 1
        frames = self.transcoder.tool_start(block, name, f"call_{uuid.uuid4().hex}")
        frames.extend(self.transcoder.tool_arguments(block, arguments))
        self._trim_next = True
        return frames

    def _hold_from(self, text):
        from .config import KIMI_TOOL_CALL_LABEL

        prefix = f"[{KIMI_TOOL_CALL_LABEL}:"
        start = text.find("[")
        while start != -1:
            tail = text[start:]
            if prefix.startswith(tail) or tail.startswith(prefix):
                return start
            start = text.find("[", start + 1)
        return len(text)

    def _drain(self, final):
        frames = []
        pattern = _marker_pattern()
        cursor = 0
        while True:
            match = pattern.search(self.buffer, cursor)
            if match is None:
                break
            try:
                arguments, end = self._decoder.raw_decode(self.buffer, match.end())
            except json.JSONDecodeError:
                if not final:
                    # arguments may still be arriving
                    break
                cursor = match.end()
                continue
            if not isinstance(arguments, dict):
                cursor = end
                continue
            frames.extend(self._emit_text(self.buffer[:match.start()].rstrip()))
            frames.extend(self._emit_tool(match.group(1).strip(), self.buffer[match.end():end]))
            self.buffer = self.buffer[end:]
            cursor = 0
        if final:
            frames.extend(self._emit_text(self.buffer))
            self.buffer = ""
            return frames
        hold = self._hold_from(self.buffer)
        frames.extend(self._emit_text(self.buffer[:hold]))
        self.buffer = self.buffer[hold:]
        return frames

    def feed(self, text):
        if not text:
            return []
        self.buffer += text
        return self._drain(final=False)

    def flush(self):
        if not self.buffer:
            return []
        return self._drain(final=True)


def _native_tool_deltas(transcoder, delta):
    frames = []
    for call in delta.get("tool_calls") or []:
        if not isinstance(call, dict):
            continue
        block = ("native", call.get("index", 0))
        function = call.get("function") or {}
        if block not in transcoder.tool_index_by_block:
            frames.extend(
                transcoder.tool_start(block, function.get("name"), call.get("id") or f"call_{uuid.uuid4().hex}")
            )
        if function.get("arguments"):
            frames.extend(transcoder.tool_arguments(block, function["arguments"]))
    return frames


def stream_kimi_chunks(chunks, transcoder, include_tool_calls=False):
    """Transcode OpenAI-shaped Kimi stream chunks into OpenAI chunk frames.

    With ``include_tool_calls`` inline markers in the text become tool-call
    deltas, matching what the non-streaming converter returns.
    """
    scanner = InlineToolCallScanner(transcoder) if include_tool_calls else None
    yield from transcoder.start()
    try:
        for chunk in chunks:
            data = _serialize_model(chunk)
            if not isinstance(data, dict):
                continue
            _log_stream_event("kimi.chunk", data)
            choices = data.get("choices") or []
            choice = choices[0] if choices and isinstance(choices[0], dict) else {}
            delta = choice.get("delta") or {}
            text = _content_to_text(delta.get("content"))
            if scanner is not None:
                yield from scanner.feed(text)
            else:
                yield from transcoder.text(text)
            yield from _native_tool_deltas(transcoder, delta)
            yield from transcoder.metadata(choice.get("finish_reason"))
    except Exception as exc:
        logger.warning("Kimi stream interrupted: %s", exc)
        if scanner is not None:
            yield from scanner.flush()
        yield from transcoder.fail(_error_message(exc))
    if scanner is not None:
        yield from scanner.flush()
    yield from transcoder.finish()
    _log_tool_arguments(transcoder, "kimi.stream")


def _log_tool_arguments(transcoder, source):
    for slot, call in transcoder.tool_calls.items():
        _log_tool_call(call["name"], transcoder.arguments_by_slot.get(slot), call["id"], source)


def _safe_stream(generator, request_id, start_time, method, path, on_close=None):
    status = 200
    try:
        for frame in generator:
            yield frame
    except GeneratorExit:
        status = 499
        logger.info(
            "Stream client disconnect request_id=%s method=%s path=%s",
            request_id,
            method,
            path,
        )
        raise
    except Exception as exc:
        payload, status = map_error(upstream_exception(exc))
        logger.exception(
            "Stream error request_id=%s method=%s path=%s status=%s",
            request_id,
            method,
            path,
            status,
        )
        yield _sse(payload)
        yield SSE_DONE
    finally:
        close = getattr(generator, "close", None)
        if close is not None:
            close()
        if on_close is not None:
            on_close()
        duration_ms = (time.time() - start_time) * 1000.0 if start_time else 0.0
        logger.info(
            "request.complete request_id=%s method=%s path=%s status=%s duration_ms=%.2f stream=True",
            request_id,
            method,
            path,
            status,
            duration_ms,
        )
