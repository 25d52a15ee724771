"""Conversion of complete backend responses into ``chat.completion`` objects."""

import json
import math
import re
import time
import uuid

from .logger import logger
from .logging_utils import _log_tool_call
from .normalize import _content_to_text, _ensure_json_str, _serialize_model

MODEL_IDS = (
    "moonshot-v1",
    "moonshot-v1-8k",
    "moonshot-v1-32k",
    "moonshot-v1-128k",
    "moonshot-v1-vision",
    "kimi",
    "kimi-search",
    "kimi-research",
    "kimi-k1",
    "kimi-math",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
    "claude-3-5-sonnet-20240620",
)
MODEL_LIST_CREATED = 1704067200
MODEL_OWNER = "chat-gateway"

_MODEL_NAME_MAP = {
    "gpt-3.5-turbo": "moonshot-v1-8k",
    "gpt-3.5-turbo-16k": "moonshot-v1-32k",
    "gpt-4": "moonshot-v1-32k",
    "gpt-4-32k": "moonshot-v1-128k",
    "gpt-4-turbo": "moonshot-v1-128k",
    "gpt-4-vision-preview": "moonshot-v1-vision",
}

_CJK_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff]")

_ANTHROPIC_FINISH_REASONS = {
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def _completion_id():
    return f"chatcmpl-{uuid.uuid4().hex}"


def _timestamp(value=None):
    try:
        return int(value) if value is not None else int(time.time())
    except (TypeError, ValueError):
        return int(time.time())


def map_model_name(model):
    from .config import MODEL_NAME_MAP

    return MODEL_NAME_MAP.get(model) or _MODEL_NAME_MAP.get(model) or model


def create_model_list():
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": MODEL_LIST_CREATED,
                "owned_by": MODEL_OWNER,
                "permission": [],
                "root": model_id,
                "parent": None,
            }
            for model_id in MODEL_IDS
        ],
    }


def estimate_tokens(text):
    """Rough token count: two CJK characters or four other characters per token.

    Only used when the backend reports no usage and ``ESTIMATE_USAGE`` is on.
    """
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 2 + other / 4)


def _zero_usage():
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def _estimated_usage(prompt_messages, completion_text):
    prompt_text = "\n".join(_content_to_text(msg.get("content")) for msg in prompt_messages or [] if isinstance(msg, dict))
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(completion_text)
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
        "estimated": True,
    }


def _marker_pattern():
    from .config import KIMI_TOOL_ARGS_LABEL, KIMI_TOOL_CALL_LABEL

    return re.compile(
        r"\[" + re.escape(KIMI_TOOL_CALL_LABEL) + r":\s*([^\]\n]+)\]\s*\n"
        + re.escape(KIMI_TOOL_ARGS_LABEL) + r":\s*"
    )


def extract_tool_calls(content):
    """Pull inline tool-call markers out of plain text.

    Returns ``(tool_calls, remaining_text)``. A marker whose arguments are not
    a JSON object is left in the text.
    """
    if not content:
        return [], content or ""
    decoder = json.JSONDecoder()
    tool_calls = []
    pieces = []
    cursor = 0
    for match in _marker_pattern().finditer(content):
        if match.start() < cursor:
            continue
        try:
            arguments, end = decoder.raw_decode(content, match.end())
        except json.JSONDecodeError:
            logger.debug("Unparseable tool marker for %s; no tool calls found there.", match.group(1))
            continue
        if not isinstance(arguments, dict):
            continue
        tool_calls.append(
            {
                "id": f"call_{uuid.uuid4().hex}",
                "type": "function",
                "function": {"name": match.group(1).strip(), "arguments": content[match.end():end]},
            }
        )
        pieces.append(content[cursor:match.start()])
        cursor = end
    if not tool_calls:
        return [], content
    pieces.append(content[cursor:])
    return tool_calls, "".join(pieces).strip()


def _first_choice(data):
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _kimi_content(data, choice):
    message = choice.get("message") or {}
    if message.get("content"):
        return _content_to_text(message["content"])
    delta = choice.get("delta") or {}
    if delta.get("content"):
        return _content_to_text(delta["content"])
    return _content_to_text(data.get("content") or data.get("text") or "")


def _native_tool_calls(message):
    tool_calls = []
    for call in message.get("tool_calls") or []:
        if not isinstance(call, dict):
            continue
        function = call.get("function") or {}
        if not function.get("name"):
            continue
        tool_calls.append(
            {
                "id": call.get("id") or f"call_{uuid.uuid4().hex}",
                "type": "function",
                "function": {"name": function["name"], "arguments": _ensure_json_str(function.get("arguments"), "{}")},
            }
        )
    return tool_calls


def _finish_reason(choice, tool_calls):
    if tool_calls:
        return "tool_calls"
    reason = choice.get("finish_reason") or "stop"
    # tool_calls only when calls are actually returned
    return "stop" if reason == "tool_calls" else reason


def format_kimi_to_openai(response, model, include_tool_calls=False, prompt_messages=None):
    from .config import ESTIMATE_USAGE

    data = _serialize_model(response)
    if not isinstance(data, dict):
        data = {}
    choice = _first_choice(data)
    content = _kimi_content(data, choice)

    tool_calls = _native_tool_calls(choice.get("message") or {})
    if include_tool_calls:
        marker_calls, content = extract_tool_calls(content)
        if not marker_calls:
            logger.debug("No tool calls found in Kimi response.")
        tool_calls.extend(marker_calls)

    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["content"] = content or None
        message["tool_calls"] = tool_calls
        for call in tool_calls:
            _log_tool_call(call["function"]["name"], call["function"]["arguments"], call["id"], "kimi")

    usage = data.get("usage")
    if not isinstance(usage, dict):
        usage = _estimated_usage(prompt_messages, content) if ESTIMATE_USAGE else _zero_usage()

    return {
        "id": data.get("id") or _completion_id(),
        "object": "chat.completion",
        "created": _timestamp(data.get("created")),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": _finish_reason(choice, tool_calls),
                "logprobs": None,
            }
        ],
        "usage": usage,
    }


def anthropic_to_openai(data, model, tool_ids=None):
    if not isinstance(data, dict):
        data = {}
    text_parts = []
    tool_calls = []
    for block in data.get("content") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text_parts.append(str(block.get("text") or ""))
        elif block.get("type") == "tool_use":
            backend_id = block.get("id") or f"toolu_{uuid.uuid4().hex}"
            call_id = (tool_ids.to_local(backend_id) if tool_ids is not None else None) or backend_id
            arguments = _ensure_json_str(block.get("input") if block.get("input") is not None else {}, "{}")
            tool_calls.append(
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": block.get("name"), "arguments": arguments},
                }
            )
            _log_tool_call(block.get("name"), arguments, call_id, "anthropic")

    message = {"role": "assistant", "content": None if tool_calls else "".join(text_parts)}
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish_reason = "tool_calls"
    else:
        finish_reason = _ANTHROPIC_FINISH_REASONS.get(data.get("stop_reason"), "stop")

    result = {
        "id": data.get("id") or _completion_id(),
        "object": "chat.completion",
        "created": _timestamp(),
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason, "logprobs": None}],
    }
    usage = data.get("usage")
    if isinstance(usage, dict):
        prompt_tokens = usage.get("input_tokens") or 0
        completion_tokens = usage.get("output_tokens") or 0
        result["usage"] = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }
    else:
        result["usage"] = _zero_usage()
    return result

