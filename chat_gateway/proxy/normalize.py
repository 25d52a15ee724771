import json
import uuid

from .tool_validation import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    convert_function_calls_to_tool_calls,
    validate_tool_calls,
)


class ToolIdMap:
    """Per-request mapping between client tool-call ids and backend tool-use ids."""

    def __init__(self):
        self._backend_by_local = {}
        self._local_by_backend = {}

    def bind(self, local_id, backend_id):
        self._backend_by_local[local_id] = backend_id
        self._local_by_backend[backend_id] = local_id

    def to_backend(self, local_id):
        return self._backend_by_local.get(local_id)

    def to_local(self, backend_id):
        return self._local_by_backend.get(backend_id)

    def __len__(self):
        return len(self._backend_by_local)


def _ensure_json_str(value, default=""):
    if value is None:
        return default
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except TypeError:
        return str(value)


def _serialize_model(obj):
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "dict"):
        return obj.dict()
    return obj


def _content_to_text(content, separator=""):
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        if "text" in content:
            return str(content.get("text") or "")
        if "refusal" in content:
            return str(content.get("refusal") or "")
        if "content" in content:
            return str(content.get("content") or "")
        return ""
    if isinstance(content, list):
        return separator.join(_content_to_text(item) for item in content)
    return str(content)


def prepare_messages(messages):
    """Upgrade legacy function calls, then drop unpaired tool calls."""
    return validate_tool_calls(convert_function_calls_to_tool_calls(messages))


def tool_call_marker(name, arguments):
    from .config import KIMI_TOOL_ARGS_LABEL, KIMI_TOOL_CALL_LABEL

    return f"\n[{KIMI_TOOL_CALL_LABEL}: {name}]\n{KIMI_TOOL_ARGS_LABEL}: {arguments}"


def format_openai_to_kimi(messages):
    """Project OpenAI messages onto the Kimi chat shape, which has no tool role."""
    kimi_messages = []
    for msg in messages or []:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role == ROLE_TOOL:
            kimi_messages.append(
                {
                    "role": ROLE_USER,
                    "content": f"Tool Response ({msg.get('tool_call_id')}): {_content_to_text(msg.get('content'))}",
                }
            )
        elif role == ROLE_ASSISTANT and msg.get("tool_calls"):
            content = _content_to_text(msg.get("content"))
            for call in msg["tool_calls"]:
                function = call.get("function") or {}
                content += tool_call_marker(
                    function.get("name"), _ensure_json_str(function.get("arguments"), "{}")
                )
            kimi_messages.append({"role": ROLE_ASSISTANT, "content": content.strip()})
        elif role in (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT):
            kimi_messages.append({"role": role, "content": msg.get("content") or ""})
        else:
            # function and unknown roles
            kimi_messages.append({"role": ROLE_USER, "content": msg.get("content") or ""})
    return kimi_messages


def _tool_input(arguments):
    if not isinstance(arguments, str):
        return arguments if arguments is not None else {}
    try:
        return json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return arguments


def _text_block(text):
    return {"type": "text", "text": text}


def format_openai_to_anthropic(messages, tool_ids):
    """Project OpenAI messages onto Anthropic Messages content blocks.

    Returns ``(system_text, messages)``; system prompts travel outside the
    message list. Tool-call ids are re-issued as ``toolu_`` ids and recorded in
    ``tool_ids`` so responses can be mapped back.
    """
    system_parts = []
    anthropic_messages = []
    for msg in messages or []:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        text = _content_to_text(msg.get("content"), separator="\n")
        if role == ROLE_SYSTEM:
            if text:
                system_parts.append(text)
        elif role == ROLE_ASSISTANT:
            blocks = [_text_block(text)] if text else []
            for call in msg.get("tool_calls") or []:
                function = call.get("function") or {}
                backend_id = f"toolu_{uuid.uuid4().hex}"
                if call.get("id"):
                    tool_ids.bind(call["id"], backend_id)
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": backend_id,
                        "name": function.get("name"),
                        "input": _tool_input(function.get("arguments")),
                    }
                )
            if blocks:
                anthropic_messages.append({"role": ROLE_ASSISTANT, "content": blocks})
        elif role == ROLE_TOOL:
            call_id = msg.get("tool_call_id")
            backend_id = tool_ids.to_backend(call_id) or call_id or f"toolu_{uuid.uuid4().hex}"
            anthropic_messages.append(
                {
                    "role": ROLE_USER,
                    "content": [{"type": "tool_result", "tool_use_id": backend_id, "content": text}],
                }
            )
        elif text:
            anthropic_messages.append({"role": ROLE_USER, "content": [_text_block(text)]})
    return "\n\n".join(system_parts), anthropic_messages


def _function_tools(payload):
    tools = payload.get("tools")
    if tools is None and payload.get("functions"):
        tools = [{"type": "function", "function": fn} for fn in payload["functions"] if isinstance(fn, dict)]
    return tools or []


def format_tools_for_anthropic(payload):
    tools = []
    for tool in _function_tools(payload):
        if not isinstance(tool, dict) or tool.get("type", "function") != "function":
            continue
        function = tool.get("function") or {}
        if not function.get("name"):
            continue
        item = {"name": function["name"], "input_schema": function.get("parameters") or {"type": "object"}}
        if function.get("description"):
            item["description"] = function["description"]
        tools.append(item)
    return tools


def _requested_tool_choice(payload):
    choice = payload.get("tool_choice")
    if choice is None and "function_call" in payload:
        choice = payload.get("function_call")
        if isinstance(choice, dict) and "name" in choice:
            choice = {"type": "function", "function": {"name": choice["name"]}}
    return choice


def format_tools_for_kimi(payload):
    """OpenAI tool definitions for Kimi, with legacy ``functions`` upgraded."""
    return [
        {"type": "function", "function": tool["function"]}
        for tool in _function_tools(payload)
        if isinstance(tool, dict)
        and tool.get("type", "function") == "function"
        and (tool.get("function") or {}).get("name")
    ]


def format_tool_choice_for_anthropic(payload):
    choice = _requested_tool_choice(payload)
    if choice is None:
        return None
    if choice == "auto":
        return {"type": "auto"}
    if choice == "required":
        return {"type": "any"}
    if choice == "none":
        return "none"
    if isinstance(choice, dict):
        name = (choice.get("function") or {}).get("name")
        if name:
            return {"type": "tool", "name": name}
    return None


def has_tools(payload):
    return bool(_function_tools(payload))


def _apply_param_rules(payload):
    from .config import OPENAI_PARAM_DEFAULTS, OPENAI_PARAM_DROP, OPENAI_PARAM_OVERRIDES

    data = dict(payload or {})
    for key in OPENAI_PARAM_DROP:
        data.pop(key, None)
    for key, value in OPENAI_PARAM_DEFAULTS.items():
        data.setdefault(key, value)
    for key, value in OPENAI_PARAM_OVERRIDES.items():
        data[key] = value
    return data
