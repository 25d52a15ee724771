"""Legacy function-call upgrade and tool-call pairing repair.

Both passes work on shallow copies and never raise: a pairing that cannot be
matched is dropped instead of failing the whole request.
"""

import uuid

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"
ROLE_FUNCTION = "function"


def _generate_call_id():
    return f"call_{uuid.uuid4().hex[:13]}"


def _role(msg):
    return msg.get("role") if isinstance(msg, dict) else None


def convert_function_calls_to_tool_calls(messages):
    """Rewrite legacy ``function_call`` / ``function`` messages as tool calls."""
    converted = []
    call_id_by_name = {}
    for msg in messages or []:
        if not isinstance(msg, dict):
            converted.append(msg)
            continue
        role = msg.get("role")
        if role == ROLE_ASSISTANT and msg.get("function_call") and not msg.get("tool_calls"):
            upgraded = dict(msg)
            function_call = upgraded.pop("function_call")
            call_id = _generate_call_id()
            if isinstance(function_call, dict) and function_call.get("name"):
                call_id_by_name[function_call["name"]] = call_id
            upgraded["tool_calls"] = [{"id": call_id, "type": "function", "function": function_call}]
            converted.append(upgraded)
            continue
        if role == ROLE_FUNCTION:
            upgraded = dict(msg)
            upgraded["role"] = ROLE_TOOL
            name = msg.get("name")
            upgraded["tool_call_id"] = call_id_by_name.pop(name, None) or name or _generate_call_id()
            converted.append(upgraded)
            continue
        if role == ROLE_ASSISTANT and "function_call" in msg:
            cleaned = dict(msg)
            cleaned.pop("function_call")
            converted.append(cleaned)
            continue
        converted.append(msg)
    return converted


def _call_ids(msg):
    ids = set()
    for call in msg.get("tool_calls") or []:
        if isinstance(call, dict) and call.get("id"):
            ids.add(call["id"])
    return ids


def _preceding_call_ids(messages, index):
    if index == 0:
        return set()
    previous = messages[index - 1]
    if _role(previous) == ROLE_ASSISTANT:
        return _call_ids(previous)
    if _role(previous) != ROLE_TOOL:
        return set()
    for k in range(index - 1, -1, -1):
        if _role(messages[k]) == ROLE_TOOL:
            continue
        if _role(messages[k]) == ROLE_ASSISTANT:
            return _call_ids(messages[k])
        break
    return set()


def validate_tool_calls(messages):
    """Drop tool calls without a response and tool responses without a call.

    A call survives only when the contiguous run of ``tool`` messages right
    after its assistant message answers it. A ``tool`` message survives only
    when the nearest assistant message before its run issued the call.
    """
    messages = list(messages or [])
    validated = []
    for i, original in enumerate(messages):
        if not isinstance(original, dict):
            validated.append(original)
            continue
        msg = dict(original)
        role = msg.get("role")

        if role == ROLE_ASSISTANT and "tool_calls" in msg:
            answered = set()
            j = i + 1
            while j < len(messages) and _role(messages[j]) == ROLE_TOOL:
                answered.add(messages[j].get("tool_call_id"))
                j += 1
            kept = [
                call
                for call in msg.get("tool_calls") or []
                if isinstance(call, dict) and call.get("id") in answered
            ]
            if kept:
                msg["tool_calls"] = kept
            else:
                msg.pop("tool_calls")
            if msg.get("content") or msg.get("tool_calls"):
                validated.append(msg)
            continue

        if role == ROLE_TOOL:
            call_id = msg.get("tool_call_id")
            if call_id and call_id in _preceding_call_ids(messages, i):
                validated.append(msg)
            continue

        validated.append(msg)
    return validated
