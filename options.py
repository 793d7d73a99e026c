"""
Map Responses-API request fields onto a vendor-neutral call description.

The call dict consumed by providers.py:

    messages          [{role, content}] (system | user | assistant | tool)
    tools             {name: {description?, parameters, strict?}} or absent
    tool_choice       "auto" | "none" | "required" | {"type": "tool", "tool_name"}
    output            {schema, name?, description?} for structured output
    provider_options  {openai?, anthropic?, bedrock?}
    max_output_tokens, top_p, temperature, presence_penalty, frequency_penalty

The resolve_* helpers at the bottom echo request fields back onto the
response resource.
"""

from __future__ import annotations

import base64
import binascii
import json
import mimetypes
import uuid
from typing import Any, Dict, List, Optional

from errors import ProviderInvocationError

EFFORT_TO_BUDGET_TOKENS = {
    "low": 1024,
    "medium": 4096,
    "high": 10000,
    "xhigh": 32000,
}
DEFAULT_BUDGET_TOKENS = 4096

EFFORT_TO_NOVA_REASONING_EFFORT = {
    "low": "low",
    "medium": "medium",
    "high": "high",
    "xhigh": "max",
}

SAMPLING_FIELDS = (
    "max_output_tokens",
    "top_p",
    "temperature",
    "presence_penalty",
    "frequency_penalty",
)

_MAGIC_MIME = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"%PDF", "application/pdf"),
    (b"RIFF", "image/webp"),
)


def _invalid(message: str, cause: Optional[BaseException] = None) -> ProviderInvocationError:
    return ProviderInvocationError("InvalidInput", message, status_code=400, cause=cause)


# ---------------------------------------------------------------------------
# Media types
# ---------------------------------------------------------------------------

def detect_mime_type_from_url(url: str) -> str:
    if url.startswith("data:"):
        header = url[5:].split(",", 1)[0]
        return header.split(";", 1)[0] or "application/octet-stream"
    guessed, _ = mimetypes.guess_type(url.split("?", 1)[0])
    return guessed or "application/octet-stream"


def detect_mime_type_from_base64(data: str) -> str:
    if data.startswith("data:"):
        return detect_mime_type_from_url(data)
    try:
        head = base64.b64decode(data[:64] + "=" * (-len(data[:64]) % 4), validate=False)
    except (binascii.Error, ValueError):
        return "application/octet-stream"
    for magic, mime in _MAGIC_MIME:
        if head.startswith(magic):
            return mime
    return "application/octet-stream"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _file_part(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    file_url = item.get("file_url")
    file_data = item.get("file_data")
    if not file_url and not file_data:
        return None
    part: Dict[str, Any] = {"type": "file"}
    if item.get("filename"):
        part["filename"] = item["filename"]
    if file_url:
        part["url"] = file_url
        part["media_type"] = detect_mime_type_from_url(file_url)
    else:
        part["data"] = file_data
        part["media_type"] = detect_mime_type_from_base64(file_data)
    return part


def _user_parts(content: List[Any]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for c in content:
        if not isinstance(c, dict):
            continue
        ctype = c.get("type")
        if ctype == "input_text":
            parts.append({"type": "text", "text": c.get("text", "")})
        elif ctype == "input_image":
            if c.get("image_url"):
                parts.append({"type": "image", "url": c["image_url"], "detail": c.get("detail")})
        elif ctype == "input_file":
            fp = _file_part(c)
            if fp:
                parts.append(fp)
    return parts


def _assistant_parts(content: List[Any]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for c in content:
        if not isinstance(c, dict):
            continue
        ctype = c.get("type")
        if ctype in ("input_text", "output_text"):
            parts.append({"type": "text", "text": c.get("text", "")})
        elif ctype == "input_image":
            if c.get("image_url"):
                parts.append({"type": "file", "url": c["image_url"], "media_type": "image/png"})
        elif ctype == "input_file":
            fp = _file_part(c)
            if fp:
                parts.append(fp)
    return parts


def _message_item(item: Dict[str, Any]) -> List[Dict[str, Any]]:
    role = item.get("role")
    content = item.get("content")

    if role in ("system", "developer"):
        if isinstance(content, str):
            return [{"role": "system", "content": content, "developer": role == "developer"}]
        return [
            {"role": "system", "content": c.get("text", ""), "developer": role == "developer"}
            for c in (content or [])
            if isinstance(c, dict) and c.get("type") == "input_text"
        ]
    if role == "user":
        if isinstance(content, str):
            return [{"role": "user", "content": content}]
        return [{"role": "user", "content": _user_parts(content or [])}]
    if role == "assistant":
        if isinstance(content, str):
            return [{"role": "assistant", "content": content}]
        return [{"role": "assistant", "content": _assistant_parts(content or [])}]
    raise _invalid(f"Unsupported message role: {role!r}")


def _tool_output(output: Any) -> Dict[str, Any]:
    if isinstance(output, str):
        return {"type": "text", "value": output}
    value: List[Dict[str, Any]] = []
    for o in output or []:
        if not isinstance(o, dict):
            continue
        otype = o.get("type")
        if otype == "input_text":
            value.append({"type": "text", "text": o.get("text", "")})
        elif otype == "input_image" and o.get("image_url"):
            value.append({"type": "image-url", "url": o["image_url"]})
        elif otype == "input_file":
            if o.get("file_data"):
                value.append(
                    {
                        "type": "file-data",
                        "data": o["file_data"],
                        "media_type": detect_mime_type_from_base64(o["file_data"]),
                        "filename": o.get("filename") or uuid.uuid4().hex,
                    }
                )
            elif o.get("file_url"):
                value.append({"type": "file-url", "url": o["file_url"]})
        elif otype == "input_video" and o.get("video_url"):
            value.append({"type": "file-url", "url": o["video_url"]})
    return {"type": "content", "value": value}


def convert_input_to_messages(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Build the ordered message list from `instructions` and `input`."""
    input_value = body.get("input")
    if not input_value:
        raise _invalid("Input field is required for message-based models.")

    messages: List[Dict[str, Any]] = []
    instructions = body.get("instructions")
    if instructions:
        messages.append({"role": "system", "content": instructions, "developer": False})

    if isinstance(input_value, str):
        messages.append({"role": "user", "content": input_value})
        return messages
    if not isinstance(input_value, list):
        raise _invalid("Input must be a string or a list of items.")

    call_names: Dict[str, str] = {}
    for item in input_value:
        if not isinstance(item, dict):
            raise _invalid("Input items must be objects.")
        itype = item.get("type", "message")

        if itype == "message":
            messages.extend(_message_item(item))
        elif itype == "reasoning":
            messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {"type": "reasoning", "text": s.get("text", "")}
                        for s in (item.get("summary") or [])
                        if isinstance(s, dict)
                    ],
                }
            )
        elif itype == "function_call":
            try:
                arguments = json.loads(item.get("arguments") or "")
            except (TypeError, ValueError) as e:
                raise _invalid(f"Failed to parse function_call arguments: {e}", cause=e) from e
            call_id = item.get("call_id") or ""
            call_names[call_id] = item.get("name") or ""
            messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "tool-call",
                            "tool_call_id": call_id,
                            "tool_name": item.get("name") or "",
                            "input": arguments,
                        }
                    ],
                }
            )
        elif itype == "function_call_output":
            call_id = item.get("call_id") or ""
            messages.append(
                {
                    "role": "tool",
                    "content": [
                        {
                            "type": "tool-result",
                            "tool_call_id": call_id,
                            "tool_name": call_names.get(call_id) or uuid.uuid4().hex,
                            "output": _tool_output(item.get("output")),
                        }
                    ],
                }
            )
        else:
            raise _invalid(f"Unsupported input item type: {itype}")
    return messages


# ---------------------------------------------------------------------------
# Tools, tool choice, output format
# ---------------------------------------------------------------------------

def _is_function_tool(t: Any) -> bool:
    if not isinstance(t, dict) or t.get("type", "function") != "function":
        return False
    name = t.get("name")
    return isinstance(name, str) and bool(name)


def convert_tools(tools: Any, tool_choice: Any) -> Optional[Dict[str, Dict[str, Any]]]:
    """Function tools keyed by name; allowed_tools narrows the set. Empty -> None.

    Entries that are not named function tools (web_search, file_search, ...) are skipped.
    """
    if not isinstance(tools, list):
        return None
    tools = [t for t in tools if _is_function_tool(t)]

    if isinstance(tool_choice, dict) and tool_choice.get("type") == "allowed_tools":
        allowed = {t.get("name") for t in (tool_choice.get("tools") or []) if isinstance(t, dict)}
        tools = [t for t in tools if t.get("name") in allowed]
    if not tools:
        return None

    out: Dict[str, Dict[str, Any]] = {}
    for t in tools:
        entry: Dict[str, Any] = {"parameters": t.get("parameters") or {"type": "object"}}
        if t.get("description") is not None:
            entry["description"] = t["description"]
        if t.get("strict") is not None:
            entry["strict"] = t["strict"]
        out[t["name"]] = entry
    return out


def convert_tool_choice(tool_choice: Any) -> Any:
    if not tool_choice:
        return None
    if isinstance(tool_choice, str):
        return tool_choice
    if tool_choice.get("type") == "function":
        return {"type": "tool", "tool_name": tool_choice.get("name")}
    return tool_choice.get("mode") or "auto"


def convert_text_format(text: Any) -> Optional[Dict[str, Any]]:
    fmt = text.get("format") if isinstance(text, dict) else None
    if not fmt or fmt.get("type") == "text":
        return None
    out: Dict[str, Any] = {"schema": fmt.get("schema") or {"type": "object"}}
    if fmt.get("name") is not None:
        out["name"] = fmt["name"]
    if fmt.get("description") is not None:
        out["description"] = fmt["description"]
    return out


def has_structured_output(body: Dict[str, Any]) -> bool:
    text = body.get("text")
    fmt = text.get("format") if isinstance(text, dict) else None
    return isinstance(fmt, dict) and fmt.get("type") == "json_schema"


# ---------------------------------------------------------------------------
# Reasoning provider options
# ---------------------------------------------------------------------------

def convert_reasoning_to_provider_options(
    reasoning: Any,
    model: Optional[str] = None,
    structured_output: bool = False,
) -> Optional[Dict[str, Any]]:
    if not isinstance(reasoning, dict):
        return None
    effort = reasoning.get("effort")
    summary = reasoning.get("summary")
    if not effort and not summary:
        return None

    openai: Dict[str, Any] = {}
    if effort and effort != "none":
        openai["reasoning_effort"] = "high" if effort == "xhigh" else effort
    if summary:
        openai["reasoning_summary"] = summary

    if not effort or effort == "none":
        thinking: Dict[str, Any] = {"type": "disabled"}
    else:
        thinking = {
            "type": "enabled",
            "budget_tokens": EFFORT_TO_BUDGET_TOKENS.get(effort, DEFAULT_BUDGET_TOKENS),
        }

    out: Dict[str, Any] = {"openai": openai, "anthropic": {"thinking": thinking}}

    bedrock = _bedrock_reasoning_config(effort, model or "", structured_output)
    if bedrock:
        out["bedrock"] = {"reasoning_config": bedrock}
    return out


def _bedrock_reasoning_config(effort: Optional[str], model: str, structured_output: bool) -> Optional[Dict[str, Any]]:
    # Structured output and extended thinking cannot be combined on Bedrock
    if not effort or effort == "none" or structured_output:
        return None
    if "anthropic" in model:
        return {
            "type": "enabled",
            "budget_tokens": EFFORT_TO_BUDGET_TOKENS.get(effort, DEFAULT_BUDGET_TOKENS),
        }
    if "amazon" in model:
        return {
            "type": "enabled",
            "max_reasoning_effort": EFFORT_TO_NOVA_REASONING_EFFORT.get(effort, "medium"),
        }
    return None


# ---------------------------------------------------------------------------
# Whole call
# ---------------------------------------------------------------------------

def build_call(body: Dict[str, Any], model: str) -> Dict[str, Any]:
    """Vendor-neutral call settings for `body` targeting `model`."""
    structured = has_structured_output(body)
    call: Dict[str, Any] = {"messages": convert_input_to_messages(body)}

    for field in SAMPLING_FIELDS:
        value = body.get(field)
        if value:
            call[field] = value

    tools = convert_tools(body.get("tools"), body.get("tool_choice"))
    if tools:
        call["tools"] = tools
    tool_choice = convert_tool_choice(body.get("tool_choice"))
    if tool_choice:
        call["tool_choice"] = tool_choice
    output = convert_text_format(body.get("text"))
    if output:
        call["output"] = output
    provider_options = convert_reasoning_to_provider_options(body.get("reasoning"), model, structured)
    if provider_options:
        call["provider_options"] = provider_options
    return call


# ---------------------------------------------------------------------------
# Response resource field resolvers
# ---------------------------------------------------------------------------

def resolve_tool_choice(tool_choice: Any) -> Any:
    if not tool_choice:
        return "none"
    if isinstance(tool_choice, str):
        return tool_choice
    if tool_choice.get("type") == "function":
        return tool_choice
    return {**tool_choice, "mode": tool_choice.get("mode") or "auto"}


def resolve_tools(tools: Any) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": t.get("name"),
            "description": t.get("description"),
            "parameters": t.get("parameters"),
            "strict": t.get("strict"),
        }
        for t in (tools or [])
        if isinstance(t, dict)
    ]


def resolve_reasoning(reasoning: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(reasoning, dict):
        return None
    return {"effort": reasoning.get("effort"), "summary": reasoning.get("summary")}


def resolve_text_format(text: Any) -> Dict[str, Any]:
    fmt = text.get("format") if isinstance(text, dict) else None
    if not fmt or fmt.get("type") == "text":
        return {"format": {"type": "text"}}
    return {
        "format": {
            "type": "json_schema",
            "name": fmt.get("name") or "json_schema",
            "description": fmt.get("description"),
            "schema": fmt.get("schema"),
            "strict": fmt.get("strict") if fmt.get("strict") is not None else False,
        }
    }
