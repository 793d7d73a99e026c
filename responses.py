"""Response resource materialisation and lifecycle events."""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Optional

from options import resolve_reasoning, resolve_text_format, resolve_tool_choice, resolve_tools

Resource = Dict[str, Any]


def new_response_id() -> str:
    return f"resp_{uuid.uuid4().hex}"


def usage_to_resource(usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not usage:
        return None
    input_tokens = int(usage.get("input_tokens") or 0)
    output_tokens = int(usage.get("output_tokens") or 0)
    return {
        "input_tokens": input_tokens,
        "input_tokens_details": {"cached_tokens": int(usage.get("cached_tokens") or 0)},
        "output_tokens": output_tokens,
        "output_tokens_details": {"reasoning_tokens": int(usage.get("reasoning_tokens") or 0)},
        "total_tokens": int(usage.get("total_tokens") or input_tokens + output_tokens),
    }


def build_response_resource(
    body: Dict[str, Any],
    *,
    response_id: str,
    created_at: int,
    status: str,
    model: Optional[str] = None,
    output: Optional[List[Dict[str, Any]]] = None,
    usage: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    completed_at: Optional[int] = None,
) -> Resource:
    """Full response object echoing request fields with defaults."""

    def _or(name: str, default: Any) -> Any:
        value = body.get(name)
        return default if value is None else value

    return {
        "id": response_id,
        "object": "response",
        "created_at": created_at,
        "completed_at": completed_at,
        "status": status,
        "incomplete_details": None,
        "model": model if model is not None else body.get("model"),
        "previous_response_id": None,
        "instructions": body.get("instructions"),
        "output": list(output or []),
        "error": error,
        "tools": resolve_tools(body.get("tools")),
        "tool_choice": resolve_tool_choice(body.get("tool_choice")),
        "truncation": _or("truncation", "auto"),
        "parallel_tool_calls": _or("parallel_tool_calls", True),
        "text": resolve_text_format(body.get("text")),
        "top_p": _or("top_p", 1),
        "presence_penalty": _or("presence_penalty", 0),
        "frequency_penalty": _or("frequency_penalty", 0),
        "top_logprobs": _or("top_logprobs", 0),
        "temperature": _or("temperature", 1),
        "reasoning": resolve_reasoning(body.get("reasoning")),
        "usage": usage_to_resource(usage),
        "max_output_tokens": body.get("max_output_tokens"),
        "max_tool_calls": body.get("max_tool_calls"),
        "store": False,
        "background": False,
        "service_tier": _or("service_tier", "default"),
        "metadata": _or("metadata", {}),
        "safety_identifier": body.get("safety_identifier"),
        "prompt_cache_key": body.get("prompt_cache_key"),
    }


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """`error` object of a failed response."""
    code = getattr(exc, "code", None) or getattr(exc, "reason", None)
    return {
        "code": code if isinstance(code, str) else "server_error",
        "message": getattr(exc, "message", None) or str(exc) or type(exc).__name__,
    }


class ResponseLifecycle:
    """
    Tracks one response id across its lifecycle events.

    created and in_progress take sequence numbers 0 and 1; the terminal event
    takes whatever number follows the translator's last event.
    """

    def __init__(self, body: Dict[str, Any], response_id: Optional[str] = None) -> None:
        self.body = body
        self.response_id = response_id or new_response_id()
        self.created_at = int(time.time())
        self.model: Optional[str] = None

    def resource(self, status: str, **kwargs: Any) -> Resource:
        return build_response_resource(
            self.body,
            response_id=self.response_id,
            created_at=self.created_at,
            status=status,
            model=self.model,
            **kwargs,
        )

    def created(self) -> Dict[str, Any]:
        return {"type": "response.created", "sequence_number": 0, "response": self.resource("in_progress")}

    def in_progress(self) -> Dict[str, Any]:
        return {"type": "response.in_progress", "sequence_number": 1, "response": self.resource("in_progress")}

    def completed(
        self,
        sequence_number: int,
        output: List[Dict[str, Any]],
        usage: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "type": "response.completed",
            "sequence_number": sequence_number,
            "response": self.resource("completed", output=output, usage=usage, completed_at=int(time.time())),
        }

    def failed(
        self,
        sequence_number: int,
        exc: BaseException,
        output: Optional[List[Dict[str, Any]]] = None,
        usage: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "type": "response.failed",
            "sequence_number": sequence_number,
            "response": self.resource("failed", output=output, usage=usage, error=error_payload(exc)),
        }
