"""
Translate a vendor-neutral part stream into Responses-API streaming events.

Parts are dicts with a `type`:

    text-start / text-delta / text-end
    reasoning-start / reasoning-delta / reasoning-end
    tool-input-start / tool-input-delta / tool-input-end
    error
    finish

At most one output item is open at a time. A `*-start` while an item is open
closes the open item first (its done events are emitted) and then opens the new
one. Deltas and ends that do not match the open item are dropped.

Sequence numbers increase by one per emitted event, starting at the offset
given to the constructor.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

Part = Dict[str, Any]
Event = Dict[str, Any]

_FAMILY_BY_PART = {
    "text-start": "text",
    "text-delta": "text",
    "text-end": "text",
    "reasoning-start": "reasoning",
    "reasoning-delta": "reasoning",
    "reasoning-end": "reasoning",
    "tool-input-start": "tool-input",
    "tool-input-delta": "tool-input",
    "tool-input-end": "tool-input",
}


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _error_field(error: Any, name: str) -> Any:
    if isinstance(error, dict):
        return error.get(name)
    return getattr(error, name, None)


def build_error_event(error: Any, sequence_number: int) -> Event:
    """Error event for a dict, exception or string error payload."""
    etype = _error_field(error, "type")
    if not isinstance(etype, str):
        etype = _error_field(error, "name")
        if not isinstance(etype, str) and isinstance(error, BaseException):
            etype = type(error).__name__
    if not isinstance(etype, str):
        etype = "error"

    message = _error_field(error, "message")
    if not isinstance(message, str):
        if isinstance(error, str):
            message = error
        elif isinstance(error, BaseException) and str(error):
            message = str(error)
        else:
            message = "Unknown error"

    body: Dict[str, Any] = {
        "type": etype,
        "code": _optional_str(_error_field(error, "code")),
        "message": message,
        "param": _optional_str(_error_field(error, "param")),
    }
    headers = _error_field(error, "headers")
    if isinstance(headers, dict):
        body["headers"] = headers
    return {"type": "error", "sequence_number": sequence_number, "error": body}


class StreamTranslator:
    """Stateful part -> event translator for a single generation."""

    def __init__(self, start_sequence: int = 0) -> None:
        self.sequence_number = start_sequence
        self.current_item_id: Optional[str] = None
        self.current_item_type: Optional[str] = None
        self.output_index = -1
        self.content_index = 0
        self.accumulated_text = ""
        self.current_tool_call_id: Optional[str] = None
        self.current_tool_name: Optional[str] = None
        self.output_items: List[Dict[str, Any]] = []
        self.usage: Optional[Dict[str, Any]] = None
        self.finish_reason: Optional[str] = None

    # -- public API ---------------------------------------------------------

    async def translate(self, parts: AsyncIterable[Part]) -> AsyncIterator[Event]:
        """Yield events lazily as parts arrive."""
        async for part in parts:
            for event in self.process(part):
                yield event

    def process(self, part: Part) -> List[Event]:
        """Translate one part into zero or more events."""
        ptype = part.get("type") if isinstance(part, dict) else None

        if ptype == "error":
            return [build_error_event(part.get("error"), self._next_seq())]
        if ptype == "finish":
            if isinstance(part.get("usage"), dict):
                self.usage = part["usage"]
            self.finish_reason = part.get("finish_reason")
            return []

        family = _FAMILY_BY_PART.get(ptype or "")
        if family is None:
            log.debug("Ignoring unknown stream part type=%s", ptype)
            return []

        kind = ptype[len(family) + 1:]
        if kind == "start":
            events: List[Event] = []
            if self.current_item_id is not None:
                log.warning(
                    "Stream part %s while %s item is open; closing open item",
                    ptype,
                    self.current_item_type,
                )
                events.extend(self._end())
            events.extend(self._start(family, part))
            return events

        if self.current_item_id is None or self.current_item_type != family:
            log.debug(
                "Dropping %s without matching open item open_type=%s",
                ptype,
                self.current_item_type,
            )
            return []
        if kind == "delta":
            return [self._delta(part)]
        return self._end()

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the translator state."""
        return {
            "sequence_number": self.sequence_number,
            "current_item_id": self.current_item_id,
            "output_index": self.output_index,
            "content_index": self.content_index,
            "accumulated_text": self.accumulated_text,
            "output_items": copy.deepcopy(self.output_items),
            "current_item_type": self.current_item_type,
            "current_tool_call_id": self.current_tool_call_id,
            "current_tool_name": self.current_tool_name,
        }

    @property
    def text(self) -> str:
        """Concatenated text of all completed message items."""
        return "".join(
            c.get("text", "")
            for item in self.output_items
            if item.get("type") == "message"
            for c in item.get("content", [])
        )

    # -- transitions --------------------------------------------------------

    def _next_seq(self) -> int:
        seq = self.sequence_number
        self.sequence_number += 1
        return seq

    def _start(self, family: str, part: Part) -> List[Event]:
        self.current_item_id = str(uuid.uuid4())
        self.current_item_type = family
        self.output_index += 1
        self.content_index = 0
        self.accumulated_text = ""

        if family == "text":
            item = {"id": self.current_item_id, "status": "in_progress", "role": "assistant", "content": []}
            content_part = {"type": "output_text", "text": "", "annotations": [], "logprobs": []}
        elif family == "reasoning":
            item = {"id": self.current_item_id, "summary": []}
            content_part = {"type": "reasoning", "text": ""}
        else:
            self.current_tool_call_id = part.get("tool_call_id") or part.get("id")
            self.current_tool_name = part.get("tool_name")
            item = {
                "id": self.current_item_id,
                "call_id": self.current_tool_call_id or "",
                "name": self.current_tool_name or "",
                "arguments": "",
                "status": "in_progress",
            }
            content_part = {"type": "input_text", "text": ""}

        events = [
            {
                "type": "response.output_item.added",
                "sequence_number": self._next_seq(),
                "output_index": self.output_index,
                "item": item,
            },
            {
                "type": "response.content_part.added",
                "sequence_number": self._next_seq(),
                "item_id": self.current_item_id,
                "output_index": self.output_index,
                "content_index": self.content_index,
                "part": content_part,
            },
        ]
        self.content_index += 1
        return events

    def _delta(self, part: Part) -> Event:
        family = self.current_item_type
        if family == "tool-input":
            delta = part.get("delta") or part.get("text") or part.get("args_text_delta") or ""
        else:
            delta = part.get("delta") or part.get("text") or ""
        self.accumulated_text += delta

        if family == "tool-input":
            return {
                "type": "response.function_call_arguments.delta",
                "sequence_number": self._next_seq(),
                "item_id": self.current_item_id,
                "output_index": self.output_index,
                "delta": delta,
            }

        event: Event = {
            "type": "response.output_text.delta" if family == "text" else "response.reasoning.delta",
            "sequence_number": self._next_seq(),
            "item_id": self.current_item_id,
            "output_index": self.output_index,
            "content_index": max(self.content_index - 1, 0),
            "delta": delta,
        }
        if family == "text":
            event["logprobs"] = []
        return event

    def _end(self) -> List[Event]:
        family = self.current_item_type
        item_id = self.current_item_id
        text = self.accumulated_text
        ci = max(self.content_index - 1, 0)

        if family == "text":
            done: Event = {
                "type": "response.output_text.done",
                "sequence_number": self._next_seq(),
                "item_id": item_id,
                "output_index": self.output_index,
                "content_index": ci,
                "text": text,
                "logprobs": [],
            }
            content_part = {"type": "output_text", "text": text, "annotations": [], "logprobs": []}
            item = {"id": item_id, "status": "completed", "role": "assistant", "content": [dict(content_part)]}
            output_item = {"type": "message", **item}
        elif family == "reasoning":
            done = {
                "type": "response.reasoning.done",
                "sequence_number": self._next_seq(),
                "item_id": item_id,
                "output_index": self.output_index,
                "content_index": ci,
                "text": text,
            }
            content_part = {"type": "reasoning", "text": text}
            item = {"id": item_id, "summary": [], "content": [dict(content_part)]}
            output_item = {"type": "reasoning", **item}
        else:
            done = {
                "type": "response.function_call_arguments.done",
                "sequence_number": self._next_seq(),
                "item_id": item_id,
                "output_index": self.output_index,
                "arguments": text,
            }
            content_part = {"type": "input_text", "text": text}
            item = {
                "id": item_id,
                "status": "completed",
                "call_id": self.current_tool_call_id or "",
                "name": self.current_tool_name or "",
                "arguments": text,
            }
            output_item = {"type": "function_call", **item}

        events = [
            done,
            {
                "type": "response.content_part.done",
                "sequence_number": self._next_seq(),
                "item_id": item_id,
                "output_index": self.output_index,
                "content_index": ci,
                "part": content_part,
            },
            {
                "type": "response.output_item.done",
                "sequence_number": self._next_seq(),
                "output_index": self.output_index,
                "item": item,
            },
        ]
        self.output_items.append(output_item)

        self.current_item_id = None
        self.current_item_type = None
        self.current_tool_call_id = None
        self.current_tool_name = None
        return events
