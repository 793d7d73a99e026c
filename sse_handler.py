"""Server-Sent Events (SSE) framing and upstream SSE reading."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)

SSEEventLines = List[str]

DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# Downstream framing
# ---------------------------------------------------------------------------

def encode_sse_event(event: Dict[str, Any]) -> str:
    """Frame one event as `event: {type}\\ndata: {json}\\n\\n`."""
    data = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event.get('type', 'message')}\ndata: {data}\n\n"


def encode_sse_done() -> str:
    """Terminal sentinel; carries no `event:` line."""
    return f"data: {DONE_SENTINEL}\n\n"


# ---------------------------------------------------------------------------
# Upstream reading
# ---------------------------------------------------------------------------

def split_sse_field(line: str) -> Tuple[str, str]:
    """
    Split `field: value` into (field, value) with leading value whitespace removed.

    Comment lines (leading ':') give ("", comment); a line without a colon is a
    field with an empty value.
    """
    if line.startswith(":"):
        return "", line[1:]
    field, sep, value = line.partition(":")
    return field, value.lstrip() if sep else ""


def sse_event_data_text(lines: SSEEventLines) -> str:
    """Payload of an event: every `data:` value, joined with '\n'."""
    return "\n".join(value for field, value in map(split_sse_field, lines) if field == "data")


def sse_event_name(lines: SSEEventLines) -> Optional[str]:
    """Value of the last `event:` line, if any."""
    names = [value.strip() for field, value in map(split_sse_field, lines) if field == "event"]
    return names[-1] if names else None


def is_done_data_line(line: str) -> bool:
    field, value = split_sse_field(line)
    return field == "data" and value.strip() == DONE_SENTINEL


async def read_next_sse_event(
    aiter: AsyncIterator[str],
    *,
    timeout_s: float | None = None,
) -> SSEEventLines | None:
    """
    Collect the lines of the next event from `aiter`.

    An event ends at a blank line, which is not included; an immediate blank
    line gives []. Lines still pending at EOF form a final event, and None
    means the iterator is exhausted. asyncio.TimeoutError propagates when a
    line takes longer than `timeout_s`.
    """
    lines: SSEEventLines = []
    while True:
        pending = aiter.__anext__()
        if timeout_s is not None:
            pending = asyncio.wait_for(pending, timeout=timeout_s)
        try:
            raw = await pending
        except StopAsyncIteration:
            return lines or None
        line = raw.rstrip("\r\n")
        if not line:
            return lines
        lines.append(line)


async def iter_sse_json(
    aiter: AsyncIterator[str],
    *,
    timeout_s: float | None = None,
) -> AsyncIterator[Tuple[Optional[str], Dict[str, Any]]]:
    """
    Yield (event_name, payload) for each JSON object event until EOF or [DONE].

    Keepalives, comments and non-object payloads are skipped. Undecodable
    payloads are logged and skipped.
    """
    lines = await read_next_sse_event(aiter, timeout_s=timeout_s)
    while lines is not None and not any(map(is_done_data_line, lines)):
        data = sse_event_data_text(lines)
        payload: Any = None
        if data:
            try:
                payload = json.loads(data)
            except ValueError:
                log.warning("Skipping undecodable upstream SSE data head=%r", data[:200])
        if isinstance(payload, dict):
            yield sse_event_name(lines), payload
        lines = await read_next_sse_event(aiter, timeout_s=timeout_s)
