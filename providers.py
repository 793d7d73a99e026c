"""
Upstream provider adapters.

Every provider turns a vendor-neutral call (see options.py) into the
vendor's streaming API and yields vendor-neutral parts:

    {"type": "text-start"} / {"type": "text-delta", "delta"} / {"type": "text-end"}
    {"type": "reasoning-start"} / ... / {"type": "reasoning-end"}
    {"type": "tool-input-start", "tool_call_id", "tool_name"} / ... / {"type": "tool-input-end"}
    {"type": "error", "error": {...}}
    {"type": "finish", "finish_reason", "usage": {...}}

Usage dicts carry input_tokens, output_tokens, total_tokens, cached_tokens and
reasoning_tokens.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from config import AppConfig
from credentials import Credentials, CredentialsService
from errors import ProviderInvocationError
from logger import LOGGER_NAME
from sse_handler import iter_sse_json
from stream_translator import StreamTranslator

log = logging.getLogger(LOGGER_NAME)

Part = Dict[str, Any]
Call = Dict[str, Any]


@dataclass
class GenerationResult:
    """Drained, non-streaming generation."""

    output_items: List[Dict[str, Any]]
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None


def empty_usage() -> Dict[str, int]:
    return {
        "input_tokens": 0,
        "output_tokens": 0,
        "total_tokens": 0,
        "cached_tokens": 0,
        "reasoning_tokens": 0,
    }


def _usage(input_tokens: Any, output_tokens: Any, cached: Any = 0, reasoning: Any = 0) -> Dict[str, int]:
    i = int(input_tokens or 0)
    o = int(output_tokens or 0)
    return {
        "input_tokens": i,
        "output_tokens": o,
        "total_tokens": i + o,
        "cached_tokens": int(cached or 0),
        "reasoning_tokens": int(reasoning or 0),
    }


def json_instruction(output: Dict[str, Any]) -> str:
    """System text asking for JSON output, for vendors without a native schema mode."""
    return (
        "Respond only with a single JSON object that validates against this JSON schema. "
        "Do not wrap it in markdown.\n"
        + json.dumps(output.get("schema") or {"type": "object"}, ensure_ascii=False)
    )


def split_data_url(url: str) -> Optional[Tuple[str, str]]:
    """("media/type", base64_data) for a data: URL, else None."""
    if not url.startswith("data:") or "," not in url:
        return None
    header, data = url[5:].split(",", 1)
    return header.split(";", 1)[0] or "application/octet-stream", data


def tool_result_text(output: Dict[str, Any]) -> str:
    if output.get("type") == "text":
        return str(output.get("value", ""))
    texts = [v.get("text", "") for v in output.get("value") or [] if v.get("type") == "text"]
    if texts:
        return "\n".join(texts)
    return json.dumps(output.get("value") or [], ensure_ascii=False)


class _BlockTracker:
    """Emit start/end parts around deltas so at most one block is open."""

    def __init__(self) -> None:
        self.kind: Optional[str] = None
        self.key: Any = None

    def open(self, kind: str, key: Any = None, **meta: Any) -> List[Part]:
        if self.kind == kind and self.key == key:
            return []
        parts = self.close()
        parts.append({"type": f"{kind}-start", **meta})
        self.kind = kind
        self.key = key
        return parts

    def delta(self, kind: str, text: str, key: Any = None) -> List[Part]:
        parts = self.open(kind, key)
        parts.append({"type": f"{kind}-delta", "delta": text})
        return parts

    def close(self) -> List[Part]:
        if self.kind is None:
            return []
        part = {"type": f"{self.kind}-end"}
        self.kind = None
        self.key = None
        return [part]


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Provider:
    """Base provider: `stream()` yields parts, `generate()` drains them."""

    name = "provider"

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def stream(self, model: str, credentials: Credentials, call: Call) -> AsyncIterator[Part]:
        raise NotImplementedError

    async def generate(self, model: str, credentials: Credentials, call: Call) -> GenerationResult:
        translator = StreamTranslator()
        seen = False
        async for part in self.stream(model, credentials, call):
            seen = True
            if part.get("type") == "error":
                err = part.get("error")
                message = err.get("message") if isinstance(err, dict) else str(err)
                code = err.get("code") if isinstance(err, dict) else None
                raise ProviderInvocationError(
                    "StreamError",
                    message or "Upstream stream error",
                    code=code if isinstance(code, str) else None,
                )
            translator.process(part)
        if not seen:
            raise ProviderInvocationError("EmptyStream", f"{self.name} returned an empty stream")
        return GenerationResult(
            output_items=translator.output_items,
            text=translator.text,
            usage=translator.usage or empty_usage(),
            finish_reason=translator.finish_reason,
        )


class HttpProvider(Provider):
    """Provider spoken to over HTTP + SSE."""

    def __init__(self, config: AppConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(config)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        connect_timeout = min(30.0, float(self._config.request_timeout_s))
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.request_timeout_s, connect=connect_timeout),
            transport=self._transport,
        )

    def headers(self, credentials: Credentials) -> Dict[str, str]:
        raise NotImplementedError

    def url(self) -> str:
        raise NotImplementedError

    def build_payload(self, model: str, call: Call) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_events(self, events: AsyncIterator[Tuple[Optional[str], Dict[str, Any]]]) -> AsyncIterator[Part]:
        raise NotImplementedError

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        model: str,
        credentials: Credentials,
        payload: Dict[str, Any],
    ) -> httpx.Response:
        t0 = time.time()
        req = client.build_request("POST", self.url(), headers=self.headers(credentials), json=payload)
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            log.warning("Upstream %s request failed model=%s err=%s", self.name, model, e)
            raise ProviderInvocationError(
                "APICallFailed", f"{self.name} request failed: {e}", cause=e
            ) from e

        dt = (time.time() - t0) * 1000
        log.info("Upstream %s model=%s status=%s ms=%.1f", self.name, model, resp.status_code, dt)

        if resp.status_code != 200:
            snippet = await read_error_snippet(resp)
            await resp.aclose()
            log.warning(
                "Upstream %s error model=%s status=%s body=%r",
                self.name,
                model,
                resp.status_code,
                snippet[:500],
            )
            raise ProviderInvocationError(
                "APICallFailed",
                f"{self.name} returned HTTP {resp.status_code}: {snippet}",
                status_code=resp.status_code,
            )
        return resp

    async def stream(self, model: str, credentials: Credentials, call: Call) -> AsyncIterator[Part]:
        payload = self.build_payload(model, call)
        async with self._client() as client:
            resp = await self._open_stream(client, model, credentials, payload)
            try:
                async for part in self.parse_events(iter_sse_json(resp.aiter_lines())):
                    yield part
            except httpx.HTTPError as e:
                log.warning("Upstream %s stream broke model=%s err=%s", self.name, model, e)
                yield {"type": "error", "error": {"type": "api_error", "message": str(e)}}
            finally:
                await resp.aclose()


async def read_error_snippet(resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0) -> str:
    """Best-effort: read small error body without risking a hang."""
    try:
        raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
    except (asyncio.TimeoutError, httpx.HTTPError):
        return ""
    return raw.decode("utf-8", errors="replace")[:limit]


# ---------------------------------------------------------------------------
# OpenAI (Chat Completions)
# ---------------------------------------------------------------------------

class OpenAIProvider(HttpProvider):
    name = "openai"

    def url(self) -> str:
        return f"{self._config.openai_base_url}/chat/completions"

    def headers(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credentials['api_key']}",
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    @staticmethod
    def _user_content(content: Any) -> Any:
        if isinstance(content, str):
            return content
        out: List[Dict[str, Any]] = []
        for p in content:
            ptype = p.get("type")
            if ptype == "text":
                out.append({"type": "text", "text": p.get("text", "")})
            elif ptype == "image":
                image_url: Dict[str, Any] = {"url": p["url"]}
                if p.get("detail"):
                    image_url["detail"] = p["detail"]
                out.append({"type": "image_url", "image_url": image_url})
            elif ptype == "file":
                media_type = p.get("media_type", "")
                if p.get("url") and media_type.startswith("image/"):
                    out.append({"type": "image_url", "image_url": {"url": p["url"]}})
                elif p.get("data"):
                    out.append(
                        {
                            "type": "file",
                            "file": {
                                "filename": p.get("filename") or "file",
                                "file_data": f"data:{media_type};base64,{p['data']}",
                            },
                        }
                    )
                elif p.get("url"):
                    out.append({"type": "text", "text": p["url"]})
        return out

    def convert_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in messages:
            role = m["role"]
            content = m.get("content")
            if role == "system":
                out.append({"role": "developer" if m.get("developer") else "system", "content": content})
            elif role == "user":
                out.append({"role": "user", "content": self._user_content(content)})
            elif role == "assistant":
                if isinstance(content, str):
                    out.append({"role": "assistant", "content": content})
                    continue
                text = "".join(p.get("text", "") for p in content if p.get("type") == "text")
                tool_calls = [
                    {
                        "id": p["tool_call_id"],
                        "type": "function",
                        "function": {"name": p["tool_name"], "arguments": json.dumps(p.get("input"))},
                    }
                    for p in content
                    if p.get("type") == "tool-call"
                ]
                if not text and not tool_calls:
                    continue
                msg: Dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_calls:
                    msg["tool_calls"] = tool_calls
                out.append(msg)
            elif role == "tool":
                for p in content:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": p["tool_call_id"],
                            "content": tool_result_text(p.get("output") or {}),
                        }
                    )
        return out

    def build_payload(self, model: str, call: Call) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self.convert_messages(call["messages"]),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if call.get("max_output_tokens"):
            payload["max_completion_tokens"] = call["max_output_tokens"]
        for key in ("temperature", "top_p", "presence_penalty", "frequency_penalty"):
            if call.get(key) is not None:
                payload[key] = call[key]

        tools = call.get("tools")
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        **({"description": t["description"]} if "description" in t else {}),
                        "parameters": t["parameters"],
                        **({"strict": t["strict"]} if "strict" in t else {}),
                    },
                }
                for name, t in tools.items()
            ]
            tool_choice = call.get("tool_choice")
            if isinstance(tool_choice, dict):
                payload["tool_choice"] = {"type": "function", "function": {"name": tool_choice["tool_name"]}}
            elif tool_choice:
                payload["tool_choice"] = tool_choice

        output = call.get("output")
        if output:
            json_schema: Dict[str, Any] = {"name": output.get("name") or "response", "schema": output["schema"]}
            if output.get("description"):
                json_schema["description"] = output["description"]
            payload["response_format"] = {"type": "json_schema", "json_schema": json_schema}

        openai_opts = (call.get("provider_options") or {}).get("openai") or {}
        if openai_opts.get("reasoning_effort"):
            payload["reasoning_effort"] = openai_opts["reasoning_effort"]
        return payload

    async def parse_events(self, events: AsyncIterator[Tuple[Optional[str], Dict[str, Any]]]) -> AsyncIterator[Part]:
        blocks = _BlockTracker()
        usage: Optional[Dict[str, int]] = None
        finish_reason: Optional[str] = None

        async for _, obj in events:
            if isinstance(obj.get("error"), dict):
                for p in blocks.close():
                    yield p
                yield {"type": "error", "error": obj["error"]}
                return

            u = obj.get("usage")
            if isinstance(u, dict):
                usage = _usage(
                    u.get("prompt_tokens"),
                    u.get("completion_tokens"),
                    (u.get("prompt_tokens_details") or {}).get("cached_tokens"),
                    (u.get("completion_tokens_details") or {}).get("reasoning_tokens"),
                )

            for choice in obj.get("choices") or []:
                delta = choice.get("delta") or {}
                reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                if isinstance(reasoning, str) and reasoning:
                    for p in blocks.delta("reasoning", reasoning):
                        yield p
                content = delta.get("content")
                if isinstance(content, str) and content:
                    for p in blocks.delta("text", content):
                        yield p
                for tc in delta.get("tool_calls") or []:
                    fn = tc.get("function") or {}
                    for p in blocks.open(
                        "tool-input",
                        key=tc.get("index", 0),
                        tool_call_id=tc.get("id"),
                        tool_name=fn.get("name"),
                    ):
                        yield p
                    if fn.get("arguments"):
                        yield {"type": "tool-input-delta", "delta": fn["arguments"]}
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]

        for p in blocks.close():
            yield p
        yield {"type": "finish", "finish_reason": finish_reason, "usage": usage or empty_usage()}


# ---------------------------------------------------------------------------
# Anthropic (Messages)
# ---------------------------------------------------------------------------

_ANTHROPIC_TOOL_CHOICE = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}


class AnthropicProvider(HttpProvider):
    name = "anthropic"

    def url(self) -> str:
        return f"{self._config.anthropic_base_url}/messages"

    def headers(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "x-api-key": credentials["api_key"],
            "anthropic-version": self._config.anthropic_version,
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }

    @staticmethod
    def _media_block(p: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = p.get("url")
        media_type = p.get("media_type") or ("image/png" if p.get("type") == "image" else "")
        block_type = "document" if media_type == "application/pdf" else "image"
        if url:
            inline = split_data_url(url)
            if inline:
                return {"type": block_type, "source": {"type": "base64", "media_type": inline[0], "data": inline[1]}}
            return {"type": block_type, "source": {"type": "url", "url": url}}
        if p.get("data"):
            return {"type": block_type, "source": {"type": "base64", "media_type": media_type, "data": p["data"]}}
        return None

    def _blocks(self, content: Any) -> List[Dict[str, Any]]:
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        out: List[Dict[str, Any]] = []
        for p in content:
            ptype = p.get("type")
            if ptype == "text":
                out.append({"type": "text", "text": p.get("text", "")})
            elif ptype in ("image", "file"):
                block = self._media_block(p)
                if block:
                    out.append(block)
            elif ptype == "tool-call":
                out.append(
                    {"type": "tool_use", "id": p["tool_call_id"], "name": p["tool_name"], "input": p.get("input") or {}}
                )
            elif ptype == "tool-result":
                out.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": p["tool_call_id"],
                        "content": tool_result_text(p.get("output") or {}),
                    }
                )
        return out

    def convert_messages(self, messages: List[Dict[str, Any]]) -> Tuple[List[str], List[Dict[str, Any]]]:
        system: List[str] = []
        out: List[Dict[str, Any]] = []
        for m in messages:
            if m["role"] == "system":
                system.append(m.get("content") or "")
                continue
            role = "assistant" if m["role"] == "assistant" else "user"
            blocks = self._blocks(m.get("content"))
            if not blocks:
                continue
            # consecutive same-role turns are merged
            if out and out[-1]["role"] == role:
                out[-1]["content"].extend(blocks)
            else:
                out.append({"role": role, "content": blocks})
        return system, out

    def build_payload(self, model: str, call: Call) -> Dict[str, Any]:
        system, messages = self.convert_messages(call["messages"])
        if call.get("output"):
            system.append(json_instruction(call["output"]))

        thinking = ((call.get("provider_options") or {}).get("anthropic") or {}).get("thinking")
        max_tokens = call.get("max_output_tokens") or self._config.anthropic_default_max_tokens
        if thinking and thinking.get("type") == "enabled":
            max_tokens = max(max_tokens, thinking["budget_tokens"] + 1024)

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "stream": True,
        }
        if system:
            payload["system"] = "\n\n".join(system)
        if thinking:
            payload["thinking"] = thinking
        for key in ("temperature", "top_p"):
            if call.get(key) is not None:
                payload[key] = call[key]

        tools = call.get("tools")
        if tools:
            payload["tools"] = [
                {
                    "name": name,
                    **({"description": t["description"]} if "description" in t else {}),
                    "input_schema": t["parameters"],
                }
                for name, t in tools.items()
            ]
            tool_choice = call.get("tool_choice")
            if isinstance(tool_choice, dict):
                payload["tool_choice"] = {"type": "tool", "name": tool_choice["tool_name"]}
            elif tool_choice in _ANTHROPIC_TOOL_CHOICE:
                payload["tool_choice"] = _ANTHROPIC_TOOL_CHOICE[tool_choice]
        return payload

    async def parse_events(self, events: AsyncIterator[Tuple[Optional[str], Dict[str, Any]]]) -> AsyncIterator[Part]:
        blocks = _BlockTracker()
        input_tokens = 0
        cached_tokens = 0
        output_tokens = 0
        stop_reason: Optional[str] = None

        async for event_name, obj in events:
            etype = obj.get("type") or event_name
            if etype == "message_start":
                u = (obj.get("message") or {}).get("usage") or {}
                input_tokens = u.get("input_tokens") or 0
                cached_tokens = u.get("cache_read_input_tokens") or 0
                output_tokens = u.get("output_tokens") or 0
            elif etype == "content_block_start":
                cb = obj.get("content_block") or {}
                index = obj.get("index")
                if cb.get("type") == "text":
                    for p in blocks.open("text", key=index):
                        yield p
                elif cb.get("type") == "thinking":
                    for p in blocks.open("reasoning", key=index):
                        yield p
                elif cb.get("type") == "tool_use":
                    for p in blocks.open("tool-input", key=index, tool_call_id=cb.get("id"), tool_name=cb.get("name")):
                        yield p
            elif etype == "content_block_delta":
                d = obj.get("delta") or {}
                dtype = d.get("type")
                if dtype == "text_delta" and d.get("text"):
                    yield {"type": "text-delta", "delta": d["text"]}
                elif dtype == "thinking_delta" and d.get("thinking"):
                    yield {"type": "reasoning-delta", "delta": d["thinking"]}
                elif dtype == "input_json_delta" and d.get("partial_json"):
                    yield {"type": "tool-input-delta", "delta": d["partial_json"]}
            elif etype == "content_block_stop":
                for p in blocks.close():
                    yield p
            elif etype == "message_delta":
                stop_reason = (obj.get("delta") or {}).get("stop_reason") or stop_reason
                u = obj.get("usage") or {}
                if u.get("output_tokens") is not None:
                    output_tokens = u["output_tokens"]
            elif etype == "error":
                for p in blocks.close():
                    yield p
                yield {"type": "error", "error": obj.get("error") or {"type": "error", "message": "Unknown error"}}
                return

        for p in blocks.close():
            yield p
        yield {
            "type": "finish",
            "finish_reason": stop_reason,
            "usage": _usage(input_tokens, output_tokens, cached_tokens),
        }


# ---------------------------------------------------------------------------
# Amazon Bedrock (Converse)
# ---------------------------------------------------------------------------

_BEDROCK_STREAM_ERRORS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
)

_IMAGE_FORMATS = {"image/png": "png", "image/jpeg": "jpeg", "image/gif": "gif", "image/webp": "webp"}


class BedrockProvider(Provider):
    """Converse streaming through boto3's bedrock-runtime client, iterated in a worker thread."""

    name = "amazon-bedrock"

    def __init__(self, config: AppConfig, *, client_factory: Any = None) -> None:
        super().__init__(config)
        self._client_factory = client_factory or boto3.client

    def _client(self, credentials: Credentials) -> Any:
        return self._client_factory(
            "bedrock-runtime",
            region_name=credentials["region"],
            aws_access_key_id=credentials["access_key_id"],
            aws_secret_access_key=credentials["secret_access_key"],
        )

    @staticmethod
    def _media_block(p: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        media_type = p.get("media_type") or "image/png"
        data = p.get("data")
        if p.get("url"):
            inline = split_data_url(p["url"])
            if not inline:
                return {"text": p["url"]}
            media_type, data = inline
        if not data:
            return None
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProviderInvocationError(
                "InvalidInput", f"Invalid base64 data for {media_type}", status_code=400, cause=e
            ) from e
        if media_type in _IMAGE_FORMATS:
            return {"image": {"format": _IMAGE_FORMATS[media_type], "source": {"bytes": raw}}}
        if media_type == "application/pdf":
            return {"document": {"format": "pdf", "name": "document", "source": {"bytes": raw}}}
        return None

    def _blocks(self, content: Any) -> List[Dict[str, Any]]:
        if isinstance(content, str):
            return [{"text": content}] if content else []
        out: List[Dict[str, Any]] = []
        for p in content:
            ptype = p.get("type")
            if ptype == "text" and p.get("text"):
                out.append({"text": p["text"]})
            elif ptype in ("image", "file"):
                block = self._media_block(p)
                if block:
                    out.append(block)
            elif ptype == "tool-call":
                out.append(
                    {"toolUse": {"toolUseId": p["tool_call_id"], "name": p["tool_name"], "input": p.get("input") or {}}}
                )
            elif ptype == "tool-result":
                out.append(
                    {
                        "toolResult": {
                            "toolUseId": p["tool_call_id"],
                            "content": [{"text": tool_result_text(p.get("output") or {})}],
                            "status": "success",
                        }
                    }
                )
        return out

    def build_request(self, model: str, call: Call) -> Dict[str, Any]:
        system: List[Dict[str, str]] = []
        messages: List[Dict[str, Any]] = []
        for m in call["messages"]:
            if m["role"] == "system":
                if m.get("content"):
                    system.append({"text": m["content"]})
                continue
            role = "assistant" if m["role"] == "assistant" else "user"
            blocks = self._blocks(m.get("content"))
            if not blocks:
                continue
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})
        if call.get("output"):
            system.append({"text": json_instruction(call["output"])})

        request: Dict[str, Any] = {"modelId": model, "messages": messages}
        if system:
            request["system"] = system

        reasoning = ((call.get("provider_options") or {}).get("bedrock") or {}).get("reasoning_config")
        inference: Dict[str, Any] = {}
        if reasoning and "budget_tokens" in reasoning:
            max_tokens = call.get("max_output_tokens") or self._config.anthropic_default_max_tokens
            inference["maxTokens"] = max(max_tokens, reasoning["budget_tokens"] + 1024)
        elif call.get("max_output_tokens"):
            inference["maxTokens"] = call["max_output_tokens"]
        if call.get("temperature") is not None:
            inference["temperature"] = call["temperature"]
        if call.get("top_p") is not None:
            inference["topP"] = call["top_p"]
        if inference:
            request["inferenceConfig"] = inference

        tools = call.get("tools")
        tool_choice = call.get("tool_choice")
        if tools and tool_choice != "none":
            tool_config: Dict[str, Any] = {
                "tools": [
                    {
                        "toolSpec": {
                            "name": name,
                            **({"description": t["description"]} if t.get("description") else {}),
                            "inputSchema": {"json": t["parameters"]},
                        }
                    }
                    for name, t in tools.items()
                ]
            }
            if isinstance(tool_choice, dict):
                tool_config["toolChoice"] = {"tool": {"name": tool_choice["tool_name"]}}
            elif tool_choice == "required":
                tool_config["toolChoice"] = {"any": {}}
            elif tool_choice == "auto":
                tool_config["toolChoice"] = {"auto": {}}
            request["toolConfig"] = tool_config

        if reasoning:
            if "budget_tokens" in reasoning:
                request["additionalModelRequestFields"] = {
                    "thinking": {"type": "enabled", "budget_tokens": reasoning["budget_tokens"]}
                }
            else:
                request["additionalModelRequestFields"] = {
                    "reasoningConfig": {"type": "enabled", "maxReasoningEffort": reasoning["max_reasoning_effort"]}
                }
        return request

    async def _converse_stream(self, model: str, credentials: Credentials, request: Dict[str, Any]) -> Any:
        t0 = time.time()
        try:
            client = self._client(credentials)
            resp = await asyncio.to_thread(lambda: client.converse_stream(**request))
        except ClientError as e:
            status = (e.response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
            code = (e.response.get("Error") or {}).get("Code")
            log.warning("Upstream %s error model=%s status=%s code=%s", self.name, model, status, code)
            raise ProviderInvocationError(
                "APICallFailed",
                f"{self.name} returned {code or 'error'}: {e}",
                status_code=status,
                code=code,
                cause=e,
            ) from e
        except BotoCoreError as e:
            log.warning("Upstream %s request failed model=%s err=%s", self.name, model, e)
            raise ProviderInvocationError("APICallFailed", f"{self.name} request failed: {e}", cause=e) from e

        dt = (time.time() - t0) * 1000
        log.info("Upstream %s model=%s status=200 ms=%.1f", self.name, model, dt)
        return resp["stream"]

    async def stream(self, model: str, credentials: Credentials, call: Call) -> AsyncIterator[Part]:
        request = self.build_request(model, call)
        event_stream = await self._converse_stream(model, credentials, request)
        iterator = iter(event_stream)
        done = object()

        blocks = _BlockTracker()
        usage: Optional[Dict[str, int]] = None
        stop_reason: Optional[str] = None

        try:
            while True:
                try:
                    event = await asyncio.to_thread(next, iterator, done)
                except (ClientError, BotoCoreError) as e:
                    for p in blocks.close():
                        yield p
                    yield {"type": "error", "error": {"type": "api_error", "message": str(e)}}
                    return
                if event is done:
                    break

                error_key = next((k for k in _BEDROCK_STREAM_ERRORS if k in event), None)
                if error_key:
                    for p in blocks.close():
                        yield p
                    yield {
                        "type": "error",
                        "error": {"type": error_key, "message": (event[error_key] or {}).get("message")},
                    }
                    return

                if "contentBlockStart" in event:
                    cbs = event["contentBlockStart"]
                    tool = (cbs.get("start") or {}).get("toolUse")
                    if tool:
                        for p in blocks.open(
                            "tool-input",
                            key=cbs.get("contentBlockIndex"),
                            tool_call_id=tool.get("toolUseId"),
                            tool_name=tool.get("name"),
                        ):
                            yield p
                elif "contentBlockDelta" in event:
                    cbd = event["contentBlockDelta"]
                    index = cbd.get("contentBlockIndex")
                    delta = cbd.get("delta") or {}
                    if delta.get("text"):
                        for p in blocks.delta("text", delta["text"], key=index):
                            yield p
                    elif (delta.get("reasoningContent") or {}).get("text"):
                        for p in blocks.delta("reasoning", delta["reasoningContent"]["text"], key=index):
                            yield p
                    elif (delta.get("toolUse") or {}).get("input"):
                        yield {"type": "tool-input-delta", "delta": delta["toolUse"]["input"]}
                elif "contentBlockStop" in event:
                    for p in blocks.close():
                        yield p
                elif "messageStop" in event:
                    stop_reason = event["messageStop"].get("stopReason")
                elif "metadata" in event:
                    u = event["metadata"].get("usage") or {}
                    usage = _usage(u.get("inputTokens"), u.get("outputTokens"), u.get("cacheReadInputTokens"))
        finally:
            close = getattr(event_stream, "close", None)
            if close is not None:
                close()

        for p in blocks.close():
            yield p
        yield {"type": "finish", "finish_reason": stop_reason, "usage": usage or empty_usage()}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ProviderRegistry:
    """Provider adapters by provider name."""

    def __init__(self, providers: Dict[str, Provider]) -> None:
        self._providers = dict(providers)

    @classmethod
    def default(cls, config: AppConfig) -> ProviderRegistry:
        return cls(
            {
                "openai": OpenAIProvider(config),
                "anthropic": AnthropicProvider(config),
                "amazon-bedrock": BedrockProvider(config),
            }
        )

    def get(self, provider: str) -> Provider:
        p = self._providers.get(provider)
        if p is None:
            raise ProviderInvocationError("APICallFailed", f"No adapter for provider: {provider}")
        return p

    def names(self) -> List[str]:
        return list(self._providers)


def build_classifier_complete(
    registry: ProviderRegistry,
    credentials: CredentialsService,
    *,
    provider: str,
    model: str,
    user_id: str,
):
    """CompleteFn for AutoClassifier backed by a registered provider."""

    async def complete(system: str, user_text: str, json_schema: Dict[str, Any]) -> str:
        creds = credentials.get_credentials(user_id, provider)
        call = {
            "messages": [
                {"role": "system", "content": system, "developer": False},
                {"role": "user", "content": user_text},
            ],
            "output": {"schema": json_schema, "name": "classification"},
        }
        result = await registry.get(provider).generate(model, creds, call)
        return result.text

    return complete
