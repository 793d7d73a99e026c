"""
Target selection with exclusion-driven fallback, and the streaming lifecycle.

One logical request makes at most one provider call at a time. A failed call
adds its target to the exclusion set and resolution runs again; once
resolution fails outright the caller's fallback pair (or the built-in default)
is tried as the last attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from auto_classifier import ClassificationCache, extract_system_prompt_text
from catalog import ResolvedTarget
from credentials import CredentialsService
from errors import GatewayError, ProviderInvocationError
from intent_resolver import IntentResolver
from logger import LOGGER_NAME
from options import build_call
from providers import ProviderRegistry
from request_context import RequestContext
from responses import ResponseLifecycle, error_payload
from stream_translator import StreamTranslator

log = logging.getLogger(LOGGER_NAME)

HARDCODED_FALLBACK = ResolvedTarget(
    provider="amazon-bedrock",
    model="global.anthropic.claude-haiku-4-5-20251001-v1:0",
)

Part = Dict[str, Any]
Event = Dict[str, Any]


def parse_fallback_pair(value: Optional[str]) -> Optional[ResolvedTarget]:
    """"provider/model" -> ResolvedTarget; None when malformed."""
    if not value:
        return None
    provider, sep, model = value.partition("/")
    if not sep or not provider or not model:
        return None
    return ResolvedTarget(provider=provider, model=model)


@dataclass
class Selection:
    target: ResolvedTarget
    is_last_attempt: bool
    cache_hit: bool = False


@dataclass
class StreamHandle:
    """Probed stream ready for the lifecycle envelope, or the terminal failure."""

    lifecycle: ResponseLifecycle
    target: Optional[ResolvedTarget] = None
    parts: Optional[AsyncIterator[Part]] = None
    error: Optional[BaseException] = None


async def _prepend(first: Part, rest: AsyncIterator[Part]) -> AsyncIterator[Part]:
    yield first
    async for part in rest:
        yield part


class FallbackOrchestrator:
    def __init__(
        self,
        resolver: IntentResolver,
        credentials: CredentialsService,
        registry: ProviderRegistry,
        cache: Optional[ClassificationCache] = None,
    ) -> None:
        self._resolver = resolver
        self._credentials = credentials
        self._registry = registry
        self._cache = cache

    # -- selection ----------------------------------------------------------

    def _cache_text(self, body: Dict[str, Any], ctx: RequestContext) -> Optional[str]:
        if self._cache is None or ctx.analysis_target != "per_system_prompt":
            return None
        model = body.get("model")
        if not isinstance(model, str) or not model.startswith("auto"):
            return None
        return extract_system_prompt_text(body)

    async def select(
        self,
        body: Dict[str, Any],
        ctx: RequestContext,
        excluded: List[ResolvedTarget],
    ) -> Selection:
        """Resolve one target under the current exclusions."""
        skip = {t.key for t in excluded}
        cache_text = self._cache_text(body, ctx)

        if cache_text:
            cached = self._cache.get(ctx.user_id, cache_text)
            if cached is not None and cached.key not in skip:
                log.info("Classification cache hit user_id=%s target=%s", ctx.user_id, cached.key)
                return Selection(target=cached, is_last_attempt=False, cache_hit=True)

        try:
            target = await self._resolver.resolve(body, ctx.providers, excluded, ctx.analysis_target)
            if target.key in skip:
                raise ProviderInvocationError("APICallFailed", f"Target {target.key} already failed")
        except GatewayError as e:
            fallback = parse_fallback_pair(ctx.fallback_provider_model_pair) or HARDCODED_FALLBACK
            log.warning(
                "Resolution failed reason=%s err=%s; using fallback provider=%s model=%s",
                e.reason,
                e.message,
                fallback.provider,
                fallback.model,
            )
            return Selection(target=fallback, is_last_attempt=True)

        if cache_text:
            self._cache.set(ctx.user_id, cache_text, target)
        return Selection(target=target, is_last_attempt=False)

    def _prepare(self, body: Dict[str, Any], ctx: RequestContext, target: ResolvedTarget) -> Tuple[Any, Dict[str, Any]]:
        creds = self._credentials.get_credentials(ctx.user_id, target.provider)
        call = build_call(body, target.model)
        return creds, call

    # -- non-streaming ------------------------------------------------------

    async def execute(self, body: Dict[str, Any], ctx: RequestContext) -> Dict[str, Any]:
        """Run the fallback loop and return a completed or failed response resource."""
        lifecycle = ResponseLifecycle(body)
        excluded: List[ResolvedTarget] = []

        while True:
            sel = await self.select(body, ctx, excluded)
            target = sel.target
            lifecycle.model = target.model
            creds, call = self._prepare(body, ctx, target)

            log.info(
                "Invoking provider=%s model=%s attempt=%d last=%s",
                target.provider,
                target.model,
                len(excluded) + 1,
                sel.is_last_attempt,
            )
            try:
                result = await self._registry.get(target.provider).generate(target.model, creds, call)
            except ProviderInvocationError as e:
                if not e.retryable:
                    raise
                if sel.is_last_attempt:
                    log.error("All targets exhausted provider=%s model=%s err=%s", target.provider, target.model, e)
                    return lifecycle.resource("failed", error=error_payload(e))
                log.warning("Provider failed provider=%s model=%s err=%s; excluding", target.provider, target.model, e)
                excluded.append(target)
                continue

            log.info(
                "Generation done provider=%s model=%s output_items=%d",
                target.provider,
                target.model,
                len(result.output_items),
            )
            return lifecycle.resource(
                "completed",
                output=result.output_items,
                usage=result.usage,
                completed_at=int(time.time()),
            )

    # -- streaming ----------------------------------------------------------

    async def open_stream(self, body: Dict[str, Any], ctx: RequestContext) -> StreamHandle:
        """
        Run the fallback loop up to the first part of a stream.

        Errors that must not be retried (credentials, malformed input) are
        raised here, before any event is produced.
        """
        lifecycle = ResponseLifecycle(body)
        excluded: List[ResolvedTarget] = []

        while True:
            sel = await self.select(body, ctx, excluded)
            target = sel.target
            lifecycle.model = target.model
            creds, call = self._prepare(body, ctx, target)

            log.info(
                "Opening stream provider=%s model=%s attempt=%d last=%s",
                target.provider,
                target.model,
                len(excluded) + 1,
                sel.is_last_attempt,
            )
            parts: Optional[AsyncIterator[Part]] = None
            try:
                parts = self._registry.get(target.provider).stream(target.model, creds, call)
                first = await self._probe(parts)
            except ProviderInvocationError as e:
                if parts is not None:
                    await parts.aclose()
                if not e.retryable:
                    raise
                if sel.is_last_attempt:
                    log.error("All targets exhausted provider=%s model=%s err=%s", target.provider, target.model, e)
                    return StreamHandle(lifecycle=lifecycle, target=target, error=e)
                log.warning("Stream probe failed provider=%s model=%s err=%s; excluding", target.provider, target.model, e)
                excluded.append(target)
                continue

            return StreamHandle(lifecycle=lifecycle, target=target, parts=_prepend(first, parts))

    @staticmethod
    async def _probe(parts: AsyncIterator[Part]) -> Part:
        try:
            first = await parts.__anext__()
        except StopAsyncIteration:
            raise ProviderInvocationError("EmptyStream", "Provider returned an empty stream") from None
        if first.get("type") == "error":
            err = first.get("error")
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ProviderInvocationError("StreamError", message or "Upstream stream error")
        return first

    async def stream_events(self, handle: StreamHandle) -> AsyncIterator[Event]:
        """Lifecycle envelope around the translated part stream."""
        lifecycle = handle.lifecycle
        yield lifecycle.created()
        yield lifecycle.in_progress()

        if handle.parts is None:
            yield lifecycle.failed(2, handle.error or ProviderInvocationError("APICallFailed", "No stream"))
            return

        translator = StreamTranslator(start_sequence=2)
        failure: Optional[BaseException] = None
        try:
            async for part in handle.parts:
                for event in translator.process(part):
                    yield event
                if part.get("type") == "error":
                    err = part.get("error")
                    message = err.get("message") if isinstance(err, dict) else str(err)
                    failure = ProviderInvocationError("StreamError", message or "Upstream stream error")
                    break
        except GatewayError as e:
            log.error("Stream failed mid-flight target=%s err=%s", handle.target.key, e)
            failure = e
        except Exception as e:
            log.exception("Unexpected stream failure target=%s", handle.target.key)
            failure = ProviderInvocationError("APICallFailed", f"Stream failed: {e}", cause=e)
        finally:
            await handle.parts.aclose()

        if failure is not None:
            log.warning("Stream ended with failure target=%s err=%s", handle.target.key, failure)
            yield lifecycle.failed(translator.sequence_number, failure, translator.output_items, translator.usage)
            return

        log.info(
            "Stream completed target=%s events=%d output_items=%d",
            handle.target.key,
            translator.sequence_number,
            len(translator.output_items),
        )
        yield lifecycle.completed(translator.sequence_number, translator.output_items, translator.usage)

    async def execute_stream(self, body: Dict[str, Any], ctx: RequestContext) -> AsyncIterator[Event]:
        handle = await self.open_stream(body, ctx)
        async for event in self.stream_events(handle):
            yield event

