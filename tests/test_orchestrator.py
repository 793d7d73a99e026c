"""
Tests for the fallback orchestrator.

Tests cover:
- Target selection with exclusions and the fallback pair
- Non-streaming execution and terminal failures
- Streaming probe, lifecycle envelope and mid-stream failures
- The per-user classification cache
"""

from unittest.mock import AsyncMock

import pytest

from auto_classifier import ClassificationCache
from catalog import ResolvedTarget
from credentials import CredentialsService, EnvSecretStore
from errors import CredentialsError, ProviderInvocationError
from intent_resolver import IntentPair, IntentResolver
from orchestrator import HARDCODED_FALLBACK, FallbackOrchestrator, parse_fallback_pair
from providers import Provider, ProviderRegistry
from request_context import RequestContext

ENV = {
    "OPENAI_API_KEY": "sk-openai",
    "ANTHROPIC_API_KEY": "sk-ant",
    "AWS_ACCESS_KEY_ID": "AKIA",
    "AWS_SECRET_ACCESS_KEY": "secret",
    "AWS_REGION": "us-east-1",
}

USAGE = {"input_tokens": 4, "output_tokens": 2, "total_tokens": 6, "cached_tokens": 0, "reasoning_tokens": 0}


def _hello(text="Hello"):
    return [
        {"type": "text-start"},
        {"type": "text-delta", "delta": text},
        {"type": "text-end"},
        {"type": "finish", "finish_reason": "stop", "usage": USAGE},
    ]


def _fail(message="upstream down"):
    return ProviderInvocationError("APICallFailed", message, status_code=503)


class ScriptedProvider(Provider):
    """Replays parts per model; an exception outcome is raised on the first read."""

    def __init__(self, name, script=None, default=None):
        super().__init__(None)
        self.name = name
        self.script = script or {}
        self.default = _hello(f"from {name}") if default is None else default
        self.calls = []

    async def stream(self, model, credentials, call):
        self.calls.append(model)
        outcome = self.script.get(model, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        for part in outcome:
            yield part


def _orchestrator(fake_store, providers, *, classifier=None, cache=None, env=None):
    registry = ProviderRegistry({p.name: p for p in providers})
    credentials = CredentialsService(EnvSecretStore(ENV if env is None else env))
    return FallbackOrchestrator(IntentResolver(fake_store, classifier), credentials, registry, cache)


def _ctx(**kwargs):
    kwargs.setdefault("user_id", "u1")
    kwargs.setdefault("providers", ["openai", "anthropic"])
    return RequestContext(**kwargs)


async def _events(orch, body, ctx):
    return [e async for e in orch.execute_stream(body, ctx)]


# ============================================================================
# Selection
# ============================================================================

class TestSelection:
    """Test target selection."""

    def test_parse_fallback_pair(self):
        assert parse_fallback_pair("openai/gpt-4o") == ResolvedTarget("openai", "gpt-4o")
        assert parse_fallback_pair("openrouter/a/b") == ResolvedTarget("openrouter", "a/b")
        assert parse_fallback_pair("garbage") is None
        assert parse_fallback_pair(None) is None

    @pytest.mark.asyncio
    async def test_select_resolved(self, fake_store):
        orch = _orchestrator(fake_store, [])
        sel = await orch.select({"model": "finance/most-popular"}, _ctx(), [])
        assert sel.target == ResolvedTarget("openai", "gpt-4o-mini")
        assert sel.is_last_attempt is False

    @pytest.mark.asyncio
    async def test_select_falls_back_to_hardcoded(self, fake_store):
        """Unresolvable requests use the built-in default as the last attempt."""
        orch = _orchestrator(fake_store, [])
        sel = await orch.select({"model": "finance/most-popular"}, _ctx(providers=[]), [])
        assert sel.target == HARDCODED_FALLBACK
        assert sel.is_last_attempt is True

    @pytest.mark.asyncio
    async def test_select_prefers_caller_fallback(self, fake_store):
        orch = _orchestrator(fake_store, [])
        ctx = _ctx(providers=[], fallback_provider_model_pair="anthropic/claude-3-5-sonnet-20240620")
        sel = await orch.select({"model": "finance/most-popular"}, ctx, [])
        assert sel.target == ResolvedTarget("anthropic", "claude-3-5-sonnet-20240620")
        assert sel.is_last_attempt is True

    @pytest.mark.asyncio
    async def test_excluded_explicit_target_falls_back(self, fake_store):
        """An explicit pair that already failed is not tried again."""
        orch = _orchestrator(fake_store, [])
        sel = await orch.select({"model": "openai/gpt-4o"}, _ctx(), [ResolvedTarget("openai", "gpt-4o")])
        assert sel.target == HARDCODED_FALLBACK
        assert sel.is_last_attempt is True


# ============================================================================
# Non-streaming
# ============================================================================

class TestExecute:
    """Test the non-streaming fallback loop."""

    @pytest.mark.asyncio
    async def test_explicit_target(self, fake_store):
        openai = ScriptedProvider("openai")
        orch = _orchestrator(fake_store, [openai])
        resource = await orch.execute({"model": "openai/gpt-4o", "input": "hi"}, _ctx())

        assert resource["status"] == "completed"
        assert resource["model"] == "gpt-4o"
        assert resource["id"].startswith("resp_")
        assert resource["output"][0]["content"][0]["text"] == "from openai"
        assert resource["usage"]["total_tokens"] == 6
        assert resource["completed_at"] is not None
        assert openai.calls == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_failed_target_is_excluded(self, fake_store):
        """The next ranked target is tried after a failure."""
        openai = ScriptedProvider("openai", {"gpt-4o-mini": _fail()})
        anthropic = ScriptedProvider("anthropic")
        orch = _orchestrator(fake_store, [openai, anthropic])
        resource = await orch.execute({"model": "finance/most-popular", "input": "hi"}, _ctx())

        assert resource["status"] == "completed"
        assert resource["model"] == "claude-sonnet-4-5-20250929"
        assert openai.calls == ["gpt-4o-mini"]
        assert anthropic.calls == ["claude-sonnet-4-5-20250929"]

    @pytest.mark.asyncio
    async def test_everything_fails(self, fake_store):
        """Ranked targets, then the hardcoded fallback, then a failed resource."""
        openai = ScriptedProvider("openai", default=_fail())
        anthropic = ScriptedProvider("anthropic", default=_fail())
        bedrock = ScriptedProvider("amazon-bedrock", default=_fail("bedrock down"))
        orch = _orchestrator(fake_store, [openai, anthropic, bedrock])
        resource = await orch.execute({"model": "finance/most-popular", "input": "hi"}, _ctx())

        assert resource["status"] == "failed"
        assert resource["error"] == {"code": "APICallFailed", "message": "bedrock down"}
        assert resource["model"] == HARDCODED_FALLBACK.model
        assert len(openai.calls) == len(anthropic.calls) == len(bedrock.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_stream_is_retried(self, fake_store):
        openai = ScriptedProvider("openai", {"gpt-4o-mini": []})
        anthropic = ScriptedProvider("anthropic")
        orch = _orchestrator(fake_store, [openai, anthropic])
        resource = await orch.execute({"model": "finance/most-popular", "input": "hi"}, _ctx())
        assert resource["output"][0]["content"][0]["text"] == "from anthropic"

    @pytest.mark.asyncio
    async def test_parts_without_text_complete(self, fake_store):
        """Only a part-less stream is retried; a bare finish completes with empty output."""
        openai = ScriptedProvider(
            "openai", {"gpt-4o-mini": [{"type": "finish", "finish_reason": "stop", "usage": USAGE}]}
        )
        anthropic = ScriptedProvider("anthropic")
        orch = _orchestrator(fake_store, [openai, anthropic])
        resource = await orch.execute({"model": "finance/most-popular", "input": "hi"}, _ctx())

        assert resource["status"] == "completed"
        assert resource["output"] == []
        assert anthropic.calls == []

    @pytest.mark.asyncio
    async def test_missing_credentials_are_terminal(self, fake_store):
        """No fallback is attempted when the chosen provider has no secret."""
        anthropic = ScriptedProvider("anthropic")
        bedrock = ScriptedProvider("amazon-bedrock")
        orch = _orchestrator(fake_store, [anthropic, bedrock], env={"OPENAI_API_KEY": "k"})
        with pytest.raises(CredentialsError) as exc:
            await orch.execute({"model": "anthropic/claude-sonnet-4-5", "input": "hi"}, _ctx())
        assert exc.value.reason == "Missing"
        assert anthropic.calls == [] and bedrock.calls == []

    @pytest.mark.asyncio
    async def test_invalid_input_is_terminal(self, fake_store):
        openai = ScriptedProvider("openai")
        orch = _orchestrator(fake_store, [openai])
        with pytest.raises(ProviderInvocationError) as exc:
            await orch.execute({"model": "openai/gpt-4o"}, _ctx())
        assert exc.value.reason == "InvalidInput"
        assert openai.calls == []


# ============================================================================
# Streaming
# ============================================================================

class TestStreaming:
    """Test the streaming lifecycle."""

    @pytest.mark.asyncio
    async def test_lifecycle_envelope(self, fake_store):
        """created, in_progress, translated events, completed; contiguous numbering."""
        orch = _orchestrator(fake_store, [ScriptedProvider("openai")])
        events = await _events(orch, {"model": "openai/gpt-4o", "input": "hi"}, _ctx())

        assert [e["type"] for e in events] == [
            "response.created",
            "response.in_progress",
            "response.output_item.added",
            "response.content_part.added",
            "response.output_text.delta",
            "response.output_text.done",
            "response.content_part.done",
            "response.output_item.done",
            "response.completed",
        ]
        assert [e["sequence_number"] for e in events] == list(range(len(events)))
        ids = {e["response"]["id"] for e in events if "response" in e}
        assert len(ids) == 1
        assert events[0]["response"]["status"] == "in_progress"
        final = events[-1]["response"]
        assert final["status"] == "completed"
        assert final["output"][0]["content"][0]["text"] == "from openai"
        assert final["usage"]["input_tokens"] == 4

    @pytest.mark.asyncio
    async def test_probe_failure_retries_before_any_event(self, fake_store):
        """An error as the first part moves on to the next target."""
        openai = ScriptedProvider("openai", {"gpt-4o-mini": [{"type": "error", "error": {"message": "nope"}}]})
        anthropic = ScriptedProvider("anthropic")
        orch = _orchestrator(fake_store, [openai, anthropic])
        events = await _events(orch, {"model": "finance/most-popular", "input": "hi"}, _ctx())

        assert events[-1]["type"] == "response.completed"
        assert events[-1]["response"]["model"] == "claude-sonnet-4-5-20250929"
        assert all(e["type"] != "error" for e in events)

    @pytest.mark.asyncio
    async def test_mid_stream_error_fails_response(self, fake_store):
        """Errors after the first part end the stream with response.failed."""
        parts = [
            {"type": "text-start"},
            {"type": "text-delta", "delta": "par"},
            {"type": "error", "error": {"type": "api_error", "message": "connection reset"}},
            {"type": "text-delta", "delta": "never"},
        ]
        orch = _orchestrator(fake_store, [ScriptedProvider("openai", default=parts)])
        events = await _events(orch, {"model": "openai/gpt-4o", "input": "hi"}, _ctx())

        assert [e["type"] for e in events][-2:] == ["error", "response.failed"]
        assert [e["sequence_number"] for e in events] == list(range(len(events)))
        failed = events[-1]["response"]
        assert failed["status"] == "failed"
        assert failed["error"]["message"] == "connection reset"

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_response(self, fake_store):
        """A non-gateway exception after the first part still ends with response.failed."""

        class BrokenProvider(Provider):
            name = "openai"

            async def stream(self, model, credentials, call):
                yield {"type": "text-start"}
                raise RuntimeError("decoder blew up")

        orch = _orchestrator(fake_store, [BrokenProvider(None)])
        events = await _events(orch, {"model": "openai/gpt-4o", "input": "hi"}, _ctx())

        assert events[-1]["type"] == "response.failed"
        assert [e["sequence_number"] for e in events] == list(range(len(events)))
        error = events[-1]["response"]["error"]
        assert error["code"] == "APICallFailed"
        assert "decoder blew up" in error["message"]

    @pytest.mark.asyncio
    async def test_exhausted_stream(self, fake_store):
        """No target works: created, in_progress, failed at seq 2."""
        providers = [
            ScriptedProvider("openai", default=_fail()),
            ScriptedProvider("anthropic", default=_fail()),
            ScriptedProvider("amazon-bedrock", default=_fail()),
        ]
        orch = _orchestrator(fake_store, providers)
        events = await _events(orch, {"model": "finance/most-popular", "input": "hi"}, _ctx())

        assert [(e["type"], e["sequence_number"]) for e in events] == [
            ("response.created", 0),
            ("response.in_progress", 1),
            ("response.failed", 2),
        ]
        assert events[-1]["response"]["error"]["code"] == "APICallFailed"

    @pytest.mark.asyncio
    async def test_open_stream_raises_terminal_errors(self, fake_store):
        orch = _orchestrator(fake_store, [ScriptedProvider("openai")], env={})
        with pytest.raises(CredentialsError):
            await orch.open_stream({"model": "openai/gpt-4o", "input": "hi"}, _ctx())


# ============================================================================
# Classification cache
# ============================================================================

class TestClassificationCacheUse:
    """Test cache use on auto routes."""

    BODY = {
        "model": "auto/auto",
        "input": [
            {"role": "system", "content": "You review Python code."},
            {"role": "user", "content": "Is this loop right?"},
        ],
    }

    @pytest.mark.asyncio
    async def test_second_request_hits_cache(self, fake_store):
        classifier = AsyncMock()
        classifier.classify.return_value = IntentPair("programming", "most-popular")
        cache = ClassificationCache()
        anthropic = ScriptedProvider("anthropic")
        orch = _orchestrator(fake_store, [ScriptedProvider("openai"), anthropic], classifier=classifier, cache=cache)
        ctx = _ctx(analysis_target="per_system_prompt")

        first = await orch.execute(self.BODY, ctx)
        second = await orch.execute(self.BODY, ctx)

        assert first["model"] == second["model"] == "claude-sonnet-4-5-20250929"
        assert classifier.classify.await_count == 1
        assert cache.size("u1") == 1
        assert anthropic.calls == ["claude-sonnet-4-5-20250929"] * 2

    @pytest.mark.asyncio
    async def test_per_prompt_does_not_cache(self, fake_store):
        classifier = AsyncMock()
        classifier.classify.return_value = IntentPair("programming", "most-popular")
        cache = ClassificationCache()
        orch = _orchestrator(
            fake_store,
            [ScriptedProvider("openai"), ScriptedProvider("anthropic")],
            classifier=classifier,
            cache=cache,
        )
        ctx = _ctx(analysis_target="per_prompt")
        await orch.execute(self.BODY, ctx)
        await orch.execute(self.BODY, ctx)
        assert classifier.classify.await_count == 2
        assert cache.size() == 0
