"""Tests for credentials lookup and per-request caller context."""

import httpx
import pytest

from credentials import CredentialsService, EnvSecretStore, SecretStore, shape_credentials
from errors import CredentialsError
from request_context import (
    ApiKeyVerifier,
    AuthenticationError,
    RequestContext,
    bearer_token,
    context_from_verification,
    resolve_request_context,
    static_context,
)


# ============================================================================
# Credentials
# ============================================================================

class TestCredentials:
    """Test secret shaping and lookup."""

    def test_env_store(self):
        service = CredentialsService(EnvSecretStore({"OPENAI_API_KEY": "sk-1"}))
        assert service.get_credentials("u1", "openai") == {"api_key": "sk-1"}

    def test_bedrock_shape(self):
        creds = shape_credentials(
            "amazon-bedrock",
            {"access_key_id": "AKIA", "secret_access_key": "s", "region": "eu-west-1"},
        )
        assert creds == {"access_key_id": "AKIA", "secret_access_key": "s", "region": "eu-west-1"}

    def test_missing_fields_are_listed(self):
        with pytest.raises(CredentialsError) as exc:
            shape_credentials("amazon-bedrock", {"access_key_id": "AKIA"})
        assert exc.value.reason == "Missing"
        assert "secret_access_key, region" in exc.value.message

    def test_unsupported_provider(self):
        with pytest.raises(CredentialsError) as exc:
            CredentialsService(EnvSecretStore({})).get_credentials("u1", "mistral")
        assert exc.value.reason == "Unsupported"

    def test_store_failure(self):
        """Store exceptions become LookupFailed."""

        class BrokenStore(SecretStore):
            def get_secret(self, user_id, provider):
                raise RuntimeError("vault sealed")

        with pytest.raises(CredentialsError) as exc:
            CredentialsService(BrokenStore()).get_credentials("u1", "anthropic")
        assert exc.value.reason == "LookupFailed"
        assert isinstance(exc.value.cause, RuntimeError)


# ============================================================================
# Request context
# ============================================================================

class TestRequestContext:
    """Test context construction."""

    def test_static_context(self, make_config):
        cfg = make_config(
            default_user_id="local",
            enabled_providers=["openai"],
            fallback_provider_model="openai/gpt-4o",
            analysis_target="per_system_prompt",
        )
        assert static_context(cfg) == RequestContext(
            user_id="local",
            providers=["openai"],
            fallback_provider_model_pair="openai/gpt-4o",
            analysis_target="per_system_prompt",
        )

    def test_bearer_token(self):
        assert bearer_token("Bearer abc") == "abc"
        assert bearer_token("bearer  abc ") == "abc"
        assert bearer_token("Basic abc") is None
        assert bearer_token("Bearer ") is None
        assert bearer_token(None) is None

    def test_context_from_verification(self):
        ctx = context_from_verification(
            {
                "userId": "u1",
                "providers": ["openai", 7, "anthropic"],
                "fallbackProviderModelPair": "",
                "analysisTarget": "everything",
            }
        )
        assert ctx == RequestContext(user_id="u1", providers=["openai", "anthropic"])

    @pytest.mark.asyncio
    async def test_no_backend_uses_static_context(self, make_config):
        cfg = make_config(enabled_providers=["anthropic"])
        ctx = await resolve_request_context(cfg, None, None)
        assert ctx.providers == ["anthropic"]


class TestApiKeyVerifier:
    """Test verification against the backend."""

    @pytest.mark.asyncio
    async def test_valid_key(self, make_config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "valid": True,
                    "userId": "u42",
                    "providers": ["amazon-bedrock"],
                    "fallbackProviderModelPair": "openai/gpt-4o",
                    "analysisTarget": "per_prompt",
                },
            )

        cfg = make_config(backend_url="https://backend.test")
        verifier = ApiKeyVerifier(cfg, transport=httpx.MockTransport(handler))
        ctx = await resolve_request_context(cfg, verifier, "Bearer key-1")

        assert ctx.user_id == "u42"
        assert ctx.providers == ["amazon-bedrock"]
        assert ctx.fallback_provider_model_pair == "openai/gpt-4o"
        assert str(seen[0].url) == "https://backend.test/v1/apikey/verify"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,payload",
        [
            (401, {"valid": False}),
            (200, {"valid": False, "userId": "u1"}),
            (200, {"valid": True}),
            (200, ["not", "an", "object"]),
        ],
    )
    async def test_rejections(self, make_config, status, payload):
        cfg = make_config(backend_url="https://backend.test")
        transport = httpx.MockTransport(lambda request: httpx.Response(status, json=payload))
        with pytest.raises(AuthenticationError):
            await ApiKeyVerifier(cfg, transport=transport).verify("k")

    @pytest.mark.asyncio
    async def test_backend_unreachable(self, make_config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        cfg = make_config(backend_url="https://backend.test")
        with pytest.raises(AuthenticationError):
            await ApiKeyVerifier(cfg, transport=httpx.MockTransport(handler)).verify("k")

    @pytest.mark.asyncio
    async def test_missing_header(self, make_config):
        cfg = make_config(backend_url="https://backend.test")
        with pytest.raises(AuthenticationError):
            await resolve_request_context(cfg, ApiKeyVerifier(cfg), None)
