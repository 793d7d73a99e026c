"""Per-request caller context and API key verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config import ANALYSIS_TARGETS, AppConfig
from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)


class AuthenticationError(Exception):
    """Bearer key missing, invalid or unverifiable."""


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    providers: List[str] = field(default_factory=list)
    fallback_provider_model_pair: Optional[str] = None
    analysis_target: Optional[str] = None


def static_context(config: AppConfig) -> RequestContext:
    """Context for deployments without a verification backend."""
    return RequestContext(
        user_id=config.default_user_id,
        providers=list(config.enabled_providers),
        fallback_provider_model_pair=config.fallback_pair(),
        analysis_target=config.analysis_target,
    )


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def context_from_verification(payload: Dict[str, Any]) -> RequestContext:
    providers = payload.get("providers")
    analysis_target = payload.get("analysisTarget")
    fallback = payload.get("fallbackProviderModelPair")
    return RequestContext(
        user_id=str(payload.get("userId") or ""),
        providers=[p for p in providers if isinstance(p, str)] if isinstance(providers, list) else [],
        fallback_provider_model_pair=fallback if isinstance(fallback, str) and fallback else None,
        analysis_target=analysis_target if analysis_target in ANALYSIS_TARGETS else None,
    )


class ApiKeyVerifier:
    """Verify bearer keys against `{backend_url}/v1/apikey/verify`."""

    def __init__(self, config: AppConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        self._transport = transport

    async def verify(self, key: str) -> RequestContext:
        url = f"{self._config.backend_url}/v1/apikey/verify"
        try:
            async with httpx.AsyncClient(
                timeout=min(10.0, self._config.request_timeout_s),
                transport=self._transport,
            ) as client:
                resp = await client.post(url, json={"key": key})
        except httpx.HTTPError as e:
            log.warning("API key verification failed key=%s err=%s", mask_secret(key), e)
            raise AuthenticationError("API key verification failed") from e

        if resp.status_code != 200:
            log.warning("API key verification rejected key=%s status=%s", mask_secret(key), resp.status_code)
            raise AuthenticationError("Invalid API key")
        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthenticationError("API key verification failed") from e
        if not isinstance(payload, dict) or payload.get("valid") is not True or not payload.get("userId"):
            log.info("API key invalid key=%s", mask_secret(key))
            raise AuthenticationError("Invalid API key")

        ctx = context_from_verification(payload)
        log.info(
            "API key verified user_id=%s providers=%s analysis_target=%s",
            ctx.user_id,
            ",".join(ctx.providers),
            ctx.analysis_target,
        )
        return ctx


async def resolve_request_context(
    config: AppConfig,
    verifier: Optional[ApiKeyVerifier],
    authorization: Optional[str],
) -> RequestContext:
    """Verified context when a backend is configured, else the static one."""
    if verifier is None:
        return static_context(config)
    key = bearer_token(authorization)
    if key is None:
        raise AuthenticationError("Missing bearer API key")
    return await verifier.verify(key)
