"""
Resolve the request's `model` field to a concrete (provider, model) target.

Accepted shapes:

    provider/model   -> ProviderModelPair, dispatched as-is
    intent/policy    -> IntentPair, resolved through the ranked catalog
    auto/...         -> intent (and policy when "auto") picked by the AutoClassifier
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from catalog import CATEGORIES, ORDERS, CatalogStore, ResolvedTarget
from errors import NoProviderAvailableError, ParseError, ResolveError
from logger import LOGGER_NAME

if TYPE_CHECKING:
    from auto_classifier import AutoClassifier

log = logging.getLogger(LOGGER_NAME)

INTENTS = CATEGORIES + ("auto",)
POLICIES = ORDERS + ("auto",)


@dataclass(frozen=True)
class IntentPair:
    intent: str
    policy: str


@dataclass(frozen=True)
class ProviderModelPair:
    provider: str
    model: str


RequestShape = Union[IntentPair, ProviderModelPair]


def is_intent(value: str) -> bool:
    return value.lower() in INTENTS


def parse_intent(model: str) -> IntentPair:
    """Parse "intent/policy" (case-insensitive) into an IntentPair."""
    slash = model.find("/")
    if slash == -1:
        raise ParseError("BadFormatting", f'Expected format "intent/intentPolicy", got: "{model}"')

    raw_intent = model[:slash]
    raw_policy = model[slash + 1:]
    if not raw_intent:
        raise ParseError("EmptyIntent", f'Intent must be non-empty, got: "{model}"')
    if not raw_policy:
        raise ParseError("EmptyIntentPolicy", f'intentPolicy must be non-empty, got: "{model}"')

    intent = raw_intent.lower()
    if intent not in INTENTS:
        raise ParseError("InvalidCharacters", f'Intent contains invalid literal, got: "{raw_intent}"')
    policy = raw_policy.lower()
    if policy not in POLICIES:
        raise ParseError(
            "InvalidCharacters", f'IntentPolicy contains invalid literal, got: "{raw_policy}"'
        )
    return IntentPair(intent=intent, policy=policy)


def parse_provider_model(model: str) -> ProviderModelPair:
    """Parse "provider/model"; the model part may itself contain slashes."""
    slash = model.find("/")
    if slash == -1:
        raise ParseError("BadFormatting", f'Expected format "provider/model", got: "{model}"')

    provider = model[:slash]
    name = model[slash + 1:]
    if not provider:
        raise ParseError("EmptyProvider", f'Provider must be non-empty, got: "{model}"')
    if not name:
        raise ParseError("EmptyModel", f'Model must be non-empty, got: "{model}"')
    return ProviderModelPair(provider=provider, model=name)


def parse_model_field(model: str) -> RequestShape:
    """Dispatch on the prefix before the first "/"."""
    slash = model.find("/")
    if slash == -1:
        raise ParseError("BadFormatting", f'Expected format "{{}}/{{}}", got: "{model}"')
    if is_intent(model[:slash]):
        return parse_intent(model)
    return parse_provider_model(model)


def _excluded_keys(excluded: Iterable[ResolvedTarget]) -> set:
    return {t.key for t in excluded}


class IntentResolver:
    """Pick a target for one request given enabled providers and exclusions."""

    def __init__(self, store: CatalogStore, classifier: Optional[AutoClassifier] = None) -> None:
        self._store = store
        self._classifier = classifier

    async def resolve(
        self,
        body: Dict[str, Any],
        enabled_providers: List[str],
        excluded: Iterable[ResolvedTarget] = (),
        analysis_target: Optional[str] = None,
    ) -> ResolvedTarget:
        model = body.get("model")
        if not isinstance(model, str):
            log.error("Invalid model type type=%s", type(model).__name__)
            raise ResolveError(
                "InvalidModelType",
                f"Expected model to be a string, got {type(model).__name__}",
            )

        excluded = list(excluded)

        if model.startswith("auto"):
            log.info(
                "Resolving via auto-classification model=%s providers=%d excluded=%d",
                model,
                len(enabled_providers),
                len(excluded),
            )
            pair = parse_intent(model)
            concrete = await self._classify(body, pair, analysis_target)
            return await self.resolve_intent_pair(concrete, enabled_providers, excluded)

        log.info(
            "Resolving via direct parse model=%s providers=%d excluded=%d",
            model,
            len(enabled_providers),
            len(excluded),
        )
        shape = parse_model_field(model)
        if isinstance(shape, ProviderModelPair):
            log.debug("Provider/model passthrough provider=%s model=%s", shape.provider, shape.model)
            return ResolvedTarget(provider=shape.provider, model=shape.model)
        if isinstance(shape, IntentPair):
            if shape.policy == "auto":
                shape = await self._classify(body, shape, analysis_target)
            return await self.resolve_intent_pair(shape, enabled_providers, excluded)
        raise TypeError(f"Unhandled request shape: {shape!r}")

    async def _classify(
        self,
        body: Dict[str, Any],
        pair: IntentPair,
        analysis_target: Optional[str],
    ) -> IntentPair:
        if self._classifier is None:
            raise ResolveError("UnsupportedInputType", "Auto classification is not configured")
        return await self._classifier.classify(body, pair, analysis_target)

    async def resolve_intent_pair(
        self,
        pair: IntentPair,
        enabled_providers: List[str],
        excluded: Iterable[ResolvedTarget] = (),
    ) -> ResolvedTarget:
        """First enabled, non-excluded candidate in ranking order."""
        catalog = await self._store.get_catalog()
        slugs = catalog.get_ranked_slugs(pair.intent, pair.policy)
        enabled = set(enabled_providers)
        skip = _excluded_keys(excluded)

        log.debug(
            "Resolving intent pair intent=%s policy=%s slugs=%d providers=%d excluded=%d",
            pair.intent,
            pair.policy,
            len(slugs),
            len(enabled),
            len(skip),
        )

        for slug in slugs:
            for target in catalog.candidates(slug):
                if target.provider in enabled and target.key not in skip:
                    log.info(
                        "Intent resolved intent=%s policy=%s slug=%s provider=%s model=%s",
                        pair.intent,
                        pair.policy,
                        slug,
                        target.provider,
                        target.model,
                    )
                    return target

        available: List[str] = []
        for slug in slugs:
            for target in catalog.candidates(slug):
                if target.provider not in available:
                    available.append(target.provider)

        log.warning(
            "No matching provider for intent intent=%s policy=%s user_providers=%s available=%s",
            pair.intent,
            pair.policy,
            ",".join(enabled_providers),
            ",".join(available),
        )
        raise NoProviderAvailableError(
            "NoProviderConfigured",
            f"None of the top {len(slugs)} models have a provider you have configured. "
            f"Configure at least one of: {', '.join(available)}",
            providers=available,
        )
