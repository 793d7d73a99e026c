"""
LLM-backed classification for "auto" routes, plus the per-user classification cache.

The classifier asks a fixed model for a JSON object holding one label from a
closed vocabulary. Transport failures, undecodable replies and out-of-vocabulary
labels all count as a failed attempt.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from catalog import CATEGORIES, ORDERS, ResolvedTarget
from errors import ClassificationError, ResolveError
from intent_resolver import IntentPair
from logger import LOGGER_NAME
from prompts import SYSTEM_PROMPT_CAT, SYSTEM_PROMPT_POL

log = logging.getLogger(LOGGER_NAME)

# (system_prompt, user_text, json_schema) -> raw reply text
CompleteFn = Callable[[str, str, Dict[str, Any]], Awaitable[str]]

DEFAULT_RETRIES = 5

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            p.get("text")
            for p in content
            if isinstance(p, dict)
            and p.get("type") in ("input_text", "output_text")
            and isinstance(p.get("text"), str)
        ]
        return " ".join(parts)
    return ""


def extract_text_from_input(input_value: Any, roles: Iterable[str]) -> Optional[str]:
    """Text of the input messages whose role is in `roles`, joined by a space."""
    if isinstance(input_value, str):
        return input_value
    if not isinstance(input_value, list):
        return None

    wanted = set(roles)
    texts: List[str] = []
    for item in input_value:
        if not isinstance(item, dict):
            continue
        if item.get("type", "message") != "message" or item.get("role") not in wanted:
            continue
        text = _message_text(item.get("content"))
        if text:
            texts.append(text)
    return " ".join(texts) or None


def _instructions(body: Dict[str, Any]) -> Optional[str]:
    instructions = body.get("instructions")
    if isinstance(instructions, str) and instructions:
        return instructions
    return None


def extract_system_prompt_text(body: Dict[str, Any]) -> Optional[str]:
    """System/developer text, else `instructions`."""
    return extract_text_from_input(body.get("input"), ("system", "developer")) or _instructions(body)


def extract_analysis_text(
    body: Dict[str, Any],
    analysis_target: Optional[str],
) -> Optional[Tuple[str, str]]:
    """
    Pick the text to classify. Returns (text, source) or None.

    per_system_prompt: system/developer text, then instructions.
    per_prompt (default): user text, then instructions, then system/developer text.
    """
    input_value = body.get("input")

    if analysis_target == "per_system_prompt":
        system = extract_text_from_input(input_value, ("system", "developer"))
        if system:
            return system, "systemPrompt"
        instructions = _instructions(body)
        if instructions:
            return instructions, "instructions"
        return None

    user = extract_text_from_input(input_value, ("user",))
    if user:
        return user, "userPrompt"
    instructions = _instructions(body)
    if instructions:
        return instructions, "instructions"
    system = extract_text_from_input(input_value, ("system", "developer"))
    if system:
        return system, "systemPrompt"
    return None


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def label_schema(field: str, allowed: Iterable[str]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {field: {"type": "string", "enum": list(allowed)}},
        "required": [field],
        "additionalProperties": False,
    }


def parse_label(reply: str, field: str, allowed: Iterable[str]) -> str:
    """Extract `field` from a JSON reply and check it against `allowed`. Raises ValueError."""
    text = _FENCE_RE.sub("", (reply or "").strip())
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ValueError(f"No JSON object in classifier reply: {reply[:200]!r}")
    obj = json.loads(_TRAILING_COMMA_RE.sub(r"\1", text[start:end + 1]))
    if not isinstance(obj, dict):
        raise ValueError("Classifier reply is not a JSON object")
    value = obj.get(field)
    if not isinstance(value, str):
        raise ValueError(f"Classifier reply has no string {field!r}")
    value = value.strip().lower()
    if value not in set(allowed):
        raise ValueError(f"Classifier returned unknown {field} {value!r}")
    return value


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class AutoClassifier:
    """Resolve "auto" intent/policy to concrete values with a classification model."""

    def __init__(self, complete: CompleteFn, *, retries: int = DEFAULT_RETRIES) -> None:
        self._complete = complete
        self._retries = retries

    async def _classify_label(self, system: str, prompt: str, field: str, allowed: Tuple[str, ...]) -> str:
        attempts = self._retries + 1
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                reply = await self._complete(system, prompt, label_schema(field, allowed))
                value = parse_label(reply, field, allowed)
            except Exception as e:
                last_exc = e
                log.error(
                    "LLM %s classification failed attempt=%d/%d err=%s",
                    field,
                    attempt,
                    attempts,
                    e,
                )
                continue
            log.debug("LLM %s classified value=%s attempt=%d", field, value, attempt)
            return value

        raise ClassificationError(
            f"Failed to classify intent {field}",
            attempts=attempts,
            cause=last_exc,
        )

    async def classify_category(self, prompt: str) -> str:
        return await self._classify_label(SYSTEM_PROMPT_CAT, prompt, "category", CATEGORIES)

    async def classify_policy(self, prompt: str) -> str:
        return await self._classify_label(SYSTEM_PROMPT_POL, prompt, "policy", ORDERS)

    async def classify(
        self,
        body: Dict[str, Any],
        pair: IntentPair,
        analysis_target: Optional[str] = None,
    ) -> IntentPair:
        """Replace "auto" in `pair` with classified values."""
        extracted = extract_analysis_text(body, analysis_target)
        if extracted is None:
            if analysis_target == "per_system_prompt":
                log.info("No system prompt for per_system_prompt analysis; signaling fallback")
                raise ResolveError("UnsupportedInputType", "No system prompt found. Using fallback model.")
            log.error(
                "No extractable text for auto-classification input_type=%s",
                type(body.get("input")).__name__,
            )
            raise ResolveError("UnsupportedInputType", "We currently only support texts.")

        text, source = extracted
        log.info(
            "Auto-classifying source=%s prompt_len=%d policy=%s retries=%d",
            source,
            len(text),
            pair.policy,
            self._retries,
        )

        intent = pair.intent
        if intent == "auto":
            intent = await self.classify_category(text)
            log.info("Category classified category=%s", intent)

        policy = pair.policy
        if policy == "auto":
            policy = await self.classify_policy(text)
            log.info("Policy classified policy=%s", policy)

        return IntentPair(intent=intent, policy=policy)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class ClassificationCache:
    """
    Per-user cache of resolved targets keyed by SHA-256 of the system prompt.

    Entries expire after `ttl_s`; when a user's map is full the oldest entry is
    evicted. Concurrent misses may both write; the last write wins.
    """

    def __init__(self, max_entries_per_user: int = 100, ttl_s: float = 3600.0) -> None:
        self._max_entries = max_entries_per_user
        self._ttl_s = ttl_s
        self._lock = threading.Lock()
        self._cache: Dict[str, Dict[str, Tuple[ResolvedTarget, float]]] = {}

    @staticmethod
    def hash_text(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def get(self, user_id: str, text: str) -> Optional[ResolvedTarget]:
        key = self.hash_text(text)
        with self._lock:
            user_cache = self._cache.get(user_id)
            if not user_cache:
                return None
            entry = user_cache.get(key)
            if entry is None:
                return None
            result, created_at = entry
            if time.time() - created_at > self._ttl_s:
                del user_cache[key]
                if not user_cache:
                    del self._cache[user_id]
                return None
            return result

    def set(self, user_id: str, text: str, result: ResolvedTarget) -> None:
        key = self.hash_text(text)
        with self._lock:
            user_cache = self._cache.setdefault(user_id, {})
            if key not in user_cache and len(user_cache) >= self._max_entries:
                oldest = min(user_cache, key=lambda k: user_cache[k][1])
                del user_cache[oldest]
            user_cache[key] = (result, time.time())

    def size(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._cache.get(user_id, {}))
            return sum(len(v) for v in self._cache.values())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
