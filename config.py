"""Configuration management for the LLM gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar


_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})

Number = TypeVar("Number", int, float)


def _env_raw(name: str) -> Optional[str]:
    """Stripped value of `name`, or None when it is unset or blank."""
    v = (os.getenv(name) or "").strip()
    return v or None


def _env_bool(name: str, default: bool) -> bool:
    v = _env_raw(name)
    return default if v is None else v.lower() in _TRUE_VALUES


def _env_number(name: str, default: Number, cast: Callable[[str], Number]) -> Number:
    """Numeric variable; unparsable values fall back to `default`."""
    v = _env_raw(name)
    if v is None:
        return default
    try:
        return cast(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    return _env_number(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


def _env_str(name: str, default: str) -> str:
    v = _env_raw(name)
    return default if v is None else v


def _csv_list(name: str) -> List[str]:
    """Parse comma-separated environment variable into an ordered, de-duplicated list."""
    v = os.getenv(name, "")
    out: List[str] = []
    for x in v.split(","):
        x = x.strip()
        if x and x.lower() != "empty" and x not in out:
            out.append(x)
    return out


ANALYSIS_TARGETS = ("per_prompt", "per_system_prompt")


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Catalog data
    data_path: str
    catalog_ttl_s: int
    catalog_refresh_on_startup: bool
    openrouter_frontend_url: str
    models_dev_url: str
    data_fetch_retries: int

    # Routing defaults used when no verified request context is available
    default_user_id: str
    enabled_providers: List[str]
    fallback_provider_model: str
    analysis_target: str

    # API key verification backend (empty = disabled)
    backend_url: str

    # Auto classification
    classifier_provider: str
    classifier_model: str
    classifier_retries: int
    classification_cache_ttl_s: float
    classification_cache_max_entries: int

    # Upstream providers
    openai_base_url: str
    anthropic_base_url: str
    anthropic_version: str
    anthropic_default_max_tokens: int

    # Timeouts and limits
    request_timeout_s: float
    max_request_bytes: int

    # Server settings
    port: int
    log_level: str
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            data_path=_env_str("DATA_PATH", "./data"),
            catalog_ttl_s=_env_int("CATALOG_TTL_S", 12 * 60 * 60),
            catalog_refresh_on_startup=_env_bool("CATALOG_REFRESH_ON_STARTUP", False),
            openrouter_frontend_url=_env_str(
                "OPENROUTER_FRONTEND_URL", "https://openrouter.ai/api/frontend/models"
            ),
            models_dev_url=_env_str("MODELS_DEV_URL", "https://models.dev/api.json"),
            data_fetch_retries=_env_int("DATA_FETCH_RETRIES", 5),
            default_user_id=_env_str("DEFAULT_USER_ID", "local"),
            enabled_providers=_csv_list("ENABLED_PROVIDERS"),
            fallback_provider_model=_env_str("FALLBACK_PROVIDER_MODEL", ""),
            analysis_target=_env_str("ANALYSIS_TARGET", "per_prompt").lower(),
            backend_url=_env_str("BACKEND_URL", "").rstrip("/"),
            classifier_provider=_env_str("CLASSIFIER_PROVIDER", "amazon-bedrock"),
            classifier_model=_env_str("CLASSIFIER_MODEL", "moonshotai.kimi-k2.5"),
            classifier_retries=_env_int("CLASSIFIER_RETRIES", 5),
            classification_cache_ttl_s=_env_float("CLASSIFICATION_CACHE_TTL_S", 3600.0),
            classification_cache_max_entries=_env_int("CLASSIFICATION_CACHE_MAX_ENTRIES", 100),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            anthropic_base_url=_env_str("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1").rstrip("/"),
            anthropic_version=_env_str("ANTHROPIC_VERSION", "2023-06-01"),
            anthropic_default_max_tokens=_env_int("ANTHROPIC_DEFAULT_MAX_TOKENS", 4096),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 60.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            port=_env_int("PORT", 8000),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_path=_env_str("LOG_PATH", "/var/log/llm-gateway/llm-gateway.log"),
            user_agent=_env_str("USER_AGENT", "llm-gateway/0.3.0"),
        )

    def fallback_pair(self) -> Optional[str]:
        """Configured fallback "provider/model" string, if any."""
        return self.fallback_provider_model or None

    def validate(self) -> None:
        """Validate configuration."""
        if not self.data_path:
            raise ValueError("DATA_PATH must be non-empty")
        if self.catalog_ttl_s <= 0:
            raise ValueError("CATALOG_TTL_S must be > 0")
        if self.data_fetch_retries < 0:
            raise ValueError("DATA_FETCH_RETRIES must be >= 0")
        if self.analysis_target not in ANALYSIS_TARGETS:
            raise ValueError(f"ANALYSIS_TARGET must be one of {', '.join(ANALYSIS_TARGETS)}")
        if self.fallback_provider_model and "/" not in self.fallback_provider_model:
            raise ValueError("FALLBACK_PROVIDER_MODEL must look like provider/model")
        if not self.classifier_model:
            raise ValueError("CLASSIFIER_MODEL must be non-empty")
        if self.classifier_retries < 0:
            raise ValueError("CLASSIFIER_RETRIES must be >= 0")
        if self.classification_cache_ttl_s <= 0:
            raise ValueError("CLASSIFICATION_CACHE_TTL_S must be > 0")
        if self.classification_cache_max_entries <= 0:
            raise ValueError("CLASSIFICATION_CACHE_MAX_ENTRIES must be > 0")
        if self.anthropic_default_max_tokens <= 0:
            raise ValueError("ANTHROPIC_DEFAULT_MAX_TOKENS must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
