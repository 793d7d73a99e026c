"""Startup helpers: .env loading and configuration dump."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from logger import LOGGER_NAME

log = logging.getLogger(LOGGER_NAME)


def env_file_candidates() -> List[Path]:
    """.env next to the modules first, then in the working directory; duplicates dropped."""
    seen: List[Path] = []
    for path in (Path(__file__).resolve().parent / ".env", Path.cwd().resolve() / ".env"):
        if path not in seen:
            seen.append(path)
    return seen


def load_env_files() -> List[Path]:
    """Apply every existing .env candidate in order; later files override earlier ones."""
    applied = []
    for path in env_file_candidates():
        if not path.is_file():
            continue
        if load_dotenv(dotenv_path=path, override=True):
            applied.append(path)
        log.debug("Read env file path=%s", path)
    if applied:
        log.info("Env files applied: %s", ", ".join(str(p) for p in applied))
    else:
        log.info("No env file applied; using process environment only")
    return applied


def dump_config(config) -> None:
    """Log the effective configuration at startup. Credentials are never logged."""
    log.info("=== LLM gateway startup config ===")
    log.info("DATA_PATH=%s", config.data_path)
    log.info("CATALOG_TTL_S=%s", config.catalog_ttl_s)
    log.info("CATALOG_REFRESH_ON_STARTUP=%s", config.catalog_refresh_on_startup)
    log.info("OPENROUTER_FRONTEND_URL=%s", config.openrouter_frontend_url)
    log.info("MODELS_DEV_URL=%s", config.models_dev_url)
    log.info("ENABLED_PROVIDERS=%s", ",".join(config.enabled_providers) or "<none>")
    log.info("FALLBACK_PROVIDER_MODEL=%s", config.fallback_provider_model or "<hardcoded>")
    log.info("ANALYSIS_TARGET=%s", config.analysis_target)
    log.info("BACKEND_URL=%s", config.backend_url or "<disabled>")
    log.info("CLASSIFIER=%s/%s retries=%s", config.classifier_provider, config.classifier_model, config.classifier_retries)
    log.info(
        "CLASSIFICATION_CACHE ttl_s=%s max_entries=%s",
        config.classification_cache_ttl_s,
        config.classification_cache_max_entries,
    )
    log.info("OPENAI_BASE_URL=%s", config.openai_base_url)
    log.info("ANTHROPIC_BASE_URL=%s", config.anthropic_base_url)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("==================================")
