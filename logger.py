"""Logging configuration for the LLM gateway."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import colorlog

LOGGER_NAME = "llm_gateway"
DEFAULT_LOG_PATH = "/var/log/llm-gateway/llm-gateway.log"

# Third-party loggers capped at WARNING by setup_logging().
NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
COLOR_LOG_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(log_path: str | None = None, level_name: str | None = None) -> logging.Logger:
    """
    Configure the `llm_gateway` logger.

    Records go to `log_path` through a rotating handler (1 MB per file,
    3 backups). The parent directory is created on demand; when the file still
    cannot be opened the handler falls back to stderr.

    `level_name` defaults to LOG_LEVEL. DISABLE turns logging off entirely.
    """
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler, fallback_err = _create_log_handler(log_path or DEFAULT_LOG_PATH)
    handler.setFormatter(_create_log_formatter())
    logger.addHandler(handler)
    logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stderr logging.",
            log_path or DEFAULT_LOG_PATH,
            fallback_err,
        )
    return logger


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Rotating file handler, or a StreamHandler plus the error that prevented it."""
    try:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(log_path, maxBytes=1_048_576, backupCount=3, encoding="utf-8"), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter() -> logging.Formatter:
    if os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes"):
        return colorlog.ColoredFormatter(COLOR_LOG_FORMAT, reset=True, log_colors=LOG_COLORS, style="%")
    return logging.Formatter(LOG_FORMAT)


def mask_secret(secret: str | None, visible: int = 4) -> str:
    """Redact a key for logs: a short prefix plus its length, e.g. `sk-a***(51)`."""
    secret = (secret or "").strip()
    if not secret:
        return "<empty>"
    prefix = secret[:visible] if len(secret) > 2 * visible else ""
    return f"{prefix}***({len(secret)})"
