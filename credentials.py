"""Provider credentials lookup."""

from __future__ import annotations

import logging
import os
from typing import Dict, Mapping, Optional

from errors import CredentialsError
from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)

SUPPORTED_PROVIDERS = ("amazon-bedrock", "openai", "anthropic")

Credentials = Dict[str, str]
Secrets = Mapping[str, str]


class SecretStore:
    """Source of raw per-user, per-provider secrets."""

    def get_secret(self, user_id: str, provider: str) -> Secrets:
        raise NotImplementedError


class EnvSecretStore(SecretStore):
    """Process environment secrets, shared by every user."""

    _ENV_KEYS: Dict[str, Dict[str, str]] = {
        "amazon-bedrock": {
            "access_key_id": "AWS_ACCESS_KEY_ID",
            "secret_access_key": "AWS_SECRET_ACCESS_KEY",
            "region": "AWS_REGION",
        },
        "openai": {"api_key": "OPENAI_API_KEY"},
        "anthropic": {"api_key": "ANTHROPIC_API_KEY"},
    }

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ

    def get_secret(self, user_id: str, provider: str) -> Secrets:
        env = os.environ if self._environ is None else self._environ
        keys = self._ENV_KEYS.get(provider, {})
        return {name: env.get(var, "") for name, var in keys.items()}


def shape_credentials(provider: str, secrets: Secrets) -> Credentials:
    """Project raw secrets onto the shape each provider expects."""
    if provider == "amazon-bedrock":
        creds = {
            "access_key_id": secrets.get("access_key_id", "") or "",
            "secret_access_key": secrets.get("secret_access_key", "") or "",
            "region": secrets.get("region", "") or "",
        }
    elif provider in ("openai", "anthropic"):
        creds = {"api_key": secrets.get("api_key", "") or ""}
    else:
        raise CredentialsError("Unsupported", f"Unsupported provider: {provider}")

    missing = [k for k, v in creds.items() if not v]
    if missing:
        raise CredentialsError(
            "Missing",
            f'Missing credentials for provider "{provider}": {", ".join(missing)}',
        )
    return creds


class CredentialsService:
    """Resolve credentials for (user_id, provider) through a SecretStore."""

    def __init__(self, store: SecretStore) -> None:
        self._store = store

    def get_credentials(self, user_id: str, provider: str) -> Credentials:
        if provider not in SUPPORTED_PROVIDERS:
            raise CredentialsError("Unsupported", f"Unsupported provider: {provider}")
        try:
            secrets = self._store.get_secret(user_id, provider)
        except CredentialsError:
            raise
        except Exception as e:
            raise CredentialsError(
                "LookupFailed",
                f'Failed to retrieve credentials for provider "{provider}"',
                cause=e,
            ) from e

        creds = shape_credentials(provider, secrets)
        log.debug(
            "Credentials resolved user_id=%s provider=%s key=%s",
            user_id,
            provider,
            mask_secret(creds.get("api_key") or creds.get("access_key_id", "")),
        )
        return creds
