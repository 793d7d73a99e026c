"""
Error hierarchy for the LLM gateway.

Every error carries a `reason` drawn from a closed set per class, so callers
can branch on the kind of failure without string matching on messages:

- ParseError: the request's `model` field is malformed (terminal, 400)
- ResolveError: the request cannot be resolved at all (terminal, 400)
- NoProviderAvailableError: catalog candidates exist but none is usable
- DataFetchError: catalog data or classifier calls failed (retried, then surfaced)
- ClassificationError: the auto classifier ran out of attempts
- CredentialsError: no usable secret for the chosen provider (terminal)
- ProviderInvocationError: the upstream call failed (retried via exclusions)
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    reasons: frozenset = frozenset()

    def __init__(self, reason: str, message: str, *, cause: Optional[BaseException] = None):
        if self.reasons and reason not in self.reasons:
            raise ValueError(f"{type(self).__name__} does not accept reason {reason!r}")
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.cause = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(reason={self.reason!r}, message={self.message!r})"


class ParseError(GatewayError):
    """Malformed `provider/model` or `intent/policy` string."""

    reasons = frozenset(
        {
            "BadFormatting",
            "EmptyProvider",
            "EmptyModel",
            "EmptyIntent",
            "EmptyIntentPolicy",
            "InvalidCharacters",
        }
    )


class ResolveError(GatewayError):
    """The request shape cannot be resolved to a target."""

    reasons = frozenset({"InvalidModelType", "UnsupportedInputType"})


class NoProviderAvailableError(GatewayError):
    """No ranked candidate has a provider the caller enabled."""

    reasons = frozenset({"NoProviderConfigured"})

    def __init__(self, reason: str, message: str, *, providers: Optional[list] = None):
        super().__init__(reason, message)
        self.providers = list(providers or [])


class DataFetchError(GatewayError):
    """Catalog data or classification call failure."""

    reasons = frozenset({"APICallFailed", "JSONParseFailed", "DataParseFailed"})


class ClassificationError(DataFetchError):
    """Auto classification ran out of attempts."""

    def __init__(self, message: str, *, attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__("APICallFailed", message, cause=cause)
        self.attempts = attempts


class CredentialsError(GatewayError):
    """Credentials for a provider are missing or unsupported."""

    reasons = frozenset({"Unsupported", "Missing", "LookupFailed"})


class ProviderInvocationError(GatewayError):
    """
    Upstream generation failed.

    `retryable` is False for failures that a different target cannot fix
    (e.g. malformed request input).
    """

    reasons = frozenset({"APICallFailed", "EmptyStream", "StreamError", "InvalidInput"})

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(reason, message, cause=cause)
        self.status_code = status_code
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.reason != "InvalidInput"
