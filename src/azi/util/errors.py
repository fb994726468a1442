from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional, Sequence


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    PROVIDER_ERROR = 4
    RUNTIME_ERROR = 5
    PARTIAL_FAILURE = 6
    INTERRUPTED = 130


class AziError(Exception):
    """Base error for the reporting engine."""


class ConfigError(AziError):
    """Raised for configuration or argument issues."""


class AuthenticationError(AziError):
    """Raised when no valid token can be obtained or the provider rejects it."""


class AuthenticationExpired(AuthenticationError):
    """The device-code session expired before the user completed sign-in."""


class AuthenticationDenied(AuthenticationError):
    """The user declined the device-code authorization request."""


class RefreshRejected(AuthenticationError):
    """The refresh token is no longer accepted (invalid_grant)."""


class TokenCacheUnavailable(AziError):
    """The token cache file could not be written. Never fatal for a run."""


class ProviderError(AziError):
    """
    Unexpected 4xx/5xx response from the provider, carrying its status and message.
    """

    def __init__(self, status: int, code: Optional[str], message: str, *, url: Optional[str] = None) -> None:
        self.status = status
        self.code = code
        self.message = message
        self.url = url
        label = f"{status} {code}" if code else str(status)
        super().__init__(f"{label}: {message}")


class RateLimited(ProviderError):
    """Still throttled (HTTP 429) after all retry attempts."""


class ResourceNotFound(ProviderError):
    """HTTP 404 where the caller did not declare absence as valid."""


class TransportError(AziError):
    """Network failure (DNS, connection reset, timeout) after retries."""


class OperationCancelled(AziError):
    """Outstanding requests were aborted after an interrupt."""


class UnsupportedCredential(AziError):
    """A cluster kubeconfig uses a credential type the client cannot present."""


class PartialFailure(AziError):
    """One or more concurrent sub-fetches failed while the report was still assembled."""

    def __init__(self, failures: Sequence[Any]) -> None:
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} partial failure(s) in report")


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return int(ExitCode.INTERRUPTED)
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthenticationError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, (ProviderError, TransportError)):
        return int(ExitCode.PROVIDER_ERROR)
    if isinstance(exc, PartialFailure):
        return int(ExitCode.PARTIAL_FAILURE)
    if isinstance(exc, OperationCancelled):
        return int(ExitCode.INTERRUPTED)
    if isinstance(exc, AziError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def describe_error(exc: BaseException) -> str:
    """
    Short single-line description used for per-entity failure annotations.
    """
    text = str(exc).strip() or exc.__class__.__name__
    return text.splitlines()[0]
