from __future__ import annotations

import pytest

from azi.util.errors import (
    AuthenticationDenied,
    ConfigError,
    ExitCode,
    OperationCancelled,
    PartialFailure,
    ProviderError,
    RateLimited,
    TokenCacheUnavailable,
    TransportError,
    UnsupportedCredential,
    as_exit_code,
    describe_error,
)


@pytest.mark.parametrize(
    ("exc", "code"),
    [
        (ConfigError("bad"), ExitCode.CONFIG_ERROR),
        (ValueError("bad"), ExitCode.CONFIG_ERROR),
        (AuthenticationDenied("declined"), ExitCode.AUTH_ERROR),
        (RateLimited(429, "TooManyRequests", "slow down"), ExitCode.PROVIDER_ERROR),
        (TransportError("reset"), ExitCode.PROVIDER_ERROR),
        (PartialFailure([]), ExitCode.PARTIAL_FAILURE),
        (OperationCancelled("stop"), ExitCode.INTERRUPTED),
        (KeyboardInterrupt(), ExitCode.INTERRUPTED),
        (TokenCacheUnavailable("disk"), ExitCode.RUNTIME_ERROR),
        (UnsupportedCredential("exec"), ExitCode.RUNTIME_ERROR),
        (RuntimeError("other"), 1),
    ],
)
def test_as_exit_code(exc: BaseException, code: int) -> None:
    assert as_exit_code(exc) == int(code)


def test_provider_error_message_includes_status_and_code() -> None:
    err = ProviderError(403, "AuthorizationFailed", "The client does not have authorization", url="https://x")

    assert str(err) == "403 AuthorizationFailed: The client does not have authorization"
    assert (err.status, err.code, err.url) == (403, "AuthorizationFailed", "https://x")
    assert str(ProviderError(500, None, "boom")) == "500: boom"


def test_describe_error_uses_first_line() -> None:
    assert describe_error(RuntimeError("first\nsecond")) == "first"
    assert describe_error(RuntimeError("")) == "RuntimeError"
