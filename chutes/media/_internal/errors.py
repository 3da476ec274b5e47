from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    type: str
    message: str
    provider_code: str | None = None
    retryable: bool = False


class ChutesError(RuntimeError):
    def __init__(self, info: ErrorInfo):
        super().__init__(info.message)
        self.info = info


def auth_error(message: str, provider_code: str | None = None) -> ChutesError:
    return ChutesError(ErrorInfo(type="AuthError", message=message, provider_code=provider_code))


def rate_limit_error(message: str, provider_code: str | None = None) -> ChutesError:
    return ChutesError(
        ErrorInfo(
            type="RateLimitError",
            message=message,
            provider_code=provider_code,
            retryable=True,
        )
    )


def invalid_request_error(message: str, provider_code: str | None = None) -> ChutesError:
    return ChutesError(
        ErrorInfo(type="InvalidRequestError", message=message, provider_code=provider_code)
    )


def not_supported_error(message: str) -> ChutesError:
    return ChutesError(ErrorInfo(type="NotSupportedError", message=message))


def timeout_error(message: str) -> ChutesError:
    return ChutesError(ErrorInfo(type="TimeoutError", message=message, retryable=True))


def provider_error(message: str, provider_code: str | None = None, retryable: bool = False) -> ChutesError:
    return ChutesError(
        ErrorInfo(type="ProviderError", message=message, provider_code=provider_code, retryable=retryable)
    )


def describe_error(err: ChutesError) -> str:
    code = f" ({err.info.provider_code})" if err.info.provider_code else ""
    retryable = " retryable" if err.info.retryable else ""
    return f"[FAIL]{code}{retryable}: {err.info.type}: {err.info.message}"
