from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum

import httpx
import pydantic

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class ErrorType(str, Enum):
    TRANSIENT_FETCH = "transient_fetch"
    CONTENT_PARSE = "content_parse"
    VALIDATION = "validation"
    UNEXPECTED = "unexpected"
    CRASH_ABANDONMENT = "crash_abandonment"
    MANUAL_RESET = "manual_reset"


@dataclass(frozen=True, slots=True)
class FailurePolicy:
    retryable: bool
    consumes_budget: bool


# crash_abandonment and manual_reset never reach a worker; the reclaimer and
# the reset path record them directly.
FAILURE_POLICIES: dict[ErrorType, FailurePolicy] = {
    ErrorType.TRANSIENT_FETCH: FailurePolicy(retryable=True, consumes_budget=True),
    ErrorType.CONTENT_PARSE: FailurePolicy(retryable=True, consumes_budget=True),
    ErrorType.VALIDATION: FailurePolicy(retryable=False, consumes_budget=False),
    ErrorType.UNEXPECTED: FailurePolicy(retryable=False, consumes_budget=False),
}


class PipelineError(Exception):
    """Base class for classified per-item failures."""

    error_type: ErrorType = ErrorType.UNEXPECTED


class TransientFetchError(PipelineError):
    """Network failure, timeout or retryable upstream status."""

    error_type = ErrorType.TRANSIENT_FETCH


class ContentParseError(PipelineError):
    """Payload could not be decoded or parsed."""

    error_type = ErrorType.CONTENT_PARSE


class ValidationError(PipelineError):
    """Parsed record does not satisfy the required schema."""

    error_type = ErrorType.VALIDATION


class CrashAbandonment(PipelineError):
    """A claimed item was never completed by its worker."""

    error_type = ErrorType.CRASH_ABANDONMENT


def classify_error(exc: BaseException) -> ErrorType:
    if isinstance(exc, PipelineError):
        return exc.error_type
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUS_CODES:
            return ErrorType.TRANSIENT_FETCH
        return ErrorType.UNEXPECTED
    if isinstance(exc, (httpx.TransportError, TimeoutError)):
        return ErrorType.TRANSIENT_FETCH
    if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
        return ErrorType.CONTENT_PARSE
    if isinstance(exc, pydantic.ValidationError):
        return ErrorType.VALIDATION
    return ErrorType.UNEXPECTED


def policy_for(error_type: ErrorType) -> FailurePolicy:
    return FAILURE_POLICIES.get(error_type, FAILURE_POLICIES[ErrorType.UNEXPECTED])


def describe_error(exc: BaseException, *, limit: int = 2000) -> str:
    message = str(exc) or exc.__class__.__name__
    if len(message) > limit:
        return f"{message[:limit]}...(truncated)"
    return message
