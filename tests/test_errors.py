import json

import httpx
import pydantic
import pytest

from waterfall.core.errors import (
    ContentParseError,
    CrashAbandonment,
    ErrorType,
    ValidationError,
    classify_error,
    describe_error,
    policy_for,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.org/events.json")
    response = httpx.Response(status_code=status_code, request=request)
    return httpx.HTTPStatusError("upstream error", request=request, response=response)


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_retryable_statuses_are_transient(status_code: int) -> None:
    assert classify_error(_status_error(status_code)) is ErrorType.TRANSIENT_FETCH


def test_client_error_status_is_unexpected() -> None:
    assert classify_error(_status_error(404)) is ErrorType.UNEXPECTED


def test_transport_errors_and_timeouts_are_transient() -> None:
    request = httpx.Request("GET", "https://example.org")
    assert classify_error(httpx.ConnectError("refused", request=request)) is ErrorType.TRANSIENT_FETCH
    assert classify_error(httpx.ReadTimeout("slow", request=request)) is ErrorType.TRANSIENT_FETCH
    assert classify_error(TimeoutError()) is ErrorType.TRANSIENT_FETCH


def test_decode_errors_are_content_parse() -> None:
    with pytest.raises(json.JSONDecodeError) as excinfo:
        json.loads("{not json")
    assert classify_error(excinfo.value) is ErrorType.CONTENT_PARSE
    assert classify_error(ContentParseError("bad listing")) is ErrorType.CONTENT_PARSE


def test_schema_errors_are_validation() -> None:
    class Record(pydantic.BaseModel):
        title: str

    with pytest.raises(pydantic.ValidationError) as excinfo:
        Record.model_validate({})
    assert classify_error(excinfo.value) is ErrorType.VALIDATION
    assert classify_error(ValidationError("missing date")) is ErrorType.VALIDATION


def test_everything_else_is_unexpected_and_terminal() -> None:
    assert classify_error(KeyError("boom")) is ErrorType.UNEXPECTED
    policy = policy_for(ErrorType.UNEXPECTED)
    assert not policy.retryable
    assert not policy.consumes_budget


def test_crash_abandonment_is_its_own_category() -> None:
    assert classify_error(CrashAbandonment("worker died")) is ErrorType.CRASH_ABANDONMENT


def test_describe_error_truncates_long_messages() -> None:
    message = describe_error(RuntimeError("x" * 50), limit=10)
    assert message == "xxxxxxxxxx...(truncated)"
    assert describe_error(RuntimeError()) == "RuntimeError"
