import socket
import urllib.error

import pytest

from framefarm.services.generation.providers.base import GenerationError
from framefarm.services.generation.retry import backoff_delay, is_transient_error, retry_call


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_retry_call_recovers_from_transient_errors():
    sleeps = []
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionResetError("ECONNRESET")
        return "ok"

    assert retry_call(flaky, sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_retry_call_reraises_after_max_attempts():
    sleeps = []
    calls = {"n": 0}

    def always_down():
        calls["n"] += 1
        raise urllib.error.HTTPError("https://queue.example", 503, "Service Unavailable", {}, None)

    with pytest.raises(urllib.error.HTTPError):
        retry_call(always_down, max_attempts=3, sleep=sleeps.append)
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_retry_call_does_not_retry_permanent_errors():
    sleeps = []

    def bad_request():
        raise ValueError("prompt rejected")

    with pytest.raises(ValueError):
        retry_call(bad_request, sleep=sleeps.append)
    assert sleeps == []


def test_retry_call_uses_custom_predicate_and_delays():
    sleeps = []
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if calls["n"] == 1:
            raise KeyError("x")
        return calls["n"]

    result = retry_call(op, is_retryable=lambda e: isinstance(e, KeyError), sleep=sleeps.append, delay_fn=lambda a: 2.0 * a)
    assert result == 2
    assert sleeps == [2.0]


@pytest.mark.parametrize(
    "exc,expected",
    [
        (urllib.error.HTTPError("u", 502, "Bad Gateway", {}, None), True),
        (urllib.error.HTTPError("u", 504, "Gateway Timeout", {}, None), True),
        (urllib.error.HTTPError("u", 400, "Bad Request", {}, None), False),
        (urllib.error.HTTPError("u", 401, "Unauthorized", {}, None), False),
        (urllib.error.URLError(ConnectionRefusedError("refused")), True),
        (urllib.error.URLError("timed out"), True),
        (socket.timeout("read timed out"), True),
        (ConnectionResetError(), True),
        (GenerationError("empty download", transient=True), True),
        (GenerationError("request failed"), False),
        (RuntimeError("fetch failed"), True),
        (ValueError("bad json"), False),
    ],
)
def test_is_transient_error(exc, expected):
    assert is_transient_error(exc) is expected
