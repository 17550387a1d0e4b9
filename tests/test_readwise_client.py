"""Tests for the request, retry and response handling in readwise.py"""

import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from tagmapper.core.settings import Settings
from tagmapper.providers.readwise import (
    DEFAULT_RETRY_DELAY,
    ReadwiseAuthError,
    ReadwiseClient,
    ReadwiseContentTypeError,
    ReadwiseMissingTokenError,
    ReadwiseNetworkError,
    ReadwiseRateLimitError,
    ReadwiseUnexpectedResponseError,
    parse_retry_after,
)


class Recorder:
    """MockTransport handler replaying canned responses in order."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def make_client(recorder, sleeps=None, **kwargs) -> ReadwiseClient:
    sleep = sleeps.append if sleeps is not None else (lambda _: None)
    return ReadwiseClient(
        "test-token",
        transport=httpx.MockTransport(recorder),
        sleep=sleep,
        **kwargs,
    )


def rate_limited(retry_after: str | None = None) -> httpx.Response:
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    return httpx.Response(429, headers=headers)


class TestClientConstruction:
    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_missing_token_fails_fast(self, token):
        with pytest.raises(ReadwiseMissingTokenError):
            ReadwiseClient(token)

    def test_from_settings(self):
        settings = Settings(
            app_env="test",
            log_level="INFO",
            readwise_base_url="http://localhost:9000/api",
            readwise_timeout=5.0,
            rate_limit_max_retries=1,
            rate_limit_default_delay=0.25,
            cookie_secure=False,
        )
        recorder = Recorder(rate_limited(), httpx.Response(200, json={"ok": True}))
        sleeps: list[float] = []
        client = ReadwiseClient.from_settings(
            "tok", settings, transport=httpx.MockTransport(recorder), sleep=sleeps.append
        )

        assert client.request("GET", "/v3/list/") == {"ok": True}
        assert sleeps == [0.25]
        assert str(recorder.requests[0].url).startswith("http://localhost:9000/api/v3/list/")


class TestRequest:
    def test_sends_token_header(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        with make_client(recorder) as client:
            assert client.request("GET", "/v3/list/") == {"ok": True}

        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Token test-token"
        assert request.url.path == "/api/v3/list/"

    def test_non_2xx_fails_immediately(self):
        recorder = Recorder(httpx.Response(500))
        client = make_client(recorder)

        with pytest.raises(ReadwiseNetworkError) as exc_info:
            client.request("GET", "/v3/list/")

        assert exc_info.value.status_code == 500
        assert exc_info.value.reason == "Internal Server Error"
        assert "500" in str(exc_info.value)
        assert len(recorder.requests) == 1

    def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(ReadwiseNetworkError) as exc_info:
            client.request("GET", "/v3/list/")
        assert exc_info.value.status_code is None


class TestRateLimitRetry:
    def test_retry_after_seconds_then_success(self):
        recorder = Recorder(
            rate_limited("1"),
            rate_limited("1"),
            httpx.Response(200, json={"results": []}),
        )
        sleeps: list[float] = []
        client = make_client(recorder, sleeps)

        assert client.request("GET", "/v3/list/") == {"results": []}
        assert sleeps == [1.0, 1.0]
        assert len(recorder.requests) == 3

    def test_waits_before_final_call(self):
        """Uses the real sleep, so the 1s wait is actually observed."""
        recorder = Recorder(rate_limited("1"), httpx.Response(200, json={"ok": True}))
        client = ReadwiseClient("tok", transport=httpx.MockTransport(recorder))

        start = time.monotonic()
        assert client.request("GET", "/v3/list/") == {"ok": True}
        assert time.monotonic() - start >= 1.0

    def test_default_delay_without_header(self):
        recorder = Recorder(rate_limited(), httpx.Response(200, json=[]))
        sleeps: list[float] = []
        make_client(recorder, sleeps).request("GET", "/v3/list/")
        assert sleeps == [DEFAULT_RETRY_DELAY]

    def test_unparseable_header_uses_default(self):
        recorder = Recorder(rate_limited("soon"), httpx.Response(200, json=[]))
        sleeps: list[float] = []
        make_client(recorder, sleeps).request("GET", "/v3/list/")
        assert sleeps == [DEFAULT_RETRY_DELAY]

    def test_gives_up_after_five_retries(self):
        recorder = Recorder(*[rate_limited("1") for _ in range(6)], httpx.Response(200, json={}))
        sleeps: list[float] = []
        client = make_client(recorder, sleeps)

        with pytest.raises(ReadwiseRateLimitError):
            client.request("GET", "/v3/list/")

        # initial call + 5 retries, the queued 200 is never requested
        assert len(recorder.requests) == 6
        assert len(sleeps) == 5
        assert len(recorder.responses) == 1

    def test_custom_retry_budget(self):
        recorder = Recorder(rate_limited(), rate_limited())
        client = make_client(recorder, max_retries=1)
        with pytest.raises(ReadwiseRateLimitError):
            client.request("GET", "/v3/list/")
        assert len(recorder.requests) == 2

    def test_non_429_error_after_retry_is_not_retried(self):
        recorder = Recorder(rate_limited("0"), httpx.Response(503))
        client = make_client(recorder)
        with pytest.raises(ReadwiseNetworkError) as exc_info:
            client.request("GET", "/v3/list/")
        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 2


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("3") == 3.0
        assert parse_retry_after("0.5") == 0.5
        assert parse_retry_after("0") == 0.0

    @pytest.mark.parametrize("value", [None, "", "-1", "later", "inf"])
    def test_unusable(self, value):
        assert parse_retry_after(value) is None

    def test_http_date_in_future(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=30), usegmt=True)
        assert parse_retry_after(header, now=now) == pytest.approx(30.0)

    def test_http_date_in_past(self):
        now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(seconds=30), usegmt=True)
        assert parse_retry_after(header, now=now) is None


class TestResponseBody:
    def test_no_content(self):
        client = make_client(Recorder(httpx.Response(204)))
        assert client.request("PATCH", "/v3/update/x/") is None

    def test_reset_content(self):
        client = make_client(Recorder(httpx.Response(205)))
        assert client.request("PATCH", "/v3/update/x/") is None

    def test_empty_body(self):
        client = make_client(Recorder(httpx.Response(200, content=b"  ")))
        assert client.request("GET", "/v3/list/") is None

    def test_html_rejected(self):
        client = make_client(Recorder(httpx.Response(
            200, headers={"Content-Type": "text/html"}, content=b"<html></html>"
        )))
        with pytest.raises(ReadwiseContentTypeError, match="text/html"):
            client.request("GET", "/v3/list/")

    def test_html_rejected_even_if_json_parseable(self):
        client = make_client(Recorder(httpx.Response(
            200, headers={"Content-Type": "text/html; charset=utf-8"}, content=b'{"a": 1}'
        )))
        with pytest.raises(ReadwiseContentTypeError):
            client.request("GET", "/v3/list/")

    def test_json_with_charset(self):
        client = make_client(Recorder(httpx.Response(
            200, headers={"Content-Type": "application/json; charset=utf-8"}, content=b'{"a": 1}'
        )))
        assert client.request("GET", "/v3/list/") == {"a": 1}

    def test_untyped_json_text_fallback(self):
        client = make_client(Recorder(httpx.Response(200, content=b'{"a": 1}')))
        assert client.request("GET", "/v3/list/") == {"a": 1}

    def test_untyped_non_json_text(self):
        client = make_client(Recorder(httpx.Response(
            200, headers={"Content-Type": "text/plain"}, content=b"hello"
        )))
        with pytest.raises(ReadwiseContentTypeError):
            client.request("GET", "/v3/list/")


class TestValidateToken:
    def test_valid(self):
        recorder = Recorder(httpx.Response(204))
        assert make_client(recorder).validate_token() is True
        assert recorder.requests[0].url.path == "/api/v2/auth/"

    def test_invalid(self):
        with pytest.raises(ReadwiseAuthError, match="Invalid Readwise access token"):
            make_client(Recorder(httpx.Response(401))).validate_token()

    def test_unexpected(self):
        with pytest.raises(ReadwiseUnexpectedResponseError, match="500"):
            make_client(Recorder(httpx.Response(500))).validate_token()
