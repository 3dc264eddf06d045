"""
Tests for skillsync/connectors/http.py - rate-limit aware provider HTTP client.
"""
import httpx
import pytest

from skillsync.core.retry import ExponentialBackoff


def _client(handler, max_retries=3, max_wait_seconds=900.0, rate_limit_check=None):
    from skillsync.connectors.http import RateLimitedClient

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = RateLimitedClient(
        "github",
        base_url="https://api.test",
        backoff=ExponentialBackoff(max_retries=max_retries, base_delay=1.0, max_delay=8.0, jitter=False),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
        max_wait_seconds=max_wait_seconds,
        rate_limit_check=rate_limit_check,
    )
    return client, sleeps


class TestRetryAfterParsing:

    def test_delta_seconds(self):
        from skillsync.connectors.http import parse_retry_after
        assert parse_retry_after("30") == 30.0

    def test_http_date(self):
        from skillsync.connectors.http import parse_retry_after

        # Wed, 21 Oct 2026 07:28:00 GMT, 60s after "now"
        now = 1792567620.0
        assert parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT", now=now) == pytest.approx(60.0)

    def test_date_in_past_is_zero(self):
        from skillsync.connectors.http import parse_retry_after
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unusable_values(self, value):
        from skillsync.connectors.http import parse_retry_after
        assert parse_retry_after(value) is None


class TestRateLimitDetection:

    def test_429_with_retry_after(self):
        from skillsync.connectors.http import rate_limit_delay

        response = httpx.Response(429, headers={"Retry-After": "12"})

        assert rate_limit_delay(response) == (True, 12.0)

    def test_github_primary_limit(self):
        """GitHub answers 403 with X-RateLimit-Remaining: 0 and a reset epoch."""
        from skillsync.connectors.http import rate_limit_delay

        response = httpx.Response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1000"})

        assert rate_limit_delay(response, now=940.0) == (True, 60.0)

    def test_gitlab_ratelimit_reset(self):
        from skillsync.connectors.http import rate_limit_delay

        response = httpx.Response(429, headers={"RateLimit-Reset": "1010"})

        assert rate_limit_delay(response, now=1000.0) == (True, 10.0)

    def test_plain_403_is_not_rate_limit(self):
        from skillsync.connectors.http import rate_limit_delay

        response = httpx.Response(403, headers={"X-RateLimit-Remaining": "42"})

        assert rate_limit_delay(response) == (False, None)


class TestRateLimitedClient:

    @pytest.mark.asyncio
    async def test_retries_same_request_after_429(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return httpx.Response(200, json={"ok": True})

        client, sleeps = _client(handler)
        async with client:
            body = await client.get_json("/user/repos", params={"page": 2})

        assert body == {"ok": True}
        assert calls == ["https://api.test/user/repos?page=2"] * 2
        assert sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_server_errors_back_off_exponentially(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json=[])

        client, sleeps = _client(handler)
        async with client:
            await client.get("/x")

        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_escalates_after_retries(self):
        from skillsync.core.errors import RateLimitError

        client, sleeps = _client(lambda request: httpx.Response(429, headers={"Retry-After": "1"}), max_retries=2)

        async with client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.get("/x")

        assert exc_info.value.retry_after == 1.0
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_wait_above_limit_escalates_immediately(self):
        from skillsync.core.errors import RateLimitError

        client, sleeps = _client(
            lambda request: httpx.Response(429, headers={"Retry-After": "3600"}),
            max_wait_seconds=60.0,
        )

        async with client:
            with pytest.raises(RateLimitError):
                await client.get("/x")

        assert sleeps == []

    @pytest.mark.asyncio
    async def test_transport_error_becomes_upstream_unavailable(self):
        from skillsync.core.errors import UpstreamUnavailableError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, sleeps = _client(handler, max_retries=1)
        async with client:
            with pytest.raises(UpstreamUnavailableError):
                await client.get("/x")

        assert len(sleeps) == 1

    @pytest.mark.asyncio
    async def test_401_raises_auth_error_without_retry(self):
        from skillsync.core.errors import AuthError

        client, sleeps = _client(lambda request: httpx.Response(401))
        async with client:
            with pytest.raises(AuthError):
                await client.get("/x")

        assert sleeps == []

    @pytest.mark.asyncio
    async def test_404_raises_provider_request_error(self):
        from skillsync.core.errors import ProviderRequestError

        client, _ = _client(lambda request: httpx.Response(404))
        async with client:
            with pytest.raises(ProviderRequestError) as exc_info:
                await client.get("/missing")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_custom_rate_limit_check_retries_ok_responses(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(200, json={"ok": False, "error": "ratelimited"})
            return httpx.Response(200, json={"ok": True})

        def check(response):
            return response.json().get("error") == "ratelimited", 4.0

        client, sleeps = _client(handler, rate_limit_check=check)
        async with client:
            body = await client.get_json("/x")

        assert body == {"ok": True}
        assert sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_non_json_body_raises_upstream_unavailable(self):
        from skillsync.core.errors import UpstreamUnavailableError

        client, sleeps = _client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        async with client:
            with pytest.raises(UpstreamUnavailableError):
                await client.get_json("/user/repos")

        assert sleeps == []
