"""
Rate-limit aware HTTP client shared by all provider adapters.

A failed request is retried as the SAME request: callers only advance their
cursor after a response comes back successfully, so a rate-limited page is
refetched rather than skipped.
"""

import asyncio
import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from skillsync.core.config import settings
from skillsync.core.errors import (
    AuthError,
    IntegrationError,
    ProviderRequestError,
    RateLimitError,
    UpstreamUnavailableError,
)
from skillsync.core.retry import ExponentialBackoff

logger = logging.getLogger("skillsync.http_client")

Sleep = Callable[[float], Awaitable[Any]]
# response -> (is_rate_limited, seconds_to_wait)
RateLimitCheck = Callable[[httpx.Response], tuple[bool, Optional[float]]]


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    now = time.time() if now is None else now
    return max(0.0, when.timestamp() - now)


def _seconds_until_epoch(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    if value is None:
        return None
    try:
        reset_at = float(value)
    except ValueError:
        return None
    now = time.time() if now is None else now
    return max(0.0, reset_at - now)


def rate_limit_delay(response: httpx.Response, now: Optional[float] = None) -> tuple[bool, Optional[float]]:
    """
    Decide whether a response is a rate-limit signal.

    Returns (is_rate_limited, seconds_to_wait). ``seconds_to_wait`` is None
    when the provider gave no hint and the caller should back off on its own.
    """
    headers = response.headers
    status = response.status_code

    if status == 429:
        delay = parse_retry_after(headers.get("retry-after"), now)
        if delay is None:
            delay = _seconds_until_epoch(headers.get("ratelimit-reset") or headers.get("x-ratelimit-reset"), now)
        return True, delay

    # GitHub signals primary limits with 403 and a zero remaining budget,
    # secondary limits with 403 and Retry-After
    if status == 403:
        if headers.get("x-ratelimit-remaining") == "0":
            return True, _seconds_until_epoch(headers.get("x-ratelimit-reset"), now)
        if "retry-after" in headers:
            return True, parse_retry_after(headers.get("retry-after"), now)

    return False, None


class RateLimitedClient:
    """
    Thin wrapper over httpx.AsyncClient that honours provider rate limits.

    - 429 / GitHub 403-with-zero-remaining: wait for the provider-specified
      duration (Retry-After, X-RateLimit-Reset, RateLimit-Reset) or back off
      exponentially with jitter, then retry the same request.
    - 5xx and transport errors: exponential backoff, then retry.
    - 401 raises AuthError; other 4xx raise ProviderRequestError (no retry).
    - A 200 whose body is not JSON raises UpstreamUnavailableError from
      get_json / parse_json.
    - After ``backoff.max_retries`` retries the last error is escalated.

    Providers that signal limits inside a 200 body pass their own
    ``rate_limit_check``; it replaces the status/header check above.
    """

    def __init__(
        self,
        provider: str,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        *,
        backoff: Optional[ExponentialBackoff] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
        timeout: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
        rate_limit_check: Optional[RateLimitCheck] = None,
    ):
        self.provider = provider
        self.backoff = backoff or ExponentialBackoff.from_settings()
        self.max_wait_seconds = max_wait_seconds if max_wait_seconds is not None else settings.RATE_LIMIT_MAX_WAIT_SECONDS
        self._sleep = sleep or asyncio.sleep
        self._rate_limit_check = rate_limit_check or rate_limit_delay
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout or settings.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempt = 0
        while True:
            failure: IntegrationError
            retry_after: Optional[float] = None
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                failure = UpstreamUnavailableError(
                    f"{self.provider} request failed: {type(e).__name__}: {e}",
                    provider=self.provider,
                )
            else:
                limited, retry_after = self._rate_limit_check(response)
                if limited:
                    failure = RateLimitError(
                        f"{self.provider} rate limit hit on {method} {response.request.url.path}",
                        provider=self.provider,
                        retry_after=retry_after,
                    )
                elif response.status_code >= 500:
                    retry_after = parse_retry_after(response.headers.get("retry-after"))
                    failure = UpstreamUnavailableError(
                        f"{self.provider} returned {response.status_code} for {method} {response.request.url.path}",
                        provider=self.provider,
                    )
                elif response.status_code == 401:
                    raise AuthError(f"{self.provider} rejected the credential (401)", provider=self.provider)
                elif response.status_code >= 400:
                    raise ProviderRequestError(
                        f"{self.provider} returned {response.status_code} for {method} {response.request.url.path}",
                        provider=self.provider,
                        status_code=response.status_code,
                    )
                else:
                    return response

            if not self.backoff.should_retry(attempt):
                logger.error(f"{self.provider}: giving up after {attempt + 1} attempt(s): {failure.message}")
                raise failure

            delay = self.backoff.next_delay(attempt, retry_after)
            if delay > self.max_wait_seconds:
                logger.error(
                    f"{self.provider}: provider asked to wait {delay:.0f}s, above the {self.max_wait_seconds:.0f}s limit"
                )
                raise failure

            logger.warning(
                f"{self.provider}: {type(failure).__name__}, retrying in {delay:.2f}s (attempt {attempt + 1})",
                extra={"provider": self.provider, "retry_after": retry_after, "attempt": attempt + 1},
            )
            await self._sleep(delay)
            attempt += 1

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def get_json(self, url: str, **kwargs) -> Any:
        return self.parse_json(await self.get(url, **kwargs))

    def parse_json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            # Maintenance pages and proxies answer 200 with HTML
            raise UpstreamUnavailableError(
                f"{self.provider} returned a non-JSON body for {response.request.url.path}",
                provider=self.provider,
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RateLimitedClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
