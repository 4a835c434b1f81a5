"""
Resilient HTTP client used by every fetcher.

Wraps aiohttp with a TTL response cache, per-host client-side rate limiting
and a tenacity retry loop (exponential backoff with jitter, ``Retry-After``
override on 429). Every attempt emits one metric event: ``retry`` for an
attempt that will be retried, ``fetch`` for the final outcome or a cache hit.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiohttp
import structlog
from tenacity import RetryCallState

from vulnintel.core.config import Settings, get_settings
from vulnintel.core.errors import FetchError, ParseError, RateLimitError, TransportError
from vulnintel.services.cache import ResponseCache, cache_key, create_response_cache
from vulnintel.services.metrics import KIND_FETCH, KIND_RETRY, MetricsFacade, metrics as default_metrics
from vulnintel.services.rate_limiter import HostRateLimiter
from vulnintel.utils.retry import (
    BackoffPolicy,
    SleepFn,
    build_fetch_retrying,
    retry_after_from_headers,
)

logger = structlog.get_logger(__name__)

NVD_HOST = "services.nvd.nist.gov"


@dataclass
class HttpRequest:
    url: str
    method: str = "GET"
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    json_body: Any = None
    use_cache: Optional[bool] = None
    response_type: str = "json"
    timeout: Optional[float] = None
    max_retries: Optional[int] = None

    @property
    def cacheable(self) -> bool:
        if self.method.upper() != "GET":
            return False
        return self.use_cache is not False

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc.lower() or self.url


class ResilientHttpClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[ResponseCache] = None,
        metrics: Optional[MetricsFacade] = None,
        rate_limiter: Optional[HostRateLimiter] = None,
        sleep: Optional[SleepFn] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache = cache
        self.metrics = metrics or default_metrics
        self.rate_limiter = rate_limiter
        self.policy = BackoffPolicy.from_settings(self.settings)
        self.max_retries = self.settings.max_retries
        self._sleep = sleep
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ResilientHttpClient":
        self._sess()
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.close()

    def _sess(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.http_timeout),
                headers={"User-Agent": self.settings.user_agent},
            )
            self._owns_session = True
        return self.session

    # Test seam: tests replace this to inject a dummy session
    def _get_session(self) -> aiohttp.ClientSession:
        return self._sess()

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        if self.cache is not None:
            await self.cache.close()

    # ────────────────────────────────────────────────────────────
    #  Public API
    # ────────────────────────────────────────────────────────────

    async def fetch(self, request: HttpRequest) -> Any:
        """Payload for ``request``; raises ``FetchError`` (or a subclass) on failure."""
        key: Optional[str] = None
        if request.cacheable and self.cache is not None:
            key = cache_key(request.method, request.url, request.params)
            cached = await self.cache.get(key, namespace=request.host)
            if cached is not None:
                self.metrics.record_event(
                    KIND_FETCH, request.host, status=200, duration_ms=0.0, cached=True
                )
                logger.debug("Using cached response", url=request.url)
                return cached

        payload = await self._fetch_with_retry(request)

        if key is not None and payload is not None:
            await self.cache.set(key, payload)
        return payload

    async def get_json(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        use_cache: bool = True,
    ) -> Any:
        return await self.fetch(
            HttpRequest(url=url, params=params or {}, headers=headers or {}, use_cache=use_cache)
        )

    async def get_text(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        use_cache: bool = True,
    ) -> str:
        return await self.fetch(
            HttpRequest(
                url=url,
                params=params or {},
                headers=headers or {},
                use_cache=use_cache,
                response_type="text",
            )
        )

    async def post_json(
        self,
        url: str,
        *,
        json_body: Any,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        return await self.fetch(
            HttpRequest(
                url=url,
                method="POST",
                headers=headers or {},
                json_body=json_body,
                timeout=timeout,
                max_retries=max_retries,
            )
        )

    # ────────────────────────────────────────────────────────────
    #  Retry loop
    # ────────────────────────────────────────────────────────────

    async def _fetch_with_retry(self, request: HttpRequest) -> Any:
        retries = self.max_retries if request.max_retries is None else max(0, request.max_retries)
        max_attempts = retries + 1
        retrying = build_fetch_retrying(
            max_retries=retries,
            policy=self.policy,
            retry_on=(TransportError,),
            sleep=self._sleep,
            before_sleep=partial(self._log_retry, request, max_attempts),
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(
                    request, attempt.retry_state.attempt_number, max_attempts
                )
        raise TransportError("Retry loop ended without a result", url=request.url)  # pragma: no cover

    def _log_retry(self, request: HttpRequest, max_attempts: int, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying API request",
            url=request.url,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            status=getattr(exc, "status", None) or "network error",
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(exc),
        )

    async def _attempt(self, request: HttpRequest, attempt: int, max_attempts: int) -> Any:
        host = request.host
        final = attempt >= max_attempts
        start = time.perf_counter()

        if self.rate_limiter is not None:
            await self.rate_limiter.wait(request.url)

        kwargs: Dict[str, Any] = {}
        if request.params:
            kwargs["params"] = {k: str(v) for k, v in request.params.items()}
        if request.headers:
            kwargs["headers"] = request.headers
        if request.json_body is not None:
            kwargs["json"] = request.json_body
        if request.timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=request.timeout)

        status: Optional[int] = None
        try:
            async with self._get_session().request(request.method, request.url, **kwargs) as resp:
                status = resp.status
                if status == 429:
                    raise RateLimitError(
                        "Rate limited",
                        retry_after=retry_after_from_headers(resp.headers),
                        url=request.url,
                    )
                if status >= 500:
                    raise TransportError(f"Server error {status}", status=status, url=request.url)
                if status >= 400:
                    body = await resp.text()
                    raise FetchError(
                        f"HTTP {status}: {body[:200]}".strip(), status=status, url=request.url
                    )
                text = await resp.text()
        except FetchError as e:
            self._emit(host, status, start, attempt, final=final or not isinstance(e, TransportError), error=e)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            err = TransportError(f"Network error: {type(e).__name__}: {e}", url=request.url)
            self._emit(host, "network error", start, attempt, final=final, error=err)
            raise err from e

        try:
            payload = self._decode(text, request.response_type)
        except ValueError as e:
            err = ParseError(f"Invalid JSON payload: {e}", status=status, url=request.url)
            self._emit(host, status, start, attempt, final=True, error=err)
            raise err from e

        self._emit(host, status, start, attempt, final=True)
        return payload

    @staticmethod
    def _decode(text: str, response_type: str) -> Any:
        if response_type == "text":
            return text
        if not text.strip():
            return None
        return json.loads(text)

    def _emit(
        self,
        host: str,
        status: Any,
        start: float,
        attempt: int,
        *,
        final: bool,
        error: Optional[BaseException] = None,
    ) -> None:
        self.metrics.record_event(
            KIND_FETCH if final else KIND_RETRY,
            host,
            status=status,
            duration_ms=(time.perf_counter() - start) * 1000.0,
            cached=False,
            attempt=attempt,
            error=str(error) if error is not None else None,
        )


def create_http_client(
    settings: Optional[Settings] = None,
    *,
    metrics: Optional[MetricsFacade] = None,
    sleep: Optional[SleepFn] = None,
) -> ResilientHttpClient:
    """Client wired with the configured cache and per-host rate limits."""
    settings = settings or get_settings()
    nvd_rate = 100 if settings.source("nvd").api_key else 10
    return ResilientHttpClient(
        settings,
        cache=create_response_cache(settings, metrics=metrics),
        metrics=metrics,
        rate_limiter=HostRateLimiter(
            settings.http_rate_per_minute, overrides={NVD_HOST: nvd_rate}
        ),
        sleep=sleep,
    )
