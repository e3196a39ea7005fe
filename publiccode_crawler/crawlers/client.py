"""Resilient async HTTP client shared by every crawl stage."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from publiccode_crawler.config.settings import settings
from publiccode_crawler.crawlers.contracts import FetchResult, FetchState

logger = logging.getLogger(__name__)

_REDACTED_VALUE = "***REDACTED***"
_SENSITIVE_KEYS = (
    "authorization",
    "token",
    "api_key",
    "apikey",
    "secret",
    "password",
    "cookie",
    "session",
    "basic_auth",
)
_PAYLOAD_KEYS = ("body", "raw", "content", "payload", "response", "manifest", "blob")
_TOKEN_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[^\s,;]+"),
    re.compile(r"(?i)(basic\s+)[^\s,;]+"),
    re.compile(r"(?i)(token\s*[=:]\s*)[^\s,;]+"),
    re.compile(r"(?i)(access_token=)[^&\s]+"),
    re.compile(r"(?i)(private_token=)[^&\s]+"),
    re.compile(r"(?i)(api[_-]?key\s*[=:]\s*)[^\s,;]+"),
    re.compile(r"(?i)(secret\s*[=:]\s*)[^\s,;]+"),
    re.compile(r"(?i)(://[^/\s:@]+:)[^@\s/]+(@)"),
)
_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def sanitize_for_log(value: Any, *, key: Optional[str] = None) -> Any:
    """Return a recursively sanitized copy of log payloads."""

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            field = str(raw_key)
            if _contains_keyword(field, _SENSITIVE_KEYS):
                sanitized[field] = _REDACTED_VALUE
                continue
            if _contains_keyword(field, _PAYLOAD_KEYS) and isinstance(raw_value, (str, bytes)):
                sanitized[field] = _redact_payload(raw_value)
                continue
            sanitized[field] = sanitize_for_log(raw_value, key=field)
        return sanitized

    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_log(item, key=key) for item in value]

    if isinstance(value, str):
        redacted = _redact_text(value)
        if key and _contains_keyword(key, _PAYLOAD_KEYS):
            return _redact_payload(redacted)
        return redacted

    return value


def sanitize_log_extra(**kwargs: Any) -> dict[str, Any]:
    """Helper for `extra=` payloads in structured logging."""

    return {key: sanitize_for_log(value, key=key) for key, value in kwargs.items()}


def _contains_keyword(field_name: str, keywords: tuple[str, ...]) -> bool:
    lowered = field_name.lower()
    return any(keyword in lowered for keyword in keywords)


def _redact_payload(raw: str | bytes) -> str:
    trimmed = raw.strip()
    if not trimmed:
        return ""
    return f"<redacted payload ({len(raw)} chars)>"


def _redact_text(raw: str) -> str:
    redacted = raw
    for pattern in _TOKEN_PATTERNS:
        if pattern.groups == 2:
            redacted = pattern.sub(rf"\1{_REDACTED_VALUE}\2", redacted)
        else:
            redacted = pattern.sub(rf"\1{_REDACTED_VALUE}", redacted)
    return redacted


class _RetryableResponseError(Exception):
    """Retryable rate-limit or server error signal for tenacity."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class HttpClient:
    """Absolute-URL HTTP client; failures come back as `FetchResult`, never raised."""

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        rate_limit_buffer_seconds: Optional[int] = None,
        transport: Optional[Any] = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds or settings.HTTP_TIMEOUT_SECONDS
        self._max_retries = max_retries or settings.HTTP_MAX_RETRIES
        self._backoff_base_seconds = backoff_base_seconds or settings.HTTP_BACKOFF_BASE_SECONDS
        self._backoff_max_seconds = backoff_max_seconds or settings.HTTP_BACKOFF_MAX_SECONDS
        self._rate_limit_buffer_seconds = rate_limit_buffer_seconds or settings.HTTP_RATE_LIMIT_BUFFER_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_url(self, url: str, headers: Optional[Mapping[str, str]] = None) -> FetchResult[bytes]:
        """GET `url` and return the raw body."""
        return await self._request(url, headers=headers, decode_json=False)

    async def get_json(self, url: str, headers: Optional[Mapping[str, str]] = None) -> FetchResult[Any]:
        """GET `url` and decode a JSON body; an empty payload is `EMPTY`."""
        response = await self._request(url, headers=headers, decode_json=True)
        if response.state != FetchState.OK:
            return response

        payload = response.data
        if payload is None or (isinstance(payload, (list, dict, str)) and len(payload) == 0):
            return FetchResult(
                state=FetchState.EMPTY,
                data=payload,
                status_code=response.status_code,
                headers=response.headers,
            )
        return response

    async def _request(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]],
        decode_json: bool,
    ) -> FetchResult[Any]:
        client = await self._ensure_client()
        request_headers = dict(headers or {})

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=self._backoff_base_seconds, max=self._backoff_max_seconds),
                retry=retry_if_exception_type(_RetryableResponseError),
                reraise=True,
            ):
                with attempt:
                    response = await client.get(url, headers=request_headers)

                    if self._is_rate_limited(response) or response.status_code in _RETRYABLE_STATUS:
                        wait_seconds = self._compute_rate_limit_wait(response.headers)
                        logger.warning(
                            "Remote API asked us to back off",
                            extra=sanitize_log_extra(
                                url=url,
                                status_code=response.status_code,
                                retry_after_seconds=wait_seconds,
                            ),
                        )
                        if wait_seconds > 0:
                            await asyncio.sleep(wait_seconds)
                        raise _RetryableResponseError(
                            f"retryable response ({response.status_code})",
                            response.status_code,
                        )

                    if not response.is_success:
                        return FetchResult(
                            state=FetchState.FAILED,
                            status_code=response.status_code,
                            error=f"HTTP {response.status_code}",
                            headers=dict(response.headers),
                        )

                    data: Any = response.json() if decode_json else response.content
                    return FetchResult(
                        state=FetchState.OK,
                        data=data,
                        status_code=response.status_code,
                        headers=dict(response.headers),
                    )
        except _RetryableResponseError as exc:
            logger.warning(
                "Request failed after retries",
                extra=sanitize_log_extra(url=url, error=str(exc), status_code=exc.status_code),
            )
            return FetchResult(state=FetchState.FAILED, error=str(exc), status_code=exc.status_code)
        except ValueError as exc:
            return FetchResult(state=FetchState.FAILED, error=f"invalid JSON: {exc}")
        except httpx.HTTPError as exc:
            logger.warning(
                "Request failed",
                extra=sanitize_log_extra(url=url, error=str(exc)),
            )
            return FetchResult(state=FetchState.FAILED, error=str(exc))

        return FetchResult(state=FetchState.FAILED, error="Unknown request failure")

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client

        self._client = httpx.AsyncClient(
            headers={"User-Agent": settings.USER_AGENT},
            timeout=self._timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        )
        return self._client

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"

    def _compute_rate_limit_wait(self, headers: httpx.Headers) -> float:
        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                return min(max(float(retry_after), 0.0), self._backoff_max_seconds)
            except ValueError:
                pass

        reset_raw = headers.get("x-ratelimit-reset")
        if reset_raw is not None:
            try:
                reset_epoch = int(reset_raw)
                wait_seconds = reset_epoch - int(time.time()) + self._rate_limit_buffer_seconds
                return float(max(wait_seconds, 0))
            except ValueError:
                pass

        return 0.0
