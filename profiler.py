from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from errors import RequestError

logger = logging.getLogger(__name__)

CACHE_STATUS_HEADERS = ("x-cache", "cf-cache-status", "x-cache-status", "x-cdn-cache")
DEFAULT_USER_AGENT = "dicom-perfdiag"


def now_unix_ms() -> int:
    return int(time.time() * 1000)


class CacheStatus(enum.Enum):
    HIT = "hit"
    MISS = "miss"
    UNKNOWN = "unknown"

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> "CacheStatus":
        for name in CACHE_STATUS_HEADERS:
            value = headers.get(name)
            if not value:
                continue
            upper = value.upper()
            if "HIT" in upper:
                return cls.HIT
            if "MISS" in upper:
                return cls.MISS
            return cls.UNKNOWN
        return cls.UNKNOWN


@dataclass
class RequestSettings:
    timeout_s: float = 300.0
    access_token: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT


@dataclass(frozen=True)
class RequestOutcome:
    start_time: int
    response_time: int
    end_time: int
    bytes_read: int
    cache_status: CacheStatus = CacheStatus.UNKNOWN

    @property
    def response_latency(self) -> int:
        return self.response_time - self.start_time

    @property
    def total_latency(self) -> int:
        return self.end_time - self.start_time


def build_headers(settings: RequestSettings, accept: str) -> dict[str, str]:
    base = {"Accept": accept, "User-Agent": settings.user_agent}
    if settings.access_token:
        base["Authorization"] = f"Bearer {settings.access_token}"
    return base


async def execute_request(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    timeout_s: Optional[float] = None,
    sink: Optional[bytearray] = None,
) -> RequestOutcome:
    """Send one GET request and time it.

    ``response_time`` is taken when the response head arrives and ``end_time``
    once the body is fully drained. Body chunks are appended to ``sink`` when
    one is given and dropped otherwise; only their size is kept.

    Raises ``RequestError`` on transport failures and HTTP statuses >= 400.
    """
    request_kwargs: dict[str, Any] = {"headers": headers}
    if timeout_s is not None:
        request_kwargs["timeout"] = timeout_s

    start_time = now_unix_ms()
    bytes_read = 0
    try:
        async with client.stream("GET", url, **request_kwargs) as response:
            response_time = now_unix_ms()
            http_status = int(response.status_code)
            if http_status >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise RequestError(
                    f"HTTP {http_status} from {url}: {body[:500]}",
                    url=url,
                    http_status=http_status,
                )
            async for chunk in response.aiter_bytes():
                bytes_read += len(chunk)
                if sink is not None:
                    sink.extend(chunk)
            cache_status = CacheStatus.from_headers(response.headers)
    except httpx.TimeoutException as exc:
        raise RequestError(f"Timed out requesting {url}: {exc}", url=url) from exc
    except httpx.HTTPError as exc:
        raise RequestError(f"Request to {url} failed: {exc}", url=url) from exc

    end_time = now_unix_ms()
    logger.debug(
        "GET %s: %d bytes, first byte after %d ms, done after %d ms",
        url,
        bytes_read,
        response_time - start_time,
        end_time - start_time,
    )
    return RequestOutcome(
        start_time=start_time,
        response_time=response_time,
        end_time=end_time,
        bytes_read=bytes_read,
        cache_status=cache_status,
    )
