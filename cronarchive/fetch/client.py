"""HTTP client for the report engine with retries and error handling."""
import logging
import time
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from cronarchive.config import config
from cronarchive.fetch.endpoints import (
    get_api_url,
    get_archive_params,
    get_ping_params,
    get_probe_params,
)
from cronarchive.model.period import Period
from cronarchive.model.records import ArchiveRequest, ArchiveResult

logger = logging.getLogger(__name__)


class EngineError(RuntimeError):
    """Raised when the report engine answers with an error payload."""


def is_retryable_status(response: httpx.Response) -> bool:
    """Check if status code is retryable."""
    return response.status_code in (429, 500, 502, 503, 504)


def is_retryable_error(error: BaseException) -> bool:
    """Network failures and retryable HTTP statuses are retried."""
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    return isinstance(error, httpx.HTTPStatusError) and is_retryable_status(error.response)


class ReportEngineClient:
    """Report engine over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_auth: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = get_api_url(base_url)
        self.token_auth = token_auth if token_auth is not None else config.TOKEN_AUTH
        limits = httpx.Limits(
            max_connections=max(config.CONCURRENCY * 2, 10),
            max_keepalive_connections=max(config.CONCURRENCY, 5),
        )
        self.client = httpx.AsyncClient(
            timeout=timeout or config.TIMEOUT,
            limits=limits,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _call(self, params: dict[str, str]) -> Any:
        """POST an API call and decode the JSON payload."""
        # token_auth is sent in the POST body, never in the query string
        data = {"token_auth": self.token_auth} if self.token_auth else None

        try:
            response = await self.client.post(self.api_url, params=params, data=data)
            response.raise_for_status()
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            logger.warning(f"Network error calling {params.get('method')}: {e}")
            raise

        payload = response.json()
        if isinstance(payload, dict) and payload.get("result") == "error":
            raise EngineError(payload.get("message", "unknown error"))
        return payload

    async def ping(self) -> None:
        """Raise if the engine is unreachable or rejects the token."""
        await self._call(get_ping_params())

    async def probe_visits(self, site_id: int, period: Period) -> int:
        """Number of visits recorded in the period."""
        payload = await self._call(get_probe_params(site_id, period))
        return _extract_visits(payload)

    async def compute(self, request: ArchiveRequest) -> ArchiveResult:
        """Recompute one archive. Engine and HTTP failures become error results."""
        params = get_archive_params(request.site_id, request.period, request.segment)
        start = time.perf_counter()
        try:
            payload = await self._call(params)
        except (httpx.HTTPError, EngineError, ValueError) as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            return ArchiveResult(elapsed_ms=elapsed_ms, error=str(e) or e.__class__.__name__)

        elapsed_ms = (time.perf_counter() - start) * 1000
        return ArchiveResult(visits=_extract_visits(payload), elapsed_ms=elapsed_ms)


def _extract_visits(payload: Any) -> int:
    """Read a visit count from the shapes the API returns."""
    if isinstance(payload, list):
        return sum(_extract_visits(item) for item in payload)
    if isinstance(payload, dict):
        for key in ("value", "nb_visits"):
            if key in payload:
                return int(payload[key] or 0)
        return 0
    if isinstance(payload, (int, float, str)) and str(payload).strip():
        return int(float(payload))
    return 0
