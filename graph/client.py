"""
Async Graph API client with pagination, throttling, retry, and change guarding.
Mutating calls go through the ChangeGuard and are not sent in dry-run mode.
"""

from __future__ import annotations

import asyncio
import csv
import io
import logging
from typing import AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    BATCH_SIZE,
    MAX_CONCURRENT_REQUESTS,
)
from ..safety.guardian import ChangeGuard, SafetyViolation

logger = logging.getLogger("m365_admin.graph")

SUCCESS_CODES = (200, 201, 202)


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        self.message = message
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Guarded writes (dry-run unless the guard is in apply mode)
      - Automatic pagination with @odata.nextLink
      - Exponential backoff on 429/503/504
      - Concurrent request semaphore
      - CSV usage report download
      - v1.0 and beta endpoint support
    """

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self._transport = transport
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Required for $count, $search
            },
            # Report endpoints answer with a 302 to a pre-authenticated CSV URL
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def set_token(self, access_token: str):
        """Swap the bearer token on the live session."""
        self.access_token = access_token
        if self._client:
            self._client.headers["Authorization"] = f"Bearer {access_token}"

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """Execute a single GET request with retry/throttle handling."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)

        async with self._semaphore:
            return await self._execute_with_retry("GET", url, params=params)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """
        Fetch all pages of a paginated endpoint into a list.
        Set skip_top=True for endpoints that don't support $top.
        """
        items = []
        async for item in self.get_all_pages_stream(endpoint, params, beta, top, skip_top=skip_top):
            items.append(item)
        return items

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """Stream all pages of a paginated endpoint, one item at a time."""
        params = dict(params or {})
        if not skip_top:
            if top and "$top" not in params:
                params["$top"] = str(min(top, DEFAULT_PAGE_SIZE))
            elif "$top" not in params:
                params["$top"] = str(DEFAULT_PAGE_SIZE)

        url = self._build_url(endpoint, beta=beta)
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("GET", url)

            async with self._semaphore:
                data = await self._execute_with_retry("GET", url, params=params)

            if data.get("_forbidden"):
                raise GraphAPIError(
                    403,
                    data.get("_error_message", "Forbidden — missing API permission"),
                    url,
                )

            for item in data.get("value", []):
                yield item

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
            pages += 1

        if pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for endpoint: {endpoint}"
            )

    async def get_count(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> int:
        """Get $count for an endpoint (requires ConsistencyLevel: eventual)."""
        url = self._build_url(endpoint, beta=beta)
        count_url = f"{url}/$count"
        self.guardian.validate_request("GET", count_url)

        async with self._semaphore:
            response = await self._execute_raw("GET", count_url, params=params)
            self._request_count += 1
            if response.status_code != 200:
                raise GraphAPIError(response.status_code, _error_message(response), count_url)
            try:
                return int(response.text.strip().lstrip("\ufeff"))
            except (ValueError, AttributeError):
                return -1

    async def get_filtered_count(
        self,
        endpoint: str,
        odata_filter: str,
        beta: bool = False,
    ) -> int:
        """Count items matching a $filter via @odata.count on a single-item page."""
        data = await self.get(
            endpoint,
            params={"$filter": odata_filter, "$count": "true", "$top": "1"},
            beta=beta,
        )
        if data.get("_forbidden"):
            raise GraphAPIError(403, data.get("_error_message", "Forbidden"), endpoint)
        return int(data.get("@odata.count", 0) or 0)

    async def get_report(self, endpoint: str, beta: bool = False) -> list[dict]:
        """
        Download a usage report (CSV) and parse it into dict rows.
        """
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)

        async with self._semaphore:
            response = await self._execute_raw("GET", url)
            self._request_count += 1

        if response.status_code != 200:
            raise GraphAPIError(response.status_code, _error_message(response), url)

        text = response.text.lstrip("\ufeff")
        reader = csv.DictReader(io.StringIO(text))
        return [row for row in reader if any((v or "").strip() for v in row.values())]

    async def batch_get(
        self,
        endpoints: list[str],
        beta: bool = False,
    ) -> list[dict]:
        """
        Execute multiple GET requests as a Graph $batch.
        Splits into chunks of BATCH_SIZE (max 20).
        """
        results = []
        for i in range(0, len(endpoints), BATCH_SIZE):
            chunk = endpoints[i:i + BATCH_SIZE]
            batch_body = {
                "requests": [
                    {
                        "id": str(idx),
                        "method": "GET",
                        "url": ep if ep.startswith("/") else f"/{ep}",
                    }
                    for idx, ep in enumerate(chunk)
                ]
            }
            version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
            batch_url = f"{GRAPH_BASE_URL}/{version}/$batch"

            self.guardian.validate_request("POST", batch_url, batch_body)

            async with self._semaphore:
                data = await self._execute_with_retry(
                    "POST", batch_url, json_body=batch_body
                )

            # $batch responses are not guaranteed to come back in order
            responses = sorted(
                data.get("responses", []), key=lambda r: int(r.get("id", 0))
            )
            for resp in responses:
                if resp.get("status") == 200:
                    results.append(resp.get("body", {}))
                else:
                    status = resp.get("status")
                    msg = (resp.get("body") or {}).get("error", {}).get("message", "Unknown")
                    if status == 403:
                        logger.debug(
                            f"Batch sub-request {resp.get('id')} permission denied (403): {msg}"
                        )
                    else:
                        logger.warning(
                            f"Batch sub-request {resp.get('id')} failed: {status} — {msg}"
                        )
                    results.append({"_error": True, "status": status, "_error_message": msg})

        return results

    # ── Writes ──────────────────────────────────────────────────────────────

    async def post(self, endpoint: str, body: Optional[dict] = None, beta: bool = False) -> dict:
        return await self._write("POST", endpoint, body, beta)

    async def patch(self, endpoint: str, body: dict, beta: bool = False) -> dict:
        return await self._write("PATCH", endpoint, body, beta)

    async def delete(self, endpoint: str, beta: bool = False) -> dict:
        return await self._write("DELETE", endpoint, None, beta)

    async def _write(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict],
        beta: bool,
    ) -> dict:
        """Run a mutating request through the guard; dry-run returns a marker."""
        url = self._build_url(endpoint, beta=beta)
        if not self.guardian.validate_request(method, url, body):
            return {"_dry_run": True}

        async with self._semaphore:
            data = await self._execute_with_retry(method, url, json_body=body)

        if data.get("_forbidden"):
            raise GraphAPIError(403, data.get("_error_message", "Forbidden"), url)
        if data.get("_not_found"):
            raise GraphAPIError(404, "Resource not found", url)
        if data.get("_max_retries_exceeded"):
            raise GraphAPIError(429, "Retries exhausted", url)
        return data

    # ── Transport ───────────────────────────────────────────────────────────

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in SUCCESS_CODES:
                    if not response.content or not response.content.strip():
                        return {"value": []} if method == "GET" else {}
                    try:
                        return response.json()
                    except ValueError:
                        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
                        return {"value": []}

                if response.status_code == 204:
                    return {}

                if response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if response.status_code in (429, 503, 504):
                    self._throttle_count += 1
                    if attempt == MAX_RETRIES:
                        break
                    retry_after = _retry_after(response, backoff)
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                if response.status_code == 403:
                    error_msg = _error_message(response, "Forbidden")
                    logger.warning(f"403 Forbidden: {url} — {error_msg}")
                    return {"value": [], "_forbidden": True, "_error_message": error_msg}

                raise GraphAPIError(response.status_code, _error_message(response), url)

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        return {"value": [], "_max_retries_exceeded": True}

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        if method == "GET":
            return await self._client.get(url, params=params)
        if method in ("POST", "PATCH"):
            return await self._client.request(method, url, json=json_body, params=params)
        if method == "DELETE":
            return await self._client.delete(url, params=params)
        raise SafetyViolation(f"Unsupported method at raw level: {method}")

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default


def _error_message(response: httpx.Response, default: str = "") -> str:
    """Extract the Graph error message from a response body."""
    try:
        body = response.json() if response.content else {}
    except ValueError:
        return default or response.text[:200]
    if isinstance(body, dict):
        error = body.get("error", {})
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return default or response.text[:200]
