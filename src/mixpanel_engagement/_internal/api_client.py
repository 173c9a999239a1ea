"""HTTP client for the Mixpanel endpoints the sync reads.

Saved Insights reports and saved funnels are fetched with service-account
Basic auth against the credentials' regional query host; raw events are
streamed from the regional Export API host. HTTP 429 is retried with
backoff before surfacing as RateLimitError; gateway errors (502/503/504) get
a short fixed-delay retry.
"""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING, Any

import httpx

from mixpanel_engagement._internal.config import Credentials
from mixpanel_engagement.exceptions import (
    AuthenticationError,
    EngagementSyncError,
    QueryError,
    RateLimitError,
    ServerError,
)

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

QUERY_HOSTS: dict[str, str] = {
    "us": "https://mixpanel.com/api/query",
    "eu": "https://eu.mixpanel.com/api/query",
    "in": "https://in.mixpanel.com/api/query",
}

EXPORT_HOSTS: dict[str, str] = {
    "us": "https://data.mixpanel.com/api/2.0",
    "eu": "https://data-eu.mixpanel.com/api/2.0",
    "in": "https://data-in.mixpanel.com/api/2.0",
}
"""Raw event export lives on a separate data host per region."""

TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})
"""Gateway errors retried with a fixed delay."""

INSIGHTS_ROW_LIMIT = 50000

MAX_BACKOFF_SECONDS = 60.0

_QUERY_ERROR_DEFAULTS = {
    400: "Unknown error",
    403: "Permission denied",
    404: "Resource not found",
}


def _parse_body(response: httpx.Response) -> str | dict[str, Any] | None:
    try:
        body = response.json()
    except json.JSONDecodeError:
        return response.text[:500] if response.text else None
    return body if isinstance(body, dict) else str(body)[:500]


def _error_text(body: str | dict[str, Any] | None, default: str) -> str:
    if isinstance(body, dict):
        return str(body.get("error", default))
    if body:
        return body[:200]
    return default


def _request_context(response: httpx.Response) -> dict[str, Any]:
    request = response.request
    return {
        "request_method": request.method,
        "request_url": str(request.url.copy_with(query=None)),
        "request_params": dict(request.url.params),
    }


def _retry_after(response: httpx.Response) -> int | None:
    try:
        return int(response.headers["Retry-After"])
    except (KeyError, ValueError):
        return None


def _backoff(attempt: int) -> float:
    """Exponential delay for the given zero-based attempt, plus up to 10% jitter."""
    delay = min(2.0**attempt, MAX_BACKOFF_SECONDS)
    return delay + random.uniform(0, delay * 0.1)  # noqa: S311


def _transport_error(
    error: httpx.HTTPError, url: str, params: dict[str, Any]
) -> EngagementSyncError:
    return EngagementSyncError(
        f"HTTP error: {error}",
        code="HTTP_ERROR",
        details={"error": str(error), "request_url": url, "request_params": params},
    )


def _decode(response: httpx.Response) -> Any:
    """Return the JSON body of a final response or raise the matching error.

    Raises:
        AuthenticationError: On 401.
        QueryError: On 400, 403 or 404, on any other unexpected status,
            and on a success response whose body is not JSON.
        ServerError: On 5xx.
    """
    context = _request_context(response)
    status = response.status_code

    if response.is_success:
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise QueryError(
                "Response is not valid JSON",
                status_code=status,
                response_body=response.text[:500],
                **context,
            ) from e

    body = _parse_body(response)
    if status == 401:
        raise AuthenticationError(
            "Invalid credentials. Check username, secret, and project_id.",
            status_code=status,
            response_body=body,
            **context,
        )
    if status in _QUERY_ERROR_DEFAULTS:
        raise QueryError(
            _error_text(body, _QUERY_ERROR_DEFAULTS[status]),
            status_code=status,
            response_body=body,
            **context,
        )
    if status >= 500:
        raise ServerError(
            f"Server error: {_error_text(body, str(status))}",
            status_code=status,
            response_body=body,
            **context,
        )
    raise QueryError(
        f"Unexpected response status {status}",
        status_code=status,
        response_body=body,
        **context,
    )


def _iter_jsonl(response: httpx.Response) -> Iterator[dict[str, Any]]:
    """Yield the JSON objects of a streamed JSONL body, skipping bad lines."""
    exported = 0
    for line in response.iter_lines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed line: %s", line[:100])
            continue
        if not isinstance(event, dict):
            logger.warning("Skipping non-object line: %s", line[:100])
            continue
        exported += 1
        yield event
    logger.info("Exported %d events", exported)


class MixpanelAPIClient:
    """Fetches saved Insights reports and funnels for one project.

    Example:
        ```python
        credentials = ConfigManager().resolve_credentials()

        with MixpanelAPIClient(credentials) as client:
            report = client.query_saved_report(85165851)
            funnel = client.funnel(84999271, "2025-01-01", "2025-01-31")
        ```
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        timeout: float = 120.0,
        max_retries: int = 3,
        server_error_retries: int = 2,
        server_error_delay: float = 2.0,
        _transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the API client.

        Args:
            credentials: Service account and project to query.
            timeout: Request timeout in seconds.
            max_retries: Waits allowed on HTTP 429 before giving up.
            server_error_retries: Retries for 502/503/504 responses.
            server_error_delay: Fixed delay in seconds between those retries.
            _transport: Internal parameter for testing with MockTransport.
        """
        self._credentials = credentials
        self._timeout = timeout
        self._max_retries = max_retries
        self._server_error_retries = server_error_retries
        self._server_error_delay = server_error_delay
        self._transport = _transport
        self._client: httpx.Client | None = None

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=QUERY_HOSTS[self._credentials.region],
                auth=httpx.BasicAuth(
                    self._credentials.username,
                    self._credentials.secret.get_secret_value(),
                ),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client. Safe to call more than once."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> MixpanelAPIClient:
        self._http()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def project_id(self) -> str:
        """Project every request is scoped to."""
        return self._credentials.project_id

    @property
    def region(self) -> str:
        """Data residency region ('us', 'eu' or 'in')."""
        return self._credentials.region

    def _rate_limit_delay(
        self, response: httpx.Response, waits: int, path: str
    ) -> float:
        """Seconds to wait before retrying a 429, logging the wait.

        Raises:
            RateLimitError: ``waits`` already reached max_retries.
        """
        retry_after = _retry_after(response)
        if waits >= self._max_retries:
            raise RateLimitError(
                "Rate limit exceeded after max retries",
                retry_after=retry_after,
                response_body=_parse_body(response),
                **_request_context(response),
            )
        delay = _backoff(waits) if retry_after is None else float(retry_after)
        logger.warning(
            "Rate limited on %s, waiting %.1fs (%d/%d)",
            path,
            delay,
            waits + 1,
            self._max_retries,
        )
        return delay

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        """GET a query endpoint, retrying rate limits and gateway errors.

        Raises:
            RateLimitError: Still rate limited after max_retries waits.
            EngagementSyncError: Transport failure (code HTTP_ERROR).
            AuthenticationError, QueryError, ServerError: See _decode.
        """
        params = {**params, "project_id": self._credentials.project_id}
        client = self._http()
        waits = 0
        gateway_retries = 0
        logger.debug("GET %s params=%s", path, params)

        while True:
            try:
                response = client.get(path, params=params)
            except httpx.HTTPError as e:
                url = f"{client.base_url}{path.lstrip('/')}"
                raise _transport_error(e, url, params) from e

            status = response.status_code
            if status == 429:
                time.sleep(self._rate_limit_delay(response, waits, path))
                waits += 1
                continue

            if (
                status in TRANSIENT_STATUS_CODES
                and gateway_retries < self._server_error_retries
            ):
                gateway_retries += 1
                logger.warning(
                    "%s returned %d, retrying in %.1fs (%d/%d)",
                    path,
                    status,
                    self._server_error_delay,
                    gateway_retries,
                    self._server_error_retries,
                )
                time.sleep(self._server_error_delay)
                continue

            return _decode(response)

    # =========================================================================
    # Query API
    # =========================================================================

    def query_saved_report(
        self,
        bookmark_id: int,
        *,
        limit: int = INSIGHTS_ROW_LIMIT,
    ) -> dict[str, Any]:
        """Query a saved Insights report.

        Args:
            bookmark_id: Saved report identifier (from the Mixpanel URL).
            limit: Maximum rows returned by Mixpanel.

        Returns:
            Raw response; metric trees live under ``series``.

        Raises:
            AuthenticationError: Invalid credentials.
            QueryError: Invalid bookmark_id or report not found.
            RateLimitError: Rate limit exceeded.
            ServerError: Server errors after retries.
        """
        result: dict[str, Any] = self._get(
            "/insights", {"bookmark_id": bookmark_id, "limit": limit}
        )
        return result

    def funnel(
        self,
        funnel_id: int,
        from_date: str,
        to_date: str,
        *,
        users: bool = True,
    ) -> dict[str, Any]:
        """Run a saved funnel over a date range.

        Args:
            funnel_id: Funnel identifier.
            from_date: Start date (YYYY-MM-DD).
            to_date: End date (YYYY-MM-DD).
            users: Request per-user step data.

        Returns:
            Raw response; the date -> user -> steps tree lives under ``data``.
        """
        params: dict[str, Any] = {
            "funnel_id": funnel_id,
            "from_date": from_date,
            "to_date": to_date,
        }
        if users:
            params["users"] = "true"
        result: dict[str, Any] = self._get("/funnels", params)
        return result

    # =========================================================================
    # Export API
    # =========================================================================

    def export_events(
        self,
        from_date: str,
        to_date: str,
        *,
        events: Sequence[str] | None = None,
        where: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Stream raw events from the Export API.

        The response is JSONL and is read line by line, so arbitrarily large
        exports never sit in memory. HTTP 429 is retried like the query
        endpoints as long as no event has been yielded yet.

        Args:
            from_date: Start date (YYYY-MM-DD, inclusive).
            to_date: End date (YYYY-MM-DD, inclusive).
            events: Event names to export; all events when omitted.
            where: Optional Mixpanel filter expression.

        Yields:
            Event objects with ``event`` and ``properties`` keys. Lines that
            are not JSON objects are logged and skipped.

        Raises:
            AuthenticationError: Invalid credentials.
            RateLimitError: Still rate limited after max_retries waits.
            QueryError: Invalid parameters.
            ServerError: Server-side errors.
            EngagementSyncError: Transport failure (code HTTP_ERROR).
        """
        url = f"{EXPORT_HOSTS[self._credentials.region]}/export"
        params: dict[str, Any] = {
            "project_id": self._credentials.project_id,
            "from_date": from_date,
            "to_date": to_date,
        }
        if events:
            params["event"] = json.dumps(list(events))
        if where:
            params["where"] = where

        client = self._http()
        waits = 0
        logger.debug("Export %s params=%s", url, params)

        while True:
            try:
                with client.stream(
                    "GET", url, params=params, headers={"Accept": "text/plain"}
                ) as response:
                    if response.is_success:
                        yield from _iter_jsonl(response)
                        return
                    response.read()
                    if response.status_code != 429:
                        _decode(response)  # raises for every failure status
                    delay = self._rate_limit_delay(response, waits, "/export")
            except httpx.HTTPError as e:
                raise _transport_error(e, url, params) from e
            waits += 1
            time.sleep(delay)
