from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse
from urllib.request import Request, urlopen

from unical.connectors.base import (
    ConnectorAuthError,
    ConnectorConfigError,
    ConnectorCursorExpiredError,
    ConnectorError,
    ConnectorTransientError,
    FetchResult,
    FetchTimeoutError,
    MalformedEventError,
    RemovedEvent,
    remaining_seconds,
)
from unical.models import EventSource
from unical.timeutil import TimeRange

logger = logging.getLogger(__name__)

_MAX_PAGES = 200


def require_https(base_url: str, *, provider: str) -> None:
    if not base_url:
        raise ConnectorConfigError(f"{provider} base URL is not configured.")
    parsed = urlparse(base_url)
    if parsed.scheme.lower() != "https":
        raise ConnectorConfigError(f"{provider} URL must use https://")


def request_json(
    url: str,
    *,
    headers: dict[str, str],
    params: dict[str, Any] | None = None,
    timeout_sec: float,
    provider: str,
) -> dict[str, Any]:
    query = urlencode({key: value for key, value in (params or {}).items() if value is not None})
    target = f"{url}?{query}" if query else url
    request = Request(target, method="GET", headers={"Accept": "application/json", **headers})

    try:
        with urlopen(request, timeout=timeout_sec) as response:
            body = response.read()
    except HTTPError as exc:
        if exc.code in (401, 403):
            logger.warning("provider_auth_failed provider=%s status=%s", provider, exc.code)
            raise ConnectorAuthError(f"{provider} authentication failed.") from None
        if exc.code == 404:
            raise ConnectorConfigError(f"{provider} calendar was not found.") from None
        if exc.code == 410:
            raise ConnectorCursorExpiredError(f"{provider} sync cursor expired.") from None
        if exc.code == 429 or exc.code >= 500:
            raise ConnectorTransientError(f"{provider} request failed with HTTP {exc.code}.") from None
        raise ConnectorError(f"{provider} request failed with HTTP {exc.code}.") from None
    except URLError:
        raise ConnectorTransientError(f"{provider} endpoint is unreachable.") from None
    except TimeoutError:
        raise FetchTimeoutError(f"{provider} request timed out.") from None

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ConnectorError(f"{provider} response is invalid.") from None
    if not isinstance(payload, dict):
        raise ConnectorError(f"{provider} response is invalid.")
    return payload


class PagedJsonConnector:
    """Shared page loop for providers exposing paginated JSON event listings.

    Subclasses describe one page request and how to read items and the next
    page token; normalization failures skip the single item, and a failing
    page keeps whatever earlier pages produced.
    """

    source: EventSource
    provider_name: str = "provider"
    timeout_sec: float = 20.0

    def fetch_events(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> FetchResult:
        result = FetchResult(source=self.source, owner_id=owner_id)
        page_token: str | None = None
        payload: dict[str, Any] = {}

        while result.pages_fetched < _MAX_PAGES:
            try:
                payload = self._request_page(
                    owner_id,
                    time_range,
                    page_token=page_token,
                    cursor=cursor,
                    timeout_sec=remaining_seconds(deadline, self.timeout_sec),
                )
            except ConnectorError as exc:
                result.error = exc
                logger.warning(
                    "provider_fetch_failed source=%s owner_id=%s page=%s error_type=%s partial=%s",
                    self.source.value,
                    owner_id,
                    result.pages_fetched + 1,
                    exc.__class__.__name__,
                    result.partial,
                )
                return result

            result.pages_fetched += 1
            for item in self._page_items(payload):
                try:
                    self._collect_item(result, owner_id, time_range, item, delta=bool(cursor))
                except (MalformedEventError, ValueError, KeyError, TypeError) as exc:
                    result.normalization_errors += 1
                    logger.warning(
                        "provider_event_skipped source=%s owner_id=%s error_type=%s",
                        self.source.value,
                        owner_id,
                        exc.__class__.__name__,
                    )

            page_token = self._next_page_token(payload)
            if not page_token:
                break
        else:
            logger.warning("provider_page_limit_reached source=%s owner_id=%s", self.source.value, owner_id)

        result.cursor = self._next_cursor(payload)
        result.cursor_kind = self._cursor_kind() if result.cursor else None
        return result

    def _request_page(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        page_token: str | None,
        cursor: str | None,
        timeout_sec: float,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        raise NotImplementedError

    def _next_page_token(self, payload: dict[str, Any]) -> str | None:
        raise NotImplementedError

    def _collect_item(
        self,
        result: FetchResult,
        owner_id: str,
        time_range: TimeRange,
        item: Any,
        *,
        delta: bool = False,
    ) -> None:
        raise NotImplementedError

    def _outside_window(self, result: FetchResult, owner_id: str, source_id: str, *, delta: bool) -> None:
        """Drop an item outside the window; in a delta feed it moved out, so remove it."""
        if delta:
            result.removed.append(RemovedEvent(source=self.source, source_id=source_id, owner_id=owner_id))

    def _next_cursor(self, payload: dict[str, Any]) -> str | None:
        return None

    def _cursor_kind(self) -> str | None:
        return None
