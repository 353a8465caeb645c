#!/usr/bin/env python3
"""Microsoft Graph client for mailbox calendar and message collections."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import quote, urljoin

from models import ItemKind

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
PAGE_SIZE = 100
RETRY_STATUSES = {429, 500, 502, 503, 504}

EVENT_SELECT_FIELDS = ["id", "subject", "organizer", "attendees", "location", "start", "end", "type"]
MESSAGE_SELECT_FIELDS = ["id", "subject", "from", "toRecipients", "receivedDateTime"]


class DependencyError(RuntimeError):
    """Raised when runtime dependencies are missing."""


class GraphAPIError(RuntimeError):
    """Raised on Graph API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GraphClient:
    def __init__(
        self,
        token_provider: Callable[[], str],
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: int = 30,
        max_retries: int = 3,
        http: Any = None,
    ) -> None:
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._http = http if http is not None else _load_requests()

    def get_me(self) -> Dict[str, Any]:
        return self._request_json("GET", "/me", params={"$select": "id,mail,userPrincipalName"})

    def iter_items(
        self,
        mailbox: str,
        kind: ItemKind,
        subject: Optional[str] = None,
        select_fields: Optional[List[str]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every item of a mailbox collection, optionally filtered on subject."""
        if select_fields is None:
            select_fields = EVENT_SELECT_FIELDS if kind is ItemKind.MEETING else MESSAGE_SELECT_FIELDS

        params: Dict[str, Any] = {
            "$top": str(PAGE_SIZE),
            "$select": ",".join(select_fields),
        }
        if subject is not None:
            params["$filter"] = subject_filter(subject)

        path = f"/users/{_quote_segment(mailbox)}/{kind.collection}"
        return self._iter_paginated(path, params)

    def delete_item(self, mailbox: str, kind: ItemKind, item_id: str) -> None:
        self._request(
            "DELETE",
            f"/users/{_quote_segment(mailbox)}/{kind.collection}/{_quote_segment(item_id)}",
        )

    def _iter_paginated(self, path: str, params: Optional[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        next_url: Optional[str] = path
        next_params = dict(params or {})
        page = 0

        while next_url:
            payload = self._request_json(
                "GET",
                next_url,
                params=next_params,
                absolute_url=next_url.startswith("http"),
            )
            page += 1
            values = payload.get("value", [])
            logger.debug("GET %s page %d returned %d item(s)", path, page, len(values))
            for value in values:
                yield value

            # nextLink already carries the query string.
            next_url = payload.get("@odata.nextLink")
            next_params = {}

    def _request_json(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        absolute_url: bool = False,
    ) -> Dict[str, Any]:
        response = self._request(method, path_or_url, params=params, absolute_url=absolute_url)
        if response.status_code == 204 or not response.content:
            return {}

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise GraphAPIError(
                f"Expected JSON response but got content type '{content_type}'",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as err:
            # requests' JSONDecodeError derives from ValueError.
            raise GraphAPIError(
                f"Graph returned a malformed JSON body: {err}",
                status_code=response.status_code,
            ) from err

    def _request(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        absolute_url: bool = False,
    ):
        url = path_or_url if absolute_url else self._build_url(path_or_url)
        headers = {
            "Authorization": f"Bearer {self.token_provider()}",
            "Accept": "application/json",
            "Prefer": 'outlook.timezone="UTC", IdType="ImmutableId"',
        }

        response = None
        for attempt in range(self.max_retries + 1):
            logger.debug("%s %s", method, url)
            try:
                response = self._http.request(
                    method=method,
                    url=url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except OSError as err:
                # requests.RequestException derives from IOError.
                raise GraphAPIError(f"Graph request to {url} failed: {err}") from err
            if response.status_code in RETRY_STATUSES and attempt < self.max_retries:
                delay = retry_delay_seconds(response, attempt)
                logger.info("Graph returned %s, retrying in %.1fs", response.status_code, delay)
                time.sleep(delay)
                continue
            break

        if response is None:
            raise GraphAPIError("No response from Graph API")
        if response.status_code >= 400:
            raise GraphAPIError(extract_graph_error(response), status_code=response.status_code)
        return response

    def _build_url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))


def subject_filter(subject: str) -> str:
    escaped = subject.replace("'", "''")
    return f"subject eq '{escaped}'"


def retry_delay_seconds(response: Any, attempt: int) -> float:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(0.5, float(retry_after))
        except ValueError:
            pass
    return float(2 ** attempt)


def extract_graph_error(response: Any) -> str:
    prefix = f"Graph API request failed with status {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        body = (response.text or "").strip()
        return f"{prefix}: {body[:500]}" if body else prefix

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message")
        if code and message:
            return f"{prefix}: {code} - {message}"
        if message:
            return f"{prefix}: {message}"
    return prefix


def _quote_segment(value: str) -> str:
    return quote(str(value), safe="@")


def _load_requests():
    try:
        import requests  # type: ignore
    except ImportError as err:
        raise DependencyError(
            "Missing dependency 'requests'. Install with: python3 -m pip install requests"
        ) from err
    return requests
