"""roster_etl.source_client

Paged HTTP client for the CRM source API.

    GET {base_url}/GetLeads?authkey=<key>&skip=<n>&take=<n>
    GET {base_url}/GetStudents?authkey=<key>&skip=<n>&take=<n>

The response body is a bare JSON array, an object wrapping it under
``Leads`` / ``Students`` (any casing), or an object whose first array value
is the page.  Anything else decodes to an empty page.

Retry policy: the initial attempt plus up to ``max_retries`` retries on
transport errors and HTTP 429/5xx, sleeping ``base_delay * n`` seconds
before retry n.  Other HTTP errors are not retried.  When attempts run out
``SourceFetchError`` is raised and the cursor treats the page as failed.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

from roster_etl.shared import ImportCounters, SourceFetchError

log = logging.getLogger(__name__)

ENDPOINT_FOR_KIND = {"lead": "GetLeads", "student": "GetStudents"}
WRAPPER_KEYS = {
    "lead": ("Leads", "leads"),
    "student": ("Students", "students"),
}


def extract_page(payload: Any, kind: str) -> list[dict[str, Any]]:
    """Find the record array inside a source response body."""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = None
        for key in WRAPPER_KEYS.get(kind, ()):
            if isinstance(payload.get(key), list):
                items = payload[key]
                break
        if items is None:
            items = next((v for v in payload.values() if isinstance(v, list)), [])
    else:
        items = []
    return [item for item in items if isinstance(item, dict)]


def _retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class SourceClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: requests.Session | None = None,
        base_delay: float = 1.0,
        max_retries: int = 3,
        timeout: int = 30,
        counters: ImportCounters | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._base_delay = base_delay
        self._max_retries = max_retries
        self._timeout = timeout
        self._counters = counters

    def _note_retry(self, msg: str) -> None:
        log.warning(msg)
        if self._counters is not None:
            self._counters.fetch_retries += 1
            self._counters.warnings.append(msg)

    def fetch_page(self, kind: str, skip: int, take: int) -> list[dict[str, Any]]:
        """Fetch one page of raw records; raises SourceFetchError on failure."""
        if kind not in ENDPOINT_FOR_KIND:
            raise ValueError(f"unknown record kind: {kind!r}")
        url = f"{self._base_url}/{ENDPOINT_FOR_KIND[kind]}"
        params = {"authkey": self._api_key, "skip": skip, "take": take}
        last_error = ""

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                time.sleep(self._base_delay * attempt)

            try:
                resp = self._session.get(
                    url, params=params, timeout=self._timeout,
                    headers={"Accept": "application/json"},
                )
            except requests.RequestException as exc:
                last_error = f"network error: {exc}"
                if attempt < self._max_retries:
                    self._note_retry(f"{kind} skip={skip}: {last_error}; retrying")
                continue

            if _retryable_status(resp.status_code):
                last_error = f"HTTP {resp.status_code}"
                if attempt < self._max_retries:
                    self._note_retry(f"{kind} skip={skip}: {last_error}; retrying")
                continue

            if not resp.ok:
                raise SourceFetchError(
                    f"HTTP {resp.status_code} fetching {kind} skip={skip}: {resp.text[:300]}"
                )

            try:
                payload = resp.json()
            except ValueError as exc:
                raise SourceFetchError(f"invalid JSON for {kind} skip={skip}: {exc}") from exc
            page = extract_page(payload, kind)
            log.info("fetched %d %s records (skip=%d take=%d)", len(page), kind, skip, take)
            return page

        raise SourceFetchError(
            f"{kind} skip={skip}: giving up after {self._max_retries + 1} attempts ({last_error})"
        )
