"""
Minimal Airtable REST client (requests).

- offset pagination
- 429 and 5xx mapped to retryable SyncError variants; the retry engine owns
  backoff, so this client makes exactly one HTTP request per call
- synchronous; the source adapter runs it in a thread pool
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from datasync.errors import NetworkError, RateLimitedError, SourceAdapterError, as_sync_error

logger = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class AirtableCredentials:
    token: str
    base_id: str


class AirtableClient:
    def __init__(
        self,
        credentials: AirtableCredentials,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = AIRTABLE_API_URL,
        timeout_s: int = 30,
    ):
        self._creds = credentials
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def table_url(self, table: str) -> str:
        return f"{self._base_url}/{self._creds.base_id}/{table}"

    def list_page(
        self,
        table: str,
        *,
        offset: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
        view: Optional[str] = None,
        formula: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Fetch one page. Returns (records, next_offset)."""
        query: List[Tuple[str, Any]] = [("pageSize", min(page_size, MAX_PAGE_SIZE))]
        if offset:
            query.append(("offset", offset))
        if view:
            query.append(("view", view))
        if formula:
            query.append(("filterByFormula", formula))
        for f in fields or []:
            query.append(("fields[]", f))

        payload = self._request_json("GET", self.table_url(table), query)
        records = payload.get("records") or []
        for rec in records:
            if not rec.get("id"):
                raise SourceAdapterError("Airtable returned a record without 'id'")
        return records, payload.get("offset")

    def _request_json(self, method: str, url: str, query: List[Tuple[str, Any]]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._creds.token}"}
        try:
            resp = self._session.request(
                method, url, headers=headers, params=query, timeout=self._timeout_s
            )
        except requests.RequestException as exc:
            raise as_sync_error(exc) from exc

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            retry_ms = int(float(retry_after) * 1000) if retry_after else None
            logger.warning("Airtable rate limited (%s)", url)
            raise RateLimitedError("airtable", retry_after_ms=retry_ms)
        if resp.status_code >= 500:
            raise NetworkError("bad_status", f"Airtable {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise SourceAdapterError(f"Airtable {resp.status_code}: {resp.text[:500]}")

        try:
            return resp.json()
        except ValueError as exc:
            raise SourceAdapterError("Airtable returned non-JSON body") from exc
