"""
Airtable source adapter.

requests is synchronous; every page fetch runs in the default thread pool
executor so it doesn't block the event loop. With a retry engine attached,
page fetches go through it under the api_operations policy and the
"airtable" rate limiter (5 requests per second).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

from datasync.adapters.base import SourceAdapter
from datasync.airtable.client import MAX_PAGE_SIZE, AirtableClient, AirtableCredentials
from datasync.config import get_settings
from datasync.errors import SourceAdapterError
from datasync.retry.engine import RetryContext, RetryEngine

logger = logging.getLogger(__name__)

RATE_LIMITER_NAME = "airtable"
REQUESTS_PER_WINDOW = 5
WINDOW_MS = 1000


@dataclass
class AirtableState:
    client: AirtableClient
    table: str
    view: Optional[str] = None
    formula: Optional[str] = None
    fields: List[str] = field(default_factory=list)
    page_size: int = MAX_PAGE_SIZE


class AirtableSourceAdapter(SourceAdapter):
    name = "airtable"

    def __init__(
        self,
        retry_engine: Optional[RetryEngine] = None,
        client_factory: Optional[Callable[[AirtableCredentials, int], AirtableClient]] = None,
    ):
        self.retry_engine = retry_engine
        self._client_factory = client_factory or (
            lambda creds, timeout: AirtableClient(creds, timeout_s=timeout)
        )
        if retry_engine is not None:
            retry_engine.rate_limiters.ensure(RATE_LIMITER_NAME, REQUESTS_PER_WINDOW, WINDOW_MS)

    async def initialize(self, config: Mapping[str, Any]) -> AirtableState:
        settings = get_settings()
        token = config.get("api_key") or settings.airtable_token
        base_id = config.get("base_id") or settings.airtable_base_id
        table = config.get("table_id") or config.get("table")
        missing = [
            name
            for name, value in (("api_key", token), ("base_id", base_id), ("table_id", table))
            if not value
        ]
        if missing:
            raise SourceAdapterError(f"airtable config missing: {', '.join(missing)}")

        client = self._client_factory(
            AirtableCredentials(token=token, base_id=base_id),
            int(config.get("timeout_s", settings.airtable_timeout_s)),
        )
        return AirtableState(
            client=client,
            table=table,
            view=config.get("view"),
            formula=config.get("formula"),
            fields=list(config.get("fields") or []),
            page_size=int(config.get("page_size", MAX_PAGE_SIZE)),
        )

    async def stream_records(self, state: AirtableState) -> AsyncIterator[Dict[str, Any]]:
        offset = None
        page = 0
        while True:
            page += 1
            records, offset = await self._fetch_page(state, offset)
            logger.debug("Airtable %s page %d: %d records", state.table, page, len(records))
            for record in records:
                yield record
            if not offset:
                return

    async def validate_connection(self, state: AirtableState) -> None:
        await self._fetch_page(state, None, page_size=1)

    async def get_total_count(self, state: AirtableState) -> Optional[int]:
        # Airtable has no count endpoint
        return None

    async def _fetch_page(self, state: AirtableState, offset: Optional[str], page_size: Optional[int] = None):
        def fetch():
            return state.client.list_page(
                state.table,
                offset=offset,
                page_size=page_size or state.page_size,
                view=state.view,
                formula=state.formula,
                fields=state.fields or None,
            )

        async def run():
            loop = asyncio.get_event_loop()
            return await loop.run_in_executor(None, fetch)

        if self.retry_engine is None:
            return await run()
        return await self.retry_engine.execute_with_retry(
            f"airtable:{state.table}",
            run,
            RetryContext(retry_policy="api_operations", rate_limiter=RATE_LIMITER_NAME),
        )
