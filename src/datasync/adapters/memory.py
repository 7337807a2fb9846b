"""In-memory source adapter, paged like a remote API."""
import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping

from datasync.adapters.base import SourceAdapter
from datasync.errors import SourceAdapterError


@dataclass
class MemorySourceState:
    records: List[Dict[str, Any]]
    page_size: int


class MemorySourceAdapter(SourceAdapter):
    """Streams a list of records given as source_config["records"]."""

    name = "memory"

    async def initialize(self, config: Mapping[str, Any]) -> MemorySourceState:
        records = config.get("records")
        if records is None:
            raise SourceAdapterError("memory adapter requires 'records'")
        page_size = int(config.get("page_size", 100))
        if page_size <= 0:
            raise SourceAdapterError("page_size must be positive")
        return MemorySourceState(records=list(records), page_size=page_size)

    async def stream_records(self, state: MemorySourceState) -> AsyncIterator[Dict[str, Any]]:
        for start in range(0, len(state.records), state.page_size):
            for record in state.records[start:start + state.page_size]:
                yield record
            # page boundary: let other tasks run, as a network fetch would
            await asyncio.sleep(0)

    async def validate_connection(self, state: MemorySourceState) -> None:
        return None

    async def get_total_count(self, state: MemorySourceState) -> int:
        return len(state.records)
