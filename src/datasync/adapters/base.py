"""
Source adapter contract.

An adapter turns a source_config mapping into opaque state, then streams
raw records from that state page by page. stream_records must be
restartable: calling it again with the same state starts from the top.
"""
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Mapping, Optional


class SourceAdapter(ABC):
    name: str = "source"

    @abstractmethod
    async def initialize(self, config: Mapping[str, Any]) -> Any:
        """Validate config and return adapter state.

        Raises:
            SourceAdapterError: config is unusable.
        """

    @abstractmethod
    def stream_records(self, state: Any) -> AsyncIterator[Dict[str, Any]]:
        """Lazily yield raw records."""

    @abstractmethod
    async def validate_connection(self, state: Any) -> None:
        """Cheap connectivity check; raises SourceAdapterError or NetworkError."""

    async def get_total_count(self, state: Any) -> Optional[int]:
        """Best-effort record count; None when the source cannot tell."""
        return None


def normalize_record(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten {"id": ..., "fields": {...}} records into one mapping.

    The record id is kept under "id" unless the fields already carry one.
    Flat records are returned as a shallow copy.
    """
    fields = raw.get("fields")
    if isinstance(fields, Mapping):
        flat = dict(fields)
        if "id" in raw:
            flat.setdefault("id", raw["id"])
        return flat
    return dict(raw)
