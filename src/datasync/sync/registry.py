"""Name -> implementation registry for source adapters and target resources."""
from typing import Callable, Dict, List, Optional, Union

from datasync.adapters.base import SourceAdapter
from datasync.db.resource import TargetResource
from datasync.errors import SourceAdapterError, TargetResolutionError

AdapterFactory = Callable[[], SourceAdapter]


class SyncRegistry:
    """Resolves the names used in sync configs once, at engine start-up."""

    def __init__(self):
        self._resources: Dict[str, TargetResource] = {}
        self._adapters: Dict[str, AdapterFactory] = {}

    def register_resource(self, resource: TargetResource, name: Optional[str] = None) -> None:
        self._resources[name or resource.name] = resource

    def resolve_resource(self, name: str) -> TargetResource:
        try:
            return self._resources[name]
        except KeyError:
            raise TargetResolutionError(name) from None

    def register_adapter(self, name: str, factory: Union[AdapterFactory, SourceAdapter]) -> None:
        if isinstance(factory, SourceAdapter):
            instance = factory
            self._adapters[name] = lambda: instance
        else:
            self._adapters[name] = factory

    def resolve_adapter(self, name_or_adapter: Union[str, SourceAdapter]) -> SourceAdapter:
        if isinstance(name_or_adapter, SourceAdapter):
            return name_or_adapter
        try:
            factory = self._adapters[name_or_adapter]
        except KeyError:
            raise SourceAdapterError(f"unknown source adapter: {name_or_adapter}") from None
        return factory()

    @property
    def resource_names(self) -> List[str]:
        return sorted(self._resources)

    @property
    def adapter_names(self) -> List[str]:
        return sorted(self._adapters)
