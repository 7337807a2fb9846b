"""
Target resources: the record stores a sync writes into.

TargetResource is the capability the target processor and the integrity
verifier consume (lookup by key, create, update, count, enumerate, sample).
SQLModelResource implements it over a SQLModel table model.

Records are validated with Model.model_validate before they are written,
because table models skip validation in __init__.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from datasync.errors import ForbiddenError, RecordValidationError, as_sync_error

logger = logging.getLogger(__name__)

Authorizer = Callable[[Any, str, Mapping[str, Any]], bool]
ActionHook = Callable[[Dict[str, Any]], Dict[str, Any]]

# Columns managed by the store; never written from source data.
MANAGED_FIELDS = frozenset({"id", "created_at", "updated_at"})


class TargetResource(ABC):
    name: str

    @abstractmethod
    async def get_by(self, field: str, value: Any) -> Optional[Any]:
        ...

    @abstractmethod
    async def create(self, attrs: Mapping[str, Any], *, action: str = "create", actor: Any = None) -> Any:
        ...

    @abstractmethod
    async def update(self, record: Any, attrs: Mapping[str, Any], *, action: str = "update", actor: Any = None) -> Any:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def list_all(self) -> List[Any]:
        ...

    @abstractmethod
    async def sample(self, size: int) -> List[Any]:
        ...

    @abstractmethod
    def to_dict(self, record: Any) -> Dict[str, Any]:
        ...

    def supports_action(self, action: str) -> bool:
        return True


class SQLModelResource(TargetResource):
    """TargetResource backed by a SQLModel table."""

    def __init__(
        self,
        model: type,
        engine,
        *,
        name: Optional[str] = None,
        authorizer: Optional[Authorizer] = None,
        actions: Optional[Dict[str, ActionHook]] = None,
    ):
        """
        Args:
            model: SQLModel table class.
            engine: SQLAlchemy engine.
            name: Registry name; defaults to the model's class name.
            authorizer: Optional (actor, action, attrs) -> bool permission check.
            actions: Extra named actions mapping to attribute hooks that run
                before validation. "create" and "update" always exist.
        """
        self.model = model
        self.engine = engine
        self.name = name or model.__name__
        self.authorizer = authorizer
        self.actions: Dict[str, ActionHook] = {"create": dict, "update": dict}
        self.actions.update(actions or {})

    @property
    def attribute_names(self) -> List[str]:
        return [f for f in self.model.model_fields if f not in MANAGED_FIELDS]

    def supports_action(self, action: str) -> bool:
        return action in self.actions

    def to_dict(self, record: Any) -> Dict[str, Any]:
        return {name: getattr(record, name) for name in self.attribute_names}

    async def get_by(self, field: str, value: Any) -> Optional[Any]:
        column = getattr(self.model, field)
        try:
            with Session(self.engine) as s:
                return s.exec(select(self.model).where(column == value)).first()
        except SQLAlchemyError as exc:
            raise as_sync_error(exc) from exc

    async def create(self, attrs: Mapping[str, Any], *, action: str = "create", actor: Any = None) -> Any:
        data = self._prepare(attrs, action, actor)
        record = self._validate(data)
        try:
            with Session(self.engine) as s:
                s.add(record)
                s.commit()
                s.refresh(record)
        except SQLAlchemyError as exc:
            raise as_sync_error(exc) from exc
        logger.debug("Created %s %s", self.name, record.id)
        return record

    async def update(self, record: Any, attrs: Mapping[str, Any], *, action: str = "update", actor: Any = None) -> Any:
        data = self._prepare(attrs, action, actor)
        merged = self.to_dict(record)
        merged.update(data)
        validated = self._validate(merged)
        try:
            with Session(self.engine) as s:
                db_record = s.get(self.model, record.id)
                for key in data:
                    setattr(db_record, key, getattr(validated, key))
                if "updated_at" in self.model.model_fields:
                    db_record.updated_at = datetime.now(timezone.utc)
                s.add(db_record)
                s.commit()
                s.refresh(db_record)
                return db_record
        except SQLAlchemyError as exc:
            raise as_sync_error(exc) from exc

    async def count(self) -> int:
        with Session(self.engine) as s:
            return s.exec(select(func.count()).select_from(self.model)).one()

    async def list_all(self) -> List[Any]:
        with Session(self.engine) as s:
            return list(s.exec(select(self.model)).all())

    async def sample(self, size: int) -> List[Any]:
        with Session(self.engine) as s:
            return list(s.exec(select(self.model).order_by(func.random()).limit(size)).all())

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _prepare(self, attrs: Mapping[str, Any], action: str, actor: Any) -> Dict[str, Any]:
        if action not in self.actions:
            raise RecordValidationError(
                [{"field": "action", "message": f"unknown action {action}"}]
            )
        if self.authorizer is not None and not self.authorizer(actor, action, attrs):
            raise ForbiddenError(action, actor)
        unknown = sorted(set(attrs) - set(self.attribute_names))
        if unknown:
            raise RecordValidationError(
                [{"field": name, "message": "unknown attribute"} for name in unknown]
            )
        return self.actions[action](dict(attrs))

    def _validate(self, data: Dict[str, Any]) -> SQLModel:
        try:
            return self.model.model_validate(data)
        except ValidationError as exc:
            raise as_sync_error(exc) from exc
