"""Storage adapters behind the data tables.

``SqlTableBackend`` serves tables mapped to SQLAlchemy models.
``DocumentTableBackend`` serves tables kept as JSON-like documents in a
``DocumentStore`` collection, where columns may address one level of
nesting with a dot path (``address.city``).
"""

from __future__ import annotations

import copy
import itertools
import logging
import math
import threading
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.services.dynamic_filters import (
    Predicate,
    build_document_matcher,
    build_filter_expression,
    build_sort_clause,
    escape_like,
    get_path_value,
)
from app.services.table_config import (
    BACKEND_SQL,
    PopulateConfig,
    TableDefinition,
    serialize_cell,
)

logger = logging.getLogger(__name__)


class TableBackendError(Exception):
    """Storage-level failure surfaced to callers with a readable message."""


class RowNotFoundError(TableBackendError):
    pass


@dataclass(frozen=True)
class FetchParams:
    page: int = 1
    page_size: int | None = 10
    predicates: tuple[Predicate, ...] = ()
    sort_field: str = "id"
    ascending: bool = True
    search: str | None = None


@dataclass(frozen=True)
class PageResult:
    rows: list[dict[str, Any]]
    total: int
    page: int
    page_size: int | None

    @property
    def total_pages(self) -> int:
        if not self.page_size:
            return 1 if self.total else 0
        return math.ceil(self.total / self.page_size)


def _offset(params: FetchParams) -> int:
    if not params.page_size:
        return 0
    return (max(params.page, 1) - 1) * params.page_size


# ---------------------------------------------------------------------------
# Row store
# ---------------------------------------------------------------------------


class SqlTableBackend:
    def __init__(self, db: Session):
        self.db = db

    def _dialect_name(self) -> str:
        return self.db.get_bind().dialect.name

    @staticmethod
    def _columns(definition: TableDefinition) -> dict[str, Any]:
        model = definition.model
        columns = {col.key: getattr(model, col.key) for col in definition.columns}
        columns["id"] = model.id
        return columns

    @staticmethod
    def _coerce_id(definition: TableDefinition, row_id: Any) -> Any:
        id_column = definition.model.__table__.c.id
        python_type = id_column.type.python_type
        try:
            if python_type is uuid.UUID:
                return row_id if isinstance(row_id, uuid.UUID) else uuid.UUID(str(row_id))
            return python_type(row_id)
        except (TypeError, ValueError) as exc:
            raise RowNotFoundError(f"Row {row_id} not found") from exc

    @staticmethod
    def _bind_value(definition: TableDefinition, key: str, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        column = definition.model.__table__.c.get(key)
        if column is None:
            return value
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return value
        if python_type is int:
            try:
                return int(value)
            except ValueError as exc:
                raise TableBackendError(f"{key} must be an integer") from exc
        return value

    @staticmethod
    def _to_row(definition: TableDefinition, obj: Any) -> dict[str, Any]:
        row = {"id": serialize_cell(obj.id)}
        for col in definition.columns:
            row[col.key] = serialize_cell(getattr(obj, col.key))
        return row

    def _get_obj(self, definition: TableDefinition, row_id: Any):
        obj = self.db.get(definition.model, self._coerce_id(definition, row_id))
        if obj is None:
            raise RowNotFoundError(f"Row {row_id} not found")
        return obj

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise TableBackendError(str(getattr(exc, "orig", None) or exc)) from exc

    def fetch(self, definition: TableDefinition, params: FetchParams) -> PageResult:
        model = definition.model
        columns = self._columns(definition)
        query = self.db.query(model)

        expression = build_filter_expression(
            params.predicates, columns=columns, dialect_name=self._dialect_name()
        )
        if expression is not None:
            query = query.filter(expression)

        if params.search and definition.searchable_columns:
            search_column = columns[definition.searchable_columns[0]]
            term = escape_like(params.search)
            query = query.filter(search_column.ilike(f"%{term}%", escape="\\"))

        try:
            total = query.count()
            query = query.order_by(
                build_sort_clause(
                    order_by=params.sort_field,
                    ascending=params.ascending,
                    allowed_sort_fields=columns,
                )
            )
            if params.sort_field != "id":
                query = query.order_by(model.id.asc())
            if params.page_size:
                query = query.offset(_offset(params)).limit(params.page_size)
            rows = [self._to_row(definition, obj) for obj in query.all()]
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise TableBackendError(str(getattr(exc, "orig", None) or exc)) from exc
        return PageResult(rows=rows, total=total, page=params.page, page_size=params.page_size)

    def get_row(self, definition: TableDefinition, row_id: Any) -> dict[str, Any]:
        return self._to_row(definition, self._get_obj(definition, row_id))

    def insert_row(self, definition: TableDefinition, values: Mapping[str, Any]) -> dict[str, Any]:
        obj = definition.model(
            **{key: self._bind_value(definition, key, value) for key, value in values.items()}
        )
        self.db.add(obj)
        self._commit()
        self.db.refresh(obj)
        return self._to_row(definition, obj)

    def update_row(
        self, definition: TableDefinition, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        obj = self._get_obj(definition, row_id)
        for key, value in values.items():
            setattr(obj, key, self._bind_value(definition, key, value))
        self._commit()
        self.db.refresh(obj)
        return self._to_row(definition, obj)

    def delete_row(self, definition: TableDefinition, row_id: Any) -> None:
        obj = self._get_obj(definition, row_id)
        self.db.delete(obj)
        self._commit()

    def bulk_update(
        self, definition: TableDefinition, row_ids: Sequence[Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        objs = [self._get_obj(definition, row_id) for row_id in row_ids]
        for obj in objs:
            for key, value in values.items():
                setattr(obj, key, self._bind_value(definition, key, value))
        self._commit()
        for obj in objs:
            self.db.refresh(obj)
        return [self._to_row(definition, obj) for obj in objs]

    def bulk_delete(self, definition: TableDefinition, row_ids: Sequence[Any]) -> int:
        objs = [self._get_obj(definition, row_id) for row_id in row_ids]
        for obj in objs:
            self.db.delete(obj)
        self._commit()
        return len(objs)

    def lookup(self, populate: PopulateConfig) -> list[dict[str, Any]]:
        model = populate.source
        value_attr = getattr(model, populate.value_field)
        label_attr = getattr(model, populate.label_field)
        rows = self.db.query(value_attr, label_attr).order_by(label_attr.asc()).all()
        return [{"value": serialize_cell(value), "label": label} for value, label in rows]


# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------


def set_path_value(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _normalize_document_id(row_id: Any) -> Any:
    if isinstance(row_id, str) and row_id.isdigit():
        return int(row_id)
    return row_id


class DocumentStore:
    """In-process collections of JSON documents keyed by a store-assigned id."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[Any, dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _collection(self, name: str) -> dict[Any, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def all(self, name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(doc) for doc in self._collection(name).values()]

    def get(self, name: str, doc_id: Any) -> dict[str, Any]:
        with self._lock:
            doc = self._collection(name).get(_normalize_document_id(doc_id))
            if doc is None:
                raise RowNotFoundError(f"Row {doc_id} not found")
            return copy.deepcopy(doc)

    def insert(self, name: str, document: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            doc_id = next(self._ids)
            stored = copy.deepcopy(dict(document))
            stored["id"] = doc_id
            self._collection(name)[doc_id] = stored
            return copy.deepcopy(stored)

    def update(self, name: str, doc_id: Any, values: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            doc = self._collection(name).get(_normalize_document_id(doc_id))
            if doc is None:
                raise RowNotFoundError(f"Row {doc_id} not found")
            for path, value in values.items():
                set_path_value(doc, path, copy.deepcopy(value))
            return copy.deepcopy(doc)

    def delete(self, name: str, doc_id: Any) -> None:
        with self._lock:
            removed = self._collection(name).pop(_normalize_document_id(doc_id), None)
        if removed is None:
            raise RowNotFoundError(f"Row {doc_id} not found")

    def clear(self, name: str | None = None) -> None:
        with self._lock:
            if name is None:
                self._collections.clear()
            else:
                self._collections.pop(name, None)


def _sort_documents(
    documents: list[dict[str, Any]], field: str, ascending: bool
) -> list[dict[str, Any]]:
    ordered = sorted(documents, key=lambda doc: doc.get("id", 0))

    def _key(doc: dict[str, Any]) -> tuple[bool, Any]:
        value = get_path_value(doc, field)
        return (value is None, value if value is not None else 0)

    try:
        return sorted(ordered, key=_key, reverse=not ascending)
    except TypeError:
        return sorted(
            ordered,
            key=lambda doc: (get_path_value(doc, field) is None, str(get_path_value(doc, field))),
            reverse=not ascending,
        )


class DocumentTableBackend:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _to_row(definition: TableDefinition, doc: Mapping[str, Any]) -> dict[str, Any]:
        row = {"id": doc.get("id")}
        for col in definition.columns:
            row[col.key] = serialize_cell(get_path_value(doc, col.key))
        return row

    def fetch(self, definition: TableDefinition, params: FetchParams) -> PageResult:
        documents = self.store.all(definition.collection)
        matcher = build_document_matcher(params.predicates)
        matched = [doc for doc in documents if matcher(doc)]

        if params.search and definition.searchable_columns:
            term = params.search.lower()
            field = definition.searchable_columns[0]
            matched = [
                doc
                for doc in matched
                if get_path_value(doc, field) is not None
                and term in str(get_path_value(doc, field)).lower()
            ]

        allowed = definition.sortable_keys()
        if params.sort_field not in allowed:
            raise TableBackendError(f"Sort field '{params.sort_field}' is not allowed")
        ordered = _sort_documents(matched, params.sort_field, params.ascending)

        total = len(ordered)
        if params.page_size:
            start = _offset(params)
            ordered = ordered[start : start + params.page_size]
        rows = [self._to_row(definition, doc) for doc in ordered]
        return PageResult(rows=rows, total=total, page=params.page, page_size=params.page_size)

    def get_row(self, definition: TableDefinition, row_id: Any) -> dict[str, Any]:
        return self._to_row(definition, self.store.get(definition.collection, row_id))

    def insert_row(self, definition: TableDefinition, values: Mapping[str, Any]) -> dict[str, Any]:
        document: dict[str, Any] = {}
        for path, value in values.items():
            set_path_value(document, path, serialize_cell(value))
        return self._to_row(definition, self.store.insert(definition.collection, document))

    def update_row(
        self, definition: TableDefinition, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        serialized = {path: serialize_cell(value) for path, value in values.items()}
        return self._to_row(definition, self.store.update(definition.collection, row_id, serialized))

    def delete_row(self, definition: TableDefinition, row_id: Any) -> None:
        self.store.delete(definition.collection, row_id)

    def bulk_update(
        self, definition: TableDefinition, row_ids: Sequence[Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        for row_id in row_ids:
            self.store.get(definition.collection, row_id)
        return [self.update_row(definition, row_id, values) for row_id in row_ids]

    def bulk_delete(self, definition: TableDefinition, row_ids: Sequence[Any]) -> int:
        for row_id in row_ids:
            self.store.get(definition.collection, row_id)
        for row_id in row_ids:
            self.store.delete(definition.collection, row_id)
        return len(row_ids)

    def lookup(self, populate: PopulateConfig) -> list[dict[str, Any]]:
        documents = self.store.all(populate.source)
        options = [
            {
                "value": get_path_value(doc, populate.value_field),
                "label": get_path_value(doc, populate.label_field),
            }
            for doc in documents
        ]
        return sorted(options, key=lambda option: str(option["label"] or ""))


document_store = DocumentStore()


def backend_for(definition: TableDefinition, db: Session | None = None):
    if definition.backend == BACKEND_SQL:
        if db is None:
            raise TableBackendError(f"Table {definition.table_key} needs a database session")
        return SqlTableBackend(db)
    return DocumentTableBackend(document_store)


def seed_documents(store: DocumentStore, collection: str, documents: Iterable[Mapping[str, Any]]):
    return [store.insert(collection, doc) for doc in documents]
