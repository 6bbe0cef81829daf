from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from fastapi import HTTPException

from app.models.directory import Team, UserRecord
from app.services.dynamic_filters import (
    OPERATOR_LABELS,
    OPERATORS_BY_TYPE,
    FilterFieldSpec,
    FilterValidationError,
    coerce_scalar,
    operators_for_type,
)

BACKEND_SQL = "sql"
BACKEND_DOCUMENT = "document"

COLUMN_TYPES = frozenset(OPERATORS_BY_TYPE)


class EditValidationError(ValueError):
    """Raised when an edited cell value breaks its column's edit rules."""

    def __init__(self, column: str, message: str):
        super().__init__(message)
        self.column = column
        self.message = message


@dataclass(frozen=True)
class EditConfig:
    required: bool = False
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    minimum: float | None = None
    maximum: float | None = None

    def validate(self, column: str, value: Any) -> None:
        if value is None or value == "" or value == []:
            if self.required:
                raise EditValidationError(column, f"{column} is required")
            return
        if isinstance(value, str):
            if self.min_length is not None and len(value) < self.min_length:
                raise EditValidationError(
                    column, f"{column} must be at least {self.min_length} characters"
                )
            if self.max_length is not None and len(value) > self.max_length:
                raise EditValidationError(
                    column, f"{column} must be at most {self.max_length} characters"
                )
            if self.pattern is not None and not re.fullmatch(self.pattern, value):
                raise EditValidationError(column, f"{column} has an invalid format")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.minimum is not None and value < self.minimum:
                raise EditValidationError(column, f"{column} must be >= {self.minimum:g}")
            if self.maximum is not None and value > self.maximum:
                raise EditValidationError(column, f"{column} must be <= {self.maximum:g}")


@dataclass(frozen=True)
class PopulateConfig:
    """Where a column's lookup options come from.

    ``source`` is a mapped model for SQL tables or a collection name for
    document tables.
    """

    source: Any
    value_field: str = "id"
    label_field: str = "name"


@dataclass(frozen=True)
class TableColumn:
    key: str
    header: str
    type: str = "text"
    sortable: bool = True
    filterable: bool = True
    editable: bool = False
    options: tuple[str, ...] | None = None
    edit_config: EditConfig | None = None
    populate: PopulateConfig | None = None
    hidden_by_default: bool = False

    @property
    def id(self) -> str:
        return self.key.replace(".", "_")

    def filter_spec(self) -> FilterFieldSpec:
        options = None
        if self.options is not None and self.type == "select":
            options = frozenset(self.options)
        return FilterFieldSpec(field=self.key, field_type=self.type, options=options)


@dataclass(frozen=True)
class KanbanColumn:
    id: str
    title: str


@dataclass(frozen=True)
class KanbanConfig:
    status_field: str
    title_field: str
    columns: tuple[KanbanColumn, ...]
    description_field: str | None = None


@dataclass(frozen=True)
class TableDefinition:
    table_key: str
    title: str
    backend: str
    columns: tuple[TableColumn, ...]
    model: type | None = None
    collection: str | None = None
    searchable_columns: tuple[str, ...] = ()
    default_sort: str = "id"
    kanban: KanbanConfig | None = None
    export_formats: tuple[str, ...] = ("csv", "json", "xlsx", "pdf")
    column_map: dict[str, TableColumn] = field(default_factory=dict, compare=False, repr=False)

    def column(self, key: str) -> TableColumn:
        found = self.column_map.get(key)
        if found is None:
            raise HTTPException(status_code=400, detail=f"Unknown column: {key}")
        return found

    def filter_specs(self) -> dict[str, FilterFieldSpec]:
        return {col.key: col.filter_spec() for col in self.columns if col.filterable}

    def column_types(self) -> dict[str, str]:
        return {col.key: col.type for col in self.columns}

    def sortable_keys(self) -> set[str]:
        return {col.key for col in self.columns if col.sortable} | {"id"}

    def populated_columns(self) -> list[TableColumn]:
        return [col for col in self.columns if col.populate is not None]


class TableRegistry:
    _tables: dict[str, TableDefinition] = {}

    @classmethod
    def register(
        cls,
        *,
        table_key: str,
        title: str,
        columns: list[TableColumn],
        model: type | None = None,
        collection: str | None = None,
        searchable_columns: list[str] | None = None,
        default_sort: str = "id",
        kanban: KanbanConfig | None = None,
    ) -> TableDefinition:
        if not table_key:
            raise ValueError("table_key is required")
        if (model is None) == (collection is None):
            raise ValueError(f"Table {table_key} needs exactly one of model or collection")

        backend = BACKEND_SQL if model is not None else BACKEND_DOCUMENT
        column_map: dict[str, TableColumn] = {}
        for col in columns:
            if col.key in column_map:
                raise ValueError(f"Duplicate column in registry: {col.key}")
            if col.type not in COLUMN_TYPES:
                raise ValueError(f"Column {col.key} has unsupported type {col.type}")
            if backend == BACKEND_SQL and not hasattr(model, col.key):
                raise ValueError(f"Field {col.key} is not present on model {model.__name__}")
            if col.key.count(".") > 1:
                raise ValueError(f"Column {col.key} nests deeper than one level")
            if col.type == "select" and not col.options and col.populate is None:
                raise ValueError(f"Select column {col.key} needs options or populate")
            column_map[col.key] = col

        searchable = list(searchable_columns or [])
        for key in searchable:
            if key not in column_map:
                raise ValueError(f"Searchable column {key} is not configured")

        if kanban is not None:
            status_col = column_map.get(kanban.status_field)
            if status_col is None:
                raise ValueError(f"Kanban status field {kanban.status_field} is not configured")
            if status_col.options is not None:
                unknown = {c.id for c in kanban.columns} - set(status_col.options)
                if unknown:
                    raise ValueError(f"Kanban columns not in status options: {sorted(unknown)}")
            if kanban.title_field not in column_map:
                raise ValueError(f"Kanban title field {kanban.title_field} is not configured")

        definition = TableDefinition(
            table_key=table_key,
            title=title,
            backend=backend,
            columns=tuple(columns),
            model=model,
            collection=collection,
            searchable_columns=tuple(searchable),
            default_sort=default_sort,
            kanban=kanban,
            column_map=column_map,
        )
        cls._tables[table_key] = definition
        return definition

    @classmethod
    def get(cls, table_key: str) -> TableDefinition:
        definition = cls._tables.get(table_key)
        if not definition:
            raise HTTPException(status_code=404, detail="Unregistered tableKey")
        return definition

    @classmethod
    def exists(cls, table_key: str) -> bool:
        return table_key in cls._tables

    @classmethod
    def keys(cls) -> list[str]:
        return sorted(cls._tables)

    @classmethod
    def unregister(cls, table_key: str) -> None:
        cls._tables.pop(table_key, None)


def coerce_cell_value(column: TableColumn, value: Any) -> Any:
    """Coerce a submitted cell value to the column's type, then apply its edit rules."""
    if value == "" and column.type not in {"text", "textarea", "email", "phone", "hidden"}:
        value = None

    if value is None:
        coerced: Any = None
    elif column.type == "array":
        if isinstance(value, str):
            coerced = [item.strip() for item in value.split(",") if item.strip()]
        elif isinstance(value, (list, tuple)):
            coerced = [str(item) for item in value]
        else:
            raise EditValidationError(column.key, f"{column.key} must be a list")
    elif column.type == "date":
        try:
            parsed = coerce_scalar(value, "date")
        except FilterValidationError as exc:
            raise EditValidationError(column.key, f"{column.key}: {exc}") from exc
        coerced = parsed.date() if isinstance(parsed, datetime) else parsed
    else:
        try:
            coerced = coerce_scalar(value, column.type)
        except FilterValidationError as exc:
            raise EditValidationError(column.key, f"{column.key}: {exc}") from exc

    if column.type == "select" and coerced is not None and column.options is not None:
        if coerced not in column.options:
            raise EditValidationError(column.key, f"{column.key} must be one of {', '.join(column.options)}")

    if column.edit_config is not None:
        column.edit_config.validate(column.key, coerced)
    return coerced


def coerce_row_values(
    definition: TableDefinition,
    values: Mapping[str, Any],
    *,
    creating: bool = False,
) -> dict[str, Any]:
    """Validate a row payload against the table's column configuration."""
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if key == "id":
            continue
        column = definition.column_map.get(key)
        if column is None:
            raise EditValidationError(key, f"Unknown column: {key}")
        if not column.editable:
            raise EditValidationError(key, f"Column {key} is not editable")
        cleaned[key] = coerce_cell_value(column, value)

    if creating:
        for column in definition.columns:
            if column.key in cleaned:
                continue
            if column.edit_config is not None and column.edit_config.required:
                raise EditValidationError(column.key, f"{column.key} is required")
    return cleaned


def serialize_cell(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value") and not isinstance(value, (str, bytes)):
        return value.value
    return value


class TableConfigurationService:
    @staticmethod
    def describe(table_key: str) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        columns = []
        for col in definition.columns:
            columns.append(
                {
                    "id": col.id,
                    "accessor_key": col.key,
                    "header": col.header,
                    "type": col.type,
                    "sortable": col.sortable,
                    "filterable": col.filterable,
                    "editable": col.editable,
                    "hidden_by_default": col.hidden_by_default,
                    "options": list(col.options) if col.options is not None else None,
                    "operators": [
                        {"value": op, "label": OPERATOR_LABELS[op]}
                        for op in operators_for_type(col.type)
                    ],
                }
            )
        kanban = None
        if definition.kanban is not None:
            kanban = {
                "status_field": definition.kanban.status_field,
                "columns": [{"id": c.id, "title": c.title} for c in definition.kanban.columns],
            }
        return {
            "table_key": definition.table_key,
            "title": definition.title,
            "backend": definition.backend,
            "searchable_columns": list(definition.searchable_columns),
            "columns": columns,
            "kanban": kanban,
            "export_formats": list(definition.export_formats),
        }


USER_STATUSES = ("Active", "Inactive", "Pending")

TableRegistry.register(
    table_key="users",
    title="Users",
    model=UserRecord,
    columns=[
        TableColumn(
            key="name",
            header="Name",
            editable=True,
            edit_config=EditConfig(required=True, min_length=2, max_length=160),
        ),
        TableColumn(
            key="email",
            header="Email",
            type="email",
            editable=True,
            edit_config=EditConfig(pattern=r"[^@\s]+@[^@\s]+\.[^@\s]+", max_length=255),
        ),
        TableColumn(key="phone", header="Phone", type="phone", editable=True),
        TableColumn(
            key="role",
            header="Role",
            type="select",
            editable=True,
            options=("admin", "editor", "viewer"),
        ),
        TableColumn(
            key="status",
            header="Status",
            type="select",
            editable=True,
            options=USER_STATUSES,
            edit_config=EditConfig(required=True),
        ),
        TableColumn(
            key="age",
            header="Age",
            type="number",
            editable=True,
            edit_config=EditConfig(minimum=0, maximum=150),
        ),
        TableColumn(key="tags", header="Tags", type="array", sortable=False, editable=True),
        TableColumn(key="is_verified", header="Verified", type="boolean", editable=True),
        TableColumn(key="joined_on", header="Joined", type="date", editable=True),
        TableColumn(
            key="notes",
            header="Notes",
            type="textarea",
            sortable=False,
            editable=True,
            hidden_by_default=True,
        ),
        TableColumn(
            key="team_id",
            header="Team",
            type="select",
            editable=True,
            populate=PopulateConfig(source=Team, value_field="id", label_field="name"),
        ),
        TableColumn(key="created_at", header="Created", type="date", editable=False),
    ],
    searchable_columns=["name", "email"],
    kanban=KanbanConfig(
        status_field="status",
        title_field="name",
        description_field="email",
        columns=tuple(KanbanColumn(id=status, title=status) for status in USER_STATUSES),
    ),
)

TableRegistry.register(
    table_key="contacts",
    title="Contacts",
    collection="contacts",
    columns=[
        TableColumn(
            key="name",
            header="Name",
            editable=True,
            edit_config=EditConfig(required=True, max_length=160),
        ),
        TableColumn(key="email", header="Email", type="email", editable=True),
        TableColumn(key="address.city", header="City", editable=True),
        TableColumn(key="address.country", header="Country", editable=True),
        TableColumn(
            key="stage",
            header="Stage",
            type="select",
            editable=True,
            options=("lead", "qualified", "customer"),
        ),
        TableColumn(key="score", header="Score", type="number", editable=True),
        TableColumn(key="labels", header="Labels", type="array", sortable=False, editable=True),
        TableColumn(key="subscribed", header="Subscribed", type="boolean", editable=True),
        TableColumn(key="last_contacted", header="Last Contacted", type="date", editable=True),
    ],
    searchable_columns=["name"],
    kanban=KanbanConfig(
        status_field="stage",
        title_field="name",
        description_field="email",
        columns=(
            KanbanColumn(id="lead", title="Lead"),
            KanbanColumn(id="qualified", title="Qualified"),
            KanbanColumn(id="customer", title="Customer"),
        ),
    ),
)
