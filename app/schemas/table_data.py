from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SortingPayload(BaseModel):
    column: str | None = None
    direction: str | None = Field(default=None, pattern="^(asc|desc)$")


class TableQueryRequest(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int | None = Field(default=None, ge=1)
    filters: list[dict[str, Any]] = Field(default_factory=list)
    sorting: SortingPayload | None = None
    search: str | None = Field(default=None, max_length=200)


class TableQueryResponse(BaseModel):
    table_key: str
    rows: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int
    skipped_filters: list[dict[str, Any]] = Field(default_factory=list)
    status: int = 200


class RowValues(BaseModel):
    values: dict[str, Any]


class BulkUpdateRequest(BaseModel):
    ids: list[Any] = Field(min_length=1)
    values: dict[str, Any]


class BulkDeleteRequest(BaseModel):
    ids: list[Any] = Field(min_length=1)


class KanbanMoveRequest(BaseModel):
    column_id: str = Field(min_length=1)


class ImportIssue(BaseModel):
    index: int
    detail: str


class ImportResult(BaseModel):
    inserted: int
    errors: list[ImportIssue]
    status: int = 200


class SavedFilterCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    filters: list[dict[str, Any]] = Field(default_factory=list)
    sorting: SortingPayload | None = None


class SavedFilterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    table_name: str
    created_by: str
    filters: list[dict[str, Any]]
    sorting: dict[str, Any] | None = None
