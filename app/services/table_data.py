from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import FILTER_PREDICATES_SKIPPED, observe_table_fetch, observe_table_mutation
from app.schemas.table_data import SortingPayload, TableQueryRequest
from app.services.dynamic_filters import (
    FilterValidationError,
    TranslationIssue,
    parse_filter_payload,
    translate_filters,
)
from app.services.table_backends import (
    FetchParams,
    PageResult,
    RowNotFoundError,
    TableBackendError,
    backend_for,
)
from app.services.table_config import (
    EditValidationError,
    TableDefinition,
    TableRegistry,
    coerce_row_values,
)
from app.services.table_export import ImportFormatError, export_rows, parse_csv_import
from app.validators.bulk import ValidationIssue, validate_rows

logger = logging.getLogger(__name__)


@contextmanager
def _table_errors(table_key: str, operation: str) -> Iterator[None]:
    """Map table-layer failures onto HTTP errors and record the outcome."""
    try:
        yield
    except (FilterValidationError, EditValidationError) as exc:
        observe_table_mutation(table_key, operation, "invalid")
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RowNotFoundError as exc:
        observe_table_mutation(table_key, operation, "not_found")
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TableBackendError as exc:
        logger.exception("Table %s %s failed", table_key, operation)
        observe_table_mutation(table_key, operation, "error")
        raise HTTPException(status_code=400, detail=str(exc) or "Table operation failed") from exc
    else:
        observe_table_mutation(table_key, operation, "ok")


def _issue_payload(issue: TranslationIssue) -> dict[str, Any]:
    return {
        "kind": issue.kind,
        "field": issue.field,
        "operator": issue.operator,
        "detail": issue.detail,
    }


class TableDataService:
    @staticmethod
    def _page_size(definition: TableDefinition, requested: int | None) -> int:
        page_size = requested or settings.table_default_page_size
        if page_size < 1 or page_size > settings.table_max_page_size:
            raise HTTPException(
                status_code=400,
                detail=f"page_size must be between 1 and {settings.table_max_page_size}",
            )
        return page_size

    @staticmethod
    def build_fetch_params(
        definition: TableDefinition,
        *,
        page: int = 1,
        page_size: int | None = None,
        filters: Sequence[Mapping[str, Any]] | None = None,
        sorting: SortingPayload | None = None,
        search: str | None = None,
    ) -> tuple[FetchParams, list[TranslationIssue]]:
        """Translate a table query into backend fetch parameters.

        Filters whose operator is unknown are skipped with a warning, or
        rejected when ``UNKNOWN_OPERATOR_POLICY`` is ``reject``. Filters
        missing a value are always skipped.
        """
        try:
            filter_values = parse_filter_payload(list(filters or []))
            translated = translate_filters(filter_values, field_specs=definition.filter_specs())
        except FilterValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        for issue in translated.issues:
            if issue.kind != "unsupported_operator":
                continue
            if settings.unknown_operator_policy == "reject":
                raise HTTPException(status_code=400, detail=issue.detail)
            logger.warning(
                "Skipping filter on %s.%s: %s",
                definition.table_key,
                issue.field,
                issue.detail,
            )
            FILTER_PREDICATES_SKIPPED.labels(
                table_key=definition.table_key, operator=issue.operator
            ).inc()

        sort_field = definition.default_sort
        ascending = True
        if sorting is not None and sorting.column and sorting.direction:
            if sorting.column not in definition.sortable_keys():
                raise HTTPException(status_code=400, detail="Invalid sort field")
            sort_field = sorting.column
            ascending = sorting.direction == "asc"

        term = (search or "").strip() or None
        params = FetchParams(
            page=page,
            page_size=page_size,
            predicates=tuple(translated.predicates),
            sort_field=sort_field,
            ascending=ascending,
            search=term,
        )
        return params, translated.issues

    @staticmethod
    def _fetch(db: Session | None, definition: TableDefinition, params: FetchParams) -> PageResult:
        backend = backend_for(definition, db)
        try:
            result = backend.fetch(definition, params)
        except FilterValidationError as exc:
            observe_table_fetch(definition.table_key, "invalid")
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TableBackendError as exc:
            logger.exception("Fetching table %s failed", definition.table_key)
            observe_table_fetch(definition.table_key, "error")
            raise HTTPException(status_code=400, detail=str(exc) or "Failed to fetch data") from exc
        observe_table_fetch(definition.table_key, "ok")
        return result

    @staticmethod
    def query(db: Session | None, table_key: str, payload: TableQueryRequest) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        page_size = TableDataService._page_size(definition, payload.page_size)
        params, issues = TableDataService.build_fetch_params(
            definition,
            page=payload.page,
            page_size=page_size,
            filters=payload.filters,
            sorting=payload.sorting,
            search=payload.search,
        )
        result = TableDataService._fetch(db, definition, params)
        return {
            "table_key": table_key,
            "rows": result.rows,
            "total": result.total,
            "page": result.page,
            "page_size": page_size,
            "total_pages": result.total_pages,
            "skipped_filters": [_issue_payload(issue) for issue in issues],
            "status": 200,
        }

    @staticmethod
    def create_row(db: Session | None, table_key: str, values: Mapping[str, Any]) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        with _table_errors(table_key, "create"):
            cleaned = coerce_row_values(definition, values, creating=True)
            row = backend_for(definition, db).insert_row(definition, cleaned)
        logger.info("Created row %s in table %s", row.get("id"), table_key)
        return row

    @staticmethod
    def update_row(
        db: Session | None, table_key: str, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        with _table_errors(table_key, "update"):
            cleaned = coerce_row_values(definition, values)
            if not cleaned:
                raise EditValidationError("values", "No values to update")
            row = backend_for(definition, db).update_row(definition, row_id, cleaned)
        return row

    @staticmethod
    def delete_row(db: Session | None, table_key: str, row_id: Any) -> None:
        definition = TableRegistry.get(table_key)
        with _table_errors(table_key, "delete"):
            backend_for(definition, db).delete_row(definition, row_id)
        logger.info("Deleted row %s from table %s", row_id, table_key)

    @staticmethod
    def bulk_update(
        db: Session | None,
        table_key: str,
        row_ids: Sequence[Any],
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        definition = TableRegistry.get(table_key)
        with _table_errors(table_key, "bulk_update"):
            cleaned = coerce_row_values(definition, values)
            if not cleaned:
                raise EditValidationError("values", "No values to update")
            rows = backend_for(definition, db).bulk_update(definition, row_ids, cleaned)
        return rows

    @staticmethod
    def bulk_delete(db: Session | None, table_key: str, row_ids: Sequence[Any]) -> int:
        definition = TableRegistry.get(table_key)
        with _table_errors(table_key, "bulk_delete"):
            deleted = backend_for(definition, db).bulk_delete(definition, row_ids)
        logger.info("Deleted %s rows from table %s", deleted, table_key)
        return deleted

    @staticmethod
    def lookups(
        db: Session | None, table_key: str, column: str | None = None
    ) -> dict[str, list[dict[str, Any]]]:
        definition = TableRegistry.get(table_key)
        columns = definition.populated_columns()
        if column is not None:
            target = definition.column(column)
            if target.populate is None:
                raise HTTPException(status_code=400, detail=f"Column {column} has no lookup")
            columns = [target]

        backend = backend_for(definition, db)
        results: dict[str, list[dict[str, Any]]] = {}
        for col in columns:
            try:
                results[col.key] = backend.lookup(col.populate)
            except TableBackendError as exc:
                logger.exception("Lookup for %s.%s failed", table_key, col.key)
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        return results

    @staticmethod
    def kanban_board(
        db: Session | None,
        table_key: str,
        *,
        filters: Sequence[Mapping[str, Any]] | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        kanban = definition.kanban
        if kanban is None:
            raise HTTPException(status_code=400, detail=f"Table {table_key} has no kanban view")

        params, _ = TableDataService.build_fetch_params(
            definition, page_size=None, filters=filters, search=search
        )
        result = TableDataService._fetch(db, definition, params)
        board = [
            {"id": column.id, "title": column.title, "cards": []} for column in kanban.columns
        ]
        by_id = {column["id"]: column for column in board}
        for row in result.rows:
            target = by_id.get(str(row.get(kanban.status_field)))
            if target is None:
                continue
            target["cards"].append(
                {
                    "id": row["id"],
                    "column_id": target["id"],
                    "content": row.get(kanban.title_field),
                    "description": row.get(kanban.description_field)
                    if kanban.description_field
                    else None,
                }
            )
        return {"table_key": table_key, "columns": board, "status": 200}

    @staticmethod
    def move_card(db: Session | None, table_key: str, row_id: Any, column_id: str) -> dict[str, Any]:
        definition = TableRegistry.get(table_key)
        kanban = definition.kanban
        if kanban is None:
            raise HTTPException(status_code=400, detail=f"Table {table_key} has no kanban view")
        if column_id not in {column.id for column in kanban.columns}:
            raise HTTPException(status_code=400, detail=f"Unknown kanban column: {column_id}")
        with _table_errors(table_key, "move_card"):
            row = backend_for(definition, db).update_row(
                definition, row_id, {kanban.status_field: column_id}
            )
        return row

    @staticmethod
    def export(
        db: Session | None,
        table_key: str,
        export_format: str,
        *,
        filters: Sequence[Mapping[str, Any]] | None = None,
        sorting: SortingPayload | None = None,
        search: str | None = None,
    ) -> tuple[bytes, str, str]:
        definition = TableRegistry.get(table_key)
        params, _ = TableDataService.build_fetch_params(
            definition, page_size=None, filters=filters, sorting=sorting, search=search
        )
        result = TableDataService._fetch(db, definition, params)
        try:
            return export_rows(definition, result.rows, export_format)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @staticmethod
    def import_csv(db: Session | None, table_key: str, content: bytes) -> dict[str, Any]:
        """Insert each valid CSV row; invalid rows are reported by index and skipped."""
        definition = TableRegistry.get(table_key)
        try:
            payloads = parse_csv_import(definition, content, max_rows=settings.import_max_rows)
        except ImportFormatError as exc:
            observe_table_mutation(table_key, "import", "invalid")
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        valid, issues = validate_rows(definition, payloads)
        backend = backend_for(definition, db)
        inserted = 0
        for index, cleaned in valid:
            try:
                backend.insert_row(definition, cleaned)
            except TableBackendError as exc:
                logger.warning("Import row %s into %s failed: %s", index, table_key, exc)
                issues.append(ValidationIssue(index=index, detail=str(exc)))
                continue
            inserted += 1

        observe_table_mutation(table_key, "import", "ok" if not issues else "partial")
        logger.info(
            "Imported %s of %s rows into %s", inserted, len(payloads), table_key
        )
        return {
            "inserted": inserted,
            "errors": [
                {"index": issue.index, "detail": issue.detail}
                for issue in sorted(issues, key=lambda item: item.index)
            ],
            "status": 200,
        }
