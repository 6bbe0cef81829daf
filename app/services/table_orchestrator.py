"""Async state machine driving one data table over a table client.

The orchestrator owns table state (filters, sorting, search, pagination,
selection, pending inline edits) and turns state changes into client calls.
Status moves ``idle -> loading -> ready`` (or ``error``); ``operation_loading``
is set while a mutation is in flight.

Every fetch takes a new request generation. A response whose generation is
no longer current when it resolves is discarded, so the latest request
always wins regardless of completion order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.config import settings
from app.services.dynamic_filters import FilterValue
from app.services.table_clients import TableClient, TableClientError
from app.services.table_config import (
    EditValidationError,
    TableDefinition,
    TableRegistry,
    coerce_cell_value,
    serialize_cell,
)
from app.services.table_state import (
    FilterState,
    PaginationState,
    RowSelection,
    SearchDebouncer,
    SortingState,
)

logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class Notification:
    title: str
    description: str = ""
    variant: str = "default"


Notifier = Callable[[Notification], None]


class NotificationLog:
    """Default notifier: keeps notifications in order and logs them."""

    def __init__(self) -> None:
        self.items: list[Notification] = []

    def __call__(self, notification: Notification) -> None:
        self.items.append(notification)
        level = logging.WARNING if notification.variant == "destructive" else logging.INFO
        logger.log(level, "%s: %s", notification.title, notification.description)


@dataclass
class PendingEdit:
    row_index: int
    column_key: str
    value: Any
    original_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommitResult:
    edit: PendingEdit
    row: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TableOrchestrator:
    def __init__(
        self,
        client: TableClient,
        definition: TableDefinition,
        *,
        notifier: Notifier | None = None,
        page_size: int | None = None,
        commit_concurrency: int | None = None,
        search_debounce_ms: int | None = None,
    ):
        self.client = client
        self.definition = definition
        self.table_key = definition.table_key
        self.notify: Notifier = notifier or NotificationLog()
        self.commit_concurrency = commit_concurrency or settings.batch_commit_concurrency

        self.status = STATUS_IDLE
        self.operation_loading = False
        self.error: str | None = None
        self.rows: list[dict[str, Any]] = []
        self.pagination = PaginationState(page_size=page_size or settings.table_default_page_size)
        self.sorting = SortingState()
        self.filters = FilterState(definition.column_types())
        self.search_term = ""
        self.selection = RowSelection()
        self.lookups: dict[str, list[dict[str, Any]]] = {}
        self.pending_edits: dict[tuple[int, str], PendingEdit] = {}
        self.editing_cell: tuple[int, str] | None = None
        self._card_order: dict[str, list[Any]] = {}
        self._generation = 0
        self._debouncer = SearchDebouncer(
            self._apply_search,
            delay_ms=settings.search_debounce_ms if search_debounce_ms is None else search_debounce_ms,
        )

    @classmethod
    def for_table(cls, client: TableClient, table_key: str, **kwargs: Any) -> TableOrchestrator:
        return cls(client, TableRegistry.get(table_key), **kwargs)

    # -- fetching -----------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    async def start(self, *, load_lookups: bool = True) -> None:
        if load_lookups and self.definition.populated_columns():
            await asyncio.gather(self.refresh(), self.load_lookups())
        else:
            await self.refresh()

    async def refresh(self) -> bool:
        """Fetch the current page; returns False when the response was stale or failed."""
        self._generation += 1
        generation = self._generation
        self.selection.clear()
        self.pending_edits.clear()
        self.editing_cell = None
        self.status = STATUS_LOADING

        try:
            result = await self.client.fetch(
                self.table_key,
                page=self.pagination.page,
                page_size=self.pagination.page_size,
                filters=self.filters.payload(),
                sorting=self.sorting.to_payload() if self.sorting.direction else None,
                search=self.search_term or None,
            )
        except TableClientError as exc:
            return self._fetch_failed(generation, exc.message)
        except Exception:
            logger.exception("Fetch failed for table %s", self.table_key)
            return self._fetch_failed(generation, None)

        if generation != self._generation:
            logger.debug("Discarding stale response for %s (gen %s)", self.table_key, generation)
            return False

        self.rows = list(result.get("rows", []))
        self.pagination = self.pagination.with_total(int(result.get("total", 0)))
        self.error = None
        self.status = STATUS_READY
        self._card_order = {}
        return True

    def _fetch_failed(self, generation: int, message: str | None) -> bool:
        if generation != self._generation:
            logger.debug("Discarding stale failure for %s (gen %s)", self.table_key, generation)
            return False
        self.error = message or "Failed to fetch data"
        self.rows = []
        self.pagination = self.pagination.with_total(0)
        self.status = STATUS_ERROR
        return False

    # -- sorting, search, pagination ------------------------------------------

    async def toggle_sort(self, column: str) -> None:
        if column not in self.definition.sortable_keys():
            raise ValueError(f"Column {column} is not sortable")
        self.sorting = self.sorting.toggle(column)
        await self.refresh()

    def set_search(self, term: str) -> None:
        """Debounced: the fetch runs once typing pauses."""
        self._debouncer.push(term)

    async def flush_search(self) -> None:
        await self._debouncer.flush()

    async def _apply_search(self, term: str) -> None:
        self.search_term = term.strip()
        self.pagination = self.pagination.goto(0)
        await self.refresh()

    async def set_page(self, page_index: int) -> None:
        self.pagination = self.pagination.goto(page_index)
        await self.refresh()

    async def next_page(self) -> None:
        if self.pagination.can_next:
            await self.set_page(self.pagination.page_index + 1)

    async def previous_page(self) -> None:
        if self.pagination.can_previous:
            await self.set_page(self.pagination.page_index - 1)

    async def set_page_size(self, page_size: int) -> None:
        self.pagination = self.pagination.resize(page_size)
        await self.refresh()

    # -- filters ----------------------------------------------------------------

    def add_filter(self) -> FilterValue:
        return self.filters.add_filter()

    def update_filter(self, index: int, field_name: str, value: Any) -> FilterValue:
        return self.filters.update_filter(index, field_name, value)

    async def apply_filters(self) -> None:
        self.filters.apply_filters()
        self.pagination = self.pagination.goto(0)
        await self.refresh()

    async def remove_filter(self, index: int) -> None:
        self.filters.remove_filter(index)
        self.pagination = self.pagination.goto(0)
        await self.refresh()

    async def clear_all_filters(self) -> None:
        self.filters.clear_all_filters()
        self.pagination = self.pagination.goto(0)
        await self.refresh()

    async def apply_saved_filter(self, saved: Mapping[str, Any]) -> None:
        """Load a saved filter's filters and sorting, then fetch once."""
        values = [FilterValue.from_payload(item) for item in saved.get("filters") or []]
        self.filters.load(values)
        self.sorting = SortingState.from_payload(saved.get("sorting"))
        self.pagination = self.pagination.goto(0)
        await self.refresh()

    # -- lookups ----------------------------------------------------------------

    async def load_lookups(self) -> dict[str, list[dict[str, Any]]]:
        try:
            lookups = await self.client.lookups(self.table_key)
        except TableClientError as exc:
            self.notify(Notification("Failed to load options", exc.message, "destructive"))
            return self.lookups
        self.lookups = dict(lookups)
        return self.lookups

    def lookup_label(self, column_key: str, value: Any) -> Any:
        for option in self.lookups.get(column_key, []):
            if option.get("value") == value:
                return option.get("label")
        return value

    # -- mutations --------------------------------------------------------------

    def _merge_rows(self, updated: Sequence[Mapping[str, Any]]) -> None:
        by_id = {row.get("id"): dict(row) for row in updated}
        self.rows = [by_id.get(row.get("id"), row) for row in self.rows]

    def _merge_cells(self, results: Sequence[CommitResult]) -> None:
        """Copy only the committed column from each returned row."""
        patches: dict[Any, dict[str, Any]] = {}
        for result in results:
            if result.row is None:
                continue
            column_key = result.edit.column_key
            patches.setdefault(result.row.get("id"), {})[column_key] = result.row.get(column_key)
        self.rows = [
            {**row, **patches[row.get("id")]} if row.get("id") in patches else row
            for row in self.rows
        ]

    async def _mutate(self, title: str, call: Callable[[], Any]) -> tuple[bool, Any]:
        self.operation_loading = True
        try:
            result = await call()
        except TableClientError as exc:
            self.notify(Notification(title, exc.message, "destructive"))
            return False, None
        finally:
            self.operation_loading = False
        return True, result

    async def add_row(self, values: Mapping[str, Any]) -> dict[str, Any] | None:
        ok, row = await self._mutate(
            "Failed to add row", lambda: self.client.create_row(self.table_key, values)
        )
        if not ok:
            return None
        self.notify(Notification("Row added", variant="success"))
        await self.refresh()
        return row

    async def update_row(self, row_id: Any, values: Mapping[str, Any]) -> dict[str, Any] | None:
        ok, row = await self._mutate(
            "Failed to update row",
            lambda: self.client.update_row(self.table_key, row_id, values),
        )
        if not ok:
            return None
        self._merge_rows([row])
        self.notify(Notification("Row updated", variant="success"))
        return row

    async def delete_row(self, row_id: Any) -> bool:
        ok, _ = await self._mutate(
            "Failed to delete row", lambda: self.client.delete_row(self.table_key, row_id)
        )
        if not ok:
            return False
        self.notify(Notification("Row deleted", variant="success"))
        await self.refresh()
        return True

    def selected_ids(self) -> list[Any]:
        return [row.get("id") for row in self.selection.selected_rows(self.rows)]

    async def bulk_edit(self, values: Mapping[str, Any]) -> list[dict[str, Any]]:
        row_ids = self.selected_ids()
        if not row_ids:
            return []
        ok, rows = await self._mutate(
            "Failed to update rows",
            lambda: self.client.bulk_update(self.table_key, row_ids, values),
        )
        if not ok:
            return []
        self._merge_rows(rows)
        self.selection.clear()
        self.notify(Notification(f"Updated {len(rows)} row(s)", variant="success"))
        return rows

    async def bulk_delete(self) -> int:
        row_ids = self.selected_ids()
        if not row_ids:
            return 0
        ok, deleted = await self._mutate(
            "Failed to delete rows", lambda: self.client.bulk_delete(self.table_key, row_ids)
        )
        if not ok:
            return 0
        self.notify(Notification(f"Deleted {deleted} row(s)", variant="success"))
        await self.refresh()
        return deleted

    # -- inline editing ---------------------------------------------------------

    def begin_edit(self, row_index: int, column_key: str) -> None:
        if row_index < 0 or row_index >= len(self.rows):
            raise IndexError(f"Row {row_index} is not on the current page")
        column = self.definition.column(column_key)
        if not column.editable:
            raise EditValidationError(column_key, f"Column {column_key} is not editable")
        self.editing_cell = (row_index, column_key)

    def stage_edit(self, value: Any) -> bool:
        """Validate and stage the value for the cell being edited.

        Returns False when the value was rejected; the cell stays in edit
        mode and a notification explains why.
        """
        if self.editing_cell is None:
            raise RuntimeError("No cell is being edited")
        row_index, column_key = self.editing_cell
        column = self.definition.column(column_key)
        try:
            coerced = coerce_cell_value(column, value)
        except EditValidationError as exc:
            self.notify(Notification("Invalid value", exc.message, "destructive"))
            return False

        row = self.rows[row_index]
        key = (row_index, column_key)
        if serialize_cell(coerced) == row.get(column_key):
            self.pending_edits.pop(key, None)
        else:
            self.pending_edits[key] = PendingEdit(
                row_index=row_index,
                column_key=column_key,
                value=coerced,
                original_data=dict(row),
            )
        self.editing_cell = None
        return True

    def cancel_edit(self) -> None:
        self.editing_cell = None

    def discard_pending_edits(self) -> None:
        self.pending_edits.clear()
        self.editing_cell = None

    def display_value(self, row_index: int, column_key: str) -> Any:
        pending = self.pending_edits.get((row_index, column_key))
        if pending is not None:
            return serialize_cell(pending.value)
        return self.rows[row_index].get(column_key)

    async def commit_pending_edits(self) -> list[CommitResult]:
        """Send one update per pending edit with bounded concurrency.

        Results come back in submission order. Successful cells are merged and
        their edits cleared; failed edits stay pending, and a single error
        notification covers all failures.
        """
        edits = list(self.pending_edits.values())
        if not edits:
            return []

        semaphore = asyncio.Semaphore(self.commit_concurrency)

        async def _commit(edit: PendingEdit) -> CommitResult:
            async with semaphore:
                row_id = edit.original_data.get("id")
                try:
                    row = await self.client.update_row(
                        self.table_key, row_id, {edit.column_key: serialize_cell(edit.value)}
                    )
                except TableClientError as exc:
                    return CommitResult(edit=edit, error=exc.message)
                return CommitResult(edit=edit, row=row)

        self.operation_loading = True
        try:
            results = await asyncio.gather(*(_commit(edit) for edit in edits))
        finally:
            self.operation_loading = False

        succeeded = [result for result in results if result.ok]
        failed = [result for result in results if not result.ok]
        self._merge_cells(succeeded)
        for result in succeeded:
            self.pending_edits.pop((result.edit.row_index, result.edit.column_key), None)

        if failed:
            details = "; ".join(
                f"row {result.edit.row_index + 1} {result.edit.column_key}: {result.error}"
                for result in failed
            )
            self.notify(
                Notification(
                    f"Failed to save {len(failed)} of {len(results)} change(s)",
                    details,
                    "destructive",
                )
            )
        else:
            self.notify(Notification(f"Saved {len(succeeded)} change(s)", variant="success"))
        return list(results)

    # -- kanban -----------------------------------------------------------------

    def kanban_board(self) -> list[dict[str, Any]]:
        kanban = self.definition.kanban
        if kanban is None:
            raise ValueError(f"Table {self.table_key} has no kanban view")
        board = []
        for column in kanban.columns:
            cards = [
                {
                    "id": row.get("id"),
                    "column_id": column.id,
                    "content": row.get(kanban.title_field),
                }
                for row in self.rows
                if str(row.get(kanban.status_field)) == column.id
            ]
            order = self._card_order.get(column.id)
            if order:
                rank = {card_id: index for index, card_id in enumerate(order)}
                cards.sort(key=lambda card: rank.get(card["id"], len(rank)))
            board.append({"id": column.id, "title": column.title, "cards": cards})
        return board

    async def move_card(self, card_id: Any, column_id: str) -> bool:
        kanban = self.definition.kanban
        if kanban is None:
            raise ValueError(f"Table {self.table_key} has no kanban view")
        ok, row = await self._mutate(
            "Failed to move card",
            lambda: self.client.move_card(self.table_key, card_id, column_id),
        )
        if not ok:
            return False
        self._merge_rows([row])
        for order in self._card_order.values():
            if card_id in order:
                order.remove(card_id)
        return True

    def reorder_card(self, card_id: Any, new_index: int) -> None:
        """Reorder within a column; local only, nothing is persisted."""
        for column in self.kanban_board():
            ids = [card["id"] for card in column["cards"]]
            if card_id in ids:
                ids.remove(card_id)
                ids.insert(max(0, min(new_index, len(ids))), card_id)
                self._card_order[column["id"]] = ids
                return
        raise KeyError(f"Card {card_id} is not on the board")

    # -- export / import --------------------------------------------------------

    async def export(self, export_format: str) -> tuple[bytes, str, str] | None:
        ok, result = await self._mutate(
            "Export failed",
            lambda: self.client.export(
                self.table_key,
                export_format,
                filters=self.filters.payload(),
                sorting=self.sorting.to_payload() if self.sorting.direction else None,
                search=self.search_term or None,
            ),
        )
        return result if ok else None

    async def import_csv(self, content: bytes) -> dict[str, Any] | None:
        ok, result = await self._mutate(
            "Import failed", lambda: self.client.import_csv(self.table_key, content)
        )
        if not ok:
            return None
        errors = result.get("errors") or []
        if errors:
            self.notify(
                Notification(
                    f"Imported {result.get('inserted', 0)} row(s), {len(errors)} skipped",
                    "; ".join(f"row {item['index'] + 1}: {item['detail']}" for item in errors[:5]),
                    "destructive",
                )
            )
        else:
            self.notify(Notification(f"Imported {result.get('inserted', 0)} row(s)", variant="success"))
        await self.refresh()
        return result

    async def close(self) -> None:
        self._debouncer.cancel()
