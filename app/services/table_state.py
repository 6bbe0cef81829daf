"""Client-side table state: filters, sorting, search, pagination, selection.

These objects hold what the user is editing. Only the committed filter list,
the sorting state, the debounced search term and the requested page drive
fetches; the orchestrator owns when a fetch actually happens.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from app.services.dynamic_filters import (
    VALUELESS_OPERATORS,
    FilterValue,
    default_operator_for_type,
)

logger = logging.getLogger(__name__)

SORT_ASC = "asc"
SORT_DESC = "desc"
DEFAULT_SORT_FIELD = "id"


@dataclass(frozen=True)
class SortingState:
    column: str | None = None
    direction: str | None = None

    def toggle(self, column: str) -> SortingState:
        """Cycle asc -> desc -> none on the same column; a new column starts at asc."""
        if self.column != column:
            return SortingState(column=column, direction=SORT_ASC)
        if self.direction == SORT_ASC:
            return SortingState(column=column, direction=SORT_DESC)
        if self.direction == SORT_DESC:
            return SortingState()
        return SortingState(column=column, direction=SORT_ASC)

    def to_backend(self, default_field: str = DEFAULT_SORT_FIELD) -> tuple[str, bool]:
        if not self.column or not self.direction:
            return default_field, True
        return self.column, self.direction == SORT_ASC

    def to_payload(self) -> dict[str, Any]:
        return {"column": self.column, "direction": self.direction}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> SortingState:
        if not payload:
            return cls()
        direction = payload.get("direction")
        if direction not in {SORT_ASC, SORT_DESC}:
            return cls()
        return cls(column=payload.get("column") or None, direction=direction)


@dataclass(frozen=True)
class PaginationState:
    page_index: int = 0
    page_size: int = 10
    total_pages: int = 0
    total_items: int = 0

    @property
    def page(self) -> int:
        return self.page_index + 1

    def goto(self, page_index: int) -> PaginationState:
        return replace(self, page_index=max(page_index, 0))

    def resize(self, page_size: int) -> PaginationState:
        return replace(self, page_size=max(page_size, 1), page_index=0)

    def with_total(self, total_items: int) -> PaginationState:
        total_pages = math.ceil(total_items / self.page_size) if self.page_size else 0
        return replace(self, total_items=total_items, total_pages=total_pages)

    @property
    def can_previous(self) -> bool:
        return self.page_index > 0

    @property
    def can_next(self) -> bool:
        return self.page_index + 1 < self.total_pages


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


class FilterState:
    """Local (editing) and committed filter lists for one table."""

    def __init__(self, column_types: Mapping[str, str]):
        self._column_types = dict(column_types)
        self.local_filters: list[FilterValue] = []
        self.applied_filters: list[FilterValue] = []

    def column_type(self, column: str) -> str:
        return self._column_types.get(column, "text")

    def add_filter(self) -> FilterValue:
        item = FilterValue(column="", operator="equals", value="")
        self.local_filters.append(item)
        return item

    def update_filter(self, index: int, field: str, value: Any) -> FilterValue:
        item = self.local_filters[index]
        if field == "column":
            item.column = value
            item.type = self.column_type(value)
            item.operator = default_operator_for_type(item.type)
            item.value = ""
            item.second_value = None
        elif field == "operator":
            item.operator = value
        elif field == "value":
            item.value = value
        elif field in {"second_value", "secondValue"}:
            item.second_value = value
        else:
            raise ValueError(f"Unknown filter field: {field}")
        return item

    def remove_filter(self, index: int) -> list[FilterValue]:
        """Drop one local filter and commit what remains."""
        del self.local_filters[index]
        return self.apply_filters()

    def apply_filters(self) -> list[FilterValue]:
        committed: list[FilterValue] = []
        for item in self.local_filters:
            if _is_empty(item.column) or _is_empty(item.operator):
                continue
            if item.operator not in VALUELESS_OPERATORS and _is_empty(item.value):
                continue
            committed.append(
                FilterValue(
                    column=item.column,
                    operator=item.operator,
                    value=item.value,
                    second_value=item.second_value,
                    type=self.column_type(item.column),
                )
            )
        self.applied_filters = committed
        return committed

    def clear_all_filters(self) -> None:
        self.local_filters = []
        self.applied_filters = []

    def load(self, filters: Sequence[FilterValue]) -> list[FilterValue]:
        """Replace both lists, as when applying a saved filter."""
        self.local_filters = [replace(item) for item in filters]
        return self.apply_filters()

    def payload(self) -> list[dict[str, Any]]:
        return [item.to_payload() for item in self.applied_filters]


class RowSelection:
    """Index-based selection over the rows currently displayed."""

    def __init__(self) -> None:
        self._selected: set[int] = set()

    @property
    def indices(self) -> frozenset[int]:
        return frozenset(self._selected)

    def __len__(self) -> int:
        return len(self._selected)

    def select_row(self, index: int, selected: bool = True) -> None:
        if selected:
            self._selected.add(index)
        else:
            self._selected.discard(index)

    def toggle_row(self, index: int) -> None:
        self.select_row(index, index not in self._selected)

    def select_all(self, row_count: int) -> None:
        self._selected = set(range(row_count))

    def clear(self) -> None:
        self._selected.clear()

    def selected_rows(self, data: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
        return [data[index] for index in sorted(self._selected) if index < len(data)]


class SearchDebouncer:
    """Trailing-edge debounce for the search box.

    Each ``push`` restarts the timer; the callback fires once with the last
    term after ``delay_ms`` of quiet. A callback that is already running is
    left to finish.
    """

    def __init__(self, callback: Callable[[str], Awaitable[None]], delay_ms: int = 300):
        self._callback = callback
        self._delay = delay_ms / 1000
        self._task: asyncio.Task | None = None
        self._sleeping = False
        self.pending_term: str | None = None

    def push(self, term: str) -> None:
        self.pending_term = term
        if self._task is not None and self._sleeping:
            self._task.cancel()
        self._sleeping = True
        self._task = asyncio.get_running_loop().create_task(self._fire(term))

    async def _fire(self, term: str) -> None:
        await asyncio.sleep(self._delay)
        self._sleeping = False
        self.pending_term = None
        await self._callback(term)

    async def flush(self) -> None:
        """Wait for the scheduled callback, if any."""
        if self._task is not None and not self._task.done():
            await self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._sleeping = False
        self.pending_term = None
