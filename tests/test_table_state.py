from __future__ import annotations

import asyncio

import pytest

from app.services.dynamic_filters import FilterValue
from app.services.table_state import (
    FilterState,
    PaginationState,
    RowSelection,
    SearchDebouncer,
    SortingState,
)

COLUMN_TYPES = {"name": "text", "age": "number", "joined_on": "date", "status": "select"}


def test_changing_filter_column_resets_operator_and_value():
    state = FilterState(COLUMN_TYPES)
    state.add_filter()
    state.update_filter(0, "column", "name")
    state.update_filter(0, "operator", "contains")
    state.update_filter(0, "value", "ann")

    item = state.update_filter(0, "column", "joined_on")

    assert item.operator == "before"
    assert item.value == ""
    assert item.second_value is None
    assert item.type == "date"


def test_update_filter_rejects_unknown_field():
    state = FilterState(COLUMN_TYPES)
    state.add_filter()
    with pytest.raises(ValueError):
        state.update_filter(0, "colour", "red")


def test_apply_filters_commits_only_complete_rows():
    state = FilterState(COLUMN_TYPES)
    state.load(
        [
            FilterValue(column="name", operator="contains", value="an"),
            FilterValue(column="age", operator="greaterThan", value=""),
            FilterValue(column="", operator="equals", value="x"),
            FilterValue(column="age", operator="isNull", value=""),
        ]
    )

    assert [(f.column, f.operator) for f in state.applied_filters] == [
        ("name", "contains"),
        ("age", "isNull"),
    ]
    assert state.payload()[0] == {
        "field": "name",
        "operator": "contains",
        "value": "an",
        "secondValue": None,
        "type": "text",
    }


def test_local_edits_do_not_touch_applied_until_apply():
    state = FilterState(COLUMN_TYPES)
    state.add_filter()
    state.update_filter(0, "column", "status")
    state.update_filter(0, "value", "Active")
    assert state.applied_filters == []

    state.apply_filters()
    assert len(state.applied_filters) == 1


def test_remove_filter_commits_remaining():
    state = FilterState(COLUMN_TYPES)
    state.load(
        [
            FilterValue(column="name", operator="contains", value="an"),
            FilterValue(column="status", operator="is", value="Active"),
        ]
    )
    state.remove_filter(0)
    assert [f.column for f in state.applied_filters] == ["status"]


def test_clear_all_filters():
    state = FilterState(COLUMN_TYPES)
    state.load([FilterValue(column="name", operator="contains", value="an")])
    state.clear_all_filters()
    assert state.local_filters == []
    assert state.payload() == []


def test_sort_toggle_cycles_asc_desc_none():
    state = SortingState()
    state = state.toggle("name")
    assert (state.column, state.direction) == ("name", "asc")
    state = state.toggle("name")
    assert state.direction == "desc"
    state = state.toggle("name")
    assert state.direction is None
    assert state.to_backend() == ("id", True)


def test_sort_toggle_on_new_column_starts_ascending():
    state = SortingState(column="name", direction="desc").toggle("age")
    assert state.to_backend() == ("age", True)


def test_sorting_payload_roundtrip_ignores_bad_direction():
    assert SortingState.from_payload({"column": "age", "direction": "sideways"}) == SortingState()
    assert SortingState.from_payload({"column": "age", "direction": "desc"}).to_backend() == ("age", False)


def test_pagination_totals_and_navigation():
    state = PaginationState(page_size=10).with_total(25)
    assert state.total_pages == 3
    state = state.goto(2)
    assert state.page == 3
    assert state.can_next is False
    assert state.can_previous is True
    assert state.resize(20).page_index == 0


def test_row_selection_by_index():
    rows = [{"id": 1}, {"id": 2}, {"id": 3}]
    selection = RowSelection()
    selection.select_row(0)
    selection.toggle_row(2)
    selection.toggle_row(0)
    assert selection.selected_rows(rows) == [{"id": 3}]

    selection.select_all(len(rows))
    assert len(selection) == 3
    selection.clear()
    assert selection.indices == frozenset()


@pytest.mark.asyncio
async def test_search_debouncer_fires_once_with_last_term():
    seen: list[str] = []

    async def callback(term: str) -> None:
        seen.append(term)

    debouncer = SearchDebouncer(callback, delay_ms=20)
    debouncer.push("a")
    debouncer.push("an")
    debouncer.push("ann")
    assert debouncer.pending_term == "ann"
    await debouncer.flush()

    assert seen == ["ann"]
    assert debouncer.pending_term is None


@pytest.mark.asyncio
async def test_search_debouncer_cancel():
    seen: list[str] = []

    async def callback(term: str) -> None:
        seen.append(term)

    debouncer = SearchDebouncer(callback, delay_ms=20)
    debouncer.push("an")
    debouncer.cancel()
    await asyncio.sleep(0.05)
    assert seen == []


@pytest.mark.asyncio
async def test_search_debouncer_lets_running_callback_finish():
    started: list[str] = []
    finished: list[str] = []
    running = asyncio.Event()
    release = asyncio.Event()

    async def callback(term: str) -> None:
        started.append(term)
        running.set()
        await release.wait()
        finished.append(term)

    debouncer = SearchDebouncer(callback, delay_ms=20)
    debouncer.push("a")
    await asyncio.wait_for(running.wait(), timeout=1)
    debouncer.push("ab")
    release.set()
    await debouncer.flush()

    assert started == ["a", "ab"]
    assert finished == ["a", "ab"]
