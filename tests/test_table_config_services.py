from __future__ import annotations

from datetime import date

import pytest
from fastapi import HTTPException

from app.models.directory import UserRecord
from app.services.table_config import (
    EditConfig,
    EditValidationError,
    KanbanColumn,
    KanbanConfig,
    TableColumn,
    TableConfigurationService,
    TableRegistry,
    coerce_cell_value,
    coerce_row_values,
)


def test_registry_has_users_and_contacts():
    assert TableRegistry.exists("users") is True
    assert TableRegistry.exists("contacts") is True
    assert TableRegistry.get("users").backend == "sql"
    assert TableRegistry.get("contacts").backend == "document"


def test_unknown_table_is_404():
    with pytest.raises(HTTPException) as exc:
        TableRegistry.get("ghosts")
    assert exc.value.status_code == 404


def test_describe_lists_operators_for_column_type():
    described = TableConfigurationService.describe("users")
    age = next(col for col in described["columns"] if col["accessor_key"] == "age")
    assert age["operators"][0] == {"value": "equals", "label": "Equals"}
    assert "between" in [op["value"] for op in age["operators"]]
    notes = next(col for col in described["columns"] if col["accessor_key"] == "notes")
    assert notes["hidden_by_default"] is True
    assert described["searchable_columns"] == ["name", "email"]


def test_register_rejects_bad_configuration():
    with pytest.raises(ValueError):
        TableRegistry.register(
            table_key="broken",
            title="Broken",
            model=UserRecord,
            columns=[TableColumn(key="nickname", header="Nickname")],
        )

    with pytest.raises(ValueError):
        TableRegistry.register(
            table_key="broken",
            title="Broken",
            collection="broken",
            columns=[TableColumn(key="a.b.c", header="Too deep")],
        )

    with pytest.raises(ValueError):
        TableRegistry.register(
            table_key="broken",
            title="Broken",
            collection="broken",
            columns=[TableColumn(key="stage", header="Stage", type="select")],
        )

    with pytest.raises(ValueError):
        TableRegistry.register(
            table_key="broken",
            title="Broken",
            collection="broken",
            columns=[
                TableColumn(key="name", header="Name"),
                TableColumn(key="stage", header="Stage", type="select", options=("open", "closed")),
            ],
            kanban=KanbanConfig(
                status_field="stage",
                title_field="name",
                columns=(KanbanColumn(id="archived", title="Archived"),),
            ),
        )
    assert TableRegistry.exists("broken") is False


def test_edit_config_rules():
    rules = EditConfig(required=True, min_length=2, max_length=4, pattern=r"[a-z]+")
    rules.validate("code", "abc")
    for bad in ("", "a", "abcde", "AB1"):
        with pytest.raises(EditValidationError):
            rules.validate("code", bad)

    bounded = EditConfig(minimum=0, maximum=10)
    bounded.validate("score", 10)
    with pytest.raises(EditValidationError) as exc:
        bounded.validate("score", -1)
    assert exc.value.message == "score must be >= 0"


def test_coerce_cell_value_by_type():
    users = TableRegistry.get("users")
    assert coerce_cell_value(users.column("age"), "42") == 42
    assert coerce_cell_value(users.column("age"), "") is None
    assert coerce_cell_value(users.column("tags"), "a, b,") == ["a", "b"]
    assert coerce_cell_value(users.column("joined_on"), "2024-02-29") == date(2024, 2, 29)
    assert coerce_cell_value(users.column("is_verified"), "yes") is True

    with pytest.raises(EditValidationError):
        coerce_cell_value(users.column("role"), "owner")
    with pytest.raises(EditValidationError):
        coerce_cell_value(users.column("age"), "forty")


def test_coerce_row_values_checks_editability_and_required():
    users = TableRegistry.get("users")
    assert coerce_row_values(users, {"id": 7, "name": "Eve"}) == {"name": "Eve"}

    with pytest.raises(EditValidationError):
        coerce_row_values(users, {"created_at": "2024-01-01"})
    with pytest.raises(EditValidationError):
        coerce_row_values(users, {"nickname": "E"})
    with pytest.raises(EditValidationError) as exc:
        coerce_row_values(users, {"name": "Eve"}, creating=True)
    assert exc.value.column == "status"
