from __future__ import annotations

import csv
import io
import json
import zipfile

import pytest

from app.services.table_config import TableRegistry
from app.services.table_export import ImportFormatError, export_rows, parse_csv_import
from app.validators.bulk import validate_rows

ROWS = [
    {"id": 1, "name": "Anna", "status": "Active", "tags": ["vip", "beta"], "is_verified": True, "notes": "x"},
    {"id": 2, "name": "Bob, Jr.", "status": "Inactive", "tags": [], "is_verified": False, "notes": None},
]


def test_export_csv_skips_hidden_columns_and_flattens_values():
    body, media_type, ext = export_rows(TableRegistry.get("users"), ROWS, "CSV")
    assert media_type == "text/csv"
    assert ext == "csv"

    rows = list(csv.reader(io.StringIO(body.decode())))
    headers = rows[0]
    assert "Notes" not in headers
    assert rows[1][headers.index("Tags")] == "vip, beta"
    assert rows[1][headers.index("Verified")] == "true"
    assert rows[2][headers.index("Name")] == "Bob, Jr."


def test_export_json_keys_by_column():
    body, media_type, _ = export_rows(TableRegistry.get("users"), ROWS, "json")
    payload = json.loads(body)
    assert media_type == "application/json"
    assert payload[0]["tags"] == ["vip", "beta"]
    assert "notes" not in payload[0]


def test_export_xlsx_is_a_workbook():
    body, _, _ = export_rows(TableRegistry.get("users"), ROWS, "xlsx")
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        assert "xl/workbook.xml" in archive.namelist()
        sheet = archive.read("xl/worksheets/sheet1.xml").decode()
    assert "Bob, Jr." in sheet


def test_export_xlsx_types_number_and_boolean_cells():
    rows = [{"id": 1, "name": "Anna", "status": "Active", "age": 36, "is_verified": True}]
    body, _, _ = export_rows(TableRegistry.get("users"), rows, "xlsx")
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        workbook = archive.read("xl/workbook.xml").decode()
        sheet = archive.read("xl/worksheets/sheet1.xml").decode()

    assert '<sheet name="Users"' in workbook
    assert 't="n"><v>36</v></c>' in sheet
    assert 't="b"><v>1</v></c>' in sheet
    assert 'state="frozen"' in sheet
    assert 'customWidth="1"' in sheet


def test_export_pdf_header_and_title():
    body, media_type, _ = export_rows(TableRegistry.get("users"), ROWS, "pdf")
    assert media_type == "application/pdf"
    assert body.startswith(b"%PDF-1.4")
    assert b"Users" in body
    assert body.rstrip().endswith(b"%%EOF")


def test_export_pdf_paginates_instead_of_truncating():
    rows = [{"id": index, "name": f"User {index}", "status": "Active"} for index in range(1, 121)]
    body, _, _ = export_rows(TableRegistry.get("users"), rows, "pdf")

    assert b"/Count 3" in body
    assert b"Page 3 of 3" in body
    assert b"User 120" in body
    assert b"truncated" not in body


def test_export_rejects_unknown_format():
    with pytest.raises(ValueError):
        export_rows(TableRegistry.get("users"), ROWS, "docx")


def test_import_maps_headers_and_ignores_read_only_columns():
    content = "\ufeffName,Status,created_at,Unknown\nEve,Active,2024-01-01,zzz\n,,,\nFrank,Pending,,\n"
    payloads = parse_csv_import(TableRegistry.get("users"), content.encode("utf-8"), max_rows=10)
    assert payloads == [
        {"name": "Eve", "status": "Active"},
        {"name": "Frank", "status": "Pending"},
    ]


def test_import_limits_and_format_errors():
    users = TableRegistry.get("users")
    with pytest.raises(ImportFormatError):
        parse_csv_import(users, b"", max_rows=10)
    with pytest.raises(ImportFormatError):
        parse_csv_import(users, b"created_at,id\n2024-01-01,1\n", max_rows=10)
    with pytest.raises(ImportFormatError):
        parse_csv_import(users, b"name,status\na,Active\nb,Active\nc,Active\n", max_rows=2)


def test_validate_rows_reports_issue_per_index():
    users = TableRegistry.get("users")
    valid, issues = validate_rows(
        users,
        [
            {"name": "Eve", "status": "Active", "age": "30"},
            {"name": "Frank"},
            {"name": "Gus", "status": "Active", "age": "old"},
        ],
    )
    assert [(index, cleaned["age"]) for index, cleaned in valid] == [(0, 30)]
    assert [issue.index for issue in issues] == [1, 2]
    assert issues[0].detail == "status is required"
