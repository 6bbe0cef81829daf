from __future__ import annotations

import csv
import io
import json
import logging
import math
import zipfile
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID
from xml.sax.saxutils import escape, quoteattr

from app.services.table_config import TableColumn, TableDefinition

logger = logging.getLogger(__name__)

EXPORT_MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "pdf": "application/pdf",
}


class ImportFormatError(ValueError):
    """Raised when an uploaded file cannot be read as a table import."""


def _serialize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_serialize_value(item) for item in value)
    return str(value)


def _table_rows(rows: Sequence[dict[str, Any]], columns: Sequence[TableColumn]) -> list[list[str]]:
    return [[_serialize_value(row.get(col.key)) for col in columns] for row in rows]


def _render_csv(headers: list[str], data_rows: list[list[str]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    writer.writerows(data_rows)
    return buffer.getvalue().encode("utf-8")


_XML_DECL = '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
_SHEET_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
_DOC_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
_SHEET_NAME_FORBIDDEN = set('[]:*?/\\')

# Parts that do not depend on the exported table.
_XLSX_STATIC_PARTS = {
    "[Content_Types].xml": (
        '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
        '<Default Extension="xml" ContentType="application/xml"/>'
        '<Override PartName="/xl/workbook.xml" '
        'ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"/>'
        '<Override PartName="/xl/worksheets/sheet1.xml" '
        'ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"/>'
        "</Types>"
    ),
    "_rels/.rels": (
        f'<Relationships xmlns="{_REL_NS}">'
        f'<Relationship Id="rId1" Type="{_DOC_REL}/officeDocument" Target="xl/workbook.xml"/>'
        "</Relationships>"
    ),
    "xl/_rels/workbook.xml.rels": (
        f'<Relationships xmlns="{_REL_NS}">'
        f'<Relationship Id="rId1" Type="{_DOC_REL}/worksheet" Target="worksheets/sheet1.xml"/>'
        "</Relationships>"
    ),
}
XLSX_MAX_COLUMN_WIDTH = 60


def _column_letter(index: int) -> str:
    """Zero-based index to a spreadsheet column name (0 -> A, 26 -> AA)."""
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(65 + remainder) + letters
    return letters


def _sheet_name(title: str) -> str:
    cleaned = "".join(char for char in title if char not in _SHEET_NAME_FORBIDDEN).strip()
    return cleaned[:31] or "Rows"


def _xlsx_cell(ref: str, column: TableColumn | None, value: Any) -> str:
    if value is None:
        return ""
    if column is not None and column.type == "boolean" and isinstance(value, bool):
        return f'<c r="{ref}" t="b"><v>{int(value)}</v></c>'
    if (
        column is not None
        and column.type == "number"
        and isinstance(value, (int, float, Decimal))
        and not isinstance(value, bool)
        and math.isfinite(value)
    ):
        return f'<c r="{ref}" t="n"><v>{value}</v></c>'
    text = value if isinstance(value, str) else _serialize_value(value)
    return f'<c r="{ref}" t="inlineStr"><is><t xml:space="preserve">{escape(text)}</t></is></c>'


def _column_widths(columns: Sequence[TableColumn], data_rows: list[list[str]]) -> list[int]:
    widths = []
    for index, column in enumerate(columns):
        longest = max((len(row[index]) for row in data_rows), default=0)
        widths.append(min(max(longest, len(column.header)) + 2, XLSX_MAX_COLUMN_WIDTH))
    return widths


def _render_xlsx(title: str, columns: Sequence[TableColumn], rows: Sequence[dict[str, Any]]) -> bytes:
    """Single-sheet workbook with typed number and boolean cells.

    The header row is frozen and carries an autofilter over the data range.
    """
    letters = [_column_letter(index) for index in range(len(columns))]
    widths = _column_widths(columns, _table_rows(rows, columns))

    header = "".join(
        _xlsx_cell(f"{letter}1", None, column.header) for letter, column in zip(letters, columns)
    )
    sheet_rows = [f'<row r="1">{header}</row>']
    for row_number, row in enumerate(rows, start=2):
        cells = "".join(
            _xlsx_cell(f"{letter}{row_number}", column, row.get(column.key))
            for letter, column in zip(letters, columns)
        )
        sheet_rows.append(f'<row r="{row_number}">{cells}</row>')

    cols_xml = "".join(
        f'<col min="{index}" max="{index}" width="{width}" customWidth="1"/>'
        for index, width in enumerate(widths, start=1)
    )
    last_ref = f"{letters[-1]}{len(rows) + 1}" if letters else "A1"
    worksheet = (
        f'<worksheet xmlns="{_SHEET_NS}">'
        '<sheetViews><sheetView workbookViewId="0">'
        '<pane ySplit="1" topLeftCell="A2" activePane="bottomLeft" state="frozen"/>'
        "</sheetView></sheetViews>"
        + (f"<cols>{cols_xml}</cols>" if cols_xml else "")
        + f"<sheetData>{''.join(sheet_rows)}</sheetData>"
        + f'<autoFilter ref="A1:{last_ref}"/>'
        + "</worksheet>"
    )
    workbook = (
        f'<workbook xmlns="{_SHEET_NS}" xmlns:r="{_DOC_REL}">'
        f'<sheets><sheet name={quoteattr(_sheet_name(title))} sheetId="1" r:id="rId1"/></sheets>'
        "</workbook>"
    )

    parts = {**_XLSX_STATIC_PARTS, "xl/workbook.xml": workbook, "xl/worksheets/sheet1.xml": worksheet}
    output = io.BytesIO()
    with zipfile.ZipFile(output, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, body in parts.items():
            archive.writestr(name, _XML_DECL + body)
    return output.getvalue()


PDF_PAGE_WIDTH = 612
PDF_PAGE_HEIGHT = 792
PDF_ROWS_PER_PAGE = 48
PDF_FONT_SIZE = 9
PDF_LINE_HEIGHT = 13


def _pdf_text(value: str) -> str:
    text = value.encode("latin-1", errors="replace").decode("latin-1")
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def _pdf_page_stream(lines: list[str]) -> bytes:
    ops = ["BT", f"/F1 {PDF_FONT_SIZE} Tf", f"{PDF_LINE_HEIGHT} TL", f"40 {PDF_PAGE_HEIGHT - 40} Td"]
    ops.extend(f"({_pdf_text(line)}) '" for line in lines)
    ops.append("ET")
    return "\n".join(ops).encode("latin-1")


def _pdf_document(objects: list[bytes]) -> bytes:
    """Number ``objects`` from 1 and append the cross-reference table."""
    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(b"%d 0 obj\n" % number + body + b"\nendobj\n")
    xref_at = out.tell()
    out.write(b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1))
    for offset in offsets:
        out.write(b"%010d 00000 n \n" % offset)
    out.write(b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at))
    return out.getvalue()


def _render_pdf(title: str, columns: Sequence[TableColumn], data_rows: list[list[str]]) -> bytes:
    """Plain text table, ``PDF_ROWS_PER_PAGE`` rows per page.

    Every page repeats the title and the column header line.
    """
    header_line = " | ".join(column.header for column in columns)
    chunks = [
        data_rows[start : start + PDF_ROWS_PER_PAGE] for start in range(0, len(data_rows), PDF_ROWS_PER_PAGE)
    ] or [[]]
    page_count = len(chunks)

    # 1 catalog, 2 page tree, 3 font, then a page and its content stream per chunk.
    page_refs = [4 + 2 * index for index in range(page_count)]
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [%s] /Count %d >>"
        % (b" ".join(b"%d 0 R" % ref for ref in page_refs), page_count),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Courier /Encoding /WinAnsiEncoding >>",
    ]
    for page_number, chunk in enumerate(chunks, start=1):
        lines = [
            f"{title} Export",
            f"Rows: {len(data_rows)}    Page {page_number} of {page_count}",
            "",
            header_line,
            "-" * min(len(header_line), 100),
            *(" | ".join(row) for row in chunk),
        ]
        stream = _pdf_page_stream(lines)
        content_ref = 5 + 2 * (page_number - 1)
        objects.append(
            b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 %d %d] "
            b"/Resources << /Font << /F1 3 0 R >> >> /Contents %d 0 R >>"
            % (PDF_PAGE_WIDTH, PDF_PAGE_HEIGHT, content_ref)
        )
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")
    return _pdf_document(objects)


def export_rows(
    definition: TableDefinition,
    rows: Sequence[dict[str, Any]],
    export_format: str,
) -> tuple[bytes, str, str]:
    """Encode table rows as ``(body, media_type, extension)``."""
    normalized = (export_format or "csv").strip().lower()
    if normalized not in definition.export_formats:
        raise ValueError(f"Unsupported export format: {export_format}")

    columns = [col for col in definition.columns if not col.hidden_by_default]

    if normalized == "csv":
        body = _render_csv([col.header for col in columns], _table_rows(rows, columns))
    elif normalized == "json":
        payload = [{col.key: row.get(col.key) for col in columns} for row in rows]
        body = json.dumps(payload, indent=2, default=str).encode("utf-8")
    elif normalized == "xlsx":
        body = _render_xlsx(definition.title, columns, rows)
    else:
        logger.debug("Rendering %s rows of %s as PDF", len(rows), definition.table_key)
        body = _render_pdf(definition.title, columns, _table_rows(rows, columns))
    return body, EXPORT_MEDIA_TYPES[normalized], normalized


def _resolve_header(definition: TableDefinition, header: str) -> TableColumn | None:
    normalized = header.strip().lower()
    for col in definition.columns:
        if normalized in {col.key.lower(), col.header.lower(), col.id.lower()}:
            return col
    return None


def parse_csv_import(
    definition: TableDefinition,
    content: bytes,
    *,
    max_rows: int,
) -> list[dict[str, Any]]:
    """Read an uploaded CSV into row payloads keyed by editable column key.

    Headers may use the column key or its display header. Unknown and
    read-only columns are ignored.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ImportFormatError("Import file must be UTF-8 encoded") from exc

    reader = csv.reader(io.StringIO(text))
    try:
        headers = next(reader)
    except StopIteration as exc:
        raise ImportFormatError("Import file is empty") from exc
    except csv.Error as exc:
        raise ImportFormatError(f"Invalid CSV: {exc}") from exc

    mapping: list[TableColumn | None] = []
    for header in headers:
        col = _resolve_header(definition, header)
        if col is not None and not col.editable:
            col = None
        if col is None and header.strip().lower() != "id":
            logger.info("Ignoring import column %s for table %s", header, definition.table_key)
        mapping.append(col)
    if not any(mapping):
        raise ImportFormatError("Import file has no editable columns")

    payloads: list[dict[str, Any]] = []
    try:
        for record in reader:
            if not any(cell.strip() for cell in record):
                continue
            if len(payloads) >= max_rows:
                raise ImportFormatError(f"Import is limited to {max_rows} rows")
            payload: dict[str, Any] = {}
            for col, cell in zip(mapping, record):
                if col is not None:
                    payload[col.key] = cell.strip()
            payloads.append(payload)
    except csv.Error as exc:
        raise ImportFormatError(f"Invalid CSV: {exc}") from exc
    return payloads
