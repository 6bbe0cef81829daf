from dataclasses import dataclass
from typing import Any

from app.services.table_config import EditValidationError, TableDefinition, coerce_row_values


@dataclass
class ValidationIssue:
    index: int
    detail: str


def validate_rows(
    definition: TableDefinition, payloads: list[dict[str, Any]], *, creating: bool = True
) -> tuple[list[tuple[int, dict[str, Any]]], list[ValidationIssue]]:
    """Coerce each payload; returns ``(index, cleaned)`` pairs and per-index issues."""
    valid: list[tuple[int, dict[str, Any]]] = []
    issues: list[ValidationIssue] = []
    for idx, payload in enumerate(payloads):
        try:
            valid.append((idx, coerce_row_values(definition, payload, creating=creating)))
        except EditValidationError as exc:
            issues.append(ValidationIssue(index=idx, detail=exc.message))
    return valid, issues
