from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, literal, not_, select
from sqlalchemy.sql import sqltypes
from sqlalchemy.sql.elements import ClauseElement, ColumnElement

logger = logging.getLogger(__name__)


class FilterValidationError(ValueError):
    """Raised when filter payload or values are invalid."""


OPERATOR_LABELS: dict[str, str] = {
    "equals": "Equals",
    "notEquals": "Not Equals",
    "contains": "Contains",
    "notContains": "Not Contains",
    "startsWith": "Starts With",
    "endsWith": "Ends With",
    "greaterThan": "Greater Than",
    "lessThan": "Less Than",
    "greaterThanEqual": "Greater Than or Equal",
    "lessThanEqual": "Less Than or Equal",
    "between": "Between",
    "before": "Before",
    "after": "After",
    "onDate": "On Date",
    "dateRange": "Date Range",
    "in": "In",
    "notIn": "Not In",
    "hasAny": "Contains Any",
    "hasAll": "Contains All",
    "is": "Is",
    "isNot": "Is Not",
    "isTrue": "Is True",
    "isFalse": "Is False",
    "isNull": "Is Empty",
    "isNotNull": "Is Not Empty",
}

# Order matters: the first operator is the default when a filter's column changes.
OPERATORS_BY_TYPE: dict[str, tuple[str, ...]] = {
    "text": (
        "equals",
        "notEquals",
        "contains",
        "notContains",
        "startsWith",
        "endsWith",
        "isNull",
        "isNotNull",
    ),
    "hidden": ("equals", "notEquals"),
    "textarea": ("equals", "notEquals", "contains", "notContains"),
    "email": ("equals", "notEquals", "contains", "notContains"),
    "phone": ("equals", "notEquals", "contains", "notContains"),
    "number": (
        "equals",
        "notEquals",
        "greaterThan",
        "lessThan",
        "greaterThanEqual",
        "lessThanEqual",
        "between",
        "isNull",
        "isNotNull",
    ),
    "date": ("before", "after", "onDate", "dateRange", "isNull", "isNotNull"),
    "select": ("is", "isNot", "in", "notIn"),
    "array": ("hasAny", "hasAll", "in", "notIn"),
    "boolean": ("isTrue", "isFalse"),
}

TEXT_TYPES = {"text", "hidden", "textarea", "email", "phone", "select"}
RANGE_OPERATORS = {"between", "dateRange"}
SET_OPERATORS = {"in", "notIn", "hasAny", "hasAll"}
VALUELESS_OPERATORS = {"isNull", "isNotNull", "isTrue", "isFalse"}
NEGATED_OPERATORS = {"notEquals", "isNot", "notContains", "notIn"}

# Table-valued function that expands a JSON array column, per SQL dialect.
JSON_ARRAY_ELEMENTS = {
    "sqlite": "json_each",
    "postgresql": "json_array_elements_text",
}

TRUE_TOKENS = {True, "true", "1", 1, "yes", "on"}
FALSE_TOKENS = {False, "false", "0", 0, "no", "off"}


@dataclass
class FilterValue:
    """One user-authored filter row, as edited in the table toolbar."""

    column: str = ""
    operator: str = "equals"
    value: Any = ""
    second_value: Any = None
    type: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "field": self.column,
            "operator": self.operator,
            "value": self.value,
            "secondValue": self.second_value,
            "type": self.type,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> FilterValue:
        if not isinstance(payload, Mapping):
            raise FilterValidationError("Each filter must be an object")
        column = payload.get("field", payload.get("column"))
        second = payload.get("secondValue", payload.get("second_value"))
        return cls(
            column=str(column or "").strip(),
            operator=str(payload.get("operator") or "").strip(),
            value=payload.get("value"),
            second_value=second,
            type=payload.get("type"),
        )


@dataclass(frozen=True)
class FilterFieldSpec:
    """Whitelist definition for a filterable field."""

    field: str
    field_type: str = "text"
    operators: tuple[str, ...] | None = None
    options: frozenset[str] | None = None


@dataclass(frozen=True)
class Predicate:
    """Normalized, value-coerced comparison ready for a backend compiler."""

    field: str
    operator: str
    field_type: str = "text"
    value: Any = None
    second_value: Any = None


@dataclass(frozen=True)
class TranslationIssue:
    kind: str
    field: str
    operator: str
    detail: str


@dataclass(frozen=True)
class TranslationResult:
    predicate: Predicate | None = None
    issue: TranslationIssue | None = None

    @property
    def ok(self) -> bool:
        return self.predicate is not None


@dataclass(frozen=True)
class FilterQuery:
    """Translated filters: AND-combined predicates plus dropped-filter issues."""

    predicates: list[Predicate] = field(default_factory=list)
    issues: list[TranslationIssue] = field(default_factory=list)


def operators_for_type(field_type: str | None) -> tuple[str, ...]:
    return OPERATORS_BY_TYPE.get(field_type or "text", OPERATORS_BY_TYPE["text"])


def default_operator_for_type(field_type: str | None) -> str:
    return operators_for_type(field_type)[0]


def _parse_bool(value: Any) -> bool:
    normalized = str(value).strip().lower() if isinstance(value, str) else value
    if normalized in TRUE_TOKENS:
        return True
    if normalized in FALSE_TOKENS:
        return False
    raise FilterValidationError("Expected a boolean value")


def _parse_temporal(value: Any) -> date | datetime:
    if isinstance(value, (date, datetime)):
        return value
    text = str(value).strip()
    try:
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        raise FilterValidationError("Expected an ISO date value (YYYY-MM-DD)") from exc


def coerce_scalar(value: Any, field_type: str) -> Any:
    if field_type in TEXT_TYPES or field_type == "array":
        if value is None:
            return None
        return str(value)

    if field_type == "number":
        if isinstance(value, bool):
            raise FilterValidationError("Expected a numeric value")
        if isinstance(value, (int, float)):
            return value
        try:
            text = str(value).strip()
            return float(text) if "." in text or "e" in text.lower() else int(text)
        except (TypeError, ValueError) as exc:
            raise FilterValidationError("Expected a numeric value") from exc

    if field_type == "boolean":
        return _parse_bool(value)

    if field_type == "date":
        return _parse_temporal(value)

    raise FilterValidationError(f"Unsupported field type: {field_type}")


def _coerce_list(value: Any, field_type: str) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        raw_values = list(value)
    elif isinstance(value, str):
        raw_values = [item.strip() for item in value.split(",") if item.strip()]
    else:
        raw_values = [value]

    if not raw_values:
        raise FilterValidationError("Array filter value cannot be empty")

    return [coerce_scalar(item, field_type) for item in raw_values]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _validate_select_option(spec: FilterFieldSpec, value: Any) -> None:
    if spec.options is None:
        return
    values = value if isinstance(value, list) else [value]
    invalid = [item for item in values if str(item) not in spec.options]
    if invalid:
        raise FilterValidationError(
            f"Invalid option(s) for '{spec.field}': {', '.join(str(v) for v in invalid)}"
        )


def translate_filter(
    filter_value: FilterValue,
    *,
    field_specs: Mapping[str, FilterFieldSpec] | None = None,
) -> TranslationResult:
    """Translate one filter row into a backend-neutral predicate.

    Unknown operators and filters without a value come back as an issue
    rather than a predicate; callers decide whether to skip or reject.
    Values that cannot be coerced to the column type raise
    ``FilterValidationError``.
    """
    column = filter_value.column
    operator = filter_value.operator
    if not column:
        raise FilterValidationError("Filter field is required")

    spec: FilterFieldSpec | None = None
    if field_specs is not None:
        spec = field_specs.get(column)
        if spec is None:
            raise FilterValidationError(f"Field '{column}' is not filterable")

    if operator not in OPERATOR_LABELS:
        return TranslationResult(
            issue=TranslationIssue(
                kind="unsupported_operator",
                field=column,
                operator=operator,
                detail=f"Unsupported operator: {operator}",
            )
        )

    field_type = spec.field_type if spec else (filter_value.type or "text")
    if field_type not in OPERATORS_BY_TYPE:
        raise FilterValidationError(f"Unsupported field type: {field_type}")
    if spec is not None:
        allowed = spec.operators if spec.operators is not None else operators_for_type(field_type)
        if operator not in allowed:
            raise FilterValidationError(
                f"Operator '{operator}' is not allowed for field '{column}'"
            )

    if operator in VALUELESS_OPERATORS:
        return TranslationResult(
            predicate=Predicate(field=column, operator=operator, field_type=field_type)
        )

    if _is_blank(filter_value.value):
        return TranslationResult(
            issue=TranslationIssue(
                kind="missing_value",
                field=column,
                operator=operator,
                detail=f"Filter on '{column}' has no value",
            )
        )

    if operator in RANGE_OPERATORS:
        if _is_blank(filter_value.second_value):
            raise FilterValidationError(f"Operator '{operator}' expects a value and a second value")
        start = coerce_scalar(filter_value.value, field_type)
        end = coerce_scalar(filter_value.second_value, field_type)
        return TranslationResult(
            predicate=Predicate(
                field=column,
                operator=operator,
                field_type=field_type,
                value=start,
                second_value=end,
            )
        )

    if operator in SET_OPERATORS:
        coerced = _coerce_list(filter_value.value, field_type)
        if spec is not None:
            _validate_select_option(spec, coerced)
        return TranslationResult(
            predicate=Predicate(field=column, operator=operator, field_type=field_type, value=coerced)
        )

    scalar = coerce_scalar(filter_value.value, field_type)
    if spec is not None and operator in {"equals", "is", "notEquals", "isNot"}:
        _validate_select_option(spec, scalar)
    return TranslationResult(
        predicate=Predicate(field=column, operator=operator, field_type=field_type, value=scalar)
    )


def translate_filters(
    filters: Iterable[FilterValue],
    *,
    field_specs: Mapping[str, FilterFieldSpec] | None = None,
) -> FilterQuery:
    predicates: list[Predicate] = []
    issues: list[TranslationIssue] = []
    for item in filters:
        result = translate_filter(item, field_specs=field_specs)
        if result.predicate is not None:
            predicates.append(result.predicate)
        elif result.issue is not None:
            issues.append(result.issue)
    return FilterQuery(predicates=predicates, issues=issues)


def parse_filter_payload(payload: str | list | None) -> list[FilterValue]:
    """Parse the wire filter list: ``[{field, operator, value, secondValue, type}, ...]``."""
    if payload is None or payload == "":
        return []

    parsed: Any
    if isinstance(payload, str):
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise FilterValidationError("Invalid JSON in filters payload") from exc
    else:
        parsed = payload

    if not isinstance(parsed, list):
        raise FilterValidationError("Filters payload must be a list")
    return [FilterValue.from_payload(item) for item in parsed]


# ---------------------------------------------------------------------------
# Row store (SQLAlchemy) compiler
# ---------------------------------------------------------------------------


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_datetime_column(col: ColumnElement) -> bool:
    return isinstance(getattr(col, "type", None), sqltypes.DateTime)


def _day_bounds(value: date | datetime, *, as_datetime: bool) -> tuple[Any, Any]:
    day = value.date() if isinstance(value, datetime) else value
    if as_datetime:
        start = datetime.combine(day, time.min)
        return start, start + timedelta(days=1)
    return day, day + timedelta(days=1)


def _temporal_bound(value: date | datetime, *, as_datetime: bool) -> Any:
    if isinstance(value, datetime):
        if not as_datetime:
            return value.date()
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if as_datetime:
        return datetime.combine(value, time.min)
    return value


def _build_date_clause(col: ColumnElement, predicate: Predicate) -> ClauseElement:
    as_datetime = _is_datetime_column(col)
    operator = predicate.operator
    value = predicate.value

    if operator == "onDate":
        start, end = _day_bounds(value, as_datetime=as_datetime)
        return and_(col >= start, col < end)
    if operator == "before":
        start, _ = _day_bounds(value, as_datetime=as_datetime)
        return col < (start if not isinstance(value, datetime) else _temporal_bound(value, as_datetime=as_datetime))
    if operator == "after":
        if isinstance(value, datetime):
            return col > _temporal_bound(value, as_datetime=as_datetime)
        _, end = _day_bounds(value, as_datetime=as_datetime)
        return col >= end
    if operator in RANGE_OPERATORS:
        start = _temporal_bound(predicate.value, as_datetime=as_datetime)
        if isinstance(predicate.second_value, datetime):
            return and_(col >= start, col <= _temporal_bound(predicate.second_value, as_datetime=as_datetime))
        _, end = _day_bounds(predicate.second_value, as_datetime=as_datetime)
        return and_(col >= start, col < end)
    if operator == "equals":
        start, end = _day_bounds(value, as_datetime=as_datetime)
        return and_(col >= start, col < end)
    bound = _temporal_bound(value, as_datetime=as_datetime)
    comparisons = {
        "greaterThan": col > bound,
        "lessThan": col < bound,
        "greaterThanEqual": col >= bound,
        "lessThanEqual": col <= bound,
        "notEquals": col != bound,
    }
    if operator in comparisons:
        return comparisons[operator]
    raise FilterValidationError(f"Operator '{operator}' is not supported for date fields")


def _array_elements(col: ColumnElement, dialect_name: str):
    fn_name = JSON_ARRAY_ELEMENTS.get(dialect_name)
    if fn_name is None:
        raise FilterValidationError(f"Array filters are not supported on {dialect_name}")
    return getattr(func, fn_name)(col).table_valued("value")


def _build_array_clause(col: ColumnElement, predicate: Predicate, dialect_name: str) -> ClauseElement:
    values = list(dict.fromkeys(predicate.value))
    elements = _array_elements(col, dialect_name)
    element = elements.c.value

    if predicate.operator == "hasAny":
        return select(literal(1)).select_from(elements).where(element.in_(values)).exists()
    if predicate.operator == "hasAll":
        matched = (
            select(func.count(func.distinct(element)))
            .select_from(elements)
            .where(element.in_(values))
            .scalar_subquery()
        )
        return matched == len(values)
    if predicate.operator == "in":
        outside = select(literal(1)).select_from(elements).where(element.not_in(values)).exists()
        return and_(col.is_not(None), not_(outside))
    if predicate.operator == "notIn":
        inside = select(literal(1)).select_from(elements).where(element.in_(values)).exists()
        return and_(col.is_not(None), not_(inside))
    raise FilterValidationError(f"Operator '{predicate.operator}' is not supported for array fields")


def build_sql_clause(
    predicate: Predicate,
    col: ColumnElement,
    *,
    dialect_name: str = "postgresql",
) -> ClauseElement:
    """Compile one predicate against a SQLAlchemy column expression."""
    operator = predicate.operator
    value = predicate.value

    if operator == "isNull":
        return col.is_(None)
    if operator == "isNotNull":
        return col.is_not(None)
    if operator == "isTrue":
        return col.is_(True)
    if operator == "isFalse":
        return col.is_(False)

    if predicate.field_type == "array":
        return _build_array_clause(col, predicate, dialect_name)
    if predicate.field_type == "date":
        return _build_date_clause(col, predicate)

    if operator in {"contains", "notContains", "startsWith", "endsWith"}:
        escaped = escape_like(str(value))
        if operator == "startsWith":
            return col.ilike(f"{escaped}%", escape="\\")
        if operator == "endsWith":
            return col.ilike(f"%{escaped}", escape="\\")
        clause = col.ilike(f"%{escaped}%", escape="\\")
        return clause if operator == "contains" else and_(col.is_not(None), ~clause)

    if operator == "in":
        return col.in_(value)
    if operator == "notIn":
        return and_(col.is_not(None), col.not_in(value))
    if operator in RANGE_OPERATORS:
        return col.between(value, predicate.second_value)
    if operator in {"equals", "is"}:
        return col == value
    if operator in {"notEquals", "isNot"}:
        return col != value
    if operator == "greaterThan":
        return col > value
    if operator == "lessThan":
        return col < value
    if operator == "greaterThanEqual":
        return col >= value
    if operator == "lessThanEqual":
        return col <= value

    raise FilterValidationError(
        f"Operator '{operator}' is not supported for {predicate.field_type} fields"
    )


def build_filter_expression(
    predicates: Iterable[Predicate],
    *,
    columns: Mapping[str, ColumnElement],
    dialect_name: str = "postgresql",
) -> ClauseElement | None:
    """AND-combine compiled predicates; ``None`` when there is nothing to filter."""
    clauses: list[ClauseElement] = []
    for predicate in predicates:
        col = columns.get(predicate.field)
        if col is None:
            raise FilterValidationError(f"Field '{predicate.field}' is not filterable")
        clauses.append(build_sql_clause(predicate, col, dialect_name=dialect_name))

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return and_(*clauses)


def build_sort_clause(
    *,
    order_by: str | None,
    ascending: bool,
    allowed_sort_fields: Mapping[str, ColumnElement],
    default_field: str = "id",
) -> ClauseElement:
    """Build a validated ORDER BY clause with strict field allow-list."""
    sort_field = (order_by or default_field).strip()
    if sort_field not in allowed_sort_fields:
        raise FilterValidationError(f"Sort field '{sort_field}' is not allowed")
    col = allowed_sort_fields[sort_field]
    return col.asc() if ascending else col.desc()


# ---------------------------------------------------------------------------
# Document store compiler
# ---------------------------------------------------------------------------

_MISSING = object()


def get_path_value(document: Any, path: str) -> Any:
    """Resolve a dot-path (``address.city``) into a nested mapping; ``None`` if absent."""
    current = document
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _document_temporal(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = _parse_temporal(value)
    except FilterValidationError:
        return None
    if isinstance(parsed, datetime):
        return _naive(parsed)
    return datetime.combine(parsed, time.min)


def _compare(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None:
        return False
    try:
        return bool(op(left, right))
    except TypeError:
        return False


def _match_date(actual: Any, predicate: Predicate) -> bool:
    current = _document_temporal(actual)
    if current is None:
        return False
    operator = predicate.operator
    value = predicate.value

    if operator in {"onDate", "equals"}:
        start, end = _day_bounds(value, as_datetime=True)
        return start <= current < end
    if operator == "before":
        if isinstance(value, datetime):
            return current < _naive(value)
        start, _ = _day_bounds(value, as_datetime=True)
        return current < start
    if operator == "after":
        if isinstance(value, datetime):
            return current > _naive(value)
        _, end = _day_bounds(value, as_datetime=True)
        return current >= end
    if operator in RANGE_OPERATORS:
        start = _temporal_bound(value, as_datetime=True)
        if isinstance(predicate.second_value, datetime):
            return start <= current <= _naive(predicate.second_value)
        _, end = _day_bounds(predicate.second_value, as_datetime=True)
        return start <= current < end
    bound = _temporal_bound(value, as_datetime=True)
    comparisons = {
        "greaterThan": lambda: current > bound,
        "lessThan": lambda: current < bound,
        "greaterThanEqual": lambda: current >= bound,
        "lessThanEqual": lambda: current <= bound,
        "notEquals": lambda: current != bound,
    }
    if operator in comparisons:
        return comparisons[operator]()
    raise FilterValidationError(f"Operator '{operator}' is not supported for date fields")


def _match_array(actual: Any, predicate: Predicate) -> bool:
    if not isinstance(actual, (list, tuple, set)):
        return False
    elements = {str(item) for item in actual}
    wanted = {str(item) for item in predicate.value}
    if predicate.operator == "hasAny":
        return bool(elements & wanted)
    if predicate.operator == "hasAll":
        return wanted <= elements
    if predicate.operator == "in":
        return elements <= wanted
    if predicate.operator == "notIn":
        return not (elements & wanted)
    raise FilterValidationError(f"Operator '{predicate.operator}' is not supported for array fields")


def _match_document(document: Mapping[str, Any], predicate: Predicate) -> bool:
    actual = get_path_value(document, predicate.field)
    operator = predicate.operator
    value = predicate.value

    if operator == "isNull":
        return actual is None
    if operator == "isNotNull":
        return actual is not None
    if operator == "isTrue":
        return actual is True
    if operator == "isFalse":
        return actual is False
    if actual is None:
        return False

    if predicate.field_type == "array":
        return _match_array(actual, predicate)
    if predicate.field_type == "date":
        return _match_date(actual, predicate)

    if operator in {"contains", "notContains", "startsWith", "endsWith"}:
        haystack = str(actual).lower()
        needle = str(value).lower()
        if operator == "contains":
            return needle in haystack
        if operator == "notContains":
            return needle not in haystack
        if operator == "startsWith":
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if predicate.field_type in TEXT_TYPES:
        actual = str(actual)

    if operator == "in":
        return actual in value
    if operator == "notIn":
        return actual not in value
    if operator in RANGE_OPERATORS:
        return _compare(actual, value, lambda a, b: b <= a <= predicate.second_value)
    if operator in {"equals", "is"}:
        return actual == value
    if operator in {"notEquals", "isNot"}:
        return actual != value
    if operator == "greaterThan":
        return _compare(actual, value, lambda a, b: a > b)
    if operator == "lessThan":
        return _compare(actual, value, lambda a, b: a < b)
    if operator == "greaterThanEqual":
        return _compare(actual, value, lambda a, b: a >= b)
    if operator == "lessThanEqual":
        return _compare(actual, value, lambda a, b: a <= b)

    raise FilterValidationError(
        f"Operator '{operator}' is not supported for {predicate.field_type} fields"
    )


def build_document_matcher(predicates: Iterable[Predicate]) -> Callable[[Mapping[str, Any]], bool]:
    """Compile predicates into one AND-combined callable over documents."""
    compiled = list(predicates)

    def _matches(document: Mapping[str, Any]) -> bool:
        return all(_match_document(document, predicate) for predicate in compiled)

    return _matches
