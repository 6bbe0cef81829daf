from __future__ import annotations

from datetime import date

import pytest

from app.schemas.table_data import TableQueryRequest
from app.services.dynamic_filters import (
    FilterFieldSpec,
    FilterValidationError,
    FilterValue,
    Predicate,
    build_document_matcher,
    default_operator_for_type,
    get_path_value,
    operators_for_type,
    parse_filter_payload,
    translate_filter,
    translate_filters,
)
from app.services.table_data import TableDataService


def _names(db_session, filters, **kwargs) -> list[str]:
    result = TableDataService.query(
        db_session,
        "users",
        TableQueryRequest(filters=filters, page_size=50, **kwargs),
    )
    return [row["name"] for row in result["rows"]]


DOCUMENTS = [
    {"id": 1, "name": "Anna", "status": "Active", "labels": ["vip", "beta"], "address": {"city": "Oslo"}},
    {"id": 2, "name": "Bob", "status": "Inactive", "labels": ["beta"], "address": {"city": "Bergen"}},
    {"id": 3, "name": "Diana", "status": None, "labels": None},
]


def _match(predicate: Predicate) -> list[str]:
    matcher = build_document_matcher([predicate])
    return [doc["name"] for doc in DOCUMENTS if matcher(doc)]


def test_operator_catalogue_defaults_follow_type():
    assert default_operator_for_type("text") == "equals"
    assert default_operator_for_type("select") == "is"
    assert default_operator_for_type("date") == "before"
    assert default_operator_for_type("boolean") == "isTrue"
    assert "hasAll" in operators_for_type("array")
    assert operators_for_type("unknown") == operators_for_type("text")


def test_unknown_operator_becomes_issue_not_predicate():
    result = translate_filter(FilterValue(column="name", operator="fuzzy", value="x"))
    assert result.ok is False
    assert result.issue.kind == "unsupported_operator"
    assert result.issue.operator == "fuzzy"


def test_missing_value_is_reported_and_skipped():
    query = translate_filters(
        [
            FilterValue(column="name", operator="contains", value=""),
            FilterValue(column="age", operator="isNull", value="", type="number"),
        ]
    )
    assert [p.operator for p in query.predicates] == ["isNull"]
    assert [issue.kind for issue in query.issues] == ["missing_value"]


def test_operator_not_allowed_for_field_raises():
    specs = {"age": FilterFieldSpec(field="age", field_type="number")}
    with pytest.raises(FilterValidationError):
        translate_filter(FilterValue(column="age", operator="contains", value="4"), field_specs=specs)


def test_unlisted_field_raises_when_specs_given():
    with pytest.raises(FilterValidationError):
        translate_filter(FilterValue(column="secret", operator="equals", value="x"), field_specs={})


def test_select_option_whitelist():
    specs = {"status": FilterFieldSpec(field="status", field_type="select", options=frozenset({"Active"}))}
    with pytest.raises(FilterValidationError):
        translate_filter(FilterValue(column="status", operator="is", value="Gone"), field_specs=specs)


def test_number_values_are_coerced():
    result = translate_filter(FilterValue(column="age", operator="between", value="30", second_value="40.5", type="number"))
    assert result.predicate.value == 30
    assert result.predicate.second_value == 40.5

    with pytest.raises(FilterValidationError):
        translate_filter(FilterValue(column="age", operator="greaterThan", value="old", type="number"))


def test_range_requires_second_value():
    with pytest.raises(FilterValidationError):
        translate_filter(FilterValue(column="age", operator="between", value="1", type="number"))


def test_parse_filter_payload_accepts_json_and_aliases():
    values = parse_filter_payload('[{"field": "name", "operator": "contains", "value": "an", "secondValue": null}]')
    assert values[0].column == "name"
    assert values[0].to_payload()["field"] == "name"

    values = parse_filter_payload([{"column": "age", "operator": "between", "value": 1, "second_value": 2}])
    assert values[0].second_value == 2

    with pytest.raises(FilterValidationError):
        parse_filter_payload("{not json")
    with pytest.raises(FilterValidationError):
        parse_filter_payload('{"field": "name"}')


def test_get_path_value_handles_missing_levels():
    assert get_path_value(DOCUMENTS[0], "address.city") == "Oslo"
    assert get_path_value(DOCUMENTS[2], "address.city") is None
    assert get_path_value({"address": "flat"}, "address.city") is None


def test_document_contains_is_case_insensitive():
    assert _match(Predicate(field="name", operator="contains", value="ANN")) == ["Anna"]
    assert _match(Predicate(field="name", operator="startsWith", value="b")) == ["Bob"]
    assert _match(Predicate(field="name", operator="endsWith", value="NA")) == ["Anna", "Diana"]


def test_document_negative_operators_never_match_missing():
    assert _match(Predicate(field="status", operator="notEquals", value="Active")) == ["Bob"]
    assert _match(Predicate(field="status", operator="notContains", value="in")) == ["Anna"]
    assert _match(Predicate(field="address.city", operator="notIn", value=["Oslo"])) == ["Bob"]


def test_document_array_operators():
    def labels(operator, value):
        return _match(Predicate(field="labels", operator=operator, field_type="array", value=value))

    assert labels("hasAny", ["vip"]) == ["Anna"]
    assert labels("hasAll", ["vip", "beta"]) == ["Anna"]
    assert labels("in", ["beta"]) == ["Bob"]
    assert labels("notIn", ["vip"]) == ["Bob"]


def test_document_dot_path_equals():
    assert _match(Predicate(field="address.city", operator="equals", value="Bergen")) == ["Bob"]


def test_document_null_checks():
    assert _match(Predicate(field="status", operator="isNull")) == ["Diana"]
    assert _match(Predicate(field="status", operator="isNotNull")) == ["Anna", "Bob"]


def test_sql_contains_is_case_insensitive(db_session, users):
    assert _names(db_session, [{"field": "name", "operator": "contains", "value": "ANN"}]) == ["Anna"]


def test_sql_negative_operator_excludes_null(db_session, users):
    names = _names(db_session, [{"field": "email", "operator": "notContains", "value": "anna"}])
    assert names == ["Bob"]


def test_sql_select_operators(db_session, users):
    assert _names(db_session, [{"field": "status", "operator": "is", "value": "Active"}]) == ["Anna", "Diana"]
    assert _names(db_session, [{"field": "role", "operator": "in", "value": ["admin", "viewer"]}]) == ["Anna", "Diana"]
    assert _names(db_session, [{"field": "role", "operator": "notIn", "value": "admin"}]) == ["Bob", "Diana"]


def test_sql_number_and_null_operators(db_session, users):
    assert _names(db_session, [{"field": "age", "operator": "greaterThan", "value": "35"}]) == ["Bob"]
    assert _names(db_session, [{"field": "age", "operator": "between", "value": 30, "secondValue": 40}]) == ["Anna"]
    assert _names(db_session, [{"field": "age", "operator": "isNull", "value": ""}]) == ["Diana"]


def test_sql_boolean_operators(db_session, users):
    assert _names(db_session, [{"field": "is_verified", "operator": "isTrue"}]) == ["Anna"]
    assert _names(db_session, [{"field": "is_verified", "operator": "isFalse"}]) == ["Bob", "Diana"]


def test_sql_date_operators_are_day_bounded(db_session, users):
    def names(operator, value, second=None):
        return _names(
            db_session,
            [{"field": "joined_on", "operator": operator, "value": value, "secondValue": second}],
        )

    assert names("before", "2024-02-01") == ["Anna"]
    assert names("after", "2024-02-01") == ["Diana"]
    assert names("onDate", "2024-02-01") == ["Bob"]
    assert names("dateRange", "2024-01-15", "2024-02-01") == ["Anna", "Bob"]


def test_sql_date_operators_on_timestamp_column(db_session, users):
    names = _names(db_session, [{"field": "created_at", "operator": "onDate", "value": "2024-01-02"}])
    assert names == ["Bob"]


def test_sql_array_operators(db_session, users):
    def names(operator, value):
        return _names(db_session, [{"field": "tags", "operator": operator, "value": value}])

    assert names("hasAny", ["vip"]) == ["Anna"]
    assert names("hasAll", ["vip", "beta"]) == ["Anna"]
    assert names("in", ["beta"]) == ["Bob"]
    assert names("notIn", ["vip"]) == ["Bob"]


def test_filters_are_and_combined(db_session, users):
    names = _names(
        db_session,
        [
            {"field": "status", "operator": "is", "value": "Active"},
            {"field": "joined_on", "operator": "after", "value": date(2024, 2, 1).isoformat()},
        ],
    )
    assert names == ["Diana"]
