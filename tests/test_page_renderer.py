from __future__ import annotations

import logging

from fastapi import HTTPException

from app.services.page_renderer import PageRenderer, column_class, container_class


def _table_loader(table_key: str):
    if table_key != "users":
        raise HTTPException(status_code=404, detail="Unregistered tableKey")
    return {
        "title": "Users",
        "columns": [
            {"accessor_key": "name", "header": "Name"},
            {"accessor_key": "tags", "header": "Tags"},
            {"accessor_key": "notes", "header": "Notes", "hidden_by_default": True},
        ],
        "rows": [{"name": "Anna", "tags": ["vip", "beta"], "notes": "secret"}],
        "total": 1,
    }


def test_layout_classes_by_column_count():
    assert container_class([12]) == "w-full"
    assert container_class([4, 8]) == "w-full grid grid-cols-2"
    assert container_class([3, 3, 3, 3]) == "w-full grid grid-cols-4"
    assert container_class([2, 2, 2, 2, 4]) == "w-full grid grid-cols-12"
    assert column_class(4, 5) == "col-span-4"
    assert column_class(6, 2) == "w-full"


def test_headings_paragraphs_and_images():
    result = PageRenderer().render(
        [
            {"type": "h1", "config": {"id": "t", "heading": "Title"}},
            {"type": "h2", "config": {"heading": "Sub"}},
            {"type": "paragraph", "config": {"content": "Body <script>"}},
            {"type": "image", "name": "Logo", "config": {"content": "/logo.png"}},
        ]
    )
    html = str(result.html)
    assert "<h1" in html and "Title" in html
    assert "<h2" in html
    assert "Body &lt;script&gt;" in html
    assert 'src="/logo.png"' in html
    assert 'alt="Logo"' in html
    assert result.issues == []


def test_unknown_node_type_renders_nothing_and_reports_issue():
    result = PageRenderer().render([{"type": "carousel", "config": {"id": "c1"}}])
    assert str(result.html) == ""
    assert len(result.issues) == 1
    issue = result.issues[0]
    assert issue.kind == "unknown_node_type"
    assert issue.node_id == "c1"
    assert issue.node_type == "carousel"


def test_image_without_source_is_skipped():
    result = PageRenderer().render([{"type": "image", "config": {"id": "img"}}])
    assert str(result.html) == ""
    assert result.issues[0].kind == "missing_content"


def test_container_routes_children_by_grid_column():
    result = PageRenderer().render(
        [
            {
                "type": "container",
                "config": {"id": "box"},
                "columns": [4, 8],
                "children": [
                    {"type": "paragraph", "config": {"content": "Right", "grid_column": 1}},
                    {"type": "paragraph", "config": {"content": "Left", "gridColumn": 0}},
                ],
            }
        ]
    )
    html = str(result.html)
    assert "grid-cols-2" in html
    assert html.index("Left") < html.index("Right")
    assert result.issues == []


def test_container_column_sum_mismatch_is_tolerated(caplog):
    with caplog.at_level(logging.WARNING, logger="app.services.page_renderer"):
        result = PageRenderer().render(
            [
                {
                    "type": "container",
                    "config": {"id": "odd", "columns": [6, 4]},
                    "children": [{"type": "paragraph", "config": {"content": "Still here"}}],
                }
            ]
        )
    assert "Still here" in str(result.html)
    assert [issue.kind for issue in result.issues] == ["column_sum"]
    assert "add up to 10" in caplog.text


def test_table_node_embeds_first_page():
    result = PageRenderer(table_loader=_table_loader).render(
        [{"type": "table", "config": {"table_key": "users"}}]
    )
    html = str(result.html)
    assert "Anna" in html
    assert "vip, beta" in html
    assert "secret" not in html
    assert "1 of 1 row(s)" in html


def test_table_node_failures_become_issues():
    renderer = PageRenderer(table_loader=_table_loader)
    result = renderer.render(
        [
            {"type": "table", "config": {"table_key": "ghosts"}},
            {"type": "table", "config": {}},
        ]
    )
    assert str(result.html) == ""
    assert [issue.kind for issue in result.issues] == ["table_unavailable", "table_unavailable"]

    no_loader = PageRenderer().render([{"type": "table", "config": {"table_key": "users"}}])
    assert no_loader.issues[0].detail == "No table loader"


def test_non_mapping_node_is_invalid():
    result = PageRenderer().render(["oops"])
    assert result.issues[0].kind == "invalid_node"
