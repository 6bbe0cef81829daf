"""Render authored page trees into HTML blocks.

A page's ``content`` is an ordered list of nodes ``{type, name, config}``.
Each node type has a renderer; containers lay their children out on a grid
and route each child to a column by ``config.grid_column``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fastapi import HTTPException
from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
GRID_COLUMNS = 12
DEFAULT_IMAGE_HEIGHT = 300

TableLoader = Callable[[str], Mapping[str, Any]]


@dataclass(frozen=True)
class RenderIssue:
    kind: str
    detail: str
    node_id: str | None = None
    node_type: str | None = None


@dataclass
class RenderResult:
    html: Markup
    issues: list[RenderIssue] = field(default_factory=list)


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _config(node: Mapping[str, Any]) -> Mapping[str, Any]:
    config = node.get("config")
    return config if isinstance(config, Mapping) else {}


def _grid_column(node: Mapping[str, Any]) -> int:
    config = _config(node)
    raw = config.get("grid_column", config.get("gridColumn", 0))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def container_class(columns: Sequence[int]) -> str:
    count = len(columns)
    if count == 1:
        return "w-full"
    if count in (2, 3, 4):
        return f"w-full grid grid-cols-{count}"
    return f"w-full grid grid-cols-{GRID_COLUMNS}"


def column_class(span: int, column_count: int) -> str:
    if column_count <= 4:
        return "w-full"
    return f"col-span-{span}"


class PageRenderer:
    """Dispatches nodes to per-type renderers.

    ``table_loader`` returns ``{"columns": [...], "rows": [...]}`` for a
    registered table key; table nodes are skipped with an issue when no
    loader is configured.
    """

    def __init__(self, *, table_loader: TableLoader | None = None, environment: Environment | None = None):
        self.table_loader = table_loader
        self.env = environment or _environment()
        self._renderers: dict[str, Callable[[Mapping[str, Any], list[RenderIssue]], str]] = {
            "h1": self._render_heading,
            "h2": self._render_heading,
            "heading": self._render_heading,
            "paragraph": self._render_paragraph,
            "image": self._render_image,
            "table": self._render_table,
            "container": self._render_container,
        }

    def render(self, nodes: Sequence[Mapping[str, Any]] | None) -> RenderResult:
        issues: list[RenderIssue] = []
        parts = [self.render_node(node, issues) for node in nodes or []]
        return RenderResult(html=Markup("\n".join(part for part in parts if part)), issues=issues)

    def render_node(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        if not isinstance(node, Mapping):
            issues.append(RenderIssue(kind="invalid_node", detail="Node must be an object"))
            return ""
        node_type = node.get("type")
        renderer = self._renderers.get(node_type) if isinstance(node_type, str) else None
        if renderer is None:
            node_id = _config(node).get("id")
            logger.info("Skipping unknown node type %r (id=%s)", node_type, node_id)
            issues.append(
                RenderIssue(
                    kind="unknown_node_type",
                    detail=f"Unknown node type: {node_type}",
                    node_id=node_id,
                    node_type=str(node_type) if node_type is not None else None,
                )
            )
            return ""
        return renderer(node, issues)

    def _template(self, name: str, **context: Any) -> str:
        return self.env.get_template(f"blocks/{name}.html").render(**context)

    def _render_heading(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        config = _config(node)
        level = {"h1": 1, "h2": 2}.get(node.get("type"), 1)
        text = config.get("heading", config.get("content", ""))
        css = config.get("class_name", config.get("className"))
        return self._template("heading", node_id=config.get("id"), level=level, text=text, css=css)

    def _render_paragraph(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        config = _config(node)
        return self._template("paragraph", node_id=config.get("id"), text=config.get("content", ""))

    def _render_image(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        config = _config(node)
        src = config.get("content")
        if not src:
            issues.append(
                RenderIssue(
                    kind="missing_content",
                    detail="Image node has no source",
                    node_id=config.get("id"),
                    node_type="image",
                )
            )
            return ""
        return self._template(
            "image",
            node_id=config.get("id"),
            src=src,
            alt=config.get("alt") or node.get("name") or "Content image",
            height=config.get("height") or DEFAULT_IMAGE_HEIGHT,
        )

    def _render_table(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        config = _config(node)
        table_key = config.get("table_key") or config.get("tableKey") or config.get("content")
        if not table_key or self.table_loader is None:
            issues.append(
                RenderIssue(
                    kind="table_unavailable",
                    detail="Table node has no table key" if not table_key else "No table loader",
                    node_id=config.get("id"),
                    node_type="table",
                )
            )
            return ""
        try:
            data = self.table_loader(str(table_key))
        except HTTPException as exc:
            logger.warning("Table block %s failed to load: %s", table_key, exc.detail)
            issues.append(
                RenderIssue(
                    kind="table_unavailable",
                    detail=str(exc.detail),
                    node_id=config.get("id"),
                    node_type="table",
                )
            )
            return ""
        columns = [col for col in data.get("columns", []) if not col.get("hidden_by_default")]
        return self._template(
            "table",
            node_id=config.get("id"),
            title=config.get("title") or data.get("title"),
            columns=columns,
            rows=data.get("rows", []),
            total=data.get("total", 0),
        )

    def _render_container(self, node: Mapping[str, Any], issues: list[RenderIssue]) -> str:
        config = _config(node)
        columns = node.get("columns", config.get("columns")) or [GRID_COLUMNS]
        children = node.get("children", config.get("children")) or []

        spans: list[int] = []
        for span in columns:
            try:
                spans.append(int(span))
            except (TypeError, ValueError):
                spans.append(0)
        total = sum(spans)
        if total != GRID_COLUMNS:
            logger.warning(
                "Container %s columns add up to %s, expected %s",
                config.get("id"),
                total,
                GRID_COLUMNS,
            )
            issues.append(
                RenderIssue(
                    kind="column_sum",
                    detail=f"Container columns add up to {total}, expected {GRID_COLUMNS}",
                    node_id=config.get("id"),
                    node_type="container",
                )
            )

        cells = []
        for index, span in enumerate(spans):
            routed = [child for child in children if _grid_column(child) == index]
            body = [self.render_node(child, issues) for child in routed]
            cells.append(
                {
                    "css": column_class(span, len(spans)),
                    "html": Markup("\n".join(part for part in body if part)),
                }
            )
        return self._template(
            "container",
            node_id=config.get("id"),
            css=container_class(spans),
            cells=cells,
        )
