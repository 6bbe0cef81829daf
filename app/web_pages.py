import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import templates
from app.schemas.table_data import TableQueryRequest
from app.services.page_renderer import PageRenderer
from app.services.pages import Pages
from app.services.table_config import TableConfigurationService
from app.services.table_data import TableDataService

logger = logging.getLogger(__name__)

router = APIRouter()


def _table_loader(db: Session):
    def load(table_key: str) -> dict[str, Any]:
        config = TableConfigurationService.describe(table_key)
        data = TableDataService.query(db, table_key, TableQueryRequest())
        return {**config, "rows": data["rows"], "total": data["total"]}

    return load


@router.get("/pages/{slug}", tags=["web"], response_class=HTMLResponse)
def render_page(request: Request, slug: str, db: Session = Depends(get_db)):
    page = Pages.get_by_slug(db, slug)
    result = PageRenderer(table_loader=_table_loader(db)).render(page.content)
    for issue in result.issues:
        logger.info("Page /%s: %s (%s)", page.page_url, issue.detail, issue.kind)
    return templates.TemplateResponse(
        request,
        "page.html",
        {"page": page, "body": result.html, "issues": result.issues},
    )
