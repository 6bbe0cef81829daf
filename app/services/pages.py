from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.page import Page
from app.schemas.page import PageBase
from app.services.common import apply_pagination, get_or_404

logger = logging.getLogger(__name__)

DUPLICATE_URL_MESSAGE = "A page with this URL already exists"


class Pages:
    @staticmethod
    def list(db: Session, limit: int = 500, offset: int = 0) -> list[Page]:
        query = db.query(Page).order_by(Page.created_at.asc(), Page.page_url.asc())
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_or_404(db: Session) -> list[Page]:
        pages = Pages.list(db)
        if not pages:
            raise HTTPException(status_code=404, detail="No Pages Found")
        return pages

    @staticmethod
    def create(db: Session, payload: PageBase) -> Page:
        existing = db.query(Page).filter(Page.page_url == payload.page_url).first()
        if existing:
            raise HTTPException(status_code=400, detail=DUPLICATE_URL_MESSAGE)

        page = Page(
            page_url=payload.page_url,
            page_description=payload.page_description,
            content=payload.content,
        )
        db.add(page)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise HTTPException(status_code=400, detail=DUPLICATE_URL_MESSAGE) from exc
        db.refresh(page)
        logger.info("Created page %s at /%s", page.id, page.page_url)
        return page

    @staticmethod
    def get(db: Session, page_id: str, *, status_code: int = 404) -> Page:
        return get_or_404(
            db, Page, page_id, detail="A page with this URL not found.", status_code=status_code
        )

    @staticmethod
    def get_by_slug(db: Session, slug: str) -> Page:
        normalized = slug.strip().strip("/")
        page = db.query(Page).filter(Page.page_url == normalized).first()
        if not page:
            raise HTTPException(status_code=404, detail="Page not found")
        return page
