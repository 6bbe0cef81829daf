from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import verify_external_secret
from app.db import get_db
from app.schemas.page import (
    ExternalInsertPageRequest,
    ExternalPageCreate,
    ExternalPageIdRequest,
    PageRead,
)
from app.services.pages import Pages

router = APIRouter(prefix="/external", tags=["external"])

PAGE_LOOKUP_STATUS = 400


def _page_response(message: str, page) -> dict:
    return {"message": message, "status": 200, "page": PageRead.dump(page)}


@router.get("/page")
def list_pages(db: Session = Depends(get_db)):
    pages = Pages.list_or_404(db)
    return {"page": [PageRead.dump(page) for page in pages], "status": 200}


@router.post("/page")
def create_page(payload: ExternalPageCreate, db: Session = Depends(get_db)):
    verify_external_secret(payload.external_api_secret)
    page = Pages.create(db, payload)
    return _page_response("Page Created Successfully.", page)


@router.post("/page-data")
def get_page_data(payload: ExternalPageIdRequest, db: Session = Depends(get_db)):
    verify_external_secret(payload.external_api_secret)
    page = Pages.get(db, payload.page_id, status_code=PAGE_LOOKUP_STATUS)
    return _page_response("Page fetched Successfully.", page)


@router.post("/page/get-page")
def get_page(payload: ExternalPageIdRequest, db: Session = Depends(get_db)):
    verify_external_secret(payload.external_api_secret)
    page = Pages.get(db, payload.page_id, status_code=PAGE_LOOKUP_STATUS)
    return _page_response("Page fetched Successfully.", page)


@router.post("/page/insert-page")
def insert_page(payload: ExternalInsertPageRequest, db: Session = Depends(get_db)):
    verify_external_secret(payload.external_api_secret)
    page = Pages.create(db, payload.page_data)
    return _page_response("Page added Successfully.", page)


@router.get("/page/get-pages")
def get_pages(db: Session = Depends(get_db)):
    pages = Pages.list_or_404(db)
    return {"page": [PageRead.dump(page) for page in pages], "status": 200}
