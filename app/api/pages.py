from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.page import PageCreate, PageRead, SlugRequest
from app.services.pages import Pages

router = APIRouter(prefix="/page", tags=["pages"])


@router.get("")
def list_pages(db: Session = Depends(get_db)):
    pages = Pages.list_or_404(db)
    return {"page": [PageRead.dump(page) for page in pages], "status": 200}


@router.post("")
def create_page(payload: PageCreate, db: Session = Depends(get_db)):
    page = Pages.create(db, payload)
    return {"page": PageRead.dump(page), "status": 200}


@router.post("/get-page-data")
def get_page_data(payload: SlugRequest, db: Session = Depends(get_db)):
    page = Pages.get_by_slug(db, payload.slug)
    return {"page": PageRead.dump(page), "status": 200}
