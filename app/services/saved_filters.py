from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.saved_filter import SavedFilter
from app.schemas.table_data import SavedFilterCreate
from app.services.dynamic_filters import (
    FilterValidationError,
    parse_filter_payload,
    translate_filters,
)
from app.services.table_config import TableRegistry

logger = logging.getLogger(__name__)


class SavedFilters:
    @staticmethod
    def create(db: Session, table_key: str, user: str, payload: SavedFilterCreate) -> SavedFilter:
        """Persist a named filter set; filters must translate against the table's columns."""
        definition = TableRegistry.get(table_key)
        try:
            values = parse_filter_payload(payload.filters)
            translated = translate_filters(values, field_specs=definition.filter_specs())
        except FilterValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if translated.issues:
            raise HTTPException(status_code=400, detail=translated.issues[0].detail)

        sorting = payload.sorting.model_dump() if payload.sorting else None
        if sorting and sorting.get("column") and sorting["column"] not in definition.sortable_keys():
            raise HTTPException(status_code=400, detail="Invalid sort field")

        saved = SavedFilter(
            name=payload.name.strip(),
            table_name=table_key,
            created_by=user,
            filters=[value.to_payload() for value in values],
            sorting=sorting,
        )
        db.add(saved)
        db.commit()
        db.refresh(saved)
        logger.info("Saved filter %s for table %s by %s", saved.id, table_key, user)
        return saved

    @staticmethod
    def list(db: Session, table_key: str, user: str) -> list[SavedFilter]:
        TableRegistry.get(table_key)
        return (
            db.query(SavedFilter)
            .filter(SavedFilter.table_name == table_key)
            .filter(SavedFilter.created_by == user)
            .order_by(SavedFilter.created_at.desc())
            .all()
        )
