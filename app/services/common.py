"""Common helper functions for service layer."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def get_or_404(
    db: Session, model: type[T], id: str, detail: str | None = None, status_code: int = 404
) -> T:
    """Get entity by UUID or raise; malformed ids count as missing.

    Raises:
        HTTPException: ``status_code`` if the entity is not found
    """
    message = detail or f"{model.__name__} not found"
    try:
        entity_id = coerce_uuid(id)
    except ValueError as exc:
        raise HTTPException(status_code=status_code, detail=message) from exc
    entity = db.get(model, entity_id)
    if not entity:
        raise HTTPException(status_code=status_code, detail=message)
    return entity
