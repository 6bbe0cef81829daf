from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user
from app.db import get_db
from app.schemas.table_data import (
    BulkDeleteRequest,
    BulkUpdateRequest,
    ImportResult,
    KanbanMoveRequest,
    RowValues,
    SavedFilterCreate,
    SavedFilterRead,
    SortingPayload,
    TableQueryRequest,
    TableQueryResponse,
)
from app.services.dynamic_filters import FilterValidationError, parse_filter_payload
from app.services.saved_filters import SavedFilters
from app.services.table_config import TableConfigurationService
from app.services.table_data import TableDataService

router = APIRouter(prefix="/tables", tags=["tables"])


def _query_filters(filters: str | None) -> list[dict]:
    try:
        return [value.to_payload() for value in parse_filter_payload(filters)]
    except FilterValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{table_key}/config")
def get_table_config(table_key: str):
    return {**TableConfigurationService.describe(table_key), "status": 200}


@router.post("/{table_key}/query", response_model=TableQueryResponse)
def query_table(table_key: str, payload: TableQueryRequest, db: Session = Depends(get_db)):
    return TableDataService.query(db, table_key, payload)


@router.post("/{table_key}/rows", status_code=status.HTTP_201_CREATED)
def create_row(table_key: str, payload: RowValues, db: Session = Depends(get_db)):
    row = TableDataService.create_row(db, table_key, payload.values)
    return {"row": row, "status": 201}


@router.patch("/{table_key}/rows/{row_id}")
def update_row(table_key: str, row_id: str, payload: RowValues, db: Session = Depends(get_db)):
    row = TableDataService.update_row(db, table_key, row_id, payload.values)
    return {"row": row, "status": 200}


@router.delete("/{table_key}/rows/{row_id}")
def delete_row(table_key: str, row_id: str, db: Session = Depends(get_db)):
    TableDataService.delete_row(db, table_key, row_id)
    return {"id": row_id, "status": 200}


@router.post("/{table_key}/rows/bulk-update")
def bulk_update_rows(table_key: str, payload: BulkUpdateRequest, db: Session = Depends(get_db)):
    rows = TableDataService.bulk_update(db, table_key, payload.ids, payload.values)
    return {"rows": rows, "status": 200}


@router.post("/{table_key}/rows/bulk-delete")
def bulk_delete_rows(table_key: str, payload: BulkDeleteRequest, db: Session = Depends(get_db)):
    deleted = TableDataService.bulk_delete(db, table_key, payload.ids)
    return {"deleted": deleted, "status": 200}


@router.get("/{table_key}/lookup")
def get_lookups(
    table_key: str,
    column: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return {"lookups": TableDataService.lookups(db, table_key, column), "status": 200}


@router.get("/{table_key}/kanban")
def get_kanban(
    table_key: str,
    filters: str | None = Query(default=None),
    q: str | None = Query(default=None, max_length=200),
    db: Session = Depends(get_db),
):
    return TableDataService.kanban_board(db, table_key, filters=_query_filters(filters), search=q)


@router.patch("/{table_key}/kanban/{row_id}")
def move_kanban_card(
    table_key: str, row_id: str, payload: KanbanMoveRequest, db: Session = Depends(get_db)
):
    row = TableDataService.move_card(db, table_key, row_id, payload.column_id)
    return {"row": row, "status": 200}


@router.get("/{table_key}/export")
def export_table(
    table_key: str,
    export_format: str = Query(default="csv", alias="format"),
    filters: str | None = Query(default=None),
    sort_by: str | None = Query(default=None),
    sort_dir: str | None = Query(default=None, pattern="^(asc|desc)$"),
    q: str | None = Query(default=None, max_length=200),
    db: Session = Depends(get_db),
):
    sorting = SortingPayload(column=sort_by, direction=sort_dir) if sort_by and sort_dir else None
    body, media_type, extension = TableDataService.export(
        db,
        table_key,
        export_format,
        filters=_query_filters(filters),
        sorting=sorting,
        search=q,
    )
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{table_key}.{extension}"'},
    )


@router.post("/{table_key}/import", response_model=ImportResult)
def import_table(table_key: str, file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = file.file.read()
    return TableDataService.import_csv(db, table_key, content)


@router.get("/{table_key}/saved-filters")
def list_saved_filters(
    table_key: str,
    db: Session = Depends(get_db),
    user: str = Depends(get_current_user),
):
    saved = SavedFilters.list(db, table_key, user)
    return {
        "saved_filters": [SavedFilterRead.model_validate(item).model_dump(mode="json") for item in saved],
        "status": 200,
    }


@router.post("/{table_key}/saved-filters", status_code=status.HTTP_201_CREATED)
def create_saved_filter(
    table_key: str,
    payload: SavedFilterCreate,
    db: Session = Depends(get_db),
    user: str = Depends(get_current_user),
):
    saved = SavedFilters.create(db, table_key, user, payload)
    return {"saved_filter": SavedFilterRead.model_validate(saved).model_dump(mode="json"), "status": 201}
