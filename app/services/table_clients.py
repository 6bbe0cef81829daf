"""Async clients the table orchestrator talks to.

``ServiceTableClient`` runs the table service in-process on a worker thread
with a fresh database session per call. ``HttpTableClient`` talks to the
``/api/v1/tables`` endpoints of a running instance.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

import httpx
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.schemas.table_data import SortingPayload, TableQueryRequest
from app.services.table_config import TableConfigurationService
from app.services.table_data import TableDataService

logger = logging.getLogger(__name__)


class TableClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TableClient(Protocol):
    async def describe(self, table_key: str) -> dict[str, Any]: ...

    async def fetch(
        self,
        table_key: str,
        *,
        page: int,
        page_size: int,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> dict[str, Any]: ...

    async def create_row(self, table_key: str, values: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update_row(
        self, table_key: str, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_row(self, table_key: str, row_id: Any) -> None: ...

    async def bulk_update(
        self, table_key: str, row_ids: Sequence[Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]: ...

    async def bulk_delete(self, table_key: str, row_ids: Sequence[Any]) -> int: ...

    async def lookups(self, table_key: str) -> dict[str, list[dict[str, Any]]]: ...

    async def move_card(self, table_key: str, row_id: Any, column_id: str) -> dict[str, Any]: ...

    async def export(
        self,
        table_key: str,
        export_format: str,
        *,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> tuple[bytes, str, str]: ...

    async def import_csv(self, table_key: str, content: bytes) -> dict[str, Any]: ...


def _sorting(sorting: Mapping[str, Any] | None) -> SortingPayload | None:
    if not sorting:
        return None
    return SortingPayload(column=sorting.get("column"), direction=sorting.get("direction"))


class ServiceTableClient:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        db = self.session_factory()
        try:
            return fn(db, *args, **kwargs)
        except HTTPException as exc:
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
            raise TableClientError(detail, exc.status_code) from exc
        finally:
            db.close()

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(self._call, fn, *args, **kwargs)

    async def describe(self, table_key: str) -> dict[str, Any]:
        try:
            return TableConfigurationService.describe(table_key)
        except HTTPException as exc:
            raise TableClientError(str(exc.detail), exc.status_code) from exc

    async def fetch(
        self,
        table_key: str,
        *,
        page: int,
        page_size: int,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> dict[str, Any]:
        try:
            payload = TableQueryRequest(
                page=page,
                page_size=page_size,
                filters=[dict(item) for item in filters],
                sorting=_sorting(sorting),
                search=search,
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise TableClientError(f"Invalid query: {location} {first.get('msg', '')}".strip(), 400) from exc
        return await self._run(TableDataService.query, table_key, payload)

    async def create_row(self, table_key: str, values: Mapping[str, Any]) -> dict[str, Any]:
        return await self._run(TableDataService.create_row, table_key, values)

    async def update_row(
        self, table_key: str, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        return await self._run(TableDataService.update_row, table_key, row_id, values)

    async def delete_row(self, table_key: str, row_id: Any) -> None:
        await self._run(TableDataService.delete_row, table_key, row_id)

    async def bulk_update(
        self, table_key: str, row_ids: Sequence[Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        return await self._run(TableDataService.bulk_update, table_key, list(row_ids), values)

    async def bulk_delete(self, table_key: str, row_ids: Sequence[Any]) -> int:
        return await self._run(TableDataService.bulk_delete, table_key, list(row_ids))

    async def lookups(self, table_key: str) -> dict[str, list[dict[str, Any]]]:
        return await self._run(TableDataService.lookups, table_key)

    async def move_card(self, table_key: str, row_id: Any, column_id: str) -> dict[str, Any]:
        return await self._run(TableDataService.move_card, table_key, row_id, column_id)

    async def export(
        self,
        table_key: str,
        export_format: str,
        *,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> tuple[bytes, str, str]:
        return await self._run(
            TableDataService.export,
            table_key,
            export_format,
            filters=[dict(item) for item in filters],
            sorting=_sorting(sorting),
            search=search,
        )

    async def import_csv(self, table_key: str, content: bytes) -> dict[str, Any]:
        return await self._run(TableDataService.import_csv, table_key, content)


class HttpTableClient:
    """Talks to a remote instance; ``client`` may be injected for tests."""

    def __init__(
        self,
        base_url: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=dict(headers or {}), timeout=timeout
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTableClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, f"/api/v1/tables{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Table request %s %s failed: %s", method, path, exc)
            raise TableClientError(f"Request failed: {exc}") from exc
        if response.status_code >= 400:
            message = "Request failed"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("message"):
                message = str(body["message"])
            raise TableClientError(message, response.status_code)
        return response

    async def describe(self, table_key: str) -> dict[str, Any]:
        response = await self._request("GET", f"/{table_key}/config")
        return response.json()

    async def fetch(
        self,
        table_key: str,
        *,
        page: int,
        page_size: int,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> dict[str, Any]:
        body = {
            "page": page,
            "page_size": page_size,
            "filters": [dict(item) for item in filters],
            "sorting": dict(sorting) if sorting else None,
            "search": search,
        }
        response = await self._request("POST", f"/{table_key}/query", json=body)
        return response.json()

    async def create_row(self, table_key: str, values: Mapping[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", f"/{table_key}/rows", json={"values": dict(values)})
        return response.json()["row"]

    async def update_row(
        self, table_key: str, row_id: Any, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH", f"/{table_key}/rows/{row_id}", json={"values": dict(values)}
        )
        return response.json()["row"]

    async def delete_row(self, table_key: str, row_id: Any) -> None:
        await self._request("DELETE", f"/{table_key}/rows/{row_id}")

    async def bulk_update(
        self, table_key: str, row_ids: Sequence[Any], values: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/{table_key}/rows/bulk-update",
            json={"ids": list(row_ids), "values": dict(values)},
        )
        return response.json()["rows"]

    async def bulk_delete(self, table_key: str, row_ids: Sequence[Any]) -> int:
        response = await self._request(
            "POST", f"/{table_key}/rows/bulk-delete", json={"ids": list(row_ids)}
        )
        return int(response.json()["deleted"])

    async def lookups(self, table_key: str) -> dict[str, list[dict[str, Any]]]:
        response = await self._request("GET", f"/{table_key}/lookup")
        return response.json()["lookups"]

    async def move_card(self, table_key: str, row_id: Any, column_id: str) -> dict[str, Any]:
        response = await self._request(
            "PATCH", f"/{table_key}/kanban/{row_id}", json={"column_id": column_id}
        )
        return response.json()["row"]

    async def export(
        self,
        table_key: str,
        export_format: str,
        *,
        filters: Sequence[Mapping[str, Any]],
        sorting: Mapping[str, Any] | None,
        search: str | None,
    ) -> tuple[bytes, str, str]:
        params: dict[str, Any] = {"format": export_format}
        if filters:
            params["filters"] = json.dumps([dict(item) for item in filters])
        if sorting and sorting.get("column") and sorting.get("direction"):
            params["sort_by"] = sorting["column"]
            params["sort_dir"] = sorting["direction"]
        if search:
            params["q"] = search
        response = await self._request("GET", f"/{table_key}/export", params=params)
        media_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        return response.content, media_type, export_format

    async def import_csv(self, table_key: str, content: bytes) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/{table_key}/import",
            files={"file": ("import.csv", content, "text/csv")},
        )
        return response.json()
