from __future__ import annotations

import json

import httpx
import pytest

from app.services.table_clients import HttpTableClient, TableClientError


def _client(handler) -> HttpTableClient:
    transport = httpx.MockTransport(handler)
    return HttpTableClient(client=httpx.AsyncClient(transport=transport, base_url="http://tables.test"))


@pytest.mark.asyncio
async def test_fetch_posts_query_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"rows": [{"id": 1}], "total": 1, "status": 200})

    client = _client(handler)
    result = await client.fetch(
        "contacts",
        page=2,
        page_size=5,
        filters=[{"field": "stage", "operator": "is", "value": "lead"}],
        sorting={"column": "name", "direction": "asc"},
        search="ada",
    )

    assert seen["path"] == "/api/v1/tables/contacts/query"
    assert seen["body"]["page"] == 2
    assert seen["body"]["sorting"] == {"column": "name", "direction": "asc"}
    assert result["total"] == 1


@pytest.mark.asyncio
async def test_error_message_is_taken_from_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Unregistered tableKey", "status": 404})

    client = _client(handler)
    with pytest.raises(TableClientError) as exc:
        await client.update_row("ghosts", 1, {"name": "x"})
    assert exc.value.message == "Unregistered tableKey"
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_transport_failure_becomes_client_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(TableClientError) as exc:
        await client.lookups("users")
    assert exc.value.status_code is None


@pytest.mark.asyncio
async def test_export_sends_query_params():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, content=b"Name\r\n", headers={"content-type": "text/csv; charset=utf-8"})

    client = _client(handler)
    content, media_type, fmt = await client.export(
        "contacts",
        "csv",
        filters=[{"field": "subscribed", "operator": "isTrue"}],
        sorting={"column": "score", "direction": None},
        search=None,
    )

    assert content == b"Name\r\n"
    assert media_type == "text/csv"
    assert fmt == "csv"
    assert seen["params"]["format"] == "csv"
    assert "sort_by" not in seen["params"]
    assert json.loads(seen["params"]["filters"])[0]["operator"] == "isTrue"
