from __future__ import annotations

from app import cors

SECRET = "test-external-secret"
ORIGIN = "https://admin.example.com"


def _create_page(client, url="about", content=None):
    return client.post(
        "/api/page",
        json={"pageUrl": url, "pageDescription": "About us", "content": content or []},
    )


def test_list_pages_is_404_when_empty(client):
    resp = client.get("/api/page")
    assert resp.status_code == 404
    assert resp.json()["message"] == "No Pages Found"
    assert resp.json()["status"] == 404


def test_create_and_list_pages(client):
    resp = _create_page(client, "/about/")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == 200
    assert body["page"]["pageUrl"] == "about"
    assert body["page"]["pageDescription"] == "About us"

    listed = client.get("/api/page").json()
    assert [page["pageUrl"] for page in listed["page"]] == ["about"]


def test_duplicate_page_url_is_400(client):
    _create_page(client, "pricing")
    resp = _create_page(client, "pricing")
    assert resp.status_code == 400
    assert resp.json()["message"] == "A page with this URL already exists"


def test_get_page_data_by_slug(client):
    _create_page(client, "team")
    resp = client.post("/api/page/get-page-data", json={"slug": "team"})
    assert resp.status_code == 200
    assert resp.json()["page"]["pageUrl"] == "team"

    missing = client.post("/api/page/get-page-data", json={"slug": "ghost"})
    assert missing.status_code == 404
    assert missing.json()["message"] == "Page not found"


def test_cors_headers_on_success_and_error(client):
    ok = client.post(
        "/api/page",
        json={"pageUrl": "cors"},
        headers={"Origin": ORIGIN},
    )
    assert ok.headers["access-control-allow-origin"] == ORIGIN
    assert "DELETE" in ok.headers["access-control-allow-methods"]

    unknown_route = client.get("/api/unknown-route", headers={"Origin": ORIGIN})
    assert unknown_route.status_code == 404
    assert unknown_route.headers["access-control-allow-origin"] == ORIGIN

    missing = client.post("/api/page/get-page-data", json={"slug": "ghost"}, headers={"Origin": ORIGIN})
    assert missing.status_code == 404
    assert missing.headers["access-control-allow-origin"] == ORIGIN
    assert missing.headers["access-control-allow-headers"] == "*"


def test_options_preflight_returns_204(client):
    resp = client.options("/api/external/page", headers={"Origin": ORIGIN})
    assert resp.status_code == 204
    assert resp.headers["access-control-max-age"] == "86400"
    assert resp.headers["access-control-allow-origin"] == ORIGIN


def test_allow_origin_is_empty_when_no_origins_configured(client, monkeypatch):
    monkeypatch.setattr(cors, "settings", cors.settings.model_copy(update={"allowed_origins": ""}))
    resp = client.get("/api/page", headers={"Origin": ORIGIN})
    assert resp.headers["access-control-allow-origin"] == ""
    assert "vary" not in resp.headers


def test_non_api_paths_have_no_cors_headers(client):
    resp = client.get("/health")
    assert resp.json() == {"status": "ok"}
    assert "access-control-allow-origin" not in resp.headers


def test_external_create_requires_secret(client):
    missing = client.post("/api/external/page", json={"pageUrl": "ext"})
    assert missing.status_code == 401
    assert missing.json()["message"] == "Unauthorised."

    wrong = client.post(
        "/api/external/page",
        json={"pageUrl": "ext", "EXTERNAL_API_SECRET": "guess"},
        headers={"Origin": ORIGIN},
    )
    assert wrong.status_code == 401
    assert wrong.headers["access-control-allow-origin"] == ORIGIN


def test_external_page_lifecycle(client):
    created = client.post(
        "/api/external/page",
        json={"pageUrl": "ext", "pageDescription": "External", "EXTERNAL_API_SECRET": SECRET},
    )
    assert created.status_code == 200
    body = created.json()
    assert body["message"] == "Page Created Successfully."
    page_id = body["page"]["id"]

    fetched = client.post(
        "/api/external/page-data",
        json={"pageId": page_id, "EXTERNAL_API_SECRET": SECRET},
    )
    assert fetched.json()["message"] == "Page fetched Successfully."
    assert fetched.json()["page"]["pageUrl"] == "ext"

    via_get_page = client.post(
        "/api/external/page/get-page",
        json={"pageId": page_id, "EXTERNAL_API_SECRET": SECRET},
    )
    assert via_get_page.status_code == 200

    listed = client.get("/api/external/page/get-pages")
    assert [page["id"] for page in listed.json()["page"]] == [page_id]


def test_external_missing_page_is_400(client):
    resp = client.post(
        "/api/external/page/get-page",
        json={"pageId": "00000000-0000-0000-0000-000000000000", "EXTERNAL_API_SECRET": SECRET},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "A page with this URL not found."

    malformed = client.post(
        "/api/external/page-data",
        json={"pageId": "not-a-uuid", "EXTERNAL_API_SECRET": SECRET},
    )
    assert malformed.status_code == 400


def test_external_insert_page(client):
    resp = client.post(
        "/api/external/page/insert-page",
        json={
            "pageData": {"pageUrl": "inserted", "content": [{"type": "h1", "config": {"heading": "Hi"}}]},
            "EXTERNAL_API_SECRET": SECRET,
        },
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Page added Successfully."
    assert resp.json()["page"]["content"][0]["type"] == "h1"


def test_rendered_page_route(client, users):
    client.post(
        "/api/page",
        json={
            "pageUrl": "landing",
            "pageDescription": "Landing",
            "content": [
                {"type": "h1", "name": "Title", "config": {"id": "title", "heading": "Welcome <b>"}},
                {"type": "carousel", "config": {"id": "c1"}},
                {
                    "type": "container",
                    "columns": [6, 6],
                    "children": [
                        {"type": "paragraph", "config": {"content": "Left", "grid_column": 0}},
                        {"type": "table", "config": {"table_key": "users", "grid_column": 1}},
                    ],
                },
            ],
        },
    )

    resp = client.get("/pages/landing", headers={"accept": "text/html"})
    assert resp.status_code == 200
    assert "Welcome &lt;b&gt;" in resp.text
    assert "grid-cols-2" in resp.text
    assert "Anna" in resp.text
    assert "carousel" not in resp.text


def test_rendered_page_missing_is_html_404(client):
    resp = client.get("/pages/ghost", headers={"accept": "text/html"})
    assert resp.status_code == 404
    assert "text/html" in resp.headers["content-type"]
    assert "Page not found" in resp.text
