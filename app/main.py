import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.external import router as external_router
from app.api.pages import router as pages_router
from app.api.tables import router as tables_router
from app.cors import ApiCorsMiddleware
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.web_pages import router as web_pages_router

app = FastAPI(title="pagegrid API")
logger = logging.getLogger(__name__)
configure_logging()
app.add_middleware(ApiCorsMiddleware)
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)


def _include_api_router(router, prefix: str = "/api"):
    app.include_router(router, prefix=prefix)


_include_api_router(pages_router)
_include_api_router(external_router)
_include_api_router(tables_router, prefix="/api/v1")
app.include_router(web_pages_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
