from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from qreports.apps.api.errors import (
    http_exception_handler,
    qreports_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from qreports.apps.api.rate_limit import route_class_for_request
from qreports.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from qreports.apps.api.routes.auth import router as auth_router
from qreports.apps.api.routes.db import router as db_router
from qreports.apps.api.routes.health import router as health_router
from qreports.apps.api.routes.ops import router as ops_router
from qreports.apps.api.routes.reports import router as reports_router
from qreports.core.config import get_settings
from qreports.core.errors import QReportsError
from qreports.core.logging import configure_logging
from qreports.persistence.db import engine as registry_engine
from qreports.services.render.queue import get_render_queue
from qreports.services.telemetry import record_request
from qreports.services.tenants.broker import get_connection_broker


logger = logging.getLogger(__name__)

_ROUTERS = (health_router, auth_router, reports_router, db_router, ops_router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Inline render mode warms its renderer pool here; queue mode has nothing to start.
    await get_render_queue().start()
    logger.info("api_started name=%s", get_settings().app_name)
    try:
        yield
    finally:
        await get_render_queue().close()
        await get_connection_broker().dispose_all()
        await registry_engine.dispose()
        logger.info("api_stopped")


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="QReports API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            route_class=route_class_for_request(request),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(QReportsError, qreports_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router)

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation except the public ones.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="QReports API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["CookieAuth"] = {"type": "apiKey", "in": "cookie", "name": settings.auth_cookie_name}
        public_paths = {"/health", "/auth/login"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}, {"CookieAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
