from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bound_contextvars

from analytics_backfill.app.api.routes import router
from analytics_backfill.app.dependencies import get_database, get_settings, get_telemetry
from analytics_backfill.app.errors import AuthError, UnknownFamilyError
from analytics_backfill.app.logging_config import configure_application_logging
from analytics_backfill.app.models.backfill_contracts import (
    ComprehensiveBackfillResponse,
    ErrorResponse,
)
from analytics_backfill.app.services.backfill_service import ComprehensiveBackfillAborted

LOGGER = logging.getLogger("analytics_backfill.api")
REQUEST_ID_HEADER = "X-Request-ID"


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_application_logging(get_settings())
    database = get_database()
    LOGGER.info("api ready db_path=%s", database.path)
    yield


async def auth_error_handler(_request: Request, exc: AuthError) -> JSONResponse:
    partial = None
    if isinstance(exc, ComprehensiveBackfillAborted):
        partial = ComprehensiveBackfillResponse.model_validate(exc.outcome.as_dict())
    body = ErrorResponse(error=str(exc), partial=partial)
    return JSONResponse(status_code=401, content=body.model_dump(mode="json"))


async def unknown_family_handler(_request: Request, exc: UnknownFamilyError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _request_id(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return incoming or uuid4().hex


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Tag logs and telemetry for one request with its id and echo the id back."""
    request_id = _request_id(request)
    telemetry = get_telemetry().bind(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    started_at = perf_counter()

    with bound_contextvars(http_request_id=request_id, http_path=request.url.path):
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise

    response.headers[REQUEST_ID_HEADER] = request_id
    telemetry.emit(
        "http.request.finish",
        duration_ms=int((perf_counter() - started_at) * 1000),
        status_code=response.status_code,
    )
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="YouTube Analytics Backfill API", version="0.1.0", lifespan=app_lifespan)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(AuthError, auth_error_handler)  # pyright: ignore[reportArgumentType]
    app.add_exception_handler(
        UnknownFamilyError,
        unknown_family_handler,  # pyright: ignore[reportArgumentType]
    )
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
