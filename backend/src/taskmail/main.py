"""
FastAPI entry point for the search service.

Provides:
- Correlation ID middleware
- Structured request logging (structlog)
- TaskmailError and request-validation exception handling
- /health endpoint
"""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from taskmail.api import routes_search
from taskmail.common.exceptions import (
    ConfigurationError,
    ProviderError,
    RetrievalError,
    TaskmailError,
    ValidationError,
)
from taskmail.config.loader import get_config
from taskmail.embeddings.client import EmbeddingProvider
from taskmail.indexer import Indexer
from taskmail.observability import (
    get_logger,
    get_trace_context,
    init_observability,
    shutdown_observability,
)
from taskmail.retrieval.hybrid_search import HybridSearchEngine
from taskmail.retrieval.vector_index import PgvectorIndexStore, VectorIndexStore

APP_NAME = "Taskmail Search"
APP_VERSION = "0.1.0"

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Accept X-Correlation-ID or generate one, and echo it on the response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        token = correlation_id_ctx.set(correlation_id)
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
            response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            correlation_id_ctx.reset(token)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per request.

    Never logs query text or request bodies.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.perf_counter()
        trace_ctx = get_trace_context()
        fields = {
            "method": request.method,
            "path": request.url.path,
            "correlation_id": correlation_id_ctx.get(),
            "trace_id": trace_ctx.get("trace_id"),
        }
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                **fields,
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
            **fields,
        )
        return response


def create_error_response(
    status_code: int,
    error_type: str,
    message: str,
    error_code: str | None = None,
    context: dict[str, Any] | None = None,
) -> JSONResponse:
    """Structured error body with correlation ID."""
    body: dict[str, Any] = {
        "error": {
            "type": error_type,
            "message": message,
            "error_code": error_code,
            "correlation_id": correlation_id_ctx.get(),
        }
    }
    if context:
        body["error"]["context"] = context
    return JSONResponse(status_code=status_code, content=body)


async def taskmail_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    TaskmailError hierarchy to HTTP:
    - ValidationError -> 400
    - RetrievalError, ProviderError -> 503
    - ConfigurationError and the rest -> 500
    """
    if not isinstance(exc, TaskmailError):
        return await generic_exception_handler(request, exc)

    status_code = 500
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, (RetrievalError, ProviderError)):
        status_code = 503
    elif isinstance(exc, ConfigurationError):
        status_code = 500

    payload = exc.to_dict()
    return create_error_response(
        status_code=status_code,
        error_type=payload["error_type"],
        message=exc.message,
        error_code=exc.error_code,
        context=payload["context"] if status_code == 400 else None,
    )


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    return create_error_response(
        status_code=400,
        error_type="ValidationError",
        message="Invalid request",
        error_code="INVALID_REQUEST",
        context={
            "fields": [".".join(str(p) for p in err.get("loc", ())) for err in errors]
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return create_error_response(
        status_code=500,
        error_type="InternalServerError",
        message="An unexpected error occurred.",
        error_code="INTERNAL_ERROR",
    )


def create_app(
    search_engine: HybridSearchEngine | None = None,
    indexer: Indexer | None = None,
    vector_store: VectorIndexStore | None = None,
    init_telemetry: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Components not passed in are built from configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = get_config()
        if init_telemetry:
            init_observability(
                service_name="taskmail-search",
                json_logs=config.system.env != "dev",
            )
        logger.info("startup", app=APP_NAME, version=APP_VERSION, env=config.system.env)

        owned_embedder: EmbeddingProvider | None = None
        if search_engine is None:
            owned_embedder = EmbeddingProvider.from_config(config)
        app.state.search_engine = search_engine or HybridSearchEngine.from_config(
            config, embedder=owned_embedder
        )
        app.state.indexer = indexer or Indexer.from_config(config)
        app.state.vector_store = vector_store or PgvectorIndexStore(
            canonical_dim=config.embedding.canonical_dim,
            config=config.vector_index,
        )

        yield

        if owned_embedder is not None:
            await owned_embedder.aclose()
        if init_telemetry:
            shutdown_observability()
        logger.info("shutdown", app=APP_NAME)

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)

    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.add_exception_handler(TaskmailError, taskmail_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(routes_search.router, prefix="/api/v1", tags=["search"])

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, Any]:
        return {"status": "healthy", "version": APP_VERSION}

    return app
