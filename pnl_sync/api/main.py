"""
FastAPI main application entry point.

Thin trigger and status surface over the sync pipeline.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from pnl_sync import __version__
from pnl_sync.core.config import ConfigError, settings
from pnl_sync.core.logging import get_logger, setup_logging
from pnl_sync.core.time import date_key, utcnow
from pnl_sync.db.session import create_db_engine, create_session_factory, init_database, session_scope
from pnl_sync.metrics.daily_summary import list_daily_summaries, resolve_marketplace_id, summary_row_to_dict
from pnl_sync.sync.ledger import DEFAULT_STATUS_LIMIT, get_sync_status
from pnl_sync.sync.pipeline import SyncPipeline, SyncRequest, SyncResult

# Setup logging on import
setup_logging()

logger = get_logger(__name__)

REQUEST_ID_HEADER = "x-request-id"


def _request_id(request: Request) -> str:
    return (request.headers.get(REQUEST_ID_HEADER) or "").strip() or str(uuid.uuid4())


def _error_response(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}, "request_id": request_id},
        headers={REQUEST_ID_HEADER: request_id},
    )


async def _read_body(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        return await request.json()
    except ValueError:
        return {}


async def _trigger(
    request: Request,
    runner: Callable[[SyncPipeline, SyncRequest, str], Awaitable[SyncResult]],
) -> JSONResponse:
    """Validate the body, run one sync and map failures to error codes."""
    request_id = _request_id(request)

    try:
        payload = SyncRequest.model_validate(await _read_body(request))
    except ValidationError as e:
        message = ", ".join(error["msg"] for error in e.errors())
        return _error_response(400, "VALIDATION_ERROR", message, request_id)

    pipeline: SyncPipeline = request.app.state.pipeline

    try:
        result = await runner(pipeline, payload, request_id)
    except ConfigError as e:
        return _error_response(400, "CONFIG_ERROR", str(e), request_id)
    except Exception as e:
        logger.error(
            "Sync trigger failed",
            extra={"path": str(request.url), "request_id": request_id, "error": str(e)},
            exc_info=True,
        )
        message = str(e) or "Failed to run sync job"
        return _error_response(500, "INTERNAL_ERROR", message, request_id)

    return JSONResponse(
        status_code=200,
        content={"ok": True, "request_id": request_id, "result": result.to_dict()},
        headers={REQUEST_ID_HEADER: request_id},
    )


def create_app(
    session_factory: Optional[sessionmaker[Session]] = None,
    pipeline: Optional[SyncPipeline] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        session_factory: Database sessions (created from settings when absent)
        pipeline: Sync pipeline (built on ``session_factory`` when absent)

    Returns:
        FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Starting Amazon P&L Sync API",
            extra={"version": __version__, "environment": settings.app_env},
        )

        engine = None
        if getattr(app.state, "session_factory", None) is None:
            engine = create_db_engine()
            init_database(engine)
            app.state.session_factory = create_session_factory(engine)
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = SyncPipeline(app.state.session_factory)

        yield

        logger.info("Shutting down Amazon P&L Sync API")
        if engine is not None:
            engine.dispose()

    app = FastAPI(
        title="Amazon P&L Sync API",
        description="Order, finance and daily P&L synchronisation for Amazon sellers",
        version=__version__,
        docs_url="/docs" if settings.enable_api_docs else None,
        redoc_url="/redoc" if settings.enable_api_docs else None,
        lifespan=lifespan,
    )

    app.state.session_factory = session_factory
    app.state.pipeline = pipeline
    if pipeline is None and session_factory is not None:
        app.state.pipeline = SyncPipeline(session_factory)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """
        Health check endpoint.

        Returns:
            Status and version information
        """
        return {
            "status": "healthy",
            "version": __version__,
            "environment": settings.app_env,
        }

    @app.post("/api/sync/run")
    async def run_sync(request: Request) -> JSONResponse:
        """Full sync: orders, financial events, daily summaries."""
        return await _trigger(
            request, lambda p, body, rid: p.run_full_sync(body, request_id=rid)
        )

    @app.post("/api/sync/orders")
    async def sync_orders(request: Request) -> JSONResponse:
        return await _trigger(
            request, lambda p, body, rid: p.run_orders_sync(body, request_id=rid)
        )

    @app.post("/api/sync/finances")
    async def sync_finances(request: Request) -> JSONResponse:
        return await _trigger(
            request, lambda p, body, rid: p.run_finances_sync(body, request_id=rid)
        )

    @app.post("/api/sync/daily-summary")
    async def sync_daily_summary(request: Request) -> JSONResponse:
        return await _trigger(
            request, lambda p, body, rid: p.run_daily_summary(body, request_id=rid)
        )

    @app.get("/api/sync/status")
    async def sync_status(
        request: Request,
        limit: int = Query(default=DEFAULT_STATUS_LIMIT, ge=1, le=100),
    ) -> JSONResponse:
        """Recent sync runs with the last success and failure times."""
        request_id = _request_id(request)
        with session_scope(request.app.state.session_factory) as session:
            status = get_sync_status(session, limit=limit)
        return JSONResponse(
            content={"ok": True, "request_id": request_id, **status},
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.get("/api/daily-summaries")
    async def daily_summaries(
        request: Request,
        marketplace_id: Optional[str] = Query(default=None, alias="marketplaceId"),
        days: int = Query(default=30, ge=1, le=180),
        end: Optional[date] = Query(default=None),
    ) -> JSONResponse:
        """Stored daily P&L rows of one marketplace, oldest first."""
        request_id = _request_id(request)

        try:
            resolved = resolve_marketplace_id(marketplace_id)
        except ConfigError as e:
            return _error_response(400, "CONFIG_ERROR", str(e), request_id)

        end_date = end or date_key(utcnow())
        start_date = end_date - timedelta(days=days - 1)

        with session_scope(request.app.state.session_factory) as session:
            rows = [
                summary_row_to_dict(row)
                for row in list_daily_summaries(session, resolved, start_date, end_date)
            ]

        return JSONResponse(
            content={
                "ok": True,
                "request_id": request_id,
                "marketplace_id": resolved,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "summaries": rows,
            },
            headers={REQUEST_ID_HEADER: request_id},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pnl_sync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
