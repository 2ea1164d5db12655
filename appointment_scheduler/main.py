# appointment_scheduler/main.py
from __future__ import annotations

# Load .env early so settings and os.getenv agree
from dotenv import load_dotenv
load_dotenv()

import secrets
from contextlib import asynccontextmanager

import sqlalchemy as sa
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_scheduler.api.errors import scheduling_error_handler
from appointment_scheduler.api.routes.appointments import router as appointments_router
from appointment_scheduler.api.routes.tools import router as tools_router
from appointment_scheduler.core.config import Settings, settings
from appointment_scheduler.core.errors import SchedulingError, get_error_summary
from appointment_scheduler.core.logging import LoggingMiddleware, get_logger, setup_logging
from appointment_scheduler.db.base import init_db
from appointment_scheduler.db.session import build_engine, build_sessionmaker, get_session
from appointment_scheduler.services.google_calendar import build_calendar_sync

logger = get_logger(__name__)

# Public paths (do NOT require X-API-Key here)
PUBLIC_EXACT = {
    "/healthz",
    "/readyz",
    "/favicon.ico",
}


def create_app(config: Settings = settings) -> FastAPI:
    setup_logging(debug=config.is_development, max_log_length=config.MAX_LOG_LENGTH, level=config.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("startup", app_env=config.APP_ENV)
        db_engine = build_engine(config.async_db_uri)
        app.state.db_engine = db_engine
        app.state.sessionmaker = build_sessionmaker(db_engine)
        app.state.calendar = build_calendar_sync(config)

        # Local SQLite runs have no migrations; PostgreSQL schema comes from Alembic
        if db_engine.dialect.name == "sqlite":
            await init_db(db_engine)

        try:
            yield
        finally:
            logger.info("shutdown")
            await db_engine.dispose()

    app = FastAPI(
        title="Appointment Scheduler",
        description="Books, reschedules and cancels appointments against the store and Google Calendar",
        lifespan=lifespan,
        docs_url=None if config.is_production else "/docs",
        redoc_url=None if config.is_production else "/redoc",
    )
    app.state.settings = config

    # -------- Global security gate (single place) --------
    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        if request.url.path in PUBLIC_EXACT:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key", "")
        expected = config.SCHEDULER_API_KEY or ""
        if not expected or not secrets.compare_digest(api_key, expected):
            logger.warning("api_key_rejected", path=request.url.path, has_key=bool(api_key))
            return JSONResponse({"detail": "Invalid or missing API key"}, status_code=401)

        return await call_next(request)

    # Registered last so it wraps the API key gate too
    app.middleware("http")(LoggingMiddleware(
        log_requests=config.LOG_REQUESTS,
        log_responses=config.LOG_RESPONSES,
        slow_threshold=config.SLOW_REQUEST_THRESHOLD,
    ))

    app.add_exception_handler(SchedulingError, scheduling_error_handler)

    # -------- Health / readiness (public) --------
    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "errors": get_error_summary()}

    @app.get("/readyz", include_in_schema=False)
    async def readyz(db: AsyncSession = Depends(get_session)):
        await db.execute(sa.text("SELECT 1"))
        return {"db": "ok"}

    app.include_router(appointments_router)
    app.include_router(tools_router)
    return app


app = create_app()
