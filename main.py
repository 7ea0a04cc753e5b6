import logging
from typing import Optional

import redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from admin_api import router as api_router
from audit_log import AuditLogSink
from auth_gate import AuthDenied, AuthGate, AuthGateUnavailable
from clock import Clock, utcnow
from config import Settings, settings
from db import SessionLocal, init_db
from lockout import LockoutPolicy, LockoutStore, SqlLockoutStore
from lockout_redis import RedisLockoutStore
from lockout_sweeper import LockoutSweeper
from redis_client import create_redis_client
from request_logging import RequestLogMiddleware
from schemas import ErrorCode, ErrorResponse, HealthResponse


logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("newsapi")


# ======================================================
# Lockout Backend
# ======================================================

def build_lockout_store(
    app_settings: Settings,
    session_factory: sessionmaker,
    clock: Clock = utcnow,
    redis_client: Optional[redis.Redis] = None,
) -> LockoutStore:
    policy = LockoutPolicy.from_settings(app_settings)

    if app_settings.LOCKOUT_BACKEND == "redis":
        if redis_client is None:
            if not app_settings.REDIS_URL:
                raise RuntimeError("LOCKOUT_BACKEND=redis requires REDIS_URL")
            redis_client = create_redis_client(app_settings.REDIS_URL)
        return RedisLockoutStore(redis_client, policy, clock)

    return SqlLockoutStore(session_factory, policy, clock)


# ======================================================
# App Setup
# ======================================================

def create_app(
    app_settings: Settings = settings,
    session_factory: sessionmaker = SessionLocal,
    clock: Clock = utcnow,
    redis_client: Optional[redis.Redis] = None,
) -> FastAPI:
    app = FastAPI(title="News API Guard")

    store = build_lockout_store(app_settings, session_factory, clock, redis_client)
    sink = AuditLogSink(session_factory, clock)

    app.state.settings = app_settings
    app.state.clock = clock
    app.state.lockout_store = store
    app.state.auth_gate = AuthGate(store, app_settings.API_BEARER_TOKEN, clock)
    app.state.audit_sink = sink
    app.state.sweeper = None
    if app_settings.LOCKOUT_SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = LockoutSweeper(store, app_settings.LOCKOUT_SWEEP_INTERVAL_SECONDS)

    # Outermost: logs exactly once per request, whatever the outcome
    app.add_middleware(
        RequestLogMiddleware,
        sink=sink,
        max_request_bytes=app_settings.REQUEST_LOG_MAX_BYTES,
        trust_forwarded_for=app_settings.TRUST_X_FORWARDED_FOR,
    )

    # --------------------------------------------------
    # Gate outcomes
    # --------------------------------------------------

    @app.exception_handler(AuthDenied)
    async def auth_denied_handler(request: Request, exc: AuthDenied):
        return JSONResponse(status_code=exc.status_code, content=exc.payload)

    @app.exception_handler(AuthGateUnavailable)
    async def auth_gate_unavailable_handler(request: Request, exc: AuthGateUnavailable):
        body = ErrorResponse(
            message="Kimlik doğrulama şu anda yapılamıyor.",
            error_code=ErrorCode.AUTH_GATE_UNAVAILABLE,
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    @app.on_event("startup")
    async def startup():
        init_db()

        if not app_settings.API_BEARER_TOKEN:
            logger.warning("API_BEARER_TOKEN is empty: every protected request will be rejected")

        if app.state.sweeper is not None:
            app.state.sweeper.start()

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.sweeper is not None:
            await app.state.sweeper.stop()

    # --------------------------------------------------
    # Routes
    # --------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        return HealthResponse(status="ok")

    app.include_router(api_router)

    return app


app = create_app()
