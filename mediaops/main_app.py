#=================================================================
# mediaops/main_app.py
# FastAPI application entry-point.
#   uvicorn mediaops.main_app:app
#=================================================================

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from mediaops import logging_filters
from mediaops.admin_routes import router as admin_router
from mediaops.config import Settings, settings as default_settings
from mediaops.db import configure_engine, dispose_engine, get_sessionmaker, init_db
from mediaops.errors import OrchestratorError
from mediaops.notifications.dispatcher import Messenger
from mediaops.processing.provider import ProcessingProvider
from mediaops.routes import router as api_router
from mediaops.services import build_services
from mediaops.webhooks.processing import router as processing_webhooks_router
from mediaops.workers.jobs_worker import reset_queue, sweeper_loop, worker_loop

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging_filters.install()

security = HTTPBasic()


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    provider: Any = None,
    messenger: Any = None,
    run_workers: Optional[bool] = None,
) -> FastAPI:
    """
    Build the service. Tests pass their own settings, provider/messenger fakes
    and run_workers=False so webhook jobs are handled inline.
    """
    cfg = app_settings or default_settings
    workers_enabled = cfg.RUN_BACKGROUND_WORKERS if run_workers is None else run_workers

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if cfg.DATABASE_URL:
            configure_engine(cfg.DATABASE_URL)
        await init_db()
        services = build_services(
            cfg,
            get_sessionmaker(),
            provider=provider or ProcessingProvider.from_settings(cfg),
            messenger=messenger or Messenger.from_settings(cfg),
        )
        app.state.services = services

        stop = asyncio.Event()
        tasks = []
        if workers_enabled:
            reset_queue()
            tasks.append(asyncio.create_task(worker_loop(services, stop)))
            tasks.append(asyncio.create_task(sweeper_loop(services, stop)))
        logger.info("[APP] started (background workers: %s)", "on" if workers_enabled else "off")
        try:
            yield
        finally:
            stop.set()
            for t in tasks:
                try:
                    await asyncio.wait_for(t, timeout=5.0)
                except asyncio.TimeoutError:
                    t.cancel()
            await dispose_engine()

    app = FastAPI(
        title="Media Order Job Lifecycle Orchestrator",
        description="Order status, HDR processing, editing, QC and notification rules.",
        lifespan=lifespan,
    )

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Simple HTTP Basic Auth for /admin/* protected endpoints ---
    def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
        ok_user = secrets.compare_digest(credentials.username or "", cfg.ADMIN_USER or "")
        ok_pass = secrets.compare_digest(credentials.password or "", cfg.ADMIN_PASS or "")
        if not (ok_user and ok_pass):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )

    # ---------------- Include routers ----------------
    app.include_router(processing_webhooks_router)  # /webhooks/processing
    app.include_router(api_router)                  # /api/*
    app.include_router(
        admin_router,
        prefix="/admin",
        dependencies=[Depends(verify_admin)],
    )                                               # /admin/api/*

    @app.get("/")
    async def home():
        return {"status": "running", "service": "mediaops orchestrator"}

    # --- Domain errors -> {ok: false, code, detail} ---
    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        if exc.status_code >= 500:
            logger.error("[APP] %s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Global error handler (keeps full stack trace in logs) ---
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "code": "internal_error", "detail": str(exc)},
        )

    return app


app = create_app()
