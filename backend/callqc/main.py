"""
Main FastAPI application for CallQC.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import ROUTERS
from .api.responses import register_exception_handlers
from .config import is_production, settings
from .container import Services, build_services
from .logging_config import setup_logging

logger = logging.getLogger('callqc.api')
startup_logger = logging.getLogger('callqc.startup')

PUBLIC_PREFIXES = ("/api", "/webhook", "/health")


def public_paths(routes: Iterable) -> List[str]:
    """Sorted public paths; route entries without a path (mounts of included routers) are skipped."""
    paths = {getattr(route, "path", None) for route in routes}
    return sorted(path for path in paths if isinstance(path, str) and path.startswith(PUBLIC_PREFIXES))


def create_app(services: Optional[Services] = None, start_background: Optional[bool] = None) -> FastAPI:
    """
    Build the application around a service container.

    Workers and the digest scheduler start with the app unless
    `start_background` is False (tests drain queues inline instead).
    """
    services = services or build_services(settings)
    app_settings = services.settings
    if start_background is None:
        start_background = app_settings.workers_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        start_ts = time.perf_counter()
        startup_logger.info("[STARTUP] phase=fastapi_startup status=begin")
        services.bootstrap()
        logger.info(f"Using database: {services.db.url.split('://', 1)[0]} journal_mode={services.db.journal_mode()}")
        if start_background:
            services.pool.start()
            if services.scheduler is not None:
                services.scheduler.start()
        startup_logger.info(
            "[STARTUP] phase=fastapi_startup status=complete elapsed=%.3fs workers=%s",
            time.perf_counter() - start_ts,
            "on" if start_background else "off",
        )
        yield
        if start_background:
            if services.scheduler is not None:
                services.scheduler.shutdown()
            services.pool.stop()
        logger.info("CallQC shut down")

    app = FastAPI(
        title=app_settings.project_name,
        version=__version__,
        debug=app_settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not is_production(app_settings) else app_settings.backend_cors_origins,
        allow_credentials=is_production(app_settings),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router)

    @app.get("/api")
    def api_index():
        """Root endpoint - service description."""
        return {
            "ok": True,
            "data": {
                "message": "AI Sales Call QC API - Sports Infrastructure Sales",
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "endpoints": public_paths(app.routes),
            },
        }

    return app


def build_default_app() -> FastAPI:
    setup_logging(settings.log_level, settings.log_file)
    return create_app()


app = build_default_app()
