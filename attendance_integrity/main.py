import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine as db_engine
from .engine import IntegrityEngine, build_engine
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.attendance import router as attendance_router
from .routes.integrity import router as integrity_router
from .routes.mobile import router as mobile_router

logger = structlog.get_logger(__name__)


def create_app(engine: Optional[IntegrityEngine] = None, start_background_tasks: Optional[bool] = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)
    app.state.engine = engine or build_engine()
    if start_background_tasks is None:
        start_background_tasks = settings.enable_background_tasks

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(mobile_router)
    app.include_router(attendance_router)
    app.include_router(integrity_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        logger.info("Starting application", environment=settings.environment)
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=db_engine)
            logger.info("Database tables created/verified")
        if start_background_tasks:
            app.state.engine.start()

    @app.on_event("shutdown")
    def _shutdown():
        app.state.engine.stop()

    return app


app = create_app()
