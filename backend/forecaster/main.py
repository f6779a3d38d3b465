# forecaster/main.py
from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import router objects explicitly to avoid module name collisions
from forecaster import __version__
from forecaster.routers.health import router as health_router
from forecaster.routers.forecasts import router as forecasts_router
from forecaster.routers.stats import router as stats_router
from forecaster.routers.market import router as market_router
from forecaster.routers.cron import router as cron_router
from forecaster.db.session import init_db
from forecaster.observability.logging import configure_logging
from forecaster.observability.middleware import register_request_middleware, unhandled_exception_handler
from forecaster.observability.metrics import router as observability_router
from forecaster.scheduler.setup import init_scheduler, shutdown_scheduler

configure_logging()

logger = structlog.get_logger(__name__)

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def create_app() -> FastAPI:
    app = FastAPI(title="Crypto Forecast Consensus", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=DEV_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400
    )

    register_request_middleware(app)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    async def _startup() -> None:
        init_db()
        await init_scheduler()
        logger.info("app.started")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_scheduler()

    app.include_router(health_router)
    app.include_router(observability_router)
    app.include_router(forecasts_router)
    app.include_router(stats_router)
    app.include_router(market_router)
    app.include_router(cron_router)

    return app


app = create_app()
