"""
FastAPI server for the marketplace: checkout, payment webhooks, order actions and admin settlement
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.admin_routes import router as admin_router
from handlers.checkout_routes import router as checkout_router
from handlers.payment_webhook import router as payment_webhook_router
from jobs.scheduler import SettlementScheduler
from utils.exceptions import MarketplaceError

logger = logging.getLogger(__name__)


def create_app(start_scheduler: bool = None, init_database: bool = True) -> FastAPI:
    if start_scheduler is None:
        start_scheduler = Config.SCHEDULER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: tables and background jobs. Shutdown: stop the jobs."""
        Config.log_environment_config()
        if init_database:
            create_tables()

        scheduler = None
        if start_scheduler:
            scheduler = SettlementScheduler()
            scheduler.start()
        app.state.scheduler = scheduler

        yield

        if scheduler is not None:
            scheduler.shutdown()
        logger.info("🔄 Marketplace server shutting down...")

    app = FastAPI(
        title="Marketplace Settlement Server",
        description="Checkout, PIX payment webhooks, delivery, disputes and settlement",
        lifespan=lifespan,
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error(f"❌ {exc.code.upper()}: {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code.upper()}: {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        database_ok = test_connection()
        return JSONResponse(
            content={
                "status": "healthy" if database_ok else "degraded",
                "service": "marketplace",
                "database": "ok" if database_ok else "unavailable",
            },
            status_code=200 if database_ok else 503,
        )

    app.include_router(checkout_router)
    app.include_router(admin_router)
    app.include_router(payment_webhook_router)
    return app


app = create_app()
