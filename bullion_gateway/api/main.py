"""FastAPI application factory"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from bullion_gateway.api.dependencies import get_request_id
from bullion_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from bullion_gateway.api.v1 import admin, holdings, market, plans, transactions
from bullion_gateway.domain.exceptions import DomainException
from bullion_gateway.infrastructure.observability.logging import setup_logging
from bullion_gateway.infrastructure.observability.metrics import record_rejection
from bullion_gateway.services.scheduler import MaturityScheduler
from bullion_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if settings.maturity_scheduler_enabled:
        scheduler = MaturityScheduler()
        await scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    """Render every domain failure as {"error": code, "detail": message}"""
    record_rejection(exc.code)
    logger.warning(
        f"Request rejected: {exc.code}",
        extra={"request_id": get_request_id(request), "error_code": exc.code, "path": request.url.path},
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Bullion Gateway",
        description="Precious-metal holdings, installment plans and settlement ledger",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(DomainException, domain_exception_handler)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(transactions.router, prefix="/v1", tags=["transactions"])
    app.include_router(plans.router, prefix="/v1", tags=["plans"])
    app.include_router(holdings.router, prefix="/v1", tags=["holdings"])
    app.include_router(market.router, prefix="/v1", tags=["market"])
    app.include_router(admin.router, prefix="/v1", tags=["admin"])

    return app


app = create_app()
