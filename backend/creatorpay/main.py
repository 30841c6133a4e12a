"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from creatorpay.core.config import settings
from creatorpay.core.logging import setup_logging
from creatorpay.core.otel import initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
from creatorpay.db import redis as redis_db
from creatorpay.db.session import engine, init_db
from creatorpay.services.webhook_services import close_webhook_services

from creatorpay.api import webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    if not redis_db.ping():
        # Every money-moving handler needs the lock store
        raise RuntimeError("Redis connection failed")
    logger.info("Redis connection successful")

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")
    close_webhook_services()


# Create FastAPI app
app = FastAPI(
    title="CreatorPay Webhooks",
    description="Payment webhook ingestion and ledger reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

app.include_router(webhooks.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("creatorpay.main:app", host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
