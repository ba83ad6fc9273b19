"""
MarketPay Backend - FastAPI Application

Payment-to-fulfillment backend for the B2B marketplace: cart checkout,
idempotent payment intents, gateway confirmation, order materialization,
subscription activation, refunds and seller payouts.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from . import __version__
from .config import settings
from .exceptions import MarketplaceError
from .db.init_db import initialize_database
from .services.scheduler import start_scheduler, shutdown_scheduler
from .api.admin import router as admin_router
from .api.cart import router as cart_router
from .api.orders import router as orders_router
from .api.payments import router as payments_router
from .api.payouts import router as payouts_router
from .api.subscriptions import router as subscriptions_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Initialize database, start janitor jobs
    - Shutdown: Stop janitor jobs
    """
    logger.info("Starting MarketPay backend server...")
    logger.info(f"Demo mode: {settings.demo_mode}")

    try:
        await initialize_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    if settings.janitor_enabled:
        try:
            start_scheduler()
            logger.info("APScheduler started for maintenance jobs")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            if not settings.demo_mode:
                raise
            logger.warning("Continuing without scheduler in demo mode")

    logger.info("Server startup complete")

    yield

    logger.info("Shutting down MarketPay backend server...")

    try:
        shutdown_scheduler(wait=True)
        logger.info("Scheduler shutdown complete")
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}")


app = FastAPI(
    title="MarketPay API",
    description="Payment-to-fulfillment reconciliation for the B2B marketplace",
    version=__version__,
    lifespan=lifespan,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    """
    Render service-layer errors with their own status code.

    Body is MarketplaceError.to_dict(): error_code, message, details.
    """
    logger.warning(
        f"Marketplace error: {exc.error_code} - {exc.message}",
        extra={"details": exc.details}
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """
    Handle validation errors not caught by Pydantic request parsing.
    """
    logger.warning(f"Validation error: {str(exc)}")

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "validation:failed",
            "message": str(exc),
            "details": {}
        },
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full exception for debugging but returns generic message to client.
    """
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "server:internal_error",
            "message": "An unexpected error occurred",
            "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
        },
    )


@app.get("/api/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "demo_mode": settings.demo_mode,
    }


# Include API routers
app.include_router(payments_router, prefix="/api", tags=["Payments"])
app.include_router(cart_router, prefix="/api/cart", tags=["Cart"])
app.include_router(orders_router, prefix="/api/orders", tags=["Orders"])
app.include_router(subscriptions_router, prefix="/api/subscriptions", tags=["Subscriptions"])
app.include_router(payouts_router, prefix="/api/payouts", tags=["Payouts"])
app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "marketpay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
