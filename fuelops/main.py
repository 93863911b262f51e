from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from fuelops.config import settings
from fuelops.api.v1.router import api_router
from fuelops.core.exceptions import CommissionError
from fuelops.database import init_db, async_session_factory
from fuelops.jobs.scheduler import start_scheduler, shutdown_scheduler


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Start background scheduler (auto-calculation)
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


FULL_API_DESCRIPTION = """
## FuelOps Commission Engine

Dealer/station commission calculation and settlement for fuel-station networks.

### Features

- **Calculation**: per-station batch calculation with rate overrides, windfall/shortfall and volume bonuses
- **Progressive accrual**: day-by-day accrual and end-of-period estimate for the open period
- **Settlement**: calculated -> approved -> paid lifecycle with payment records and corrections
- **Scoped access**: admin, OMC, dealer and station roles only see their own organization

### Authentication

All endpoints require a JWT issued by the identity service.
Include token in Authorization header: `Bearer <token>`

### Error Codes

| Code | Description |
|------|-------------|
| 401 | Unauthorized - Invalid/expired token |
| 403 | Forbidden - Missing capability or out-of-scope record |
| 404 | Not Found - Unknown station or commission |
| 409 | Conflict - Invalid status transition or calculation in progress |
| 422 | Unprocessable Entity - Invalid or missing field |
| 503 | Service Unavailable - Upstream ledger data unavailable |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Commissions", "description": "Commission calculation, reporting and settlement"},
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    content.update({
        "path": str(request.url.path),
        "method": request.method,
    })
    response = JSONResponse(status_code=status_code, content=content)

    # Add CORS headers if origin is allowed
    origin = request.headers.get("origin", "")
    if origin in settings.cors_origins_list or "*" in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


@app.exception_handler(CommissionError)
async def commission_error_handler(request: Request, exc: CommissionError):
    """Map engine errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return _error_response(request, exc.status_code, {
        "error": exc.message,
        "type": exc.code,
        "details": exc.details,
    })


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a JSON error body for anything unhandled."""
    # Preserve HTTP status code for HTTPException, default to 500 for others
    if isinstance(exc, HTTPException):
        status_code = exc.status_code
        error_message = exc.detail
    else:
        status_code = 500
        error_message = str(exc) if settings.DEBUG else "Internal server error"
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")

    return _error_response(request, status_code, {
        "error": error_message,
        "type": type(exc).__name__,
    })


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
    }
