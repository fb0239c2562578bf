"""Sobek Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .database import check_connection, get_supabase_client
from .logging_config import get_logger, setup_logging
from .rate_limit import limiter
from .routes import admin_router, cron_router, orders_router, products_router

logger = get_logger("sobek.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    setup_logging("DEBUG" if settings.debug else settings.log_level)
    logger.info(f"Starting Sobek Backend API (debug={settings.debug})")
    if not settings.internal_api_secret:
        logger.warning("INTERNAL_API_SECRET is not set; cron and admin endpoints will reject all calls")
    yield
    logger.info("Shutting down Sobek Backend API")


app = FastAPI(
    title="Sobek Backend API",
    description="Escrow-backed marketplace API",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies and parameters as 400."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(products_router)
app.include_router(orders_router)
app.include_router(admin_router)
app.include_router(cron_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "sobek-backend",
        "version": "0.1.0",
        "status": "ok",
    }


def _timer_mode(current) -> str:
    if current.timer_service_url:
        return "http"
    # build_services refuses in-process timers outside debug
    return "in-memory" if current.debug else "unconfigured"


@app.get("/health")
async def health():
    """Ledger connectivity plus which escrow collaborators are configured."""
    try:
        db_status = await check_connection(get_supabase_client())
    except ValueError as e:
        db_status = f"error: {str(e)[:50]}"

    current = get_settings()
    escrow = current.escrow_config()
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "escrow": {
            "chains": sorted(escrow.deployments),
            "arbiter_configured": bool(current.arbiter_private_key),
            "timer_service": _timer_mode(current),
        },
    }
