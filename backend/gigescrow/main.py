import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gigescrow.api import disputes, escrow, health, internal, wallet
from gigescrow.core.config import settings
from gigescrow.core.logging_config import setup_logging
from gigescrow.core.middleware import RequestLoggingMiddleware
from gigescrow.core.rate_limit import limiter
from gigescrow.db.session import engine
from gigescrow.services.errors import EscrowError, Unexpected, ValidationError

# Configure structured JSON logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: verify the database, dispose of the pool on shutdown."""
    try:
        async with engine.begin():
            pass
        logger.info("Database connection established")
    except Exception as exc:
        logger.warning("Database connection not available at startup: %s", exc)
    yield
    await engine.dispose()


app = FastAPI(
    title="Gig Escrow API",
    description="Escrow custody and dispute resolution for the consulting marketplace.",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    redoc_url=None,
    debug=settings.debug,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------
app.add_middleware(RequestLoggingMiddleware)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
def _error_response(exc: EscrowError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError) -> JSONResponse:
    if isinstance(exc, Unexpected):
        logger.error("Unexpected failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    return _error_response(ValidationError(message))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(Unexpected("Internal server error"))


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router, prefix="/api")
app.include_router(disputes.router, prefix="/api")
app.include_router(escrow.router, prefix="/api")
app.include_router(wallet.router, prefix="/api")
app.include_router(internal.router, prefix="/api")
