import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.v1 import api_keys, qr_codes, usage, webhooks
from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.errors import GatewayError
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import InMemoryRateLimitStore, RateLimiter
from app.schemas.common import ErrorResponse, HealthResponse
from app.services.webhooks import WebhookDeliverer

# Initialize logging
setup_logging()

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One limiter (and one fallback counter store) per process
    app.state.rate_limiter = RateLimiter.from_settings(InMemoryRateLimitStore())
    logger.info(
        f"Rate limiter ready: {settings.RATE_LIMIT_MAX_REQUESTS} requests / "
        f"{settings.RATE_LIMIT_WINDOW_SECONDS}s, redis="
        f"{'on' if app.state.rate_limiter.redis_client is not None else 'off'}"
    )
    app.state.webhook_deliverer = WebhookDeliverer()
    yield
    await app.state.rate_limiter.close()
    await app.state.webhook_deliverer.close()


app = FastAPI(
    title="QRWolf API",
    description="Programmatic access to QR code management for Business accounts",
    version="1.0.0",
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)


# Security headers middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["X-Request-ID"] = str(uuid.uuid4())
    return response


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

# Trusted hosts in production
if settings.ENV == "production":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["api.qrwolf.com"])


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.detail, error_code=exc.error_code).model_dump(),
        headers=exc.headers,
    )


# Global exception handler
@app.exception_handler(500)
async def internal_server_error(request: Request, exc: Exception):
    logger.error(f"Internal server error on {request.method} {request.url.path}: {exc!r}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


# Include routers
app.include_router(qr_codes.router, prefix="/api/v1/qr-codes", tags=["qr-codes"])
app.include_router(webhooks.router, prefix="/api/v1/qr-codes", tags=["webhooks"])
app.include_router(usage.router, prefix="/api/v1/usage", tags=["usage"])
app.include_router(api_keys.router, prefix="/api/v1/api-keys", tags=["api-keys"])


# Health check endpoint
@app.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse(
        status="healthy",
        version="1.0.0",
        timestamp=utcnow()
    )
