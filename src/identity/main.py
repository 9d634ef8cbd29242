"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.identity.config import settings
from src.identity.features.auth.handlers import router as auth_router
from src.identity.services.auth.dependencies import (
    build_auth_services,
    get_auth_services,
    set_auth_services,
)
from src.identity.services.auth.exceptions import APIError, InternalError
from src.identity.services.database import SupabaseUserStore
from src.identity.services.rate_limiter import limiter

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle (startup and shutdown)."""
    # Startup
    try:
        settings.validate_for_startup()
        services = build_auth_services(settings, user_store=SupabaseUserStore())
        set_auth_services(services)
        logger.info(
            "Auth services initialized successfully",
            extra={
                "apple_jwks_url": settings.apple_jwks_url,
                "jwks_cache_ttl": settings.jwks_cache_ttl_seconds,
                "issuer": settings.jwt_issuer,
            },
        )
    except Exception as e:
        logger.error(
            f"Failed to initialize auth services: {e}",
            exc_info=True,
            extra={"error_type": "auth_services_init_failed"},
        )
        raise

    yield

    # Shutdown
    try:
        await get_auth_services().close()
        set_auth_services(None)
        logger.info("Auth services cleanup completed")
    except Exception as e:
        logger.error(f"Error during auth services cleanup: {e}", exc_info=True)


app = FastAPI(
    title="Identity API",
    description="OAuth identity linking and session token issuance",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins = settings.cors_origins.split(",")
logger.info(f"Origins : {origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Render classified errors as ``{code, message, details}``."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc}", extra={"path": request.url.path})
    else:
        logger.info(f"{exc.code}: {exc}", extra={"path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Input validation failed.",
            "details": details,
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled error: {exc}", exc_info=True, extra={"path": request.url.path}
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=InternalError().to_dict()
    )


app.include_router(auth_router, prefix=settings.api_v1_prefix)


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str


@app.get("/health", response_model=HealthCheckResponse)
async def health_check() -> HealthCheckResponse:
    """Health check endpoint."""
    return HealthCheckResponse(status="healthy")
