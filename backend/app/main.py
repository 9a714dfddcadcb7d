"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.errors import BillingError, ErrorKind, PersistenceError
from app.core.logging import log_error, log_warning, setup_logging
from app.core.tracing import setup_tracing
from app.core.metrics import get_content_type, get_metrics, set_app_info
from app.core.middleware import (
    MetricsMiddleware,
    CorrelationIdMiddleware,
    TracingMiddleware,
    RequestLoggingMiddleware,
)
from app.modules.billing import router as billing_router

logger = logging.getLogger(__name__)

ERROR_KIND_STATUS = {
    ErrorKind.BUSINESS_RULE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INFRASTRUCTURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
}

ENVIRONMENT = "development" if settings.DEBUG else "production"

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Multi-tenant Billing API

Plan changes with prorated pricing, gateway-settled invoices and a per-tenant
wallet ledger.

### Authentication

Requests are authenticated upstream. Every billing endpoint except the gateway
webhooks expects the `X-Tenant-ID` and `X-Tenant-Role` headers.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check and metrics endpoints",
        },
        {
            "name": "billing",
            "description": "Plans, plan changes, wallet, invoices and gateway webhooks",
        },
    ],
)

# Structured logging with correlation IDs
setup_logging(
    level="INFO" if not settings.DEBUG else "DEBUG",
    json_format=True,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=ENVIRONMENT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render billing errors as ``{success, message, error_kind}``."""
    status_code = ERROR_KIND_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    log_warning(
        logger,
        f"Billing request rejected: {exc.message}",
        error_kind=exc.kind.value,
        path=request.url.path,
        status_code=status_code,
        **{k: str(v) for k, v in exc.context.items()},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    log_error(logger, "Storage failure", exception=exc, path=request.url.path)
    error = PersistenceError()
    return JSONResponse(status_code=ERROR_KIND_STATUS[error.kind], content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, "Unhandled error", exception=exc, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": "Internal server error",
            "error_kind": ErrorKind.INFRASTRUCTURE.value,
        },
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" value.
    """
    return {"status": "healthy"}


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
