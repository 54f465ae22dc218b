"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from subscription_service.core.config import settings
from subscription_service.core.logging import setup_logging
from subscription_service.core.metrics import get_content_type, get_metrics, set_app_info
from subscription_service.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from subscription_service.core.tracing import setup_tracing, shutdown_tracing
from subscription_service.modules.notification.dispatcher import get_dispatcher
from subscription_service.modules.payment_gateway.registry import close_gateway
from subscription_service.modules.plans.catalog import get_catalog
from subscription_service.modules.subscription.errors import register_exception_handlers
from subscription_service.modules.subscription.router import router as payments_router

ENVIRONMENT = "development" if settings.DEBUG else "production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Build the catalog before the first request
    get_catalog()
    yield
    await get_dispatcher().drain()
    await close_gateway()
    shutdown_tracing()


def create_app() -> FastAPI:
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        include_stack_trace=True,
    )
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
        enable_console_export=settings.DEBUG,
    )
    set_app_info(version=settings.VERSION, environment=ENVIRONMENT)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Subscription plans, hosted checkout and payment reconciliation.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "payments", "description": "Plans, checkout, webhooks and subscription state"},
        ],
    )

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

    register_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(payments_router, prefix=settings.API_V1_PREFIX)
    return app


app = create_app()
