"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, utc_now
from app.core.config import settings
from app.core.database import create_engine, create_session_maker
from app.core.logging import setup_logging
from app.core.metrics import get_metrics, set_app_info
from app.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from app.modules.billing.router import router as billing_router
from app.modules.payment_gateway import BillingGatewayInterface, create_gateway

DESCRIPTION = """
## Webtoon Studio billing API

Subscriptions, token balances and recurring billing for the webtoon
authoring studio.

### Authentication

User endpoints require the auth provider's access token:

```
Authorization: Bearer <access_token>
```

The cron trigger requires `Authorization: Bearer <CRON_SECRET>`.
"""


def create_app(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[BillingGatewayInterface] = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """Build the application.

    Args:
        session_maker: Session factory; one bound to ``DATABASE_URL`` is created if omitted
        gateway: Billing gateway; the configured Toss client is used if omitted
        clock: Time source for billing periods
    """
    engine = None
    if session_maker is None:
        engine = create_engine(settings.DATABASE_URL)
        session_maker = create_session_maker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=DESCRIPTION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "billing", "description": "Subscriptions, tokens and recurring billing"},
            {"name": "system-monitoring", "description": "Prometheus metrics"},
        ],
        lifespan=lifespan,
    )

    app.state.session_maker = session_maker
    app.state.gateway = gateway or create_gateway(settings)
    app.state.clock = clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware, log_query=False)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", tags=["system-monitoring"], include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        payload, content_type = get_metrics()
        return Response(content=payload, media_type=content_type)

    app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
    return app


setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    service_name="webtoon-studio-api",
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app = create_app()
