from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    get_settings,
    resolve_database_url,
)

from .api.health import router as health_router
from .api.orders import router as orders_router
from .models import Base
from .services import InventoryProvider

SERVICE_NAME = "Order Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./order_service.db"


def create_app(
    settings: ServiceSettings | None = None,
    *,
    inventory: InventoryProvider | None = None,
) -> FastAPI:
    """Create the Order Service FastAPI application."""

    resolved_settings = settings or get_settings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url, echo=resolved_settings.database_echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if resolved_settings.auto_create_schema:
            await create_schema(session_factory.kw["bind"], Base.metadata)
        app.state.session_factory = session_factory
        app.state.inventory = inventory
        try:
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.inventory = None
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(orders_router)
    return app


app = create_app()
