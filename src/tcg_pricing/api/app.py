"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tcg_pricing.api.deps import AppState, api_key_middleware
from tcg_pricing.api.routes import router
from tcg_pricing.api.schemas import PriceUnavailableResponse
from tcg_pricing.core.config import PricingConfig, load_config
from tcg_pricing.core.exceptions import (
    AllProvidersExhaustedError,
    ConfigError,
    PricingError,
    StorageError,
)
from tcg_pricing.providers import ProviderAdapter
from tcg_pricing.service import create_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup, start background refresh, tear down on exit."""
    config = app.state._pending_config or load_config()
    engine = await create_engine(config, app.state._pending_adapters)
    app.state.app_state = AppState(config=config, engine=engine)
    engine.scheduler.start()

    yield

    await engine.close()


def create_app(
    config: PricingConfig | None = None,
    adapters: Mapping[str, ProviderAdapter] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    import tcg_pricing

    app = FastAPI(
        title="TCG Pricing API",
        description="Cached, quota-aware multi-provider card and sealed-product pricing",
        version=tcg_pricing.__version__,
        lifespan=lifespan,
    )

    # Stash config so lifespan can retrieve it
    app.state._pending_config = config
    app.state._pending_adapters = adapters

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if config and config.api.api_key:
        app.middleware("http")(api_key_middleware)

    app.include_router(router, prefix="/api")

    @app.exception_handler(AllProvidersExhaustedError)
    async def unavailable_handler(request: Request, exc: AllProvidersExhaustedError):
        body = PriceUnavailableResponse(
            key=exc.context.get("key"),
            category=exc.context.get("category"),
            attempts=exc.context.get("attempts", []),
        )
        return JSONResponse(status_code=503, content=body.model_dump())

    @app.exception_handler(PricingError)
    async def pricing_exception_handler(request: Request, exc: PricingError):
        status_map = {
            ConfigError: 400,
            StorageError: 500,
        }
        status = status_map.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    return app
