"""Request-scoped access to the running engine, plus API-key enforcement."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from tcg_pricing.core.config import PricingConfig
from tcg_pricing.service import PricingEngine

# Reachable without a key: liveness probe and the generated docs.
OPEN_PATHS = ("/api/health", "/docs", "/redoc", "/openapi.json")


@dataclass
class AppState:
    config: PricingConfig
    engine: PricingEngine


def get_engine(request: Request) -> PricingEngine:
    """Dependency: the engine built during lifespan startup."""
    return request.app.state.app_state.engine


def _key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


async def api_key_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests without a matching X-API-Key once a key is configured."""
    expected = request.app.state.app_state.config.api.api_key
    if not expected or request.url.path.startswith(OPEN_PATHS):
        return await call_next(request)
    if not _key_matches(request.headers.get("X-API-Key"), expected):
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "detail": "missing or invalid X-API-Key header"},
        )
    return await call_next(request)
