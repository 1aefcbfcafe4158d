"""tcg_pricing.api — FastAPI surface over the resolver."""

from tcg_pricing.api.app import create_app

__all__ = ["create_app"]
