"""tcg-pricing: pricing cache and multi-source resolution engine."""

__version__ = "0.1.0"
