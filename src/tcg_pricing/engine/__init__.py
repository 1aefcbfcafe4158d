"""tcg_pricing.engine — Policy, quota, resolution, and background refresh."""

from tcg_pricing.engine.metrics import CacheMetrics, MetricsSnapshot
from tcg_pricing.engine.policy import PolicyRegistry
from tcg_pricing.engine.quota import QuotaTracker, Reservation, window_start
from tcg_pricing.engine.resolver import RefreshReport, Resolver
from tcg_pricing.engine.scheduler import RefreshScheduler, TickReport

__all__ = [
    "CacheMetrics",
    "MetricsSnapshot",
    "PolicyRegistry",
    "QuotaTracker",
    "RefreshReport",
    "RefreshScheduler",
    "Reservation",
    "Resolver",
    "TickReport",
    "window_start",
]
