"""Quota Tracker: per-provider, per-period request counters."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from tcg_pricing.core.exceptions import QuotaExceededError
from tcg_pricing.core.models import (
    ProviderName,
    QuotaObservation,
    QuotaPeriod,
    QuotaState,
    utc_now,
)
from tcg_pricing.storage.quota_store import QuotaStore

logger = logging.getLogger(__name__)


def window_start(period: QuotaPeriod, now: datetime) -> datetime:
    """Start of the UTC accounting window containing ``now``."""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == QuotaPeriod.MONTH:
        start = start.replace(day=1)
    return start


@dataclass(frozen=True)
class Reservation:
    """Proof that one call was counted against a provider's quota.

    ``windows`` records the window each period was counted in, so a late
    release after a period rollover does not decrement the new window.
    An empty mapping means the provider has no configured quota.
    """

    provider: ProviderName
    windows: dict[QuotaPeriod, datetime] = field(default_factory=dict)


class QuotaTracker:
    """Advisory local quota accounting, reconciled against the provider.

    Increment-and-compare runs under a per-provider ``asyncio.Lock`` so
    two concurrent reservations can never both take the last slot.
    """

    def __init__(
        self,
        store: QuotaStore,
        limits: dict[ProviderName, dict[QuotaPeriod, int]],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._limits = {name: dict(periods) for name, periods in limits.items()}
        self._clock = clock
        self._states: dict[tuple[ProviderName, QuotaPeriod], QuotaState] = {}
        self._locks: defaultdict[ProviderName, asyncio.Lock] = defaultdict(asyncio.Lock)

    def limits_for(self, provider: ProviderName) -> dict[QuotaPeriod, int]:
        return dict(self._limits.get(provider, {}))

    async def try_reserve(
        self, provider: ProviderName, headroom: float = 0.0
    ) -> Reservation:
        """Count one call against every configured period, or refuse.

        ``headroom`` is the fraction of each limit held back from this
        caller; background refreshes pass a non-zero value.

        Raises:
            QuotaExceededError: if any period has no room left.
        """
        periods = self._limits.get(provider)
        if not periods:
            return Reservation(provider=provider)

        async with self._locks[provider]:
            now = self._clock()
            current = {
                period: await self._current(provider, period, now)
                for period in periods
            }
            for period, state in current.items():
                held_back = math.ceil(state.limit * headroom)
                if state.used + held_back >= state.limit:
                    raise QuotaExceededError(
                        f"Quota exhausted for {provider} ({period})",
                        context={
                            "provider": provider,
                            "period": str(period),
                            "used": state.used,
                            "limit": state.limit,
                        },
                    )
            for period, state in current.items():
                await self._store_state(
                    state.model_copy(update={"used": state.used + 1})
                )
            return Reservation(
                provider=provider,
                windows={p: s.window_start for p, s in current.items()},
            )

    async def release(self, reservation: Reservation) -> None:
        """Give back a reservation whose call was never made or never billed."""
        if not reservation.windows:
            return
        provider = reservation.provider
        async with self._locks[provider]:
            now = self._clock()
            for period, started in reservation.windows.items():
                state = await self._current(provider, period, now)
                if state.window_start != started:
                    continue
                await self._store_state(
                    state.model_copy(update={"used": max(state.used - 1, 0)})
                )

    async def record_usage(
        self,
        reservation: Reservation,
        observed: Iterable[QuotaObservation] = (),
    ) -> None:
        """Confirm a real call.

        The reservation already counted it; provider-reported remaining
        quota, when present, overrides the local count.
        """
        observed = tuple(observed)
        if observed:
            await self.reconcile(reservation.provider, observed)

    async def reconcile(
        self,
        provider: ProviderName,
        observed: Iterable[QuotaObservation],
    ) -> None:
        """Set local counters from the provider's own remaining-quota report."""
        async with self._locks[provider]:
            now = self._clock()
            for obs in observed:
                configured = self._limits.get(provider, {})
                limit = obs.limit or configured.get(obs.period)
                if limit is None:
                    continue
                state = await self._current(provider, obs.period, now, limit)
                used = limit - obs.remaining
                if used != state.used or limit != state.limit:
                    logger.debug(
                        "Reconciled %s %s quota: used %d -> %d (limit %d)",
                        provider, obs.period, state.used, used, limit,
                    )
                await self._store_state(
                    state.model_copy(update={"used": max(used, 0), "limit": limit})
                )
                self._limits.setdefault(provider, {})[obs.period] = limit

    async def snapshot(self) -> list[QuotaState]:
        """Current state of every tracked provider/period, windows rolled over."""
        now = self._clock()
        result: list[QuotaState] = []
        for provider in sorted(self._limits):
            async with self._locks[provider]:
                for period in self._limits[provider]:
                    result.append(await self._current(provider, period, now))
        return result

    async def _current(
        self,
        provider: ProviderName,
        period: QuotaPeriod,
        now: datetime,
        default_limit: int | None = None,
    ) -> QuotaState:
        key = (provider, period)
        state = self._states.get(key)
        if state is None:
            state = await self._store.load(provider, period)
        start = window_start(period, now)
        if state is None:
            limit = self._limits.get(provider, {}).get(period, default_limit)
            state = QuotaState(
                provider=provider, period=period, window_start=start, used=0, limit=limit
            )
        elif state.window_start < start:
            logger.info("Quota window rolled over for %s (%s)", provider, period)
            state = state.model_copy(update={"window_start": start, "used": 0})
        configured = self._limits.get(provider, {}).get(period)
        if configured is not None and configured != state.limit:
            state = state.model_copy(update={"limit": configured})
        self._states[key] = state
        return state

    async def _store_state(self, state: QuotaState) -> None:
        await self._store.save(state)
        self._states[(state.provider, state.period)] = state
