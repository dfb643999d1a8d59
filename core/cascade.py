"""
Source Cascade Fetcher.

A role is resolved by walking an ordered list of strategies (feed, candidate
pool, freshness window). Each (strategy, site) pair produces one typed
attempt; the first FRESH attempt wins. When nothing is fresh the most recent
stale value is returned flagged, and the unavailability reason is derived
from the attempt trace by `unavailability_reason`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple, Union

from config import PARAM_FLOW, PARAM_GAGE_HEIGHT, PARAM_WATER_TEMP
from core.exceptions import CascadeExhaustedError, ProviderTransportError
from core.models import (
    AttemptOutcome,
    CascadeAttempt,
    Feed,
    ParsedSeries,
    Role,
    RoleResolution,
    SourceKind,
)

logger = logging.getLogger("cascade")

MAPPED = "mapped"
REGISTRY = "registry"


@dataclass(frozen=True)
class RoleSpec:
    role: Role
    parameter_code: str
    label: str  # used in reason codes: no_<label>_site_mapping


ROLE_SPECS: Dict[Role, RoleSpec] = {
    Role.FLOW: RoleSpec(Role.FLOW, PARAM_FLOW, "flow"),
    Role.TEMPERATURE: RoleSpec(Role.TEMPERATURE, PARAM_WATER_TEMP, "temp"),
    Role.STAGE: RoleSpec(Role.STAGE, PARAM_GAGE_HEIGHT, "stage"),
}


@dataclass(frozen=True)
class Strategy:
    feed: Feed
    pool: str
    window: timedelta

    def source_kind(self) -> SourceKind:
        if self.pool == REGISTRY:
            return SourceKind.REGISTRY_FALLBACK
        return SourceKind.LIVE if self.feed == Feed.LIVE else SourceKind.DELAYED


def default_strategies(live_window_hours: float = 72.0, delayed_window_hours: float = 240.0) -> List[Strategy]:
    live = timedelta(hours=live_window_hours)
    delayed = timedelta(hours=delayed_window_hours)
    return [
        Strategy(Feed.LIVE, MAPPED, live),
        Strategy(Feed.DELAYED, MAPPED, delayed),
        Strategy(Feed.LIVE, REGISTRY, live),
        Strategy(Feed.DELAYED, REGISTRY, delayed),
    ]


def unavailability_reason(spec: RoleSpec, attempts: Sequence[CascadeAttempt]) -> Optional[str]:
    """
    Why a role has no fresh value:
      no stations at all             -> no_<label>_site_mapping
      some reading was stale/invalid -> <label>_observation_stale_or_missing
      no station reports the code    -> no_<code>_sites

    Transport failures carry no data-shape information; `resolve` raises
    before asking for a reason when one is present and nothing was found.
    """
    if any(a.outcome == AttemptOutcome.FRESH for a in attempts):
        return None
    if not attempts:
        return f"no_{spec.label}_site_mapping"
    if any(a.outcome in (AttemptOutcome.STALE, AttemptOutcome.INVALID) for a in attempts):
        return f"{spec.label}_observation_stale_or_missing"
    return f"no_{spec.parameter_code}_sites"


class SeriesCache:
    """
    Per-run memo of provider fetches keyed by (feed, site, zone).

    Failures are memoized too so a dead station is asked once per run.
    """

    def __init__(self, client, history_limit: int = 72):
        self.client = client
        self.history_limit = history_limit
        self._entries: Dict[Tuple[Feed, str, str], Union[ParsedSeries, ProviderTransportError]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, feed: Feed, site_no: str, tz=None) -> ParsedSeries:
        key = (feed, site_no, str(tz))
        if key not in self._entries:
            try:
                self._entries[key] = await self.client.fetch_series(
                    feed, site_no, default_tz=tz, history_limit=self.history_limit
                )
            except ProviderTransportError as e:
                self._entries[key] = e
        entry = self._entries[key]
        if isinstance(entry, ProviderTransportError):
            raise entry
        return entry


class CascadeFetcher:
    def __init__(
        self,
        cache: SeriesCache,
        strategies: Optional[Sequence[Strategy]] = None,
    ):
        self.cache = cache
        self.strategies = list(strategies or default_strategies())

    async def _attempt(
        self,
        spec: RoleSpec,
        strategy: Strategy,
        site_no: str,
        now: datetime,
        tz,
    ) -> Tuple[CascadeAttempt, Optional[ParsedSeries]]:
        kind = strategy.source_kind()
        try:
            series = await self.cache.get(strategy.feed, site_no, tz)
        except ProviderTransportError as e:
            return CascadeAttempt(
                site_no, strategy.feed, kind, AttemptOutcome.TRANSPORT_ERROR,
                error=str(e), status_code=e.status_code,
            ), None

        obs = series.get(spec.parameter_code)
        if obs is None:
            return CascadeAttempt(site_no, strategy.feed, kind, AttemptOutcome.CODE_ABSENT), series
        if not obs.has_value:
            return CascadeAttempt(site_no, strategy.feed, kind, AttemptOutcome.INVALID), series

        outcome = AttemptOutcome.FRESH if now - obs.observed_at <= strategy.window else AttemptOutcome.STALE
        return CascadeAttempt(
            site_no, strategy.feed, kind, outcome, value=obs.value, observed_at=obs.observed_at,
        ), series

    async def resolve(
        self,
        spec: RoleSpec,
        candidates: Sequence[str],
        registry_pool: Sequence[str],
        now: datetime,
        tz=None,
    ) -> RoleResolution:
        """
        Walk the strategies until a fresh value is found.

        Raises CascadeExhaustedError when nothing usable was found and any
        attempt failed at the transport level: an unreachable station may
        still carry the code, so no data-shape reason can be given. Otherwise
        returns a RoleResolution (possibly stale or empty).
        """
        attempts: List[CascadeAttempt] = []
        best_stale: Optional[Tuple[CascadeAttempt, ParsedSeries]] = None

        for strategy in self.strategies:
            sites = candidates if strategy.pool == MAPPED else registry_pool
            for site_no in sites:
                attempt, series = await self._attempt(spec, strategy, site_no, now, tz)
                attempts.append(attempt)
                logger.debug(
                    "%s %s/%s site=%s -> %s", spec.label, strategy.feed.value,
                    strategy.pool, site_no, attempt.outcome.value,
                )
                if attempt.outcome == AttemptOutcome.FRESH:
                    return self._resolution(spec, attempt, series, attempts, is_stale=False)
                if attempt.outcome == AttemptOutcome.STALE:
                    # most recent stale reading wins; earlier attempts win ties
                    if best_stale is None or attempt.observed_at > best_stale[0].observed_at:
                        best_stale = (attempt, series)

        if best_stale is not None:
            attempt, series = best_stale
            return self._resolution(spec, attempt, series, attempts, is_stale=True)

        if any(a.outcome == AttemptOutcome.TRANSPORT_ERROR for a in attempts):
            raise CascadeExhaustedError(spec.label, attempts)

        return RoleResolution(
            role=spec.role,
            reason=unavailability_reason(spec, attempts),
            attempts=attempts,
        )

    def _resolution(
        self,
        spec: RoleSpec,
        attempt: CascadeAttempt,
        series: Optional[ParsedSeries],
        attempts: List[CascadeAttempt],
        is_stale: bool,
    ) -> RoleResolution:
        return RoleResolution(
            role=spec.role,
            value=attempt.value,
            site_no=attempt.site_no,
            source_kind=attempt.source_kind,
            feed=attempt.feed,
            observed_at=attempt.observed_at,
            is_stale=is_stale,
            reason=unavailability_reason(spec, attempts),
            attempts=attempts,
            observation=series.get(spec.parameter_code) if series else None,
            series=series,
        )
