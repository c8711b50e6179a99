"""
Funnel Hub — Fetch Orchestrator
=================================

Keeps one cached slot ("feed") per dataset the funnel view shows and decides
when each slot needs to hit the CRM proxy:

- primary / comparison funnel data for the selected date window
- campaign / lead-source / sector breakdowns, per window and as snapshots
- SQL call outcomes and the deals behind a stage (drill-downs)

A feed refetches only when its request signature changed or the caller
forces it. Date-window changes are debounced; a response that arrives after
a newer request was dispatched is dropped. Failures keep the last good data
("stale while error") and record a message for the UI.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Protocol, TypeVar

from models.funnel_models import (
    ComparisonConfig,
    DateRange,
    FunnelData,
    PeriodPreset,
    SQLCallMetrics,
    StageDeal,
    ViewMode,
)
from scripts.funnel.periods import Clock, resolve_comparison_range
from scripts.lib.errors import FunnelHubError
from scripts.lib.logger import setup_logger

logger = setup_logger("funnel_orchestrator")

GENERIC_ERROR = "Erro ao buscar dados do Pipedrive"
DEFAULT_DEBOUNCE_SECONDS = 0.5
TRACKING_KINDS = ("campaign", "source", "sector")

T = TypeVar("T")
Fetcher = Callable[[bool], Awaitable[Optional[T]]]


class FunnelDataSource(Protocol):
    """What the orchestrator needs from the CRM boundary (PipedriveProxyClient)."""

    async def get_funnel_data(
        self, pipeline_id: int, window: DateRange, force: bool = False,
    ) -> Optional[FunnelData]:
        ...

    async def get_tracking(
        self, kind: str, pipeline_id: int, window: Optional[DateRange] = None, force: bool = False,
    ) -> Optional[Any]:
        ...

    async def get_sql_call_metrics(
        self, pipeline_id: int, view_mode: ViewMode = ViewMode.PERIOD, force: bool = False,
    ) -> Optional[SQLCallMetrics]:
        ...

    async def get_stage_deals(
        self,
        pipeline_id: int,
        stage_id: int,
        view_mode: ViewMode = ViewMode.SNAPSHOT,
        window: Optional[DateRange] = None,
        force: bool = False,
    ) -> List[StageDeal]:
        ...


def period_signature(pipeline_id: int, window: DateRange) -> str:
    return f"{pipeline_id}:{window.start.isoformat()}_{window.end.isoformat()}"


def snapshot_signature(pipeline_id: int) -> str:
    return str(pipeline_id)


def sql_calls_signature(pipeline_id: int, view_mode: ViewMode) -> str:
    return f"{pipeline_id}:sql_calls:{ViewMode(view_mode).value}"


def stage_deals_signature(
    pipeline_id: int, stage_id: int, view_mode: ViewMode, window: Optional[DateRange],
) -> str:
    span = f"{window.start.isoformat()}_{window.end.isoformat()}" if window else "now"
    return f"{pipeline_id}:deals:{stage_id}:{ViewMode(view_mode).value}:{span}"


def error_message(exc: Exception) -> str:
    if isinstance(exc, FunnelHubError):
        return exc.message or GENERIC_ERROR
    return str(exc) or GENERIC_ERROR


class FeedStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass
class FeedState(Generic[T]):
    status: FeedStatus = FeedStatus.IDLE
    data: Optional[T] = None
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    # Signature of the request that produced ``data``
    signature: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.status is FeedStatus.LOADING


@dataclass
class FeedResult(Generic[T]):
    """What one caller's load produced, pinned to the signature it asked for."""
    signature: str
    data: Optional[T] = None
    error: Optional[str] = None
    last_updated: Optional[datetime] = None


class Feed(Generic[T]):
    """
    One cached dataset.

    ``point()`` sets what the feed should load (a signature plus the fetcher
    for it); ``refetch()`` loads it unless the cached data already matches.
    """

    def __init__(self, name: str, clock: Clock = None):
        self.name = name
        self.state: FeedState[T] = FeedState()
        self._clock = clock or datetime.now
        self._signature: Optional[str] = None
        self._fetcher: Optional[Fetcher] = None
        self._dispatched = 0
        self.fetch_count = 0

    @property
    def signature(self) -> Optional[str]:
        """Signature of the parameters the feed currently points at."""
        return self._signature

    def point(self, signature: Optional[str], fetcher: Optional[Fetcher]):
        self._signature = signature
        self._fetcher = fetcher

    def clear(self):
        """Detach the feed and drop its data (comparison turned off)."""
        self.point(None, None)
        self._dispatched += 1
        self.state = FeedState()

    def is_fresh(self) -> bool:
        return (
            self.state.data is not None
            and self._signature is not None
            and self.state.signature == self._signature
        )

    async def refetch(self, force: bool = False) -> Optional[T]:
        if self._fetcher is None:
            return self.state.data

        if not force and self.is_fresh():
            logger.debug("%s: cached for %s, skipping fetch", self.name, self._signature)
            return self.state.data

        signature, fetcher = self._signature, self._fetcher
        self._dispatched += 1
        token = self._dispatched
        self.fetch_count += 1

        self.state.status = FeedStatus.LOADING
        self.state.error = None
        logger.info("%s: fetching %s%s", self.name, signature, " (forced)" if force else "")

        try:
            data = await fetcher(force)
        except Exception as e:
            if token != self._dispatched:
                logger.debug("%s: dropping stale failure for %s", self.name, signature)
                return self.state.data
            self.state.status = FeedStatus.ERROR
            self.state.error = error_message(e)
            logger.error("%s: fetch %s failed: %s", self.name, signature, self.state.error)
            return self.state.data

        if token != self._dispatched or signature != self._signature:
            logger.info("%s: discarding stale response for %s", self.name, signature)
            return self.state.data

        self.state.data = data
        self.state.signature = signature
        self.state.status = FeedStatus.READY
        self.state.last_updated = self._clock()
        return data

    async def load(self, signature: str, fetcher: Fetcher, force: bool = False) -> FeedResult[T]:
        """
        Point at ``signature``, refetch, and return the outcome for that
        signature only.

        Concurrent callers share the slot, so by the time the fetch settles it
        may hold another caller's parameters. In that case the data is fetched
        again outside the slot instead of handing back someone else's result.
        """
        self.point(signature, fetcher)
        await self.refetch(force)

        state = self.state
        if self._signature == signature and (
            state.signature == signature or state.status is FeedStatus.ERROR
        ):
            # Failed refresh keeps the previous data next to the error
            return FeedResult(signature, state.data, state.error, state.last_updated)

        logger.info("%s: slot moved on from %s, fetching it directly", self.name, signature)
        try:
            data = await fetcher(force)
        except Exception as e:
            message = error_message(e)
            logger.error("%s: fetch %s failed: %s", self.name, signature, message)
            return FeedResult(signature, error=message)
        return FeedResult(signature, data, last_updated=self._clock())


class Debouncer:
    """Runs the latest scheduled coroutine after ``delay`` seconds of quiet."""

    def __init__(self, delay: float = DEFAULT_DEBOUNCE_SECONDS):
        self.delay = delay
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, action: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        self.cancel()

        async def _run():
            if self.delay > 0:
                await asyncio.sleep(self.delay)
            return await action()

        self._task = asyncio.ensure_future(_run())
        return self._task

    def cancel(self):
        if self.pending:
            self._task.cancel()
        self._task = None


@dataclass
class PeriodResult:
    window: DateRange
    comparison_window: Optional[DateRange]
    current: FeedResult[FunnelData]
    previous: Optional[FeedResult[FunnelData]] = None

    @property
    def error(self) -> Optional[str]:
        if self.current.error:
            return self.current.error
        return self.previous.error if self.previous is not None else None


class FunnelOrchestrator:
    """
    Feeds for one pipeline.

    Usage:
        orchestrator = FunnelOrchestrator(client, pipeline_id=9)
        task = orchestrator.select_period(window, PeriodPreset.THIS_MONTH, ComparisonConfig())
        await task
        orchestrator.primary.state.data   # FunnelData
    """

    def __init__(
        self,
        source: FunnelDataSource,
        pipeline_id: int,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Clock = None,
    ):
        self.source = source
        self.pipeline_id = pipeline_id
        self.primary: Feed[FunnelData] = Feed("primary", clock)
        self.comparison: Feed[FunnelData] = Feed("comparison", clock)
        self.tracking: Dict[str, Feed] = {
            kind: Feed(f"{kind}_tracking", clock) for kind in TRACKING_KINDS
        }
        self.snapshots: Dict[str, Feed] = {
            kind: Feed(f"{kind}_snapshot", clock) for kind in TRACKING_KINDS
        }
        self.sql_calls: Feed[SQLCallMetrics] = Feed("sql_calls", clock)
        self.stage_deals: Feed[List[StageDeal]] = Feed("stage_deals", clock)
        self.window: Optional[DateRange] = None
        self.comparison_window: Optional[DateRange] = None
        self._debouncer = Debouncer(debounce)

    # ─── Fetchers ───────────────────────────────────────────

    def _funnel_fetcher(self, window: DateRange) -> Fetcher:
        async def fetch(force: bool):
            return await self.source.get_funnel_data(self.pipeline_id, window, force=force)
        return fetch

    def _tracking_fetcher(self, kind: str, window: Optional[DateRange]) -> Fetcher:
        async def fetch(force: bool):
            return await self.source.get_tracking(kind, self.pipeline_id, window, force=force)
        return fetch

    # ─── Period feeds ───────────────────────────────────────

    def point_period(
        self,
        window: DateRange,
        preset: PeriodPreset,
        comparison: ComparisonConfig,
        with_tracking: bool = False,
    ) -> Optional[DateRange]:
        """Point primary/comparison (and optionally tracking) feeds at ``window``."""
        self.window = window
        self.comparison_window = resolve_comparison_range(window, preset, comparison)

        self.primary.point(
            period_signature(self.pipeline_id, window), self._funnel_fetcher(window),
        )
        if self.comparison_window is not None:
            self.comparison.point(
                period_signature(self.pipeline_id, self.comparison_window),
                self._funnel_fetcher(self.comparison_window),
            )
        else:
            self.comparison.clear()

        if with_tracking:
            for kind, feed in self.tracking.items():
                feed.point(
                    period_signature(self.pipeline_id, window),
                    self._tracking_fetcher(kind, window),
                )
        return self.comparison_window

    def select_period(
        self,
        window: DateRange,
        preset: PeriodPreset,
        comparison: ComparisonConfig,
        with_tracking: bool = False,
    ) -> asyncio.Task:
        """
        Point the period feeds at ``window`` and schedule a debounced fetch.

        Returns the scheduled task; a newer call cancels it.
        """
        self.point_period(window, preset, comparison, with_tracking)
        return self._debouncer.schedule(self.refresh_period)

    async def refresh_period(self, force: bool = False):
        """Fetch primary, comparison and any pointed tracking feeds concurrently."""
        feeds = [self.primary, self.comparison]
        feeds.extend(feed for feed in self.tracking.values() if feed.signature is not None)
        await asyncio.gather(*(feed.refetch(force) for feed in feeds))

    async def load_period(
        self,
        window: DateRange,
        preset: PeriodPreset,
        comparison: ComparisonConfig,
        force: bool = False,
    ) -> PeriodResult:
        """
        Load primary and comparison data for ``window`` without debouncing.

        The result belongs to this call even when other callers point the
        shared feeds elsewhere while it is in flight.
        """
        comparison_window = resolve_comparison_range(window, preset, comparison)
        self.window = window
        self.comparison_window = comparison_window

        loads = [
            self.primary.load(
                period_signature(self.pipeline_id, window), self._funnel_fetcher(window), force,
            ),
        ]
        if comparison_window is not None:
            loads.append(
                self.comparison.load(
                    period_signature(self.pipeline_id, comparison_window),
                    self._funnel_fetcher(comparison_window),
                    force,
                )
            )
        else:
            self.comparison.clear()

        results = await asyncio.gather(*loads)
        return PeriodResult(
            window=window,
            comparison_window=comparison_window,
            current=results[0],
            previous=results[1] if comparison_window is not None else None,
        )

    # ─── Breakdown feeds ────────────────────────────────────

    async def load_breakdown(
        self, kind: str, window: Optional[DateRange] = None, force: bool = False,
    ) -> FeedResult:
        """
        Load one breakdown: the window's tracking feed, or the snapshot feed
        when ``window`` is None. Snapshots are never debounced.
        """
        if window is None:
            feed, signature = self.snapshots[kind], snapshot_signature(self.pipeline_id)
        else:
            feed, signature = self.tracking[kind], period_signature(self.pipeline_id, window)
        return await feed.load(signature, self._tracking_fetcher(kind, window), force)

    async def load_snapshots(self, force: bool = False):
        await asyncio.gather(*(self.load_breakdown(kind, None, force) for kind in TRACKING_KINDS))

    # ─── Drill-downs ────────────────────────────────────────

    async def load_sql_calls(
        self, view_mode: ViewMode = ViewMode.PERIOD, force: bool = False,
    ) -> FeedResult[SQLCallMetrics]:
        """Call outcomes of deals in the SQL stage."""
        async def fetch(force: bool):
            return await self.source.get_sql_call_metrics(self.pipeline_id, view_mode, force=force)

        signature = sql_calls_signature(self.pipeline_id, view_mode)
        return await self.sql_calls.load(signature, fetch, force)

    async def load_stage_deals(
        self,
        stage_id: int,
        view_mode: ViewMode = ViewMode.SNAPSHOT,
        window: Optional[DateRange] = None,
        force: bool = False,
    ) -> FeedResult[List[StageDeal]]:
        """Deals behind one stage value; ``window`` only matters in period mode."""
        if ViewMode(view_mode) is ViewMode.SNAPSHOT:
            window = None

        async def fetch(force: bool):
            return await self.source.get_stage_deals(
                self.pipeline_id, stage_id, view_mode, window, force=force,
            )

        signature = stage_deals_signature(self.pipeline_id, stage_id, view_mode, window)
        return await self.stage_deals.load(signature, fetch, force)

    # ─── Whole pipeline ─────────────────────────────────────

    async def refetch(self, force: bool = True):
        """Manual refresh: drop any pending debounce and reload every pointed feed."""
        self._debouncer.cancel()
        feeds = [
            self.primary, self.comparison, *self.tracking.values(), *self.snapshots.values(),
            self.sql_calls, self.stage_deals,
        ]
        await asyncio.gather(*(feed.refetch(force) for feed in feeds))

    @property
    def loading(self) -> bool:
        return self.primary.state.is_loading or self.comparison.state.is_loading

    @property
    def error(self) -> Optional[str]:
        return self.primary.state.error or self.comparison.state.error

    @property
    def last_updated(self) -> Optional[datetime]:
        return self.primary.state.last_updated

    def close(self):
        """Cancel pending debounced work (pipeline switched or app shutting down)."""
        self._debouncer.cancel()
