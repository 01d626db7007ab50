"""Pipeline-state controller.

Owns the only in-memory snapshot and decides, per transition, whether to
trust the durable cache, refetch through the aggregator, or send the user
back to the upload prompt::

    AWAITING_UPLOAD --begin_processing--> PROCESSING
    PROCESSING --external completion + initial refresh--> READY
    READY --reset--> AWAITING_UPLOAD

Views read data only through :attr:`PipelineController.snapshot`, which
refuses to hand anything out unless the pipeline is ``READY``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Optional

import httpx

from mfgsync.aggregator import Aggregator, RefreshResult
from mfgsync.cache import (
    Clock,
    FileKeyValueStore,
    KeyValueStore,
    PipelineStateStore,
    SnapshotCache,
    system_clock,
)
from mfgsync.client import DashboardApi
from mfgsync.errors import BackendEmpty, InvalidTransition, PipelineNotReady, TotalRefreshFailure
from mfgsync.models import DashboardSnapshot, PipelineState
from mfgsync.settings import DEFAULT_REFRESH_PERIOD_MS, SyncSettings


logger = logging.getLogger(__name__)

UPLOAD_VIEW = "upload"


class Phase(str, enum.Enum):
    AWAITING_UPLOAD = "awaiting_upload"
    PROCESSING = "processing"
    READY = "ready"


class DisplayStatus(str, enum.Enum):
    NO_DATA = "no_data"
    PROCESSING = "processing"
    READY = "ready"
    STALE = "stale"
    CONNECTION_ERROR = "connection_error"


class PipelineController:
    def __init__(
        self,
        aggregator: Aggregator,
        cache: SnapshotCache,
        state_store: PipelineStateStore,
        *,
        refresh_period_ms: int = DEFAULT_REFRESH_PERIOD_MS,
        auto_refresh: bool = True,
        clock: Optional[Clock] = None,
        default_page_size: int = 25,
    ) -> None:
        self.aggregator = aggregator
        self.cache = cache
        self.state_store = state_store
        self.refresh_period_ms = refresh_period_ms
        self.auto_refresh = auto_refresh
        self.clock = clock or cache.clock
        self.default_page_size = default_page_size

        self.phase = Phase.AWAITING_UPLOAD
        self.connection_error: Optional[str] = None
        self.upload_error: Optional[str] = None
        self.last_failures: Dict[str, str] = {}
        self._snapshot: Optional[DashboardSnapshot] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._owned_client: Optional[httpx.AsyncClient] = None
        # bumped on reset so in-flight refreshes cannot commit into a cleared session
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        store: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = system_clock,
        auto_refresh: bool = True,
    ) -> "PipelineController":
        client = None
        if transport is not None:
            client = httpx.AsyncClient(base_url=settings.api_base, timeout=settings.request_timeout_s, transport=transport)
        api = DashboardApi(settings, client=client)
        store = store if store is not None else FileKeyValueStore(settings.cache_dir)
        controller = cls(
            Aggregator(api, clock=clock),
            SnapshotCache(store, ttl_ms=settings.cache_ttl_ms, clock=clock),
            PipelineStateStore(store),
            refresh_period_ms=settings.refresh_period_ms,
            auto_refresh=auto_refresh,
            clock=clock,
            default_page_size=settings.default_page_size,
        )
        controller._owned_client = client
        return controller

    # ---------------- accessors ----------------
    @property
    def snapshot(self) -> DashboardSnapshot:
        if self.phase is not Phase.READY or self._snapshot is None:
            raise PipelineNotReady(f"pipeline is {self.phase.value}")
        return self._snapshot

    @property
    def is_stale(self) -> bool:
        if self._snapshot is None:
            return False
        return self.clock() - self._snapshot.captured_at > self.cache.ttl_ms

    @property
    def display_status(self) -> DisplayStatus:
        if self.phase is Phase.READY:
            if self.is_stale or self.connection_error:
                return DisplayStatus.STALE
            return DisplayStatus.READY
        if self.connection_error:
            return DisplayStatus.CONNECTION_ERROR
        if self.phase is Phase.PROCESSING:
            return DisplayStatus.PROCESSING
        return DisplayStatus.NO_DATA

    def is_view_reachable(self, view: str) -> bool:
        return view == UPLOAD_VIEW or self.phase is Phase.READY

    def status(self) -> Dict[str, Any]:
        state = self.state_store.load()
        snap = self._snapshot if self.phase is Phase.READY else None
        return {
            "phase": self.phase.value,
            "display_status": self.display_status.value,
            "etl_completed": state.etl_completed,
            "last_updated": state.last_updated,
            "captured_at": snap.captured_at if snap else None,
            "stale": self.is_stale if snap else False,
            "degraded_endpoints": list(snap.degraded_endpoints) if snap else [],
            "dropped": dict(snap.dropped) if snap else {},
            "connection_error": self.connection_error,
            "upload_error": self.upload_error,
            "background_refresh": self.background_refresh_active,
        }

    # ---------------- transitions ----------------
    def _enter_ready(self) -> None:
        if self.phase is not Phase.READY:
            logger.info("Pipeline %s -> ready", self.phase.value)
        self.phase = Phase.READY
        if self.auto_refresh:
            self.start_background_refresh()

    def _enter_awaiting_upload(self) -> None:
        if self.phase is not Phase.AWAITING_UPLOAD:
            logger.info("Pipeline %s -> awaiting_upload", self.phase.value)
        self.phase = Phase.AWAITING_UPLOAD
        self.stop_background_refresh()

    async def start(self) -> DisplayStatus:
        """Cold-start decision: fresh cache, one refresh, stale fallback or upload prompt."""
        state = self.state_store.load()
        if not state.etl_completed:
            self._snapshot = None
            self._enter_awaiting_upload()
            return self.display_status

        lookup = self.cache.get()
        if lookup.hit:
            logger.info("Using cached snapshot (age %sms)", lookup.age_ms)
            self._snapshot = lookup.snapshot
            self.connection_error = None
            self._enter_ready()
            return self.display_status

        try:
            await self._refresh_now()
        except BackendEmpty:
            logger.warning("Backend has no processed data; resetting pipeline")
            self.reset()
            return self.display_status
        except TotalRefreshFailure as exc:
            self.connection_error = str(exc)
            fallback = self._snapshot or self.cache.peek()
            if fallback is not None:
                logger.warning("Refresh failed, serving stale snapshot from %s: %s", fallback.captured_at, exc)
                self._snapshot = fallback
                self._enter_ready()
            else:
                logger.warning("Refresh failed and no cached snapshot: %s", exc)
                self._enter_awaiting_upload()
            return self.display_status

        if self._snapshot is None:
            return self.display_status
        self.connection_error = None
        self._enter_ready()
        return self.display_status

    def begin_processing(self) -> None:
        if self.phase is not Phase.AWAITING_UPLOAD:
            raise InvalidTransition(self.phase.value, "begin processing")
        self.upload_error = None
        self.connection_error = None
        self.phase = Phase.PROCESSING
        logger.info("Pipeline awaiting_upload -> processing")

    async def on_external_processing_complete(self, succeeded: bool = True, message: Optional[str] = None) -> DisplayStatus:
        """Completion signal from the upload collaborator."""
        if not succeeded:
            self.upload_error = message or "ETL processing failed"
            logger.warning("ETL processing failed: %s", self.upload_error)
            self._enter_awaiting_upload()
            return self.display_status

        self.phase = Phase.PROCESSING
        self.upload_error = None
        self.state_store.save(PipelineState(etl_completed=True, last_updated=self.clock()))
        return await self._initial_refresh()

    async def _initial_refresh(self) -> DisplayStatus:
        try:
            await self._refresh_now()
        except (TotalRefreshFailure, BackendEmpty) as exc:
            self.connection_error = str(exc)
            logger.warning("Initial refresh after ETL failed: %s", exc)
            return self.display_status
        if self._snapshot is None:
            return self.display_status
        self.connection_error = None
        self._enter_ready()
        return self.display_status

    async def retry(self) -> DisplayStatus:
        if self.phase is Phase.PROCESSING:
            return await self._initial_refresh()
        if self.phase is Phase.READY:
            await self.refresh(use_cache=False)
            return self.display_status
        return await self.start()

    async def refresh(self, use_cache: bool = True) -> Optional[RefreshResult]:
        """Refresh the snapshot; a no-op while the cached one is within TTL.

        Returns the committed result, or ``None`` when skipped or failed.
        Failures keep the current snapshot.
        """
        if self.phase is not Phase.READY:
            return None
        if use_cache and self.cache.is_fresh():
            return None
        try:
            result = await self._refresh_now()
        except (TotalRefreshFailure, BackendEmpty) as exc:
            self.connection_error = str(exc)
            logger.warning("Background refresh failed, keeping snapshot: %s", exc)
            return None
        self.connection_error = None
        return result

    async def _refresh_now(self) -> Optional[RefreshResult]:
        generation = self._generation
        result = await self.aggregator.refresh()
        if generation != self._generation:
            logger.info("Discarding refresh started before reset")
            return None
        self.last_failures = dict(result.failures)
        if not self._commit(result.snapshot):
            return None
        return result

    def _commit(self, snapshot: DashboardSnapshot) -> bool:
        current = self._snapshot
        if current is not None and current.captured_at > snapshot.captured_at:
            logger.info("Ignoring snapshot %s older than committed %s", snapshot.captured_at, current.captured_at)
            return False
        if not self.cache.put(snapshot):
            persisted = self.cache.peek()
            if persisted is not None and (current is None or persisted.captured_at > current.captured_at):
                logger.info("Adopting newer persisted snapshot %s", persisted.captured_at)
                self._snapshot = persisted
            return False
        self._snapshot = snapshot
        self.state_store.save(PipelineState(etl_completed=True, last_updated=self.clock()))
        return True

    def reset(self) -> None:
        """Clear persisted keys and in-memory data; back to the upload prompt."""
        self._generation += 1
        self.stop_background_refresh()
        self.cache.clear()
        self._snapshot = None
        self.connection_error = None
        self.upload_error = None
        self.last_failures = {}
        self._enter_awaiting_upload()

    # ---------------- background refresh ----------------
    @property
    def background_refresh_active(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def start_background_refresh(self) -> None:
        if self.background_refresh_active:
            return
        self._timer_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    def stop_background_refresh(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    async def _refresh_loop(self) -> None:
        period_s = self.refresh_period_ms / 1000.0
        while True:
            await asyncio.sleep(period_s)
            try:
                await self.refresh(use_cache=True)
            except Exception:
                logger.exception("Background refresh crashed")

    async def close(self) -> None:
        task = self._timer_task
        self.stop_background_refresh()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.aggregator.api.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()
