import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from defect_map.core.detection_store import DetectionSnapshot, DetectionStore
from defect_map.core.models import Detection, EvictionPolicy


logger = logging.getLogger(__name__)

SnapshotListener = Callable[[DetectionSnapshot], None]


class DetectionSource(Protocol):
    async def fetch_detections(
        self,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> List[Detection]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshResult:
    ok: bool
    snapshot: DetectionSnapshot
    initial: bool = False
    fetched: int = 0
    evicted: List[str] = field(default_factory=list)


class SyncEngine:
    """Keep the held detection set in step with the defect source.

    The first successful refresh replaces the set wholesale. Later refreshes
    ask only for detections newer than the previous successful refresh,
    upsert them by id, and under ``EvictionPolicy.PRUNE`` drop every id the
    latest response did not include. Failures never escape: the held set and
    ``last_updated`` stay as they were and the next cycle retries the same
    window.
    """

    def __init__(
        self,
        source: DetectionSource,
        store: Optional[DetectionStore] = None,
        *,
        limit: Optional[int] = None,
        eviction: EvictionPolicy = EvictionPolicy.PRUNE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.store = store or DetectionStore()
        self.limit = limit
        self.eviction = EvictionPolicy(eviction)
        self._clock = clock
        self._listeners: List[SnapshotListener] = []
        self._inflight: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self.refresh_count = 0
        self.failure_count = 0
        self.last_error: Optional[str] = None

    @property
    def last_updated(self) -> Optional[datetime]:
        return self.store.last_updated

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def snapshot(self) -> DetectionSnapshot:
        return self.store.snapshot()

    def recent(self, limit: Optional[int] = None) -> List[Detection]:
        return self.store.recent(limit)

    def get(self, detection_id: str) -> Optional[Detection]:
        return self.store.get(detection_id)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def refresh(self) -> RefreshResult:
        """Fetch and merge once; joins the refresh already in flight if any."""

        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh_once())
            self._inflight = task
        return await asyncio.shield(task)

    async def _refresh_once(self) -> RefreshResult:
        since = self.store.last_updated
        initial = since is None
        started_at = self._clock()
        try:
            detections = await self.source.fetch_detections(limit=self.limit, since=since)
        except Exception as exc:
            self.failure_count += 1
            self.last_error = str(exc) or exc.__class__.__name__
            logger.exception("Defect refresh failed; keeping %d held detections", len(self.store))
            return RefreshResult(ok=False, snapshot=self.store.snapshot(), initial=initial)

        evicted: List[str] = []
        if initial:
            self.store.replace(detections)
        elif detections:
            self.store.upsert(detections)
            if self.eviction is EvictionPolicy.PRUNE:
                evicted = self.store.retain_only(detection.id for detection in detections)
        # an empty response is indistinguishable from a degraded store: it
        # never prunes, and an empty initial load stays initial
        if detections or not initial:
            self.store.mark_updated(started_at)
        self.refresh_count += 1
        self.last_error = None
        snapshot = self.store.snapshot()
        logger.info(
            "Defect refresh %s: fetched=%d held=%d evicted=%d",
            "initial" if initial else "incremental",
            len(detections),
            len(snapshot),
            len(evicted),
        )
        self._publish(snapshot)
        return RefreshResult(
            ok=True,
            snapshot=snapshot,
            initial=initial,
            fetched=len(detections),
            evicted=evicted,
        )

    def _publish(self, snapshot: DetectionSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    async def run(self, poll_seconds: float) -> None:
        while True:
            try:
                await self.refresh()
            except Exception:
                logger.exception("Refresh worker encountered an unexpected error")
            await asyncio.sleep(poll_seconds)

    def start(self, poll_seconds: float) -> asyncio.Task:
        if self.running:
            return self._poll_task
        self._poll_task = asyncio.create_task(self.run(poll_seconds))
        return self._poll_task

    async def stop(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        inflight = self._inflight
        if inflight and not inflight.done():
            with suppress(asyncio.CancelledError):
                await inflight
