"""
Search history tracking.

Tracking is a side channel of search: it must never slow a search down or make
it fail. Events go through a bounded queue drained by one background task.
Delivery is best-effort and at-most-once: an event that does not fit in the
queue or whose write fails is dropped and never retried.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch

from .indices import index_name
from .metrics import record_history_dropped
from .models import EntityType, SearchHistoryEntry

logger = logging.getLogger(__name__)


class SearchHistoryRecorder:
    def __init__(self, es: AsyncElasticsearch, max_queue_size: int = 1000):
        self.es = es
        self.index = index_name(EntityType.SEARCH_HISTORY)
        self.queue: "asyncio.Queue[SearchHistoryEntry]" = asyncio.Queue(maxsize=max_queue_size)
        self._task: Optional[asyncio.Task] = None
        self.recorded = 0
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._drain())

    async def stop(self) -> None:
        """Stop the drain task; events still queued are discarded."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()
            self._drop("shutdown")

    def track(
        self,
        user_id: str,
        query: Optional[str],
        filters: Dict[str, Any],
        result_count: int,
        tenant_id: Optional[str] = None,
    ) -> bool:
        """Enqueue without waiting. Returns False if the event was dropped."""
        entry = SearchHistoryEntry(
            user_id=str(user_id),
            query=query,
            filters=filters,
            result_count=result_count,
            tenant_id=tenant_id,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self.queue.put_nowait(entry)
        except asyncio.QueueFull:
            self._drop("queue_full")
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued event has been written or dropped."""
        await self.queue.join()

    async def _drain(self) -> None:
        while True:
            entry = await self.queue.get()
            try:
                await self._write(entry)
            finally:
                self.queue.task_done()

    async def _write(self, entry: SearchHistoryEntry) -> None:
        try:
            await self.es.index(
                index=self.index,
                document=entry.model_dump(mode="json", by_alias=True),
            )
            self.recorded += 1
        except (ApiError, TransportError) as e:
            logger.warning(f"Track search error (event dropped): {e}")
            self._drop("write_failed")
        except Exception as e:
            logger.error(f"Unexpected track search error (event dropped): {e}")
            self._drop("write_failed")

    def _drop(self, reason: str) -> None:
        self.dropped += 1
        record_history_dropped(reason)
