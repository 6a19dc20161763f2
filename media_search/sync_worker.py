"""
Index sync worker.

Keeps the search indices eventually consistent with the primary datastore:
a periodic full resync (cursor-paginated per entity type) plus real-time
single-document index/delete entry points for the write path. Every write is
keyed by the source primary key, so overlapping writes converge without locks.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, helpers

from .datastore import DatastoreReader, RowBatch
from .indices import ENTITY_SPECS, EntitySpec
from .metrics import (
    SYNC_RUNNING,
    record_es_error,
    record_es_operation,
    record_sync_batch,
    record_sync_duration,
)
from .models import EntityType, PostRecord, SearchDocument, SyncReport, UserRecord

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
DEFAULT_INTERVAL_SECONDS = 5 * 60


class SyncState(str, Enum):
    STOPPED = "stopped"
    IDLE = "scheduled-idle"
    SYNCING = "syncing"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_delete(item: Dict[str, Any]) -> bool:
    op_type, info = next(iter(item.items()))
    return op_type == "delete" and info.get("status") == 404


class IndexSyncWorker:
    def __init__(
        self,
        es: AsyncElasticsearch,
        datastore: DatastoreReader,
        batch_size: int = BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.es = es
        self.datastore = datastore
        self.batch_size = batch_size
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._active_passes = 0

    # ── Scheduling ────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> SyncState:
        if self._active_passes:
            return SyncState.SYNCING
        return SyncState.IDLE if self._running else SyncState.STOPPED

    def start(self, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        """Run a full sync now and then every `interval_seconds`. No-op if already running."""
        if self._running:
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(interval_seconds))
        SYNC_RUNNING.set(1)
        logger.info(f"[IndexSync] Worker started (interval={interval_seconds}s)")

    def stop(self) -> None:
        """Cancel future ticks. A pass already in flight runs to completion."""
        self._running = False
        self._stop_event.set()
        SYNC_RUNNING.set(0)
        logger.info("[IndexSync] Worker stopped")

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sync_all()
            except Exception as e:
                logger.error(f"[IndexSync] Sync pass failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ── Full sync ─────────────────────────────────────────────────────────────

    async def sync_all(self) -> Dict[EntityType, SyncReport]:
        """Sync every entity type concurrently; one type failing does not abort the others."""
        now = self.clock()
        logger.info("[IndexSync] Starting full sync...")
        self._active_passes += 1
        try:
            reports = await asyncio.gather(
                self.sync_posts(now),
                self.sync_users(now),
                self.sync_hashtags(now),
            )
        finally:
            self._active_passes -= 1
        logger.info(
            "[IndexSync] Full sync completed: "
            + ", ".join(f"{r.entity.value}={r.synced}" for r in reports)
        )
        return {report.entity: report for report in reports}

    async def sync_entity(self, entity: EntityType, now: Optional[datetime] = None) -> SyncReport:
        syncers = {
            EntityType.POSTS: self.sync_posts,
            EntityType.USERS: self.sync_users,
            EntityType.HASHTAGS: self.sync_hashtags,
        }
        return await syncers[EntityType(entity)](now)

    async def sync_posts(self, now: Optional[datetime] = None) -> SyncReport:
        return await self._sync_cursor(EntityType.POSTS, self.datastore.fetch_posts, now)

    async def sync_users(self, now: Optional[datetime] = None) -> SyncReport:
        return await self._sync_cursor(EntityType.USERS, self.datastore.fetch_users, now)

    async def sync_hashtags(self, now: Optional[datetime] = None) -> SyncReport:
        """Hashtags are aggregated over all posts in one query, not paginated."""
        spec = ENTITY_SPECS[EntityType.HASHTAGS]
        report = SyncReport(entity=EntityType.HASHTAGS)
        now = now or self.clock()
        start = time.time()
        try:
            aggregates = await self.datastore.aggregate_hashtags()
            documents = [spec.transform(h, now) for h in aggregates]
            indexed, failed = await self._bulk_write(spec, documents, [])
            report.synced, report.failed = indexed, failed
            logger.info(f"[IndexSync] Synced {report.synced} hashtags")
        except Exception as e:
            logger.error(f"[IndexSync] Hashtags sync error: {e}")
            report.error = str(e)
        record_sync_duration(EntityType.HASHTAGS.value, time.time() - start)
        return report

    async def _sync_cursor(
        self,
        entity: EntityType,
        fetch: Callable[[Optional[str], int], Awaitable[RowBatch]],
        now: Optional[datetime],
    ) -> SyncReport:
        """
        Scan `entity` in primary key order, `batch_size` rows at a time, until a
        batch comes back empty. Soft-deleted rows become delete actions. Rows the
        reader could not parse count as failed.
        """
        spec = ENTITY_SPECS[entity]
        report = SyncReport(entity=entity)
        now = now or self.clock()
        start = time.time()
        last_key: Optional[str] = None
        try:
            while True:
                batch = await fetch(last_key, self.batch_size)
                if batch.last_key is None:
                    break

                rows = batch.records
                documents = [spec.transform(row, now) for row in rows if not row.is_deleted]
                deleted_ids = [str(row.id) for row in rows if row.is_deleted]
                indexed, failed = await self._bulk_write(spec, documents, deleted_ids)

                report.synced += indexed
                report.failed += failed + batch.skipped
                report.deleted += len(deleted_ids)
                last_key = batch.last_key
            logger.info(f"[IndexSync] Synced {report.synced} {entity.value}")
        except Exception as e:
            logger.error(f"[IndexSync] {entity.value.capitalize()} sync error: {e}")
            report.error = str(e)
        record_sync_duration(entity.value, time.time() - start)
        return report

    async def _bulk_write(
        self,
        spec: EntitySpec,
        documents: List[SearchDocument],
        deleted_ids: List[str],
    ) -> Tuple[int, int]:
        """Returns (documents indexed, documents rejected)"""
        actions = [
            {"_op_type": "index", "_index": spec.index, "_id": doc.id, "_source": doc.to_source()}
            for doc in documents
        ]
        actions.extend(
            {"_op_type": "delete", "_index": spec.index, "_id": doc_id}
            for doc_id in deleted_ids
        )
        if not actions:
            return 0, 0

        # async_bulk returns (success_count, errors)
        success, errors = await helpers.async_bulk(
            client=self.es,
            actions=actions,
            raise_on_error=False,
        )
        failures = [item for item in errors if not _is_missing_delete(item)]
        if failures:
            # Log non-fatal errors but don't fail the entire batch
            logger.error(f"[IndexSync] Bulk errors in '{spec.index}': {len(failures)}")
        rejected = sum(1 for item in failures if "index" in item)
        indexed = len(documents) - rejected
        record_sync_batch(spec.entity.value, indexed, len(failures))
        return indexed, len(failures)

    # ── Real-time updates ─────────────────────────────────────────────────────

    async def index_post(self, post: PostRecord) -> bool:
        return await self._index_record(ENTITY_SPECS[EntityType.POSTS], post)

    async def index_user(self, user: UserRecord) -> bool:
        return await self._index_record(ENTITY_SPECS[EntityType.USERS], user)

    async def _index_record(self, spec: EntitySpec, record) -> bool:
        if record.is_deleted:
            return await self.delete_document(spec.index, str(record.id))
        document = spec.transform(record, self.clock())
        try:
            await self.es.index(
                index=spec.index,
                id=document.id,
                document=document.to_source(),
                refresh=True,
            )
            record_es_operation("index", "success")
            return True
        except (ApiError, TransportError) as e:
            logger.error(f"[IndexSync] Index {spec.entity.value} error: {e}")
            record_es_error(type(e).__name__, "index")
            return False

    async def delete_document(self, index: str, doc_id: str) -> bool:
        """Idempotent: deleting an id that is not indexed succeeds."""
        try:
            await self.es.delete(index=index, id=doc_id, refresh=True)
            record_es_operation("delete", "success")
            return True
        except NotFoundError:
            return True
        except (ApiError, TransportError) as e:
            logger.error(f"[IndexSync] Delete error: {e}")
            record_es_error(type(e).__name__, "delete")
            return False

    # ── Status ────────────────────────────────────────────────────────────────

    async def get_status(self) -> Dict[str, Any]:
        indices = {}
        for spec in ENTITY_SPECS.values():
            try:
                count = await self.es.count(index=spec.index)
                indexed = count["count"]
            except (ApiError, TransportError) as e:
                logger.warning(f"[IndexSync] Count failed for '{spec.index}': {e}")
                indexed = 0
            indices[spec.entity.value] = {"index": spec.index, "indexed": indexed}
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "indices": indices,
        }
