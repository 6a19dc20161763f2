import logging
import math
import time
from contextlib import asynccontextmanager
from typing import Literal, Optional

import uvicorn
from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from .auth import CurrentUser, get_current_admin_user, get_optional_user, get_tenant_id
from .auth.security import SecurityHeadersMiddleware
from .config import config
from .datastore import DatastoreReader, create_datastore
from .engine import create_client, ensure_indices, get_index_stats, health_check, recreate_index
from .history import SearchHistoryRecorder
from .indices import ENTITY_SPECS, resolve_entities
from .metrics import PrometheusMiddleware
from .models import EntityType, SearchFilters, SortStrategy
from .search_service import SearchService
from .sync_worker import IndexSyncWorker

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

SearchType = Literal["all", "posts", "users", "hashtags"]
ContentType = Literal["posts", "users", "hashtags"]
EmbeddedType = Literal["posts", "users"]


class SearchRequest(BaseModel):
    query: Optional[str] = None
    type: SearchType = "all"
    filters: SearchFilters = Field(default_factory=SearchFilters)
    sort: SortStrategy = SortStrategy.RELEVANCE
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=MAX_PAGE_SIZE)


class ReindexRequest(BaseModel):
    type: SearchType = "all"
    # drop and recreate the index with the current mapping before syncing
    recreate: bool = False


def configure_logging() -> None:
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_search_service(request: Request) -> SearchService:
    return request.app.state.search_service


def get_sync_worker(request: Request) -> IndexSyncWorker:
    worker = request.app.state.sync_worker
    if worker is None:
        raise HTTPException(status_code=503, detail="Index sync worker is not available")
    return worker


def create_app(
    es: Optional[AsyncElasticsearch] = None,
    datastore: Optional[DatastoreReader] = None,
    search_service: Optional[SearchService] = None,
    sync_worker: Optional[IndexSyncWorker] = None,
    history: Optional[SearchHistoryRecorder] = None,
) -> FastAPI:
    """
    Build the API application. Collaborators that are not passed in are
    constructed from configuration when the application starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = app.state.es is None
        if owns_client:
            app.state.es = create_client()
        es_client = app.state.es

        try:
            await ensure_indices(es_client)
        except (ApiError, TransportError) as e:
            logger.error(f"Index bootstrap failed, continuing in degraded mode: {e}")

        if app.state.history is None:
            app.state.history = SearchHistoryRecorder(es_client, config.history_queue_size)
        app.state.history.start()

        if app.state.search_service is None:
            app.state.search_service = SearchService(es_client, app.state.history)

        if app.state.sync_worker is None:
            reader = app.state.datastore or create_datastore(config.datastore_url)
            app.state.sync_worker = IndexSyncWorker(es_client, reader, batch_size=config.sync_batch_size)
        if config.sync_on_startup:
            app.state.sync_worker.start(config.sync_interval_seconds)

        try:
            yield
        finally:
            app.state.sync_worker.stop()
            await app.state.sync_worker.wait_closed()
            await app.state.history.stop()
            if owns_client:
                await es_client.close()

    app = FastAPI(title="Media Search Service", lifespan=lifespan)
    app.state.es = es
    app.state.datastore = datastore
    app.state.search_service = search_service
    app.state.sync_worker = sync_worker
    app.state.history = history

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/search")
    async def search(
        body: SearchRequest,
        user: Optional[CurrentUser] = Depends(get_optional_user),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        """Full-text search with faceted filtering"""
        try:
            result = await service.search(
                body.query,
                type=body.type,
                filters=body.filters,
                sort=body.sort.value,
                from_=(body.page - 1) * body.limit,
                size=body.limit,
                user_id=user.user_id if user else None,
                tenant_id=tenant_id,
                include_aggregations=True,
            )
        except Exception as e:
            logger.error(f"Search error: {e}")
            raise HTTPException(status_code=500, detail="Search failed")

        return {
            "results": result.hits,
            "total": result.total,
            "facets": result.facets,
            "page": body.page,
            "limit": body.limit,
            "totalPages": math.ceil(result.total / body.limit),
            "took": result.took,
        }

    @app.get("/search/autocomplete")
    async def autocomplete(
        q: Optional[str] = None,
        type: SearchType = "all",
        limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        try:
            suggestions = await service.autocomplete(q, type=type, size=limit, tenant_id=tenant_id)
        except Exception as e:
            logger.error(f"Autocomplete error: {e}")
            raise HTTPException(status_code=500, detail="Autocomplete failed")
        return {"suggestions": suggestions}

    @app.get("/search/recommendations")
    async def recommendations(
        type: EmbeddedType = "posts",
        limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
        user: Optional[CurrentUser] = Depends(get_optional_user),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        """Personalized for authenticated callers, popular content otherwise"""
        try:
            if user is None:
                items = await service.get_popular_content(type, limit, tenant_id)
                return {"recommendations": items, "type": "popular"}
            items = await service.get_recommendations(user.user_id, type, limit, tenant_id)
        except Exception as e:
            logger.error(f"Recommendations error: {e}")
            raise HTTPException(status_code=500, detail="Failed to get recommendations")
        return {"recommendations": items, "type": "personalized"}

    @app.get("/search/trending")
    async def trending(
        type: ContentType = "posts",
        limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
        hours: int = Query(24, ge=1),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        try:
            items = await service.get_trending(type, limit, hours, tenant_id)
        except Exception as e:
            logger.error(f"Trending error: {e}")
            raise HTTPException(status_code=500, detail="Failed to get trending")
        return {"trending": items}

    @app.get("/search/hashtags/trending")
    async def trending_hashtags(
        limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
        hours: int = Query(24, ge=1),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        try:
            items = await service.get_trending(EntityType.HASHTAGS.value, limit, hours, tenant_id)
        except Exception as e:
            logger.error(f"Trending hashtags error: {e}")
            raise HTTPException(status_code=500, detail="Failed to get trending hashtags")
        return {"hashtags": items}

    @app.get("/search/similar/{doc_id}")
    async def similar(
        doc_id: str,
        type: EmbeddedType = "posts",
        limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
        tenant_id: Optional[str] = Depends(get_tenant_id),
        service: SearchService = Depends(get_search_service),
    ):
        try:
            items = await service.find_similar(doc_id, type, limit, tenant_id)
        except Exception as e:
            logger.error(f"Similar content error: {e}")
            raise HTTPException(status_code=500, detail="Failed to find similar content")
        return {"similar": items}

    @app.post("/search/reindex", status_code=202)
    async def reindex(
        request: Request,
        background_tasks: BackgroundTasks,
        body: Optional[ReindexRequest] = None,
        admin: CurrentUser = Depends(get_current_admin_user),
        worker: IndexSyncWorker = Depends(get_sync_worker),
    ):
        """Run a sync pass in the background (admin)"""
        body = body or ReindexRequest()
        if body.recreate:
            try:
                for entity in resolve_entities(body.type):
                    await recreate_index(request.app.state.es, ENTITY_SPECS[entity])
            except Exception as e:
                logger.error(f"Reindex error: {e}")
                raise HTTPException(status_code=500, detail="Failed to start reindexing")

        if body.type == "all":
            background_tasks.add_task(worker.sync_all)
        else:
            background_tasks.add_task(worker.sync_entity, EntityType(body.type))

        job_id = f"reindex_{int(time.time() * 1000)}"
        logger.info(f"Reindex {job_id} of '{body.type}' requested by {admin.user_id}")
        return {"message": f"Reindexing {body.type} started", "jobId": job_id}

    @app.get("/search/stats")
    async def stats(
        request: Request,
        admin: CurrentUser = Depends(get_current_admin_user),
    ):
        """Index statistics and sync worker status (admin)"""
        try:
            index_stats = await get_index_stats(request.app.state.es)
            worker = request.app.state.sync_worker
            sync_status = await worker.get_status() if worker is not None else None
        except Exception as e:
            logger.error(f"Stats error: {e}")
            raise HTTPException(status_code=500, detail="Failed to get stats")
        return {"stats": index_stats, "sync": sync_status}

    @app.get("/health")
    async def health(request: Request):
        cluster = await health_check(request.app.state.es)
        if cluster is None:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "elasticsearch": None})
        return {"status": "healthy", "elasticsearch": cluster}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    configure_logging()
    uvicorn.run(create_app(), host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
