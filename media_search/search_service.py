"""
Read-time query layer over the search indices.

Read operations favour availability: when the engine is unreachable they log
and return an empty or fallback result instead of raising. Single-document
writes report success as a boolean. `bulk_index` is the exception: engine-level
failures are logged and re-raised to the caller.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from elastic_transport import TransportError
from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, helpers

from .history import SearchHistoryRecorder
from .indices import (
    ENTITY_SPECS,
    EntitySpec,
    get_spec,
    resolve_entities,
    sort_desc,
    weighted_fields,
)
from .metrics import (
    record_es_error,
    record_es_operation,
    record_search_fallback,
    record_search_request,
)
from .models import (
    BulkResult,
    EntityType,
    SearchDocument,
    SearchFilters,
    SearchResult,
    SortStrategy,
)

logger = logging.getLogger(__name__)

EngineError = (ApiError, TransportError)

CANDIDATE_MULTIPLIER = 5
CAPTION_PREVIEW_CHARS = 100
HIGHLIGHT_FIELDS = ("caption", "content", "bio")
EMBEDDING_FIELD = "embedding"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def type_name(error: Exception) -> str:
    return type(error).__name__


def tenant_filter(tenant_id: Optional[str]) -> List[Dict[str, Any]]:
    """Restrict to the tenant's documents plus global (tenant-less) ones."""
    if not tenant_id:
        return []
    return [{
        "bool": {
            "should": [
                {"term": {"tenantId": tenant_id}},
                {"bool": {"must_not": {"exists": {"field": "tenantId"}}}},
            ],
            "minimum_should_match": 1,
        }
    }]


def normalize_hashtag(tag: str) -> str:
    """Post documents store hashtags as `#tag`, lowercased"""
    tag = tag.strip().lower()
    return tag if tag.startswith("#") else f"#{tag}"


def _hit_to_item(hit: Dict[str, Any], **extra) -> Dict[str, Any]:
    item = {"id": hit["_id"]}
    if "_score" in hit:
        item["score"] = hit["_score"]
    item.update(hit.get("_source") or {})
    item.pop(EMBEDDING_FIELD, None)
    item.update(extra)
    return item


class SearchService:
    def __init__(
        self,
        es: AsyncElasticsearch,
        history: Optional[SearchHistoryRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.es = es
        self.history = history
        self.clock = clock

    # ── Full-text search ──────────────────────────────────────────────────────

    async def search(
        self,
        query: Optional[str] = None,
        type: str = "all",
        filters: Union[SearchFilters, Dict[str, Any], None] = None,
        sort: str = SortStrategy.RELEVANCE.value,
        from_: int = 0,
        size: int = 20,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        include_aggregations: bool = True,
    ) -> SearchResult:
        """Full-text search with faceted filtering"""
        entities = resolve_entities(type)
        if not isinstance(filters, SearchFilters):
            filters = SearchFilters.model_validate(filters or {})

        body: Dict[str, Any] = {
            "query": self.build_search_query(query, filters, tenant_id, entities),
            "sort": self.build_sort(sort),
            "highlight": {
                "fields": {
                    name: {"pre_tags": ["<mark>"], "post_tags": ["</mark>"]}
                    for name in HIGHLIGHT_FIELDS
                }
            },
        }
        if include_aggregations:
            body["aggs"] = self.build_aggregations(entities)

        try:
            result = await self.es.search(
                index=[ENTITY_SPECS[e].index for e in entities],
                from_=from_,
                size=size,
                source_excludes=[EMBEDDING_FIELD],
                **body,
            )
        except EngineError as e:
            logger.error(f"[SearchService] Search error: {e}")
            record_es_error(type_name(e), "search")
            record_search_fallback("search")
            return SearchResult(facets={} if include_aggregations else None)

        formatted = self.format_search_results(result)
        record_search_request("search", type or "all", len(formatted.hits))

        if user_id and self.history is not None:
            self.history.track(
                user_id,
                query,
                {k: v for k, v in filters.model_dump(mode="json", by_alias=True).items() if v not in (None, [])},
                formatted.total,
                tenant_id,
            )
        return formatted

    def build_search_query(
        self,
        query: Optional[str],
        filters: SearchFilters,
        tenant_id: Optional[str],
        entities: Optional[List[EntityType]] = None,
    ) -> Dict[str, Any]:
        must: List[Dict[str, Any]] = []
        filter_: List[Dict[str, Any]] = []

        if query and query.strip():
            must.append({
                "multi_match": {
                    "query": query.strip(),
                    "fields": weighted_fields(entities or resolve_entities("all")),
                    "type": "best_fields",
                    "fuzziness": "AUTO",
                }
            })

        if filters.category:
            filter_.append({"term": {"category": filters.category}})
        if filters.media_type:
            filter_.append({"term": {"mediaType": filters.media_type}})
        if filters.date_from or filters.date_to:
            date_range = {}
            if filters.date_from:
                date_range["gte"] = filters.date_from.isoformat()
            if filters.date_to:
                date_range["lte"] = filters.date_to.isoformat()
            filter_.append({"range": {"createdAt": date_range}})
        if filters.verified is not None:
            filter_.append({"term": {"verified": filters.verified}})
        if filters.hashtags:
            filter_.append({"terms": {"hashtags": [normalize_hashtag(h) for h in filters.hashtags]}})
        filter_.extend(tenant_filter(tenant_id))

        return {
            "bool": {
                "must": must or [{"match_all": {}}],
                "filter": filter_,
            }
        }

    @staticmethod
    def build_sort(sort: str) -> List[Any]:
        try:
            strategy = SortStrategy(sort)
        except ValueError:
            strategy = SortStrategy.RELEVANCE

        if strategy is SortStrategy.DATE:
            return [sort_desc("createdAt", "date")]
        if strategy is SortStrategy.POPULAR:
            return [sort_desc("likes", "integer"), sort_desc("createdAt", "date")]
        if strategy is SortStrategy.ENGAGEMENT:
            return [sort_desc("engagementScore", "float")]
        return ["_score", sort_desc("createdAt", "date")]

    @staticmethod
    def build_aggregations(entities: List[EntityType]) -> Dict[str, Any]:
        aggs: Dict[str, Any] = {}
        for entity in entities:
            aggs.update(ENTITY_SPECS[entity].facets)
        return aggs

    @staticmethod
    def format_search_results(result: Dict[str, Any]) -> SearchResult:
        hits = [
            _hit_to_item(hit, index=hit.get("_index"), highlights=hit.get("highlight"))
            for hit in result["hits"]["hits"]
        ]
        facets = None
        aggregations = result.get("aggregations")
        if aggregations is not None:
            facets = {
                key: [
                    {"value": bucket.get("key_as_string", bucket["key"]), "count": bucket["doc_count"]}
                    for bucket in agg["buckets"]
                ]
                for key, agg in aggregations.items()
                if "buckets" in agg
            }
        return SearchResult(
            total=result["hits"]["total"]["value"],
            hits=hits,
            facets=facets,
            took=result.get("took", 0),
        )

    # ── Autocomplete ──────────────────────────────────────────────────────────

    async def autocomplete(
        self,
        prefix: Optional[str],
        type: str = "all",
        size: int = 10,
        tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Prefix suggestions, posts first, then users, then hashtags."""
        if not prefix or not prefix.strip():
            return []
        prefix = prefix.strip()

        suggestions: List[Dict[str, Any]] = []
        for entity in resolve_entities(type):
            spec = ENTITY_SPECS[entity]
            try:
                result = await self.es.search(
                    index=spec.index,
                    size=size,
                    source=list(spec.autocomplete_source),
                    **self._autocomplete_body(spec, prefix, tenant_id),
                )
            except EngineError as e:
                logger.error(f"[SearchService] Autocomplete error ({entity.value}): {e}")
                record_es_error(type_name(e), "autocomplete")
                record_search_fallback("autocomplete")
                continue
            suggestions.extend(self._suggestion(entity, hit) for hit in result["hits"]["hits"])

        record_search_request("autocomplete", type or "all", len(suggestions[:size]))
        return suggestions[:size]

    @staticmethod
    def _autocomplete_body(spec: EntitySpec, prefix: str, tenant_id: Optional[str]) -> Dict[str, Any]:
        if spec.entity is EntityType.HASHTAGS:
            match = {"prefix": {spec.autocomplete_fields[0]: prefix.lstrip("#").lower()}}
            sort = [sort_desc("count", "integer")]
        else:
            match = {
                "multi_match": {
                    "query": prefix,
                    "type": "phrase_prefix",
                    "fields": list(spec.autocomplete_fields),
                }
            }
            sort = None
        body: Dict[str, Any] = {"query": {"bool": {"must": [match], "filter": tenant_filter(tenant_id)}}}
        if sort:
            body["sort"] = sort
        return body

    @staticmethod
    def _suggestion(entity: EntityType, hit: Dict[str, Any]) -> Dict[str, Any]:
        source = hit.get("_source") or {}
        if entity is EntityType.POSTS:
            caption = source.get("caption") or ""
            return {
                "type": "post",
                "id": hit["_id"],
                "text": caption[:CAPTION_PREVIEW_CHARS],
                "category": source.get("category"),
            }
        if entity is EntityType.USERS:
            return {
                "type": "user",
                "id": hit["_id"],
                "text": source.get("username"),
                "displayName": source.get("displayName"),
                "verified": source.get("verified", False),
            }
        return {
            "type": "hashtag",
            "text": f"#{source.get('tag')}",
            "count": source.get("count", 0),
        }

    # ── Recommendations and similarity ────────────────────────────────────────

    async def get_recommendations(
        self,
        user_id: str,
        type: str = "posts",
        size: int = 20,
        tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Nearest neighbours of the user's embedding in the target index. Users
        without an embedding (or whose lookup fails) get popular content.
        """
        spec = get_spec(type)
        embedding = await self._get_embedding(ENTITY_SPECS[EntityType.USERS], user_id)
        if not embedding or not spec.supports_embeddings:
            return await self.get_popular_content(type, size, tenant_id)

        knn_filter = tenant_filter(tenant_id)
        if spec.entity is EntityType.USERS:
            knn_filter.append({"bool": {"must_not": {"ids": {"values": [str(user_id)]}}}})

        try:
            result = await self.es.search(
                index=spec.index,
                knn=self._knn(embedding, size, size * CANDIDATE_MULTIPLIER, knn_filter),
                size=size,
                source_excludes=[EMBEDDING_FIELD],
            )
        except EngineError as e:
            logger.error(f"[SearchService] Recommendations error: {e}")
            record_es_error(type_name(e), "recommendations")
            record_search_fallback("recommendations")
            return await self.get_popular_content(type, size, tenant_id)

        items = [_hit_to_item(hit, reason="personalized") for hit in result["hits"]["hits"]]
        record_search_request("recommendations", spec.entity.value, len(items))
        return items

    async def find_similar(
        self,
        doc_id: str,
        type: str = "posts",
        size: int = 10,
        tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Nearest neighbours of a document, never including the document itself."""
        spec = get_spec(type)
        if not spec.supports_embeddings:
            return []
        embedding = await self._get_embedding(spec, doc_id)
        if not embedding:
            return []

        k = size + 1  # the source document is usually its own nearest neighbour
        try:
            result = await self.es.search(
                index=spec.index,
                knn=self._knn(embedding, k, max(k, size * CANDIDATE_MULTIPLIER), tenant_filter(tenant_id)),
                size=k,
                source_excludes=[EMBEDDING_FIELD],
            )
        except EngineError as e:
            logger.error(f"[SearchService] Find similar error: {e}")
            record_es_error(type_name(e), "similar")
            record_search_fallback("similar")
            return []

        similar = [
            _hit_to_item(hit)
            for hit in result["hits"]["hits"]
            if hit["_id"] != str(doc_id)
        ][:size]
        record_search_request("similar", spec.entity.value, len(similar))
        return similar

    async def _get_embedding(self, spec: EntitySpec, doc_id: str) -> Optional[List[float]]:
        try:
            doc = await self.es.get(index=spec.index, id=str(doc_id), source_includes=[EMBEDDING_FIELD])
        except NotFoundError:
            return None
        except EngineError as e:
            logger.warning(f"[SearchService] Embedding lookup failed for {spec.entity.value}/{doc_id}: {e}")
            record_es_error(type_name(e), "get")
            return None
        return (doc.get("_source") or {}).get(EMBEDDING_FIELD)

    @staticmethod
    def _knn(vector: List[float], k: int, num_candidates: int, filters: List[Dict[str, Any]]) -> Dict[str, Any]:
        knn = {
            "field": EMBEDDING_FIELD,
            "query_vector": vector,
            "k": k,
            "num_candidates": num_candidates,
        }
        if filters:
            knn["filter"] = filters
        return knn

    # ── Trending and popular ──────────────────────────────────────────────────

    async def get_trending(
        self,
        type: str = "posts",
        size: int = 20,
        hours: int = 24,
        tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        spec = get_spec(type)
        since = self.clock() - timedelta(hours=hours)
        filters = [{"range": {spec.trending_time_field: {"gte": since.isoformat()}}}]
        filters.extend(tenant_filter(tenant_id))

        try:
            result = await self.es.search(
                index=spec.index,
                query={"bool": {"filter": filters}},
                sort=list(spec.trending_sort),
                size=size,
                source_excludes=[EMBEDDING_FIELD],
            )
        except EngineError as e:
            logger.error(f"[SearchService] Trending error: {e}")
            record_es_error(type_name(e), "trending")
            record_search_fallback("trending")
            return []

        items = [_hit_to_item(hit) for hit in result["hits"]["hits"]]
        for item in items:
            item.pop("score", None)
        record_search_request("trending", spec.entity.value, len(items))
        return items

    async def get_popular_content(
        self,
        type: str = "posts",
        size: int = 20,
        tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Highest-engagement content; also the cold-start recommendation fallback."""
        spec = get_spec(type)
        try:
            result = await self.es.search(
                index=spec.index,
                query={"bool": {"filter": tenant_filter(tenant_id)}},
                sort=list(spec.popular_sort),
                size=size,
                source_excludes=[EMBEDDING_FIELD],
            )
        except EngineError as e:
            logger.error(f"[SearchService] Popular content error: {e}")
            record_es_error(type_name(e), "popular")
            record_search_fallback("popular")
            return []

        items = [_hit_to_item(hit, reason="popular") for hit in result["hits"]["hits"]]
        for item in items:
            item.pop("score", None)
        record_search_request("popular", spec.entity.value, len(items))
        return items

    # ── Write passthroughs ────────────────────────────────────────────────────

    async def index_document(self, index: str, doc_id: str, document: Dict[str, Any]) -> bool:
        try:
            await self.es.index(index=index, id=str(doc_id), document=document, refresh=True)
            record_es_operation("index", "success")
            return True
        except EngineError as e:
            logger.error(f"[SearchService] Index error: {e}")
            record_es_error(type_name(e), "index")
            return False

    async def update_document(self, index: str, doc_id: str, updates: Dict[str, Any]) -> bool:
        try:
            await self.es.update(index=index, id=str(doc_id), doc=updates, refresh=True)
            record_es_operation("update", "success")
            return True
        except EngineError as e:
            logger.error(f"[SearchService] Update error: {e}")
            record_es_error(type_name(e), "update")
            return False

    async def delete_document(self, index: str, doc_id: str) -> bool:
        """Idempotent: an id that is not indexed counts as deleted."""
        try:
            await self.es.delete(index=index, id=str(doc_id), refresh=True)
            record_es_operation("delete", "success")
            return True
        except NotFoundError:
            return True
        except EngineError as e:
            logger.error(f"[SearchService] Delete error: {e}")
            record_es_error(type_name(e), "delete")
            return False

    async def bulk_index(
        self,
        index: str,
        documents: List[Union[SearchDocument, Dict[str, Any]]],
    ) -> BulkResult:
        """
        Index `documents` in one bulk request. Per-document rejections are
        returned in `errors`; an engine-level failure is logged and re-raised.
        """
        actions = []
        for doc in documents:
            source = doc.to_source() if isinstance(doc, SearchDocument) else dict(doc)
            doc_id = source.pop("_id", None) or source.get("id")
            action = {"_op_type": "index", "_index": index, "_source": source}
            # without an id the engine assigns one
            if doc_id is not None:
                action["_id"] = str(doc_id)
            actions.append(action)
        if not actions:
            return BulkResult(success=True, indexed=0)

        try:
            indexed, errors = await helpers.async_bulk(
                client=self.es,
                actions=actions,
                raise_on_error=False,
                chunk_size=len(actions),
                refresh=True,
            )
        except EngineError as e:
            logger.error(f"[SearchService] Bulk index error: {e}")
            record_es_error(type_name(e), "bulk")
            raise

        if errors:
            logger.warning(f"[SearchService] Bulk index into '{index}': {len(errors)} document(s) rejected")
        record_es_operation("bulk", "partial" if errors else "success")
        return BulkResult(success=not errors, indexed=indexed, errors=list(errors))

