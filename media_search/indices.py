"""
Index definitions and the per-entity dispatch table.

Every place that needs to know something entity-specific (which index, which
mapping, how to transform a row, which fields to match or sort on) looks it up
here by `EntityType` instead of switching on type strings.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import config
from .models import EMBEDDING_DIMS, EntityType
from .transform import transform_hashtag, transform_post, transform_user

# ── Analysis settings ─────────────────────────────────────────────────────────
INDEX_SETTINGS = {
    "analysis": {
        "analyzer": {
            "autocomplete": {
                "tokenizer": "autocomplete",
                "filter": ["lowercase", "asciifolding"],
            },
            "search_autocomplete": {
                "tokenizer": "standard",
                "filter": ["lowercase", "asciifolding"],
            },
        },
        "tokenizer": {
            "autocomplete": {
                "type": "edge_ngram",
                "min_gram": 1,
                "max_gram": 20,
                "token_chars": ["letter", "digit"],
            }
        },
    }
}

_AUTOCOMPLETE_SUBFIELD = {
    "type": "text",
    "analyzer": "autocomplete",
    "search_analyzer": "search_autocomplete",
}

_EMBEDDING = {
    "type": "dense_vector",
    "dims": EMBEDDING_DIMS,
    "index": True,
    "similarity": "cosine",
}

# ── Index Mappings ────────────────────────────────────────────────────────────
POST_MAPPING = {
    "properties": {
        "id":              {"type": "keyword"},
        "authorId":        {"type": "keyword"},
        "username":        {"type": "keyword"},
        "displayName":     {"type": "text"},
        "caption": {
            "type": "text",
            "analyzer": "standard",
            "fields": {
                "keyword":      {"type": "keyword", "ignore_above": 256},
                "autocomplete": _AUTOCOMPLETE_SUBFIELD,
                "suggest":      {"type": "completion"},
            },
        },
        "content":         {"type": "text", "analyzer": "standard"},
        "tags":            {"type": "keyword"},
        "hashtags":        {"type": "keyword"},
        "category":        {"type": "keyword"},
        "mediaType":       {"type": "keyword"},
        "visibility":      {"type": "keyword"},
        "isPublic":        {"type": "boolean"},
        "tenantId":        {"type": "keyword"},
        "likes":           {"type": "integer"},
        "comments":        {"type": "integer"},
        "shares":          {"type": "integer"},
        "views":           {"type": "integer"},
        "engagementScore": {"type": "float"},
        "popularityScore": {"type": "float"},
        "createdAt":       {"type": "date"},
        "updatedAt":       {"type": "date"},
        "location":        {"type": "geo_point"},
        "embedding":       _EMBEDDING,
    }
}

USER_MAPPING = {
    "properties": {
        "id": {"type": "keyword"},
        "username": {
            "type": "text",
            "fields": {
                "keyword":      {"type": "keyword"},
                "autocomplete": _AUTOCOMPLETE_SUBFIELD,
                "suggest":      {"type": "completion"},
            },
        },
        "displayName": {
            "type": "text",
            "fields": {"autocomplete": _AUTOCOMPLETE_SUBFIELD},
        },
        "firstName":  {"type": "text"},
        "lastName":   {"type": "text"},
        "bio":        {"type": "text"},
        "college":    {"type": "keyword"},
        "department": {"type": "keyword"},
        "tenantId":   {"type": "keyword"},
        "interests":  {"type": "keyword"},
        "skills":     {"type": "keyword"},
        "followers":  {"type": "integer"},
        "following":  {"type": "integer"},
        "posts":      {"type": "integer"},
        "verified":   {"type": "boolean"},
        "createdAt":  {"type": "date"},
        "lastActive": {"type": "date"},
        "embedding":  _EMBEDDING,
    }
}

HASHTAG_MAPPING = {
    "properties": {
        "id": {"type": "keyword"},
        "tag": {
            "type": "text",
            "fields": {
                "keyword": {"type": "keyword"},
                "suggest": {"type": "completion"},
            },
        },
        "count":      {"type": "integer"},
        "trendScore": {"type": "float"},
        "tenantId":   {"type": "keyword"},
        "lastUsed":   {"type": "date"},
    }
}

SEARCH_HISTORY_MAPPING = {
    "properties": {
        "userId":      {"type": "keyword"},
        "query":       {"type": "text"},
        "filters":     {"type": "object", "enabled": False},
        "resultCount": {"type": "integer"},
        "tenantId":    {"type": "keyword"},
        "timestamp":   {"type": "date"},
    }
}

SortClause = Dict[str, Dict[str, str]]


def sort_desc(field_name: str, unmapped_type: str) -> SortClause:
    """Descending sort that tolerates indices without the field"""
    return {field_name: {"order": "desc", "unmapped_type": unmapped_type}}


@dataclass(frozen=True)
class EntitySpec:
    entity: EntityType
    index: str
    mapping: Dict[str, Any]
    transform: Optional[Callable] = None
    field_weights: Dict[str, int] = field(default_factory=dict)
    autocomplete_fields: Tuple[str, ...] = ()
    autocomplete_source: Tuple[str, ...] = ()
    trending_time_field: Optional[str] = None
    trending_sort: Tuple[SortClause, ...] = ()
    popular_sort: Tuple[SortClause, ...] = ()
    facets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    supports_embeddings: bool = False


def build_entity_specs(prefix: str) -> Dict[EntityType, EntitySpec]:
    return {
        EntityType.POSTS: EntitySpec(
            entity=EntityType.POSTS,
            index=f"{prefix}_posts",
            mapping=POST_MAPPING,
            transform=transform_post,
            field_weights={"caption": 3, "content": 2, "username": 2, "displayName": 1, "tags": 2},
            autocomplete_fields=("caption.autocomplete", "tags"),
            autocomplete_source=("caption", "category"),
            trending_time_field="createdAt",
            trending_sort=(
                sort_desc("engagementScore", "float"),
                sort_desc("likes", "integer"),
            ),
            popular_sort=(
                sort_desc("engagementScore", "float"),
                sort_desc("likes", "integer"),
                sort_desc("createdAt", "date"),
            ),
            facets={
                "categories": {"terms": {"field": "category", "size": 20}},
                "mediaTypes": {"terms": {"field": "mediaType", "size": 10}},
                "hashtags": {"terms": {"field": "hashtags", "size": 30}},
                "dateHistogram": {
                    "date_histogram": {
                        "field": "createdAt",
                        "calendar_interval": "day",
                        "min_doc_count": 1,
                    }
                },
            },
            supports_embeddings=True,
        ),
        EntityType.USERS: EntitySpec(
            entity=EntityType.USERS,
            index=f"{prefix}_users",
            mapping=USER_MAPPING,
            transform=transform_user,
            field_weights={"username": 2, "displayName": 1, "bio": 1},
            autocomplete_fields=("username.autocomplete", "displayName.autocomplete"),
            autocomplete_source=("username", "displayName", "verified"),
            trending_time_field="lastActive",
            trending_sort=(
                sort_desc("followers", "integer"),
                sort_desc("posts", "integer"),
            ),
            popular_sort=(
                sort_desc("followers", "integer"),
                sort_desc("posts", "integer"),
                sort_desc("createdAt", "date"),
            ),
            facets={
                "colleges": {"terms": {"field": "college", "size": 20}},
                "departments": {"terms": {"field": "department", "size": 20}},
            },
            supports_embeddings=True,
        ),
        EntityType.HASHTAGS: EntitySpec(
            entity=EntityType.HASHTAGS,
            index=f"{prefix}_hashtags",
            mapping=HASHTAG_MAPPING,
            transform=transform_hashtag,
            field_weights={"tag": 2},
            autocomplete_fields=("tag.keyword",),
            autocomplete_source=("tag", "count"),
            trending_time_field="lastUsed",
            trending_sort=(
                sort_desc("trendScore", "float"),
                sort_desc("count", "integer"),
            ),
            popular_sort=(
                sort_desc("trendScore", "float"),
                sort_desc("count", "integer"),
            ),
        ),
        EntityType.SEARCH_HISTORY: EntitySpec(
            entity=EntityType.SEARCH_HISTORY,
            index=f"{prefix}_search_history",
            mapping=SEARCH_HISTORY_MAPPING,
        ),
    }


ENTITY_SPECS = build_entity_specs(config.index_prefix)

# Entity types searched, suggested and synced, in precedence order
SEARCHABLE_ENTITIES: List[EntityType] = [EntityType.POSTS, EntityType.USERS, EntityType.HASHTAGS]


def weighted_fields(entities: List[EntityType]) -> List[str]:
    """Boosted multi_match field list (`caption^3`) for the searched entities"""
    weights: Dict[str, int] = {}
    for entity in entities:
        for name, weight in ENTITY_SPECS[entity].field_weights.items():
            weights[name] = max(weight, weights.get(name, 0))
    return [name if weight == 1 else f"{name}^{weight}" for name, weight in weights.items()]


def get_spec(entity) -> EntitySpec:
    return ENTITY_SPECS[EntityType(entity)]


def index_name(entity) -> str:
    return get_spec(entity).index


def resolve_entities(type_: str) -> List[EntityType]:
    """'all' expands to every searchable entity type, in precedence order"""
    if type_ in (None, "", "all"):
        return list(SEARCHABLE_ENTITIES)
    return [EntityType(type_)]
