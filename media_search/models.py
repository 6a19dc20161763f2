from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EMBEDDING_DIMS = 128


class EntityType(str, Enum):
    POSTS = "posts"
    USERS = "users"
    HASHTAGS = "hashtags"
    SEARCH_HISTORY = "search_history"


class SortStrategy(str, Enum):
    RELEVANCE = "relevance"
    DATE = "date"
    POPULAR = "popular"
    ENGAGEMENT = "engagement"


# ── Source rows (read from the primary datastore) ─────────────────────────────

class AuthorRef(BaseModel):
    id: str
    username: Optional[str] = None
    display_name: Optional[str] = None


class GeoPoint(BaseModel):
    lat: float
    lon: float


class PostRecord(BaseModel):
    id: str
    author: Optional[AuthorRef] = None
    author_id: Optional[str] = None
    caption: Optional[str] = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    media_type: Optional[str] = None
    visibility: Optional[str] = None
    tenant_id: Optional[str] = None
    likes: int = 0
    comments: int = 0
    shares: int = 0
    views: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    location: Optional[GeoPoint] = None
    embedding: Optional[List[float]] = None
    is_deleted: bool = False


class UserRecord(BaseModel):
    id: str
    username: str
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    college: Optional[str] = None
    department: Optional[str] = None
    tenant_id: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    followers: int = 0
    following: int = 0
    posts: int = 0
    verified: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    embedding: Optional[List[float]] = None
    is_deleted: bool = False


class HashtagAggregate(BaseModel):
    tag: str
    count: int
    last_used: datetime


# ── Search documents (stored in the engine, camelCase field names) ────────────

class SearchDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str

    def to_source(self) -> Dict[str, Any]:
        """JSON-ready document body as stored in the engine"""
        return self.model_dump(mode="json", by_alias=True)


class PostDocument(SearchDocument):
    author_id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    caption: Optional[str] = None
    content: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    hashtags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    media_type: str = "text"
    visibility: str = "public"
    is_public: bool = True
    tenant_id: Optional[str] = None
    likes: int = 0
    comments: int = 0
    shares: int = 0
    views: int = 0
    engagement_score: float = 0.0
    popularity_score: float = 0.0
    created_at: datetime
    updated_at: Optional[datetime] = None
    location: Optional[GeoPoint] = None
    embedding: Optional[List[float]] = None


class UserDocument(SearchDocument):
    username: str
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    college: Optional[str] = None
    department: Optional[str] = None
    tenant_id: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    followers: int = 0
    following: int = 0
    posts: int = 0
    verified: bool = False
    created_at: datetime
    last_active: Optional[datetime] = None
    embedding: Optional[List[float]] = None


class HashtagDocument(SearchDocument):
    tag: str
    count: int
    last_used: datetime
    trend_score: float


class SearchHistoryEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str
    query: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    result_count: int = 0
    tenant_id: Optional[str] = None
    timestamp: datetime


# ── Query options and results ─────────────────────────────────────────────────

class SearchFilters(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    category: Optional[str] = None
    media_type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    verified: Optional[bool] = None
    hashtags: List[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    total: int = 0
    hits: List[Dict[str, Any]] = Field(default_factory=list)
    facets: Optional[Dict[str, List[Dict[str, Any]]]] = None
    took: int = 0


class BulkResult(BaseModel):
    success: bool
    indexed: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class SyncReport(BaseModel):
    entity: EntityType
    synced: int = 0
    deleted: int = 0
    failed: int = 0
    error: Optional[str] = None
