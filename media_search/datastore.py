"""
Read-side access to the primary datastore.

The index sync worker only ever asks for "rows with primary key > X, ascending,
at most N", plus one hashtag aggregation per pass. Readers are injected so the
worker never knows which backend it is talking to.
"""
import asyncio
import json
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, NamedTuple, Optional, Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .models import AuthorRef, GeoPoint, HashtagAggregate, PostRecord, UserRecord
from .scoring import extract_hashtags

logger = logging.getLogger(__name__)


class RowBatch(NamedTuple):
    """
    One cursor page. `last_key` is the key of the last row read, including rows
    that were skipped as malformed, and is None once the scan is exhausted.
    """
    records: list
    last_key: Optional[str]
    skipped: int = 0


class DatastoreReader(Protocol):
    async def fetch_posts(self, after: Optional[str], limit: int) -> RowBatch:
        ...

    async def fetch_users(self, after: Optional[str], limit: int) -> RowBatch:
        ...

    async def aggregate_hashtags(self) -> List[HashtagAggregate]:
        ...


def aggregate_hashtags(posts: Iterable[PostRecord]) -> List[HashtagAggregate]:
    """Group caption hashtags of live posts by tag, most used first"""
    counts: Dict[str, int] = defaultdict(int)
    last_used = {}
    for post in posts:
        if post.is_deleted:
            continue
        for tag in extract_hashtags(post.caption):
            counts[tag] += 1
            if tag not in last_used or post.created_at > last_used[tag]:
                last_used[tag] = post.created_at
    aggregates = [
        HashtagAggregate(tag=tag, count=count, last_used=last_used[tag])
        for tag, count in counts.items()
    ]
    aggregates.sort(key=lambda h: (-h.count, h.tag))
    return aggregates


class InMemoryDatastore:
    """Dictionary-backed reader, used for local development and tests"""

    def __init__(self, posts: Iterable[PostRecord] = (), users: Iterable[UserRecord] = ()):
        self.posts: Dict[str, PostRecord] = {p.id: p for p in posts}
        self.users: Dict[str, UserRecord] = {u.id: u for u in users}

    def upsert_post(self, post: PostRecord) -> None:
        self.posts[post.id] = post

    def upsert_user(self, user: UserRecord) -> None:
        self.users[user.id] = user

    @staticmethod
    def _page(rows: Dict[str, object], after: Optional[str], limit: int) -> list:
        keys = sorted(k for k in rows if after is None or k > after)
        return [rows[k] for k in keys[:limit]]

    async def fetch_posts(self, after: Optional[str], limit: int) -> RowBatch:
        page = self._page(self.posts, after, limit)
        expanded = []
        for post in page:
            author = self.users.get(post.author_id) if post.author_id else None
            if author is not None and post.author is None:
                post = post.model_copy(update={
                    "author": AuthorRef(id=author.id, username=author.username, display_name=author.display_name)
                })
            expanded.append(post)
        return RowBatch(expanded, page[-1].id if page else None)

    async def fetch_users(self, after: Optional[str], limit: int) -> RowBatch:
        page = self._page(self.users, after, limit)
        return RowBatch(page, page[-1].id if page else None)

    async def aggregate_hashtags(self) -> List[HashtagAggregate]:
        return aggregate_hashtags(self.posts.values())


# ── SQL backend ───────────────────────────────────────────────────────────────

POSTS_AFTER_SQL = """
    SELECT p.id, p.author_id, u.username AS author_username, u.display_name AS author_display_name,
           p.caption, p.content, p.tags, p.category, p.media_type, p.visibility, p.tenant_id,
           p.like_count, p.comment_count, p.share_count, p.view_count,
           p.created_at, p.updated_at, p.latitude, p.longitude, p.embedding, p.is_deleted
    FROM posts p
    LEFT JOIN users u ON u.id = p.author_id
    {where}
    ORDER BY p.id ASC
    LIMIT :limit
"""

USERS_AFTER_SQL = """
    SELECT id, username, display_name, first_name, last_name, bio, college, department, tenant_id,
           interests, skills, follower_count, following_count, post_count, verified,
           created_at, updated_at, last_active, embedding, is_deleted
    FROM users
    {where}
    ORDER BY id ASC
    LIMIT :limit
"""

HASHTAG_SOURCE_SQL = "SELECT id, caption, created_at FROM posts WHERE NOT is_deleted AND created_at IS NOT NULL AND caption LIKE '%#%'"


def _json_list(value) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return json.loads(value)


def _json_vector(value) -> Optional[List[float]]:
    vector = _json_list(value)
    return [float(v) for v in vector] if vector else None


class SQLDatastore:
    """
    Reader over a relational copy of the primary store (`posts` and `users`
    tables). SQLAlchemy calls are synchronous, so each query runs in a worker
    thread to keep the event loop free.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "SQLDatastore":
        return cls(create_engine(url, pool_pre_ping=True))

    def _query(self, sql: str, **params) -> list:
        with self.engine.connect() as conn:
            return list(conn.execute(text(sql), params).mappings())

    def _cursor_query(self, template: str, key_column: str, after: Optional[str], limit: int) -> list:
        if after is None:
            return self._query(template.format(where=""), limit=limit)
        return self._query(template.format(where=f"WHERE {key_column} > :after"), after=after, limit=limit)

    async def fetch_posts(self, after: Optional[str], limit: int) -> RowBatch:
        rows = await asyncio.to_thread(self._cursor_query, POSTS_AFTER_SQL, "p.id", after, limit)
        return self._to_batch(rows, self._post_from_row)

    async def fetch_users(self, after: Optional[str], limit: int) -> RowBatch:
        rows = await asyncio.to_thread(self._cursor_query, USERS_AFTER_SQL, "id", after, limit)
        return self._to_batch(rows, self._user_from_row)

    @staticmethod
    def _to_batch(rows: list, convert) -> RowBatch:
        """Malformed rows are logged and skipped; the cursor still moves past them."""
        records = []
        skipped = 0
        for row in rows:
            try:
                records.append(convert(row))
            except ValueError as e:
                skipped += 1
                logger.warning(f"Skipping malformed row {row['id']}: {e}")
        return RowBatch(records, str(rows[-1]["id"]) if rows else None, skipped)

    async def aggregate_hashtags(self) -> List[HashtagAggregate]:
        rows = await asyncio.to_thread(self._query, HASHTAG_SOURCE_SQL)
        posts = [
            PostRecord(id=str(row["id"]), caption=row["caption"], created_at=row["created_at"])
            for row in rows
        ]
        return aggregate_hashtags(posts)

    @staticmethod
    def _post_from_row(row) -> PostRecord:
        author = None
        if row["author_id"] is not None and row["author_username"] is not None:
            author = AuthorRef(
                id=str(row["author_id"]),
                username=row["author_username"],
                display_name=row["author_display_name"],
            )
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = GeoPoint(lat=row["latitude"], lon=row["longitude"])
        return PostRecord(
            id=str(row["id"]),
            author=author,
            author_id=str(row["author_id"]) if row["author_id"] is not None else None,
            caption=row["caption"],
            content=row["content"],
            tags=_json_list(row["tags"]),
            category=row["category"],
            media_type=row["media_type"],
            visibility=row["visibility"],
            tenant_id=row["tenant_id"],
            likes=row["like_count"] or 0,
            comments=row["comment_count"] or 0,
            shares=row["share_count"] or 0,
            views=row["view_count"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            location=location,
            embedding=_json_vector(row["embedding"]),
            is_deleted=bool(row["is_deleted"]),
        )

    @staticmethod
    def _user_from_row(row) -> UserRecord:
        return UserRecord(
            id=str(row["id"]),
            username=row["username"],
            display_name=row["display_name"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            bio=row["bio"],
            college=row["college"],
            department=row["department"],
            tenant_id=row["tenant_id"],
            interests=_json_list(row["interests"]),
            skills=_json_list(row["skills"]),
            followers=row["follower_count"] or 0,
            following=row["following_count"] or 0,
            posts=row["post_count"] or 0,
            verified=bool(row["verified"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_active=row["last_active"],
            embedding=_json_vector(row["embedding"]),
            is_deleted=bool(row["is_deleted"]),
        )


def create_datastore(url: str) -> DatastoreReader:
    if url:
        logger.info("Using SQL datastore reader")
        return SQLDatastore.from_url(url)
    logger.warning("DATASTORE_URL not set; using an empty in-memory datastore")
    return InMemoryDatastore()
