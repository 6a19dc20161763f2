import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, text

from media_search.datastore import InMemoryDatastore, SQLDatastore, aggregate_hashtags, create_datastore
from media_search.models import PostRecord, UserRecord


def make_post(post_id, caption="", created_at=None, **kwargs):
    return PostRecord(id=post_id, caption=caption, created_at=created_at or datetime(2024, 5, 1), **kwargs)


class TestAggregateHashtags:
    def test_counts_and_orders_by_usage(self):
        posts = [
            make_post("1", "#a #b", datetime(2024, 5, 1)),
            make_post("2", "#B again", datetime(2024, 5, 3)),
            make_post("3", "#c", datetime(2024, 5, 2)),
        ]
        aggregates = aggregate_hashtags(posts)
        assert [(h.tag, h.count) for h in aggregates] == [("#b", 2), ("#a", 1), ("#c", 1)]
        assert aggregates[0].last_used == datetime(2024, 5, 3)

    def test_skips_deleted_posts(self):
        posts = [make_post("1", "#gone", is_deleted=True), make_post("2", "#kept")]
        assert [h.tag for h in aggregate_hashtags(posts)] == ["#kept"]


class TestInMemoryDatastore:
    @pytest.mark.asyncio
    async def test_cursor_pages_in_key_order(self):
        store = InMemoryDatastore(posts=[make_post(f"p{i:03d}") for i in range(5)])

        first = await store.fetch_posts(None, 2)
        second = await store.fetch_posts(first.last_key, 2)
        third = await store.fetch_posts(second.last_key, 2)
        rest = await store.fetch_posts(third.last_key, 2)

        assert [p.id for p in first.records + second.records + third.records] == ["p000", "p001", "p002", "p003", "p004"]
        assert rest.records == []
        assert rest.last_key is None

    @pytest.mark.asyncio
    async def test_expands_author(self, sample_user):
        store = InMemoryDatastore(posts=[make_post("p1", author_id="u1")], users=[sample_user])
        [post] = (await store.fetch_posts(None, 10)).records
        assert post.author.username == "jdoe"
        assert post.author.display_name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_upsert_is_visible_to_next_scan(self, sample_user):
        store = InMemoryDatastore()
        store.upsert_user(sample_user)
        assert [u.id for u in (await store.fetch_users(None, 10)).records] == ["u1"]


@pytest.fixture
def sql_store(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'primary.db'}",
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE users (id TEXT PRIMARY KEY, username TEXT, display_name TEXT, first_name TEXT,"
            " last_name TEXT, bio TEXT, college TEXT, department TEXT, tenant_id TEXT, interests TEXT,"
            " skills TEXT, follower_count INTEGER, following_count INTEGER, post_count INTEGER,"
            " verified BOOLEAN, created_at TIMESTAMP, updated_at TIMESTAMP, last_active TIMESTAMP,"
            " embedding TEXT, is_deleted BOOLEAN)"
        ))
        conn.execute(text(
            "CREATE TABLE posts (id TEXT PRIMARY KEY, author_id TEXT, caption TEXT, content TEXT, tags TEXT,"
            " category TEXT, media_type TEXT, visibility TEXT, tenant_id TEXT, like_count INTEGER,"
            " comment_count INTEGER, share_count INTEGER, view_count INTEGER, created_at TIMESTAMP,"
            " updated_at TIMESTAMP, latitude REAL, longitude REAL, embedding TEXT, is_deleted BOOLEAN)"
        ))
        conn.execute(text(
            "INSERT INTO users VALUES ('u1', 'jdoe', 'Jane Doe', 'Jane', 'Doe', 'CS major', 'Engineering',"
            " 'Computer Science', 't1', :interests, '[]', 42, 3, 7, 1, '2023-05-01 12:00:00',"
            " '2024-04-29 12:00:00', NULL, :embedding, 0)"
        ), {"interests": json.dumps(["ml"]), "embedding": json.dumps([0.5] * 128)})
        for i, (caption, deleted) in enumerate([("#exams today", 0), ("#exams again #coffee", 0), ("#gone", 1)]):
            conn.execute(text(
                "INSERT INTO posts VALUES (:id, 'u1', :caption, NULL, :tags, 'academics', NULL, NULL, 't1',"
                " 10, 2, 1, 100, :created_at, NULL, 40.0, -73.5, NULL, :deleted)"
            ), {
                "id": f"p{i}",
                "caption": caption,
                "tags": json.dumps(["campus"]),
                "created_at": (datetime(2024, 5, 1) + timedelta(hours=i)).isoformat(sep=" "),
                "deleted": deleted,
            })
    return SQLDatastore(engine)


class TestSQLDatastore:
    @pytest.mark.asyncio
    async def test_fetch_posts_cursor(self, sql_store):
        first = await sql_store.fetch_posts(None, 2)
        rest = await sql_store.fetch_posts(first.last_key, 2)

        assert [p.id for p in first.records] == ["p0", "p1"]
        assert first.last_key == "p1"
        assert [p.id for p in rest.records] == ["p2"]
        assert rest.records[0].is_deleted is True
        assert await sql_store.fetch_posts("p2", 2) == ([], None, 0)

    @pytest.mark.asyncio
    async def test_post_row_mapping(self, sql_store):
        [post] = (await sql_store.fetch_posts(None, 1)).records
        assert post.author.username == "jdoe"
        assert post.tags == ["campus"]
        assert post.likes == 10 and post.views == 100
        assert post.location.lat == 40.0
        assert post.embedding is None

    @pytest.mark.asyncio
    async def test_user_row_mapping(self, sql_store):
        [user] = (await sql_store.fetch_users(None, 10)).records
        assert user.id == "u1"
        assert user.followers == 42
        assert user.verified is True
        assert user.interests == ["ml"]
        assert len(user.embedding) == 128

    @pytest.mark.asyncio
    async def test_aggregate_hashtags_ignores_deleted(self, sql_store):
        aggregates = await sql_store.aggregate_hashtags()
        assert [(h.tag, h.count) for h in aggregates] == [("#exams", 2), ("#coffee", 1)]

    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped_and_cursor_moves_past_it(self, sql_store):
        with sql_store.engine.begin() as conn:
            conn.execute(text("UPDATE posts SET created_at = NULL WHERE id = 'p0'"))

        batch = await sql_store.fetch_posts(None, 1)
        assert batch.records == []
        assert batch.last_key == "p0"
        assert batch.skipped == 1

        rest = await sql_store.fetch_posts(batch.last_key, 10)
        assert [p.id for p in rest.records] == ["p1", "p2"]
        assert rest.skipped == 0

    @pytest.mark.asyncio
    async def test_user_without_username_is_skipped(self, sql_store):
        with sql_store.engine.begin() as conn:
            conn.execute(text("UPDATE users SET username = NULL WHERE id = 'u1'"))

        batch = await sql_store.fetch_users(None, 10)
        assert batch == ([], "u1", 1)

    @pytest.mark.asyncio
    async def test_aggregate_hashtags_skips_posts_without_timestamp(self, sql_store):
        with sql_store.engine.begin() as conn:
            conn.execute(text("UPDATE posts SET created_at = NULL WHERE id = 'p0'"))

        aggregates = await sql_store.aggregate_hashtags()
        assert [(h.tag, h.count) for h in aggregates] == [("#coffee", 1), ("#exams", 1)]


def test_create_datastore_defaults_to_memory():
    assert isinstance(create_datastore(""), InMemoryDatastore)
