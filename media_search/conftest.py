from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from elasticsearch import ApiError

from media_search.models import AuthorRef, PostRecord, UserRecord

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def api_error(cls=ApiError, status=500, message="engine error"):
    """Build an elasticsearch ApiError subclass the way the client raises it"""
    meta = MagicMock()
    meta.status = status
    return cls(message=message, meta=meta, body={})


def search_response(hits, total=None, aggregations=None, took=3):
    """Minimal search API response body"""
    response = {
        "took": took,
        "hits": {
            "total": {"value": len(hits) if total is None else total, "relation": "eq"},
            "hits": hits,
        },
    }
    if aggregations is not None:
        response["aggregations"] = aggregations
    return response


def hit(doc_id, source=None, score=1.0, index="college_media_posts", highlight=None):
    result = {"_id": doc_id, "_index": index, "_score": score, "_source": source or {"id": doc_id}}
    if highlight is not None:
        result["highlight"] = highlight
    return result


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def es_mock():
    return AsyncMock()


@pytest.fixture
def sample_post():
    return PostRecord(
        id="p1",
        author=AuthorRef(id="u1", username="jdoe", display_name="Jane Doe"),
        author_id="u1",
        caption="Finals week survival kit #Study #coffee #study",
        content="Notes and snacks",
        tags=["exams"],
        category="academics",
        tenant_id="t1",
        likes=10,
        comments=2,
        shares=1,
        views=100,
        created_at=NOW,
        embedding=[0.1] * 128,
    )


@pytest.fixture
def sample_user():
    return UserRecord(
        id="u1",
        username="jdoe",
        display_name="Jane Doe",
        bio="CS major",
        college="Engineering",
        department="Computer Science",
        tenant_id="t1",
        followers=42,
        posts=7,
        verified=True,
        created_at=NOW - timedelta(days=365),
        updated_at=NOW - timedelta(days=2),
    )
