import pytest
from unittest.mock import AsyncMock, patch
from elasticsearch import BadRequestError, NotFoundError
from elastic_transport import ConnectionError as ESConnectionError

from media_search import engine
from media_search.conftest import api_error
from media_search.indices import ENTITY_SPECS, INDEX_SETTINGS, EntitySpec
from media_search.models import EntityType

POSTS = ENTITY_SPECS[EntityType.POSTS]


@pytest.mark.asyncio
async def test_ensure_index_creates_index_when_missing():
    es_mock = AsyncMock()
    es_mock.indices.exists.return_value = False

    created = await engine.ensure_index(es_mock, POSTS)
    assert created is True
    es_mock.indices.exists.assert_awaited_once_with(index=POSTS.index)
    es_mock.indices.create.assert_awaited_once_with(
        index=POSTS.index, settings=INDEX_SETTINGS, mappings=POSTS.mapping
    )


@pytest.mark.asyncio
async def test_ensure_index_skips_creation_if_exists():
    es_mock = AsyncMock()
    es_mock.indices.exists.return_value = True

    created = await engine.ensure_index(es_mock, POSTS)
    assert created is False
    es_mock.indices.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_index_invalid_name_raises():
    es_mock = AsyncMock()
    spec = EntitySpec(entity=EntityType.POSTS, index="INVALID_INDEX", mapping={})
    with pytest.raises(ValueError):
        await engine.ensure_index(es_mock, spec)
    es_mock.indices.exists.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_index_bad_request_is_raised():
    es_mock = AsyncMock()
    es_mock.indices.exists.side_effect = api_error(BadRequestError, status=400)

    with pytest.raises(BadRequestError):
        await engine.ensure_index(es_mock, POSTS)
    es_mock.indices.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_index_connection_error_retries():
    es_mock = AsyncMock()
    es_mock.indices.exists.side_effect = [ESConnectionError("fail"), False]

    with patch("asyncio.sleep", new=AsyncMock()):
        await engine.ensure_index(es_mock, POSTS)
    assert es_mock.indices.exists.await_count == 2
    es_mock.indices.create.assert_awaited_once()


@pytest.mark.asyncio
async def test_ensure_indices_covers_every_index():
    es_mock = AsyncMock()
    es_mock.indices.exists.return_value = False

    created = await engine.ensure_indices(es_mock)
    assert set(created) == {spec.index for spec in ENTITY_SPECS.values()}
    assert all(created.values())
    assert es_mock.indices.create.await_count == len(ENTITY_SPECS)


@pytest.mark.asyncio
async def test_recreate_index_deletes_then_creates():
    es_mock = AsyncMock()

    await engine.recreate_index(es_mock, POSTS)
    es_mock.indices.delete.assert_awaited_once_with(index=POSTS.index, ignore_unavailable=True)
    es_mock.indices.create.assert_awaited_once()


@pytest.mark.asyncio
async def test_health_check_reports_cluster():
    es_mock = AsyncMock()
    es_mock.cluster.health.return_value = {"status": "green", "number_of_nodes": 3, "active_shards": 12}

    health = await engine.health_check(es_mock)
    assert health == {"status": "green", "numberOfNodes": 3, "activeShards": 12}


@pytest.mark.asyncio
async def test_health_check_returns_none_when_unreachable():
    es_mock = AsyncMock()
    es_mock.cluster.health.side_effect = ESConnectionError("down")

    assert await engine.health_check(es_mock) is None


@pytest.mark.asyncio
async def test_index_stats_zero_for_unreadable_index():
    es_mock = AsyncMock()

    async def fake_stats(index):
        if index == POSTS.index:
            raise api_error(NotFoundError, status=404)
        return {"_all": {"primaries": {"docs": {"count": 5}, "store": {"size_in_bytes": 2048}}}}

    es_mock.indices.stats.side_effect = fake_stats
    stats = await engine.get_index_stats(es_mock)
    assert stats[POSTS.index] == {"docs": 0, "size": 0}
    assert stats[ENTITY_SPECS[EntityType.USERS].index] == {"docs": 5, "size": 2048}


def test_create_client_uses_config(monkeypatch):
    captured = {}

    class FakeClient:
        def __init__(self, **kwargs):
            captured.update(kwargs)

    monkeypatch.setattr(engine, "AsyncElasticsearch", FakeClient)
    engine.create_client()
    assert captured["hosts"] == [engine.config.es_host]
    assert captured["request_timeout"] == engine.config.es_request_timeout
    assert captured["max_retries"] == engine.config.es_max_retries
