import asyncio

import pytest
from elastic_transport import ConnectionError as ESConnectionError

from media_search.history import SearchHistoryRecorder
from media_search.indices import ENTITY_SPECS
from media_search.models import EntityType


@pytest.mark.asyncio
async def test_tracked_search_is_written_in_background(es_mock):
    recorder = SearchHistoryRecorder(es_mock)
    recorder.start()

    assert recorder.track("u1", "exams", {"category": "academics"}, 12, "t1") is True
    await recorder.flush()
    await recorder.stop()

    kwargs = es_mock.index.await_args.kwargs
    assert kwargs["index"] == ENTITY_SPECS[EntityType.SEARCH_HISTORY].index
    document = kwargs["document"]
    assert document["userId"] == "u1"
    assert document["query"] == "exams"
    assert document["filters"] == {"category": "academics"}
    assert document["resultCount"] == 12
    assert document["tenantId"] == "t1"
    assert "timestamp" in document
    assert recorder.recorded == 1


@pytest.mark.asyncio
async def test_full_queue_drops_without_blocking(es_mock):
    recorder = SearchHistoryRecorder(es_mock, max_queue_size=2)

    results = [recorder.track("u1", f"q{i}", {}, 0) for i in range(3)]

    assert results == [True, True, False]
    assert recorder.dropped == 1
    es_mock.index.assert_not_awaited()


@pytest.mark.asyncio
async def test_write_failure_is_dropped_not_retried(es_mock):
    es_mock.index.side_effect = ESConnectionError("down")
    recorder = SearchHistoryRecorder(es_mock)
    recorder.start()

    recorder.track("u1", "q", {}, 0)
    await recorder.flush()
    await recorder.stop()

    assert es_mock.index.await_count == 1
    assert recorder.dropped == 1
    assert recorder.recorded == 0


@pytest.mark.asyncio
async def test_unexpected_write_error_does_not_stop_draining(es_mock):
    es_mock.index.side_effect = [RuntimeError("serializer blew up"), None]
    recorder = SearchHistoryRecorder(es_mock)
    recorder.start()

    recorder.track("u1", "first", {}, 0)
    recorder.track("u1", "second", {}, 0)
    await asyncio.wait_for(recorder.flush(), timeout=1)

    assert recorder.is_running is True
    assert recorder.dropped == 1
    assert recorder.recorded == 1
    await recorder.stop()


@pytest.mark.asyncio
async def test_stop_discards_pending_events(es_mock):
    blocker = asyncio.Event()

    async def slow_index(**kwargs):
        await blocker.wait()

    es_mock.index.side_effect = slow_index
    recorder = SearchHistoryRecorder(es_mock)
    recorder.start()
    recorder.track("u1", "first", {}, 0)
    recorder.track("u1", "second", {}, 0)
    await asyncio.sleep(0)

    await recorder.stop()
    assert recorder.is_running is False
    assert recorder.dropped == 1
    assert recorder.queue.empty()
    await asyncio.wait_for(recorder.flush(), timeout=1)


@pytest.mark.asyncio
async def test_start_is_idempotent(es_mock):
    recorder = SearchHistoryRecorder(es_mock)
    recorder.start()
    task = recorder._task
    recorder.start()
    assert recorder._task is task
    await recorder.stop()
