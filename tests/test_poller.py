import asyncio

import pytest

from story_studio import CancellationToken, StatusPoller
from story_studio.errors import NetworkError
from story_studio.models import GenerationTask


def scripted_fetch(sequence, calls):
    """Status fetcher that replays `sequence` and records overlap between calls"""
    in_flight = {"count": 0, "max": 0}

    async def fetch(task_id):
        in_flight["count"] += 1
        in_flight["max"] = max(in_flight["max"], in_flight["count"])
        calls.append(task_id)
        await asyncio.sleep(0.005)
        in_flight["count"] -= 1
        item = sequence[min(len(calls) - 1, len(sequence) - 1)]
        if isinstance(item, Exception):
            raise item
        return item

    return fetch, in_flight


def task(status, progress, **extra):
    return GenerationTask(task_id="t1", status=status, progress=progress, **extra)


@pytest.mark.asyncio
async def test_emits_each_status_until_completed():
    calls = []
    sequence = [task("pending", 10), task("processing", 60), task("completed", 100)]
    fetch, in_flight = scripted_fetch(sequence, calls)
    poller = StatusPoller(fetch, interval_ms=1)

    updates = [t async for t in poller.poll("t1")]

    assert [u.status.value for u in updates] == ["pending", "processing", "completed"]
    assert len(calls) == 3
    assert in_flight["max"] == 1


@pytest.mark.asyncio
async def test_stops_on_failed_status():
    calls = []
    sequence = [task("processing", 20), task("failed", 20, error="GPU on fire"), task("completed", 100)]
    fetch, _ = scripted_fetch(sequence, calls)

    updates = [t async for t in StatusPoller(fetch, interval_ms=1).poll("t1")]

    assert updates[-1].error == "GPU on fire"
    assert len(updates) == 2


@pytest.mark.asyncio
async def test_no_updates_after_cancel():
    calls = []
    sequence = [task("pending", 10), task("processing", 60), task("completed", 100)]
    fetch, _ = scripted_fetch(sequence, calls)
    token = CancellationToken()
    updates = []

    async for update in StatusPoller(fetch, interval_ms=1).poll("t1", token):
        updates.append(update)
        token.cancel()

    assert len(updates) == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_fetch_drops_the_response():
    token = CancellationToken()
    updates = []

    async def fetch(task_id):
        token.cancel()
        return task("processing", 50)

    async for update in StatusPoller(fetch, interval_ms=1).poll("t1", token):
        updates.append(update)

    assert updates == []


@pytest.mark.asyncio
async def test_transport_error_stops_polling():
    calls = []
    sequence = [task("pending", 10), NetworkError(), task("completed", 100)]
    fetch, _ = scripted_fetch(sequence, calls)
    updates = []

    with pytest.raises(NetworkError):
        async for update in StatusPoller(fetch, interval_ms=1).poll("t1"):
            updates.append(update)

    assert len(updates) == 1
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_waits_interval_between_requests():
    calls = []
    sequence = [task("pending", 0), task("completed", 100)]
    fetch, _ = scripted_fetch(sequence, calls)
    loop = asyncio.get_running_loop()
    start = loop.time()

    [t async for t in StatusPoller(fetch, interval_ms=100).poll("t1")]

    assert loop.time() - start >= 0.1


@pytest.mark.asyncio
async def test_token_sleep_wakes_early_on_cancel():
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, token.cancel)
    start = loop.time()

    assert await token.sleep(5) is True
    assert loop.time() - start < 1
