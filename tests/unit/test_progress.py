from unittest.mock import AsyncMock, MagicMock

import pytest

from aggregator.pipeline.progress import ProgressStore
from aggregator.utils.retry import PersistenceUnavailableError


@pytest.mark.asyncio
async def test_memory_only_round_trip():
    progress = ProgressStore(None)
    assert not progress.available
    assert await progress.load("coverage") is None

    payload = {"cursor": 2, "cooldown": {"mugs": 1}}
    await progress.save("coverage", payload)
    payload["cooldown"]["mugs"] = 99

    loaded = await progress.load("coverage")
    assert loaded == {"cursor": 2, "cooldown": {"mugs": 1}}
    loaded["cursor"] = 50
    assert (await progress.load("coverage"))["cursor"] == 2

    await progress.clear("coverage")
    assert await progress.load("coverage") is None


@pytest.mark.asyncio
async def test_durable_progress_uses_store(store):
    progress = ProgressStore(store)
    await progress.save("backfill:ALIBABA", {"offset": 3})

    assert await store.load_progress("backfill:ALIBABA") == {"offset": 3}
    assert await ProgressStore(store).load("backfill:ALIBABA") == {"offset": 3}

    await progress.clear("backfill:ALIBABA")
    assert await store.load_progress("backfill:ALIBABA") is None


@pytest.mark.asyncio
async def test_non_durable_progress_never_writes(store):
    progress = ProgressStore(store, durable=False)
    await progress.save("coverage", {"cursor": 1})

    assert await progress.load("coverage") == {"cursor": 1}
    assert await store.load_progress("coverage") is None


@pytest.mark.asyncio
async def test_progress_degrades_to_memory_when_store_fails():
    failing = MagicMock()
    failing.save_progress = AsyncMock(side_effect=PersistenceUnavailableError("db down"))
    failing.load_progress = AsyncMock(side_effect=PersistenceUnavailableError("db down"))
    progress = ProgressStore(failing)

    await progress.save("coverage", {"cursor": 5})
    assert not progress.available

    assert await progress.load("coverage") == {"cursor": 5}
    failing.load_progress.assert_not_awaited()
