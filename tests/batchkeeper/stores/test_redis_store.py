from unittest.mock import AsyncMock, MagicMock

import pytest

from batchkeeper.stores import RedisStore
from batchkeeper.stores.redis_store import COMPARE_AND_DELETE_SCRIPT


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


def make_client():
    """Mock of `redis.asyncio.Redis` with a pipeline and a registered script."""
    client = MagicMock()
    client.script = AsyncMock(return_value=1)
    client.register_script.return_value = client.script

    pipeline = MagicMock()
    pipeline.__aenter__.return_value = pipeline
    pipeline.execute = AsyncMock(return_value=[])
    client.pipeline.return_value = pipeline
    client.pipe = pipeline
    return client


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def test_script_is_registered_once():
    client = make_client()

    RedisStore(client=client)

    client.register_script.assert_called_once_with(COMPARE_AND_DELETE_SCRIPT)


@pytest.mark.asyncio
async def test_set_passes_nx_and_expiry():
    client = make_client()
    client.set = AsyncMock(return_value=None)
    store = RedisStore(client=client)

    assert not await store.set("lock:x", "t", nx=True, ex=5)
    client.set.assert_awaited_once_with("lock:x", "t", nx=True, ex=5)


@pytest.mark.asyncio
async def test_compare_and_delete_runs_the_script():
    client = make_client()
    store = RedisStore(client=client)

    assert await store.compare_and_delete("lock:x", "t")
    client.script.assert_awaited_once_with(keys=["lock:x"], args=["t"])


@pytest.mark.asyncio
async def test_read_commands_convert_results():
    client = make_client()
    client.smembers = AsyncMock(return_value=["a", "b"])
    client.scard = AsyncMock(return_value=2)
    client.sismember = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={"pending": "1"})
    store = RedisStore(client=client)

    assert await store.smembers("s") == {"a", "b"}
    assert await store.scard("s") == 2
    assert await store.sismember("s", "a") is True
    assert await store.hgetall("h") == {"pending": "1"}


@pytest.mark.asyncio
async def test_delete_without_keys_skips_the_server():
    client = make_client()
    client.delete = AsyncMock()
    store = RedisStore(client=client)

    assert await store.delete() == 0
    client.delete.assert_not_awaited()


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transaction_uses_multi_exec_pipeline():
    client = make_client()
    client.pipe.execute.return_value = ["3", 1, ["j1"], True]
    store = RedisStore(client=client)

    results = await (
        store.transaction()
        .hget("BID-b", "pending")
        .scard("BID-b-failed")
        .smembers("BID-b-failed")
        .expire("BID-b", 10)
        .execute()
    )

    client.pipeline.assert_called_once_with(transaction=True)
    client.pipe.hget.assert_called_once_with("BID-b", "pending")
    client.pipe.expire.assert_called_once_with("BID-b", 10)
    assert results == ["3", 1, {"j1"}, True]


@pytest.mark.asyncio
async def test_transaction_hset_stringifies_values():
    client = make_client()
    client.pipe.execute.return_value = [1]
    store = RedisStore(client=client)

    await store.transaction().hset("BID-b", {"created_at": 1.5}).execute()

    client.pipe.hset.assert_called_once_with("BID-b", mapping={"created_at": "1.5"})


@pytest.mark.asyncio
async def test_close_closes_the_client():
    client = make_client()
    client.aclose = AsyncMock()
    store = RedisStore(client=client)

    await store.close()

    client.aclose.assert_awaited_once()
