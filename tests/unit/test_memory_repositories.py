"""Tests for the in-memory stores and the Mongo watermark store."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.api_keeper.adapters.external.database.processing_offset_repository_mongodb import (
    ProcessingOffsetRepositoryMongoDB,
)
from apps.api_keeper.adapters.external.memory.execution_repository_memory import ExecutionRepositoryMemory
from apps.api_keeper.adapters.external.memory.processing_offset_repository_memory import (
    ProcessingOffsetRepositoryMemory,
)
from apps.api_keeper.adapters.external.memory.signal_repository_memory import SignalRepositoryMemory
from apps.api_keeper.core.domain.entities.execution_entity import ExecutionAttemptEntity
from apps.api_keeper.core.domain.entities.signal_entity import SignalEntity
from apps.api_keeper.core.domain.enums.agent_enums import ExecutionOutcome, ExecutionPath

POOL = "0x" + "cd" * 32


def _attempt(agent_id: int, ts: int, ok: bool = True, path=ExecutionPath.ON_CHAIN) -> ExecutionAttemptEntity:
    return ExecutionAttemptEntity(
        agent_id=agent_id,
        rule_index=0,
        timestamp=ts,
        path=path,
        outcome=ExecutionOutcome.SUCCESS if ok else ExecutionOutcome.FAILED,
    )


class TestExecutionRecorder:

    @pytest.mark.asyncio
    async def test_history_is_capped_oldest_first_out(self) -> None:
        recorder = ExecutionRepositoryMemory(limit=1000)
        for ts in range(1, 1006):
            await recorder.record(_attempt(agent_id=1, ts=ts))

        assert await recorder.count() == 1000
        newest = await recorder.query(limit=1)
        assert newest[0].timestamp == 1005
        everything = await recorder.query(limit=1000)
        assert everything[-1].timestamp == 6

    @pytest.mark.asyncio
    async def test_query_filters_by_agent_most_recent_first(self) -> None:
        recorder = ExecutionRepositoryMemory()
        await recorder.record(_attempt(agent_id=1, ts=1))
        await recorder.record(_attempt(agent_id=2, ts=2))
        await recorder.record(_attempt(agent_id=1, ts=3))

        items = await recorder.query(agent_id=1)

        assert [i.timestamp for i in items] == [3, 1]
        assert all(i.id for i in items)
        assert await recorder.count(agent_id=2) == 1

    @pytest.mark.asyncio
    async def test_stats(self) -> None:
        recorder = ExecutionRepositoryMemory()
        await recorder.record(_attempt(1, 1, ok=True, path=ExecutionPath.OFF_CHAIN))
        await recorder.record(_attempt(1, 2, ok=False))
        await recorder.record(_attempt(1, 3, ok=True))

        assert await recorder.stats() == {
            "total": 3, "successful": 2, "failed": 1, "off_chain": 1, "on_chain": 2,
        }


class TestSignalStore:

    @pytest.mark.asyncio
    async def test_latest_is_the_newest_not_the_last_written(self, signals) -> None:
        newer = SignalEntity(pool_id=POOL, signal_type=0, magnitude=10, timestamp=200)
        older = SignalEntity(pool_id=POOL, signal_type=0, magnitude=99, timestamp=100)

        assert await signals.save_signal(newer)
        assert not await signals.save_signal(older)

        assert (await signals.get_latest_signal(POOL)).magnitude == 10
        assert [s.timestamp for s in await signals.list_history(POOL)] == [100, 200]

    @pytest.mark.asyncio
    async def test_same_log_is_stored_once(self, signals) -> None:
        signal = SignalEntity(
            pool_id=POOL, signal_type=0, magnitude=10, timestamp=1, block_number=5, log_index=1, tx_hash="0x01",
        )
        assert await signals.save_signal(signal)
        assert not await signals.save_signal(signal.model_copy())
        assert len(await signals.list_history(POOL)) == 1

    @pytest.mark.asyncio
    async def test_pools_are_independent(self, signals) -> None:
        other = "0x" + "ef" * 32
        await signals.save_signal(SignalEntity(pool_id=POOL, signal_type=0, magnitude=1, timestamp=1))
        assert await signals.get_latest_signal(other) is None

    @pytest.mark.asyncio
    async def test_dedup_keys_are_bounded_by_history(self) -> None:
        signals = SignalRepositoryMemory(history_limit=10)
        for ts in range(1, 5_001):
            await signals.save_signal(SignalEntity(pool_id=POOL, signal_type=0, magnitude=ts, timestamp=ts))

        assert len(await signals.list_history(POOL, limit=100)) == 10
        assert signals.tracked_keys(POOL) == 10
        # a signal still in the window is still a duplicate
        latest = SignalEntity(pool_id=POOL, signal_type=0, magnitude=5_000, timestamp=5_000)
        assert not await signals.save_signal(latest)
        assert signals.tracked_keys(POOL) == 10


class TestWatermarks:

    @pytest.mark.asyncio
    async def test_memory_watermark_never_moves_back(self) -> None:
        offsets = ProcessingOffsetRepositoryMemory()
        assert await offsets.get_last_block("s") is None
        await offsets.set_last_block("s", 250)
        await offsets.set_last_block("s", 100)
        assert await offsets.get_last_block("s") == 250

    @pytest.mark.asyncio
    async def test_mongo_watermark_uses_max(self) -> None:
        collection = MagicMock()
        collection.update_one = AsyncMock()
        collection.find_one = AsyncMock(return_value={"last_block": 250})
        offsets = ProcessingOffsetRepositoryMongoDB({"processing_offsets": collection})

        await offsets.set_last_block("s", 100)

        key, update = collection.update_one.await_args.args
        assert key == {"stream": "s"}
        assert update["$max"] == {"last_block": 100}
        assert collection.update_one.await_args.kwargs["upsert"] is True
        assert await offsets.get_last_block("s") == 250
