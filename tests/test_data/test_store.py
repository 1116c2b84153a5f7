"""Tests for MarketDataStore against an in-memory SQLite database."""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest

from harvester.data.database import HarvestDatabase
from harvester.data.store import MarketDataStore
from harvester.exceptions import ContinuityError, PersistenceError
from harvester.models import Candle, DataKind, Trade

from tests.factories import at


def _candle(period_start_ms: int, close: str = "100.5") -> Candle:
    return Candle(
        period_start_ms=period_start_ms,
        open=Decimal("100.0"),
        high=Decimal("101.0"),
        low=Decimal("99.5"),
        close=Decimal(close),
        trade_count=42,
        base_volume=Decimal("12.5"),
        taker_buy_base_volume=Decimal("6.0"),
        quote_volume=Decimal("1256.25"),
        taker_buy_quote_volume=Decimal("603.0"),
    )


def _trade(trade_id: int) -> Trade:
    return Trade(
        trade_id=trade_id,
        executed_at_ms=at(0) + trade_id,
        price=Decimal("100.10"),
        quantity=Decimal("0.005"),
        quote_quantity=Decimal("0.5005"),
        is_buyer_maker=trade_id % 2 == 1,
    )


async def _count(database: HarvestDatabase, table: str) -> int:
    cursor = await database.db.execute(f"SELECT COUNT(*) FROM {table}")
    return (await cursor.fetchone())[0]


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_no_checkpoint_for_new_symbol(self, store: MarketDataStore) -> None:
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) is None

    @pytest.mark.asyncio
    async def test_append_sets_checkpoint_to_last_key(self, store: MarketDataStore) -> None:
        checkpoint = await store.append_and_checkpoint(
            "BTCUSDT", DataKind.CANDLES, [_candle(at(0)), _candle(at(1)), _candle(at(2))]
        )
        assert checkpoint == at(2)
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) == at(2)
        # Trades for the same symbol are tracked independently
        assert await store.last_checkpoint("BTCUSDT", DataKind.TRADES) is None

    @pytest.mark.asyncio
    async def test_checkpoints_and_tracked_symbols(self, store: MarketDataStore) -> None:
        await store.append_and_checkpoint("ETHUSDT", DataKind.CANDLES, [_candle(at(0))])
        await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(10)])

        assert await store.get_tracked_symbols() == ["BTCUSDT", "ETHUSDT"]
        assert await store.get_tracked_symbols(DataKind.TRADES) == ["BTCUSDT"]

        checkpoints = await store.get_checkpoints()
        assert [(c["symbol"], c["data_kind"], c["last_key"]) for c in checkpoints] == [
            ("BTCUSDT", DataKind.TRADES, 10),
            ("ETHUSDT", DataKind.CANDLES, at(0)),
        ]


class TestAtomicAppend:
    @pytest.mark.asyncio
    async def test_candles_round_trip_with_decimal_precision(
        self, store: MarketDataStore
    ) -> None:
        batch = [_candle(at(0), close="100.12345678"), _candle(at(1))]
        await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, batch)

        stored = await store.get_candles("BTCUSDT")
        assert stored == batch
        assert stored[0].close == Decimal("100.12345678")

        assert await store.get_candles("BTCUSDT", since_ms=at(1)) == [batch[1]]
        assert await store.get_candles("BTCUSDT", until_ms=at(0)) == [batch[0]]

    @pytest.mark.asyncio
    async def test_trades_round_trip(self, store: MarketDataStore) -> None:
        batch = [_trade(i) for i in range(5)]
        await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, batch)

        assert await store.get_trades("BTCUSDT") == batch
        assert await store.get_trades("BTCUSDT", from_id=3) == batch[3:]
        assert await store.get_trades("BTCUSDT", from_id=1, limit=2) == batch[1:3]

    @pytest.mark.asyncio
    async def test_batch_behind_checkpoint_is_rejected(
        self, store: MarketDataStore, database: HarvestDatabase
    ) -> None:
        await store.append_and_checkpoint(
            "BTCUSDT", DataKind.CANDLES, [_candle(at(0)), _candle(at(1))]
        )
        with pytest.raises(ContinuityError):
            await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, [_candle(at(1))])

        assert await _count(database, "candles") == 2
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) == at(1)

    @pytest.mark.asyncio
    async def test_trade_gap_after_checkpoint_is_rejected(
        self, store: MarketDataStore, database: HarvestDatabase
    ) -> None:
        await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(0), _trade(1)])
        with pytest.raises(ContinuityError, match="gap"):
            await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(3)])

        assert await _count(database, "trades") == 2
        assert await store.last_checkpoint("BTCUSDT", DataKind.TRADES) == 1

    @pytest.mark.asyncio
    async def test_candle_gap_after_checkpoint_is_accepted(self, store: MarketDataStore) -> None:
        await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, [_candle(at(0))])
        await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, [_candle(at(5))])
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) == at(5)

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back_rows_and_checkpoint(
        self, store: MarketDataStore, database: HarvestDatabase
    ) -> None:
        # A stray row with no checkpoint makes the multi-row insert collide
        await database.db.execute(
            "INSERT INTO candles VALUES ('BTCUSDT', ?, '1', '1', '1', '1', 1, '1', '1', '1', '1')",
            (at(1),),
        )
        await database.db.commit()

        with pytest.raises(PersistenceError):
            await store.append_and_checkpoint(
                "BTCUSDT", DataKind.CANDLES, [_candle(at(0)), _candle(at(1)), _candle(at(2))]
            )

        assert await _count(database, "candles") == 1
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) is None

    @pytest.mark.asyncio
    async def test_store_usable_after_rollback(self, store: MarketDataStore) -> None:
        await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(0)])
        with pytest.raises(ContinuityError):
            await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(0)])

        await store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(1)])
        assert await store.last_checkpoint("BTCUSDT", DataKind.TRADES) == 1

    @pytest.mark.asyncio
    async def test_empty_batch_is_a_programming_error(self, store: MarketDataStore) -> None:
        with pytest.raises(ValueError):
            await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, [])


class TestDatabaseLifecycle:
    def test_db_property_requires_connection(self) -> None:
        database = HarvestDatabase(":memory:")
        with pytest.raises(RuntimeError):
            _ = database.db

    @pytest.mark.asyncio
    async def test_context_manager_creates_schema(self, tmp_path) -> None:
        path = str(tmp_path / "nested" / "market.db")
        async with HarvestDatabase(path) as database:
            cursor = await database.db.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
            )
            tables = [row[0] for row in await cursor.fetchall()]
        assert {"candles", "trades", "checkpoints", "schema_version"} <= set(tables)


class TestConcurrentAccess:
    @staticmethod
    def _stall_before_checkpoint(database: HarvestDatabase) -> tuple:
        """Replacement for db.execute that hangs once the rows are written."""
        real_execute = database.db.execute
        reached = asyncio.Event()

        async def execute(sql, parameters=None):
            if sql.startswith("INSERT INTO checkpoints"):
                reached.set()
                await asyncio.Event().wait()
            return await real_execute(sql, parameters)

        return execute, reached

    @pytest.mark.asyncio
    async def test_cancelled_append_rolls_back(
        self, store: MarketDataStore, database: HarvestDatabase
    ) -> None:
        await store.append_and_checkpoint("BTCUSDT", DataKind.CANDLES, [_candle(at(0))])
        execute, reached = self._stall_before_checkpoint(database)

        with patch.object(database.db, "execute", new=execute):
            task = asyncio.create_task(
                store.append_and_checkpoint(
                    "BTCUSDT", DataKind.CANDLES, [_candle(at(1)), _candle(at(2))]
                )
            )
            await asyncio.wait_for(reached.wait(), timeout=1.0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert await _count(database, "candles") == 1
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) == at(0)

        # The lock was released and the same batch can be committed again
        await store.append_and_checkpoint(
            "BTCUSDT", DataKind.CANDLES, [_candle(at(1)), _candle(at(2))]
        )
        assert await store.last_checkpoint("BTCUSDT", DataKind.CANDLES) == at(2)

    @pytest.mark.asyncio
    async def test_reads_never_see_an_open_transaction(
        self, store: MarketDataStore, database: HarvestDatabase
    ) -> None:
        execute, reached = self._stall_before_checkpoint(database)

        with patch.object(database.db, "execute", new=execute):
            writer_task = asyncio.create_task(
                store.append_and_checkpoint("BTCUSDT", DataKind.TRADES, [_trade(0), _trade(1)])
            )
            await asyncio.wait_for(reached.wait(), timeout=1.0)

            reader = asyncio.create_task(store.get_trades("BTCUSDT"))
            await asyncio.sleep(0.05)
            assert not reader.done()

            writer_task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await writer_task
            assert await asyncio.wait_for(reader, timeout=1.0) == []

        assert await store.get_tracked_symbols() == []
