"""Tests for the BudgetGovernor admission rules and its serialized gate."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from harvester.exceptions import RateLimitedError, TransientNetworkError
from harvester.ingestion.budget import BudgetGovernor

from tests.factories import FakeClock, at


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def paced_governor(clock: FakeClock) -> BudgetGovernor:
    return BudgetGovernor(max_weight=1200, pacing_delay=0.5, clock=clock)


class TestAdmit:
    def test_no_weight_used_means_no_wait(self, paced_governor: BudgetGovernor) -> None:
        paced_governor.update(at(5, 30), 0)
        assert paced_governor.admit() == 0.0

    def test_partial_weight_applies_pacing_delay(self, paced_governor: BudgetGovernor) -> None:
        paced_governor.update(at(5, 30), 1)
        assert paced_governor.admit() == 0.5

        paced_governor.update(at(5, 30), 1199)
        assert paced_governor.admit() == 0.5

    def test_exhausted_budget_waits_for_next_server_minute(
        self, paced_governor: BudgetGovernor
    ) -> None:
        # Server says 10:05:30, so the window reopens at 10:06:00
        paced_governor.update(at(5, 30), 1200)
        assert paced_governor.admit() == pytest.approx(30.0)

    def test_over_budget_counts_as_exhausted(self, paced_governor: BudgetGovernor) -> None:
        paced_governor.update(at(5, 45), 1500)
        assert paced_governor.admit() == pytest.approx(15.0)

    def test_wait_shrinks_as_monotonic_time_passes(
        self, paced_governor: BudgetGovernor, clock: FakeClock
    ) -> None:
        paced_governor.update(at(5, 30), 1200)
        clock.now += 10
        assert paced_governor.admit() == pytest.approx(20.0)
        clock.now += 25
        assert paced_governor.admit() == 0.0

    def test_wait_ignores_local_wall_clock(self, paced_governor: BudgetGovernor) -> None:
        paced_governor.update(at(5, 30), 1200)
        # A wildly skewed local wall clock must not change the answer
        with patch("harvester.ingestion.budget.time.time", return_value=0.0):
            assert paced_governor.admit() == pytest.approx(30.0)

    def test_update_overwrites_unconditionally(self, paced_governor: BudgetGovernor) -> None:
        paced_governor.update(at(5, 30), 1200)
        paced_governor.update(at(4, 0), 3)
        assert paced_governor.state.server_time_ms == at(4, 0)
        assert paced_governor.state.used_weight == 3
        assert paced_governor.admit() == 0.5

    def test_fresh_governor_admits_immediately(self) -> None:
        assert BudgetGovernor().admit() == 0.0


class TestGate:
    @pytest.mark.asyncio
    async def test_gate_sleeps_for_admission_delay(
        self, paced_governor: BudgetGovernor
    ) -> None:
        paced_governor.update(at(5, 30), 1200)
        with patch(
            "harvester.ingestion.budget.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            async with paced_governor.gate() as state:
                assert state.used_weight == 1200
        mock_sleep.assert_awaited_once()
        assert mock_sleep.await_args.args[0] == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_gate_does_not_sleep_with_zero_weight(
        self, paced_governor: BudgetGovernor
    ) -> None:
        with patch(
            "harvester.ingestion.budget.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            async with paced_governor.gate():
                pass
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gate_serializes_concurrent_tasks(self) -> None:
        governor = BudgetGovernor(pacing_delay=0.0)
        events: list[tuple[str, int]] = []

        async def request(n: int) -> None:
            async with governor.gate():
                events.append(("enter", n))
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                events.append(("exit", n))

        await asyncio.gather(*(request(n) for n in range(3)))

        for i in range(0, len(events), 2):
            assert events[i][0] == "enter"
            assert events[i + 1] == ("exit", events[i][1])

    @pytest.mark.asyncio
    async def test_cancelled_wait_releases_gate(self) -> None:
        governor = BudgetGovernor(pacing_delay=60.0)
        governor.update(at(5, 30), 5)

        async def request() -> None:
            async with governor.gate():
                pass

        task = asyncio.create_task(request())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        governor.update(at(5, 31), 0)
        await asyncio.wait_for(request(), timeout=1.0)


class TestHalt:
    @pytest.fixture
    def banned_governor(self, clock: FakeClock) -> BudgetGovernor:
        return BudgetGovernor(pacing_delay=0.0, ban_backoff=300.0, clock=clock)

    @staticmethod
    async def _hit_rate_limit(governor: BudgetGovernor, error: RateLimitedError) -> None:
        with pytest.raises(RateLimitedError):
            async with governor.gate():
                raise error

    @pytest.mark.asyncio
    async def test_rate_limit_inside_gate_blocks_later_requests(
        self, banned_governor: BudgetGovernor, clock: FakeClock
    ) -> None:
        await self._hit_rate_limit(
            banned_governor, RateLimitedError("banned", status=418, retry_after=120.0)
        )

        entered = False
        with pytest.raises(RateLimitedError) as exc_info:
            async with banned_governor.gate():
                entered = True
        assert entered is False
        assert exc_info.value.status == 418
        assert exc_info.value.retry_after == pytest.approx(120.0)

        clock.now += 121
        async with banned_governor.gate():
            entered = True
        assert entered is True
        assert banned_governor.halted_for == 0.0

    @pytest.mark.asyncio
    async def test_ban_backoff_applies_without_retry_after(
        self, banned_governor: BudgetGovernor, clock: FakeClock
    ) -> None:
        await self._hit_rate_limit(banned_governor, RateLimitedError("429", status=429))
        assert banned_governor.halted_for == pytest.approx(300.0)
        clock.now += 299
        with pytest.raises(RateLimitedError):
            async with banned_governor.gate():
                pass

    @pytest.mark.asyncio
    async def test_refused_requests_do_not_extend_halt(
        self, banned_governor: BudgetGovernor, clock: FakeClock
    ) -> None:
        await self._hit_rate_limit(banned_governor, RateLimitedError("429", retry_after=60.0))
        clock.now += 30
        with pytest.raises(RateLimitedError):
            async with banned_governor.gate():
                pass
        assert banned_governor.halted_for == pytest.approx(30.0)

    def test_halt_is_never_shortened(self, banned_governor: BudgetGovernor) -> None:
        banned_governor.halt(600.0, status=418)
        banned_governor.halt(10.0, status=429)
        assert banned_governor.halted_for == pytest.approx(600.0)

    @pytest.mark.asyncio
    async def test_other_errors_do_not_halt(self, banned_governor: BudgetGovernor) -> None:
        with pytest.raises(TransientNetworkError):
            async with banned_governor.gate():
                raise TransientNetworkError("reset")
        assert banned_governor.halted_for == 0.0
