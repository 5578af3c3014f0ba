"""governor モジュールのテスト."""

import asyncio

import pytest

from collector.governor import RateGovernor

EPSILON = 1e-9


class TestSpacing:
    """同一ストアフロントへの発行間隔のテスト."""

    @pytest.mark.asyncio
    async def test_min_interval_between_leases(self):
        """同時に要求しても発行時刻の差が min_interval 以上になること."""
        governor = RateGovernor(global_limit=10, per_host_limit=10, min_interval=0.05)
        issued: list[float] = []

        async def take():
            async with governor.acquire("https://a.example") as lease:
                issued.append(lease.issued_at)

        await asyncio.gather(*(take() for _ in range(4)))

        issued.sort()
        gaps = [b - a for a, b in zip(issued, issued[1:])]
        assert len(gaps) == 3
        assert all(gap >= 0.05 - EPSILON for gap in gaps)

    @pytest.mark.asyncio
    async def test_hosts_are_independent(self):
        """別ストアフロントの間隔待ちに巻き込まれないこと."""
        governor = RateGovernor(global_limit=10, per_host_limit=10, min_interval=1.0)
        loop = asyncio.get_running_loop()
        start = loop.time()

        async with governor.acquire("https://a.example"):
            pass
        async with governor.acquire("https://b.example"):
            pass

        assert loop.time() - start < 0.5

    @pytest.mark.asyncio
    async def test_spacing_wait_does_not_hold_global_slot(self):
        """間隔待ちの間もグローバル枠が他のストアフロントに回ること."""
        governor = RateGovernor(global_limit=1, per_host_limit=2, min_interval=1.0)
        loop = asyncio.get_running_loop()

        async with governor.acquire("https://a.example"):
            pass

        async def second_a():
            async with governor.acquire("https://a.example"):
                pass

        pacing = asyncio.create_task(second_a())
        await asyncio.sleep(0.01)
        start = loop.time()
        async with governor.acquire("https://b.example"):
            pass
        elapsed = loop.time() - start
        pacing.cancel()
        await asyncio.gather(pacing, return_exceptions=True)

        assert elapsed < 0.5
        assert governor.in_flight == 0


class TestConcurrencyBound:
    """同時実行数の上限のテスト."""

    @pytest.mark.asyncio
    async def test_per_host_and_global_limits(self):
        governor = RateGovernor(global_limit=3, per_host_limit=2, min_interval=0)

        async def hold(host):
            async with governor.acquire(host):
                await asyncio.sleep(0.01)

        hosts = ["https://a.example", "https://b.example"] * 5
        await asyncio.gather(*(hold(h) for h in hosts))

        assert governor.host_peak("https://a.example") <= 2
        assert governor.host_peak("https://b.example") <= 2
        assert governor.peak_in_flight <= 3
        assert governor.in_flight == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        """ブロック内で例外が出ても枠が返ること."""
        governor = RateGovernor(global_limit=1, per_host_limit=1, min_interval=0)

        with pytest.raises(RuntimeError):
            async with governor.acquire("https://a.example"):
                raise RuntimeError("boom")

        assert governor.host_in_flight("https://a.example") == 0
        async with governor.acquire("https://a.example") as lease:
            assert lease.host == "https://a.example"

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self):
        """待機中のキャンセルで枠を消費しないこと."""
        governor = RateGovernor(global_limit=1, per_host_limit=1, min_interval=0)
        entered = asyncio.Event()

        async def holder():
            async with governor.acquire("https://a.example"):
                entered.set()
                await asyncio.sleep(10)

        async def waiter():
            async with governor.acquire("https://a.example"):
                pass

        holding = asyncio.create_task(holder())
        await entered.wait()
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        waiting.cancel()
        holding.cancel()
        await asyncio.gather(holding, waiting, return_exceptions=True)

        assert governor.in_flight == 0
        async with governor.acquire("https://a.example"):
            pass


class TestValidation:
    """引数検査のテスト."""

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            RateGovernor(global_limit=0)
        with pytest.raises(ValueError):
            RateGovernor(per_host_limit=0)
        with pytest.raises(ValueError):
            RateGovernor(min_interval=-1)

    def test_unknown_host(self):
        governor = RateGovernor()
        assert governor.host_in_flight("https://x.example") == 0
        assert governor.last_issued_at("https://x.example") is None
