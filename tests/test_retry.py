"""retry モジュールのテスト."""

import asyncio

import httpx
import pytest

from collector.errors import FailureKind, ProbeError
from collector.models import ProbeFailure
from collector.retry import RetryController


class _Recorder:
    """asyncio.sleep の代わりに待機秒数を記録する."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(failures: list[Exception], result="ok"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


class TestRetryController:
    """RetryController.run のテスト."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        """transient 2 回の後に成功すれば 3 回目の結果が返ること."""
        sleep = _Recorder()
        retry = RetryController(max_attempts=3, backoff_base=1.0, sleep=sleep)
        operation, calls = _flaky([
            ProbeError(FailureKind.TRANSIENT, "HTTP 503", 503),
            ProbeError(FailureKind.TRANSIENT, "HTTP 502", 502),
        ])

        result, attempts = await retry.run(operation, "test")

        assert result == "ok"
        assert attempts == 3
        assert calls["count"] == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_blocked_is_not_retried(self):
        sleep = _Recorder()
        retry = RetryController(sleep=sleep)
        operation, calls = _flaky([
            ProbeError(FailureKind.BLOCKED, "CHK003", 403, "CHK003"),
        ])

        result, attempts = await retry.run(operation)

        assert isinstance(result, ProbeFailure)
        assert result.kind is FailureKind.BLOCKED
        assert result.error.startswith("blocked: ")
        assert result.raw == "CHK003"
        assert attempts == 1
        assert calls["count"] == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_permanent_is_not_retried(self):
        retry = RetryController(sleep=_Recorder())
        operation, calls = _flaky([ProbeError(FailureKind.PERMANENT, "HTTP 404", 404)])

        result, attempts = await retry.run(operation)

        assert result.kind is FailureKind.PERMANENT
        assert result.status_code == 404
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = _Recorder()
        retry = RetryController(max_attempts=3, backoff_base=0.5, sleep=sleep)
        operation, calls = _flaky([
            ProbeError(FailureKind.TRANSIENT, f"HTTP 503 #{n}", 503) for n in range(5)
        ])

        result, attempts = await retry.run(operation)

        assert isinstance(result, ProbeFailure)
        assert result.kind is FailureKind.TRANSIENT
        assert result.attempts == 3
        assert "3 回試行後も失敗" in result.message
        assert attempts == 3
        assert calls["count"] == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self):
        sleep = _Recorder()
        retry = RetryController(max_attempts=2, sleep=sleep)
        operation, calls = _flaky([httpx.ConnectError("refused")])

        result, attempts = await retry.run(operation)

        assert result == "ok"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_real_backoff_waits(self):
        """実際の待機時間が base*2 + base*4 以上になること."""
        retry = RetryController(max_attempts=3, backoff_base=0.01)
        operation, _ = _flaky([
            ProbeError(FailureKind.TRANSIENT, "timeout"),
            ProbeError(FailureKind.TRANSIENT, "timeout"),
        ])
        loop = asyncio.get_running_loop()
        start = loop.time()

        result, attempts = await retry.run(operation)

        assert result == "ok"
        assert attempts == 3
        assert loop.time() - start >= 0.06 - 1e-3

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        """バックオフ待機中のキャンセルがそのまま伝播すること."""
        retry = RetryController(max_attempts=3, backoff_base=10)
        operation, _ = _flaky([ProbeError(FailureKind.TRANSIENT, "HTTP 503", 503)])

        task = asyncio.create_task(retry.run(operation))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            RetryController(max_attempts=0)
