"""ストアフロントへのリクエスト流量制御.

制約:
  1. 全体の同時実行数 ≤ global_limit
  2. ストアフロント単位の同時実行数 ≤ per_host_limit
  3. 同一ストアフロントへの連続リクエストの発行間隔 ≥ min_interval

待機はすべて asyncio 上の協調的な suspend で行い、他のストアフロントの処理は止めない。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from collector.config import GLOBAL_CONCURRENCY, MIN_REQUEST_INTERVAL, PER_HOST_CONCURRENCY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """acquire で得られる実行権."""

    host: str
    issued_at: float  # event loop の monotonic 時刻


@dataclass
class _HostState:
    semaphore: asyncio.Semaphore
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_issued_at: float | None = None
    in_flight: int = 0
    peak_in_flight: int = 0


class RateGovernor:
    """グローバル + ストアフロント単位のセマフォと最小発行間隔."""

    def __init__(
        self,
        global_limit: int = GLOBAL_CONCURRENCY,
        per_host_limit: int = PER_HOST_CONCURRENCY,
        min_interval: float = MIN_REQUEST_INTERVAL,
    ) -> None:
        if global_limit < 1 or per_host_limit < 1:
            raise ValueError("同時実行数の上限は 1 以上で指定してください")
        if min_interval < 0:
            raise ValueError("min_interval は 0 以上で指定してください")
        self.global_limit = global_limit
        self.per_host_limit = per_host_limit
        self.min_interval = min_interval
        self._global = asyncio.Semaphore(global_limit)
        self._hosts: dict[str, _HostState] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    def _host(self, host: str) -> _HostState:
        # 初回アクセス時に生成し、governor の寿命（= 1 回の実行）の間保持する
        state = self._hosts.get(host)
        if state is None:
            state = _HostState(semaphore=asyncio.Semaphore(self.per_host_limit))
            self._hosts[host] = state
        return state

    @asynccontextmanager
    async def acquire(self, host: str) -> AsyncIterator[Lease]:
        """ストアフロント枠 → 発行間隔 → グローバル枠の順に待ってから実行権を渡す.

        発行間隔を待つ間はグローバル枠を持たない。
        ブロックを抜けると（正常終了・例外・キャンセルのいずれでも）両方の枠を返す。
        """
        state = self._host(host)
        async with state.semaphore:
            issued_at = await self._issue(state)
            state.in_flight += 1
            state.peak_in_flight = max(state.peak_in_flight, state.in_flight)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield Lease(host=host, issued_at=issued_at)
            finally:
                state.in_flight -= 1
                self.in_flight -= 1
                self._global.release()

    async def _issue(self, state: _HostState) -> float:
        """発行間隔を待ち、グローバル枠を取ったうえで発行時刻を記録する."""
        loop = asyncio.get_running_loop()
        async with state.lock:
            while state.last_issued_at is not None:
                remaining = state.last_issued_at + self.min_interval - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(remaining)
            # last_issued_at を書くのは lock の保持者だけ
            await self._global.acquire()
            issued_at = loop.time()
            state.last_issued_at = issued_at
            return issued_at

    def host_in_flight(self, host: str) -> int:
        state = self._hosts.get(host)
        return state.in_flight if state else 0

    def host_peak(self, host: str) -> int:
        state = self._hosts.get(host)
        return state.peak_in_flight if state else 0

    def last_issued_at(self, host: str) -> float | None:
        state = self._hosts.get(host)
        return state.last_issued_at if state else None
