"""分類付きリトライ制御.

transient の失敗だけを指数バックオフ（base * 2^attempt 秒）で再試行する。
blocked / permanent は 1 回で打ち切り、分類を付けたまま ProbeFailure として返す。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from collector.config import BACKOFF_BASE, MAX_ATTEMPTS
from collector.errors import FailureKind, ProbeError
from collector.models import ProbeFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryController:
    """1 回分のプロトコル実行をリトライで包む."""

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts は 1 以上で指定してください")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        """attempt 回目の失敗後に待つ秒数."""
        return self.backoff_base * (2 ** attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "",
    ) -> tuple[T | ProbeFailure, int]:
        """operation を実行し、(結果または ProbeFailure, 試行回数) を返す.

        待機はこのタスクだけを suspend する。キャンセルはそのまま伝播する。
        """
        last_error: ProbeError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(), attempt
            except ProbeError as e:
                last_error = e
            except httpx.HTTPError as e:
                last_error = ProbeError(FailureKind.TRANSIENT, f"通信エラー ({e!r})")

            if last_error.kind is not FailureKind.TRANSIENT:
                logger.warning("%s: %s（リトライしません）", label, last_error)
                return self._failure(last_error, attempt), attempt

            if attempt < self.max_attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    "%s: 試行 %d/%d 失敗 (%s)。%.1f 秒後に再試行",
                    label, attempt, self.max_attempts, last_error, delay,
                )
                await self._sleep(delay)

        logger.error("%s: %d 回試行して失敗: %s", label, self.max_attempts, last_error)
        return self._failure(last_error, self.max_attempts), self.max_attempts

    @staticmethod
    def _failure(error: ProbeError, attempts: int) -> ProbeFailure:
        message = error.args[0] if error.args else str(error)
        if error.kind is FailureKind.TRANSIENT and attempts > 1:
            message = f"{attempts} 回試行後も失敗: {message}"
        return ProbeFailure(
            kind=error.kind,
            message=message,
            attempts=attempts,
            status_code=error.status_code,
            raw=error.body,
        )
