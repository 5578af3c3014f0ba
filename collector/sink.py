"""プローブ結果の冪等な永続化.

同一キーの結果は captured_at が新しい（または同じ）ものだけが保存済みの行を置き換える。
古い結果が遅れて届いても巻き戻らない。
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Protocol

from collector.config import RAW_EXCERPT_LIMIT
from collector.models import ProbeIdentity, ProbeResult

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    async def upsert(self, result: ProbeResult) -> bool: ...


def bound_excerpt(raw: str | None, limit: int = RAW_EXCERPT_LIMIT) -> str | None:
    """診断用の生レスポンスを先頭 limit バイト（UTF-8）に切り詰める."""
    if raw is None:
        return None
    encoded = raw.encode("utf-8")
    if len(encoded) <= limit:
        return raw
    return encoded[:limit].decode("utf-8", errors="ignore")


class MemoryResultStore:
    """プロセス内の結果ストア（--dry-run とテスト用）.

    比較と置き換えを await を挟まずに行うため、同じキーへの同時 upsert でも
    captured_at が最新のものが残る。キーをまたいだロックは取らない。
    """

    def __init__(self) -> None:
        self.rows: dict[ProbeIdentity, ProbeResult] = {}
        self.writes = 0

    async def upsert(self, result: ProbeResult) -> bool:
        current = self.rows.get(result.identity)
        if current is not None and current.captured_at > result.captured_at:
            return False
        self.rows[result.identity] = result
        self.writes += 1
        return True

    def get(self, identity: ProbeIdentity) -> ProbeResult | None:
        return self.rows.get(identity)

    def __len__(self) -> int:
        return len(self.rows)


class ResultSink:
    """ProbeResult を 1 件ずつ永続化する."""

    def __init__(self, store: ResultStore, excerpt_limit: int = RAW_EXCERPT_LIMIT) -> None:
        self._store = store
        self._excerpt_limit = excerpt_limit

    async def upsert(self, result: ProbeResult) -> bool:
        """条件付きで書き込む.

        Returns:
            保存済みの行を作成・置換した場合 True。より新しい行があれば False。
        """
        bounded = replace(result, raw_excerpt=bound_excerpt(result.raw_excerpt, self._excerpt_limit))
        written = await self._store.upsert(bounded)
        if not written:
            logger.debug("より新しい結果があるためスキップ: %s", result.identity)
        return written
