"""在庫確認スイープのオーケストレーション.

処理フロー（ストアフロントごと）:
  1. セッション作成・ウォームアップ
  2. カタログ上の追跡商品と拠点を取得
  3. 販売チャネルごとに、拠点 × 商品バッチをワーカープールで実行
  4. 結果を 1 件ずつ ResultSink に upsert
  5. 次のストアフロントまでクールダウン

1 件の失敗はその単位の中で記録して処理を続け、ストアフロント単位の失敗は
そのストアフロントだけを打ち切る。呼び出し元まで届くのは ConfigError とキャンセルのみ。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Protocol

from collector.config import BATCH_SIZE, DEFAULT_SALES_CHANNEL, STOREFRONT_COOLDOWN, WORKERS
from collector.driver import ProbeDriver
from collector.errors import ConfigError, FailureKind
from collector.models import (
    CatalogItem,
    FulfillmentMode,
    FulfillmentPoint,
    ItemOutcome,
    ProbeFailure,
    ProbeResult,
    ProbeTask,
    RunSummary,
    Storefront,
    StorefrontSummary,
    TrackedItem,
    Unavailable,
)
from collector.retry import RetryController
from collector.session import SessionContext, SessionStore
from collector.sink import ResultSink

logger = logging.getLogger(__name__)


class Catalog(Protocol):
    async def get_enabled_storefronts(self, host: str | None = None) -> list[Storefront]: ...

    async def get_tracked_items(self) -> list[TrackedItem]: ...

    async def get_catalog_items(
        self, storefront: Storefront, tracked: list[TrackedItem],
    ) -> list[CatalogItem]: ...

    async def get_fulfillment_points(self, storefront: Storefront) -> list[FulfillmentPoint]: ...

    async def report_option_id(
        self, storefront: Storefront, point: FulfillmentPoint, option_id: str,
    ) -> None: ...


def chunked(items: list[CatalogItem], size: int) -> Iterator[list[CatalogItem]]:
    """商品を size 件ずつのバッチに分ける."""
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ProbeOrchestrator:
    """1 回のスイープを実行して RunSummary を返す."""

    def __init__(
        self,
        catalog: Catalog,
        sink: ResultSink,
        sessions: SessionStore,
        driver: ProbeDriver,
        retry: RetryController | None = None,
        *,
        workers: int = WORKERS,
        batch_size: int = BATCH_SIZE,
        cooldown: float = STOREFRONT_COOLDOWN,
        mode: FulfillmentMode | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers は 1 以上で指定してください")
        if batch_size < 1:
            raise ValueError("batch_size は 1 以上で指定してください")
        self._catalog = catalog
        self._sink = sink
        self._sessions = sessions
        self._driver = driver
        self._retry = retry or RetryController()
        self.workers = workers
        self.batch_size = batch_size
        self.cooldown = cooldown
        self.mode = mode  # None ならストアフロントごとの設定に従う

    async def run_sweep(
        self,
        storefront_filter: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunSummary:
        """全ストアフロントを順に処理する.

        Args:
            storefront_filter: 指定すればそのホストだけを処理する
            cancel_event: セットされると新しい単位を投入せず、通信中の単位も中断する

        Raises:
            ConfigError: 対象のストアフロントが 1 件もない場合（通信前）
        """
        cancel_event = cancel_event or asyncio.Event()
        summary = RunSummary()
        logger.info("=== 在庫確認スイープ 開始 ===")

        storefronts = await self._catalog.get_enabled_storefronts(storefront_filter)
        if not storefronts:
            target = f" (host={storefront_filter})" if storefront_filter else ""
            raise ConfigError(f"有効なストアフロントがありません{target}")
        summary.total_storefronts = len(storefronts)

        tracked = await self._catalog.get_tracked_items()
        if not tracked:
            logger.warning("追跡対象の商品がありません。終了します。")
            summary.errors.append("追跡対象の商品がありません")
            summary.completed_at = datetime.now(timezone.utc)
            return summary

        logger.info("ストアフロント: %d 件, 追跡商品: %d 件", len(storefronts), len(tracked))

        for position, storefront in enumerate(storefronts):
            if cancel_event.is_set():
                summary.cancelled = True
                break
            if position > 0 and self.cooldown > 0:
                logger.info("クールダウン %.1f 秒", self.cooldown)
                if await self._wait_or_cancel(cancel_event, self.cooldown):
                    summary.cancelled = True
                    break

            sf_summary = StorefrontSummary(host=storefront.host)
            summary.per_storefront[storefront.host] = sf_summary
            try:
                finished = await self._run_storefront(storefront, tracked, sf_summary, cancel_event)
            except Exception as e:
                logger.exception("ストアフロント処理エラー: %s", storefront.display_name)
                sf_summary.error = str(e)
                summary.errors.append(f"{storefront.host}: {e}")
                finished = True
            summary.errors.extend(f"{storefront.host}: {m}" for m in sf_summary.write_errors)
            if not finished:
                summary.cancelled = True
                break

        summary.completed_at = datetime.now(timezone.utc)
        self._log_report(summary)
        return summary

    @staticmethod
    async def _wait_or_cancel(cancel_event: asyncio.Event, timeout: float) -> bool:
        """timeout 秒待つ。途中でキャンセルされたら True."""
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_storefront(
        self,
        storefront: Storefront,
        tracked: list[TrackedItem],
        sf_summary: StorefrontSummary,
        cancel_event: asyncio.Event,
    ) -> bool:
        """1 ストアフロント分を処理する. キャンセルで中断した場合 False."""
        logger.info("--- %s ---", storefront.display_name)
        ctx = self._sessions.get_or_create(storefront)
        warmup = await self._sessions.warmup(storefront, ctx)
        sf_summary.warmup_ok = warmup.succeeded
        sf_summary.warmup_failed = warmup.failed

        items = await self._catalog.get_catalog_items(storefront, tracked)
        points = await self._catalog.get_fulfillment_points(storefront)
        if not items or not points:
            logger.warning(
                "%s: 確認対象がありません (商品=%d, 拠点=%d)",
                storefront.display_name, len(items), len(points),
            )
            return True
        logger.info("%s: 商品 %d 件 × 拠点 %d 件", storefront.display_name, len(items), len(points))

        reported: set[str] = set()
        for channel in storefront.sales_channels or (DEFAULT_SALES_CHANNEL,):
            if cancel_event.is_set():
                return False
            self._sessions.bind_sales_channel(ctx, channel)
            units = [(point, batch) for point in points for batch in chunked(items, self.batch_size)]
            if not await self._run_units(ctx, channel, units, sf_summary, reported, cancel_event):
                return False

        sf_summary.points_processed = len(points)
        return True

    async def _run_units(
        self,
        ctx: SessionContext,
        channel: int,
        units: list[tuple[FulfillmentPoint, list[CatalogItem]]],
        sf_summary: StorefrontSummary,
        reported: set[str],
        cancel_event: asyncio.Event,
    ) -> bool:
        """単位をワーカープールで実行する. キャンセルで中断した場合 False.

        キャンセルで中断するのは通信中の単位だけで、結果が出た単位は
        保存と集計まで済ませてから戻る。
        """
        queue = iter(units)
        persisting: set[asyncio.Task] = set()

        async def worker() -> None:
            for point, batch in queue:
                if cancel_event.is_set():
                    return
                outcome, attempts = await self._run_unit(ctx, channel, point, batch)
                task = asyncio.create_task(
                    self._persist_unit(ctx, channel, point, batch, outcome, attempts, sf_summary, reported),
                )
                persisting.add(task)
                task.add_done_callback(persisting.discard)
                await asyncio.shield(task)

        workers = [asyncio.create_task(worker()) for _ in range(min(self.workers, len(units)))]
        watcher = asyncio.create_task(cancel_event.wait())
        try:
            pending = set(workers)
            while pending:
                done, _ = await asyncio.wait(
                    pending | {watcher}, return_when=asyncio.FIRST_COMPLETED,
                )
                if watcher in done:
                    logger.warning("キャンセル要求を受けました。実行中の確認を中断します")
                    return False
                for task in done:
                    task.result()
                pending -= done
            return not cancel_event.is_set()
        finally:
            watcher.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(watcher, *workers, return_exceptions=True)
            if persisting:
                await asyncio.gather(*persisting, return_exceptions=True)

    async def _run_unit(
        self,
        ctx: SessionContext,
        channel: int,
        point: FulfillmentPoint,
        batch: list[CatalogItem],
    ) -> tuple[dict[tuple[str, str], ItemOutcome] | ProbeFailure, int]:
        """1 単位分のチェックアウト操作をリトライ付きで実行する."""
        label = f"{ctx.storefront.host} point={point.key} sc={channel} items={len(batch)}"
        try:
            outcome, attempts = await self._retry.run(
                lambda: self._driver.probe(ctx, point, batch, channel, self.mode), label,
            )
        except Exception as e:
            logger.exception("予期しないエラー: %s", label)
            outcome = ProbeFailure(
                kind=FailureKind.PERMANENT, message=f"予期しないエラー ({e!r})", attempts=1,
            )
            attempts = 1
        return outcome, attempts

    async def _persist_unit(
        self,
        ctx: SessionContext,
        channel: int,
        point: FulfillmentPoint,
        batch: list[CatalogItem],
        outcome: dict[tuple[str, str], ItemOutcome] | ProbeFailure,
        attempts: int,
        sf_summary: StorefrontSummary,
        reported: set[str],
    ) -> None:
        storefront = ctx.storefront
        label = f"{storefront.host} point={point.key} sc={channel}"
        captured_at = datetime.now(timezone.utc)
        for item in batch:
            task = ProbeTask(storefront=storefront, point=point, item=item, sales_channel=channel)
            if isinstance(outcome, ProbeFailure):
                item_outcome = outcome
            else:
                item_outcome = outcome.get(item.key) or Unavailable(
                    reason="partial data: no outcome for item", partial_data=True,
                )
            result = ProbeResult.from_outcome(task, item_outcome, captured_at, attempts)

            try:
                await self._sink.upsert(result)
            except Exception as e:
                logger.exception("結果の保存に失敗: %s sku=%s", label, item.sku_id)
                sf_summary.record_write_failure(f"保存失敗 point={point.key} sku={item.sku_id}: {e}")
                continue
            sf_summary.record(result)

            status = "在庫あり" if result.available else (result.error or "在庫なし")
            logger.info("  %s/%s sku=%s → %s", storefront.host, point.key, item.sku_id, status)

            option_id = getattr(item_outcome, "option_id", None)
            if option_id:
                await self._report_option(storefront, point, option_id, sf_summary, reported)

    async def _report_option(
        self,
        storefront: Storefront,
        point: FulfillmentPoint,
        option_id: str,
        sf_summary: StorefrontSummary,
        reported: set[str],
    ) -> None:
        """新しく判明した option id を 1 回だけカタログに書き戻す（失敗してもログのみ）."""
        if option_id == point.option_id or point.key in reported:
            return
        reported.add(point.key)
        sf_summary.discovered_options += 1
        try:
            await self._catalog.report_option_id(storefront, point, option_id)
        except Exception:
            logger.exception("option id の書き戻しに失敗: %s/%s", storefront.host, point.key)

    @staticmethod
    def _log_report(summary: RunSummary) -> None:
        status = "中断" if summary.cancelled else "完了"
        logger.info("=== 在庫確認スイープ %s ===", status)
        for host, s in summary.per_storefront.items():
            logger.info(
                "  %s: 拠点=%d 確認=%d 在庫あり=%d 失敗=%d (ブロック=%d, 保存失敗=%d) option 発見=%d%s",
                host, s.points_processed, s.checks, s.available, s.failed, s.blocked, len(s.write_errors),
                s.discovered_options, f" エラー: {s.error}" if s.error else "",
            )
        logger.info(
            "確認: %d 件, 在庫あり: %d 件, 失敗: %d 件, 所要時間: %.1f 秒",
            summary.total_checks, summary.total_available, summary.total_failed,
            summary.duration_seconds,
        )
