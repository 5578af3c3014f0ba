"""在庫確認: メインエントリーポイント.

処理フロー:
  1. DB から有効なストアフロントと追跡商品を取得
  2. ストアフロントごとにセッションを作成・ウォームアップ
  3. 拠点 × 商品ごとにチェックアウトのシミュレーションで在庫を確認
  4. 結果を 1 件ずつ DB に upsert
  5. サマリをログ出力

SIGINT / SIGTERM を受けると実行中の確認を中断し、そこまでの結果で終了する。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime

from collector.client import StorefrontClient
from collector.config import BATCH_SIZE, LOG_DIR
from collector.db import SupabaseCatalog, SupabaseResultStore
from collector.driver import ProbeDriver
from collector.errors import ConfigError
from collector.governor import RateGovernor
from collector.models import FulfillmentMode, RunSummary
from collector.orchestrator import ProbeOrchestrator
from collector.retry import RetryController
from collector.session import SessionStore
from collector.sink import MemoryResultStore, ResultSink

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )
    # httpx はリクエストごとに INFO を出すので抑える
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"整数で指定してください: {value!r}") from e
    if number < 1:
        raise argparse.ArgumentTypeError(f"1 以上で指定してください: {value!r}")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="availability-collector",
        description="ストアフロントの拠点ごとの在庫を確認して DB に記録する",
    )
    parser.add_argument("--host", help="このストアフロントだけを処理する")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in FulfillmentMode],
        help="配送シミュレーションの形状（省略時はストアフロントの設定）",
    )
    parser.add_argument(
        "--batch-size", type=_positive_int, default=BATCH_SIZE,
        help="1 回のセッションで確認する商品数",
    )
    parser.add_argument("--dry-run", action="store_true", help="結果を DB に書き込まない")
    parser.add_argument("--verbose", action="store_true", help="DEBUG ログを出力する")
    return parser.parse_args(argv)


def _install_signal_handlers(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows のイベントループでは未対応
            logger.debug("シグナルハンドラを登録できません: %s", sig)


async def run(args: argparse.Namespace) -> RunSummary:
    """1 回のスイープを実行する."""
    cancel_event = asyncio.Event()
    _install_signal_handlers(cancel_event)

    client = StorefrontClient(RateGovernor())
    store = MemoryResultStore() if args.dry_run else SupabaseResultStore()
    if args.dry_run:
        logger.info("dry-run: 結果は DB に書き込みません")

    async with SessionStore(client) as sessions:
        orchestrator = ProbeOrchestrator(
            catalog=SupabaseCatalog(),
            sink=ResultSink(store),
            sessions=sessions,
            driver=ProbeDriver(client),
            retry=RetryController(),
            batch_size=args.batch_size,
            mode=FulfillmentMode(args.mode) if args.mode else None,
        )
        return await orchestrator.run_sweep(args.host, cancel_event)


def main(argv: list[str] | None = None) -> int:
    """コンソールスクリプトの入口. 終了コードを返す."""
    args = parse_args(argv)
    setup_logging(args.verbose)
    try:
        summary = asyncio.run(run(args))
    except ConfigError as e:
        logger.error("設定エラー: %s", e)
        return 1
    if summary.cancelled:
        logger.warning("中断されました（確認済み %d 件）", summary.total_checks)
    return 0


if __name__ == "__main__":
    sys.exit(main())
