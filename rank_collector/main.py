"""順位収集サービス — メインエントリーポイント.

コマンド:
  serve         スケジューラとワーカーを起動し、SIGINT / SIGTERM まで動かす
  enqueue       キーワードを手動でキューに投入する
  enqueue-slot  広告スロットを手動でキューに投入する
  sync-daily    daily 同期を実行する
  status        キューとサイクルの状態を表示する
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import date, datetime

from rank_collector.aggregation import AggregationEngine
from rank_collector.collection import AdSlotCollector, KeywordCollector
from rank_collector.config import (
    AD_SLOT_MAX_ATTEMPTS,
    AD_SLOT_PARTITION,
    AD_SLOT_QUEUE_CONCURRENCY,
    AD_SLOT_RETRY_DELAY,
    COUPANG_API_URL,
    KEYWORD_PARTITION,
    KEYWORD_QUEUE_CONCURRENCY,
    LOG_DIR,
    LOG_LEVEL,
    NAVER_PROVIDER,
)
from rank_collector.credentials import CredentialPool
from rank_collector.db import SupabaseStore, create_supabase_client
from rank_collector.job_queue import BACKOFF_FIXED, JobQueue
from rank_collector.models import KeywordType
from rank_collector.providers import CoupangProvider, NaverShoppingProvider
from rank_collector.scheduler import CollectionOrchestrator
from rank_collector.worker import WorkerPool

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """ロギングの初期設定."""
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


@dataclass
class Services:
    orchestrator: CollectionOrchestrator
    keyword_workers: WorkerPool
    ad_slot_workers: WorkerPool


def build_services(store: SupabaseStore) -> Services:
    """ストア以外の依存をすべて組み立てる."""
    engine = AggregationEngine(store)

    naver = NaverShoppingProvider(CredentialPool(store, NAVER_PROVIDER))
    providers = {KeywordType.GENERAL: naver}
    if COUPANG_API_URL:
        providers[KeywordType.MARKETPLACE] = CoupangProvider()
    else:
        logger.warning("COUPANG_API_URL が未設定のため cp キーワードは収集できません")
    keyword_collector = KeywordCollector(
        store,
        providers=providers,
        engine=engine,
    )
    ad_slot_collector = AdSlotCollector(store, naver, engine)

    keyword_queue = JobQueue(store, KEYWORD_PARTITION)
    ad_slot_queue = JobQueue(
        store,
        AD_SLOT_PARTITION,
        max_attempts=AD_SLOT_MAX_ATTEMPTS,
        backoff_seconds=AD_SLOT_RETRY_DELAY,
        backoff_type=BACKOFF_FIXED,
    )

    keyword_workers = WorkerPool(
        keyword_queue,
        handlers={KeywordType.GENERAL: keyword_collector, KeywordType.MARKETPLACE: keyword_collector},
        concurrency=KEYWORD_QUEUE_CONCURRENCY,
    )
    ad_slot_workers = WorkerPool(
        ad_slot_queue,
        handlers={KeywordType.AD_SLOT: ad_slot_collector},
        concurrency=AD_SLOT_QUEUE_CONCURRENCY,
    )

    orchestrator = CollectionOrchestrator(store, keyword_queue, ad_slot_queue, engine)
    orchestrator.attach(keyword_workers)
    return Services(orchestrator, keyword_workers, ad_slot_workers)


def serve(services: Services) -> None:
    """SIGINT / SIGTERM を受けるまで動かし、実行中のジョブを終えてから停止する."""
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("シグナル受信 (%s)。停止します", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    services.keyword_workers.start()
    services.ad_slot_workers.start()
    services.orchestrator.start()
    logger.info("=== 順位収集サービス 起動 ===")

    stop.wait()

    services.orchestrator.stop()
    services.keyword_workers.stop()
    services.ad_slot_workers.stop()
    logger.info("=== 順位収集サービス 停止 ===")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="rank_collector", description="検索順位収集サービス")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="スケジューラとワーカーを起動する")

    enqueue = sub.add_parser("enqueue", help="キーワードを投入する")
    enqueue.add_argument("keyword")
    enqueue.add_argument("--type", choices=[KeywordType.GENERAL.value, KeywordType.MARKETPLACE.value],
                         default=KeywordType.GENERAL.value)
    enqueue.add_argument("--priority", type=int, default=0)

    slot = sub.add_parser("enqueue-slot", help="広告スロットを投入する")
    slot.add_argument("ad_slot_id", type=int)

    daily = sub.add_parser("sync-daily", help="daily 同期を実行する")
    daily.add_argument("--date", type=date.fromisoformat, default=None, help="YYYY-MM-DD (省略時は前日)")

    sub.add_parser("status", help="キューとサイクルの状態を表示する")
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    """メイン処理."""
    args = _parse_args(argv)
    setup_logging()

    store = SupabaseStore(create_supabase_client())
    services = build_services(store)
    orchestrator = services.orchestrator

    if args.command == "serve":
        serve(services)
    elif args.command == "enqueue":
        job = orchestrator.enqueue_keyword(args.keyword, KeywordType(args.type), args.priority)
        print(f"投入: job_id={job.id}" if job else "重複のため投入しませんでした")
    elif args.command == "enqueue-slot":
        job = orchestrator.enqueue_ad_slot(args.ad_slot_id)
        print(f"投入: job_id={job.id}" if job else "重複のため投入しませんでした")
    elif args.command == "sync-daily":
        summary = orchestrator.run_daily_sync(args.date)
        print(json.dumps(summary, ensure_ascii=False))
    elif args.command == "status":
        print(json.dumps(orchestrator.status(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(run())
