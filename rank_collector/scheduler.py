"""収集サイクルのスケジューリング.

cron 式に従ってキーワードをキューに投入し、投入したジョブがすべて終わったら
（キューが空になったことを確認してから）hourly 同期を実行する。
広告スロットの更新と daily 同期もそれぞれの cron で実行する。
"""

from __future__ import annotations

import logging
import random
import threading
from datetime import date, datetime
from enum import Enum
from typing import Callable
from zoneinfo import ZoneInfo

from croniter import croniter

from rank_collector.aggregation import AggregationEngine
from rank_collector.config import (
    AD_SLOT_CRON,
    COLLECTION_CRON,
    CYCLE_STALE_SECONDS,
    DAILY_SYNC_CRON,
    QUEUE_BACKLOG_THRESHOLD,
    SCHEDULER_POLL_INTERVAL,
    TIMEZONE,
)
from rank_collector.db import SupabaseStore, utc_now
from rank_collector.errors import AdSlotNotFound
from rank_collector.job_queue import JobQueue
from rank_collector.models import CollectionJob, JobSpec, Keyword, KeywordType
from rank_collector.worker import JOB_POLICIES, JobOutcome, JobPolicy, OutcomeStatus, WorkerPool

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"  # 投入したジョブの完了待ち
    DRAINING = "draining"  # 件数は揃った. キューが空になるのを待つ


class CycleTracker:
    """1回の収集サイクルの進捗.

    IDLE → COLLECTING(expected, done) → DRAINING → IDLE と遷移する。
    ジョブ完了の通知はワーカースレッドから、poll はスケジューラスレッドから呼ばれる。
    """

    def __init__(self, stale_seconds: float = CYCLE_STALE_SECONDS, clock: Callable[[], datetime] = utc_now):
        self._stale_seconds = stale_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self.state = CycleState.IDLE
        self.expected: int | None = None
        self.completed = 0
        self.failed = 0
        self.started_at: datetime | None = None
        self.keywords: list[Keyword] = []

    @property
    def running(self) -> bool:
        return self.state is not CycleState.IDLE

    def begin(self, keywords: list[Keyword]) -> None:
        """投入開始前に呼ぶ. 件数は set_expected で確定する."""
        with self._lock:
            self._reset()
            self.state = CycleState.COLLECTING
            self.started_at = self._clock()
            self.keywords = list(keywords)

    def set_expected(self, expected: int) -> None:
        with self._lock:
            if self.state is CycleState.IDLE:
                return
            if expected == 0:
                logger.info("投入したジョブがないためサイクルを終了")
                self._reset()
                return
            self.expected = expected
            self._check_done()

    def job_finished(self, outcome: JobOutcome) -> None:
        """ワーカーのジョブ完了通知. 再実行待ちと広告スロットのジョブは数えない.

        遮断による完了扱いも数える。遅延した再試行ジョブはキューに残るので
        should_close に渡す pending_count で待つ。
        """
        if outcome.job.job_type is KeywordType.AD_SLOT or not outcome.finished:
            return
        with self._lock:
            if self.state is not CycleState.COLLECTING:
                return
            if outcome.status is OutcomeStatus.FAILED:
                self.failed += 1
            else:
                self.completed += 1
            self._check_done()

    def _check_done(self) -> None:
        if self.expected is not None and self.completed + self.failed >= self.expected:
            self.state = CycleState.DRAINING
            logger.info("収集ジョブ完了: success=%d, failed=%d (キューの空きを確認中)", self.completed, self.failed)

    def should_close(self, pending: int) -> bool:
        """サイクルを閉じてよいか. pending はキューの未完了（遅延中を含む）ジョブ数."""
        with self._lock:
            if pending > 0:
                return False
            if self.state is CycleState.DRAINING:
                return True
            if self.state is CycleState.COLLECTING and self.started_at is not None:
                elapsed = (self._clock() - self.started_at).total_seconds()
                if elapsed >= self._stale_seconds:
                    logger.warning("サイクルが %.0f 秒経過しても完了しないため強制終了 (%d/%s)",
                                   elapsed, self.completed + self.failed, self.expected)
                    return True
            return False

    def finish(self) -> None:
        with self._lock:
            self._reset()

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "expected": self.expected,
            "completed": self.completed,
            "failed": self.failed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


class CollectionOrchestrator:
    """cron に従ってジョブを投入し、サイクル完了時に集計を行う."""

    def __init__(
        self,
        store: SupabaseStore,
        keyword_queue: JobQueue,
        ad_slot_queue: JobQueue,
        engine: AggregationEngine,
        tracker: CycleTracker | None = None,
        collection_cron: str = COLLECTION_CRON,
        ad_slot_cron: str = AD_SLOT_CRON,
        daily_cron: str = DAILY_SYNC_CRON,
        tz: str = TIMEZONE,
        backlog_threshold: int = QUEUE_BACKLOG_THRESHOLD,
        poll_interval: float = SCHEDULER_POLL_INTERVAL,
        policies: dict[KeywordType, JobPolicy] = JOB_POLICIES,
        clock: Callable[[], datetime] = utc_now,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self._store = store
        self._keyword_queue = keyword_queue
        self._ad_slot_queue = ad_slot_queue
        self._engine = engine
        self.tracker = tracker or CycleTracker(clock=clock)
        self._tz = ZoneInfo(tz)
        self._backlog_threshold = backlog_threshold
        self._poll_interval = poll_interval
        self._policies = policies
        self._clock = clock
        self._uniform = uniform

        self._schedules: dict[str, tuple[str, Callable[[], object]]] = {
            "collection": (collection_cron, self.tick),
            "ad_slots": (ad_slot_cron, self.enqueue_ad_slots),
            "daily_sync": (daily_cron, self.run_daily_sync),
        }
        self._next_runs: dict[str, datetime] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def attach(self, pool: WorkerPool) -> None:
        """ワーカーのジョブ完了をサイクルの進捗に反映する."""
        pool.add_listener(self.tracker.job_finished)

    # --- 投入 ---

    def tick(self) -> int | None:
        """収集サイクルを開始する.

        Returns:
            投入したジョブ数。前回のサイクル実行中・キュー滞留でスキップした場合は None。
        """
        if self.tracker.running:
            logger.warning("前回の収集サイクルが実行中のためスキップ: %s", self.tracker.snapshot())
            return None

        counts = self._keyword_queue.counts()
        backlog = counts["waiting"] + counts["delayed"] + counts["active"]
        if backlog > self._backlog_threshold:
            logger.warning("キューに %d 件滞留しているためスキップ", backlog)
            return None

        keywords = (
            self._store.get_active_keywords(KeywordType.GENERAL)
            + self._store.get_active_keywords(KeywordType.MARKETPLACE)
        )
        if not keywords:
            logger.warning("有効なキーワードがありません")
            return 0

        logger.info("=== 収集サイクル開始: キーワード %d 件 ===", len(keywords))
        self.tracker.begin(keywords)
        added = 0
        try:
            for keyword in keywords:
                if self._enqueue(keyword.keyword, keyword.type, keyword.priority) is not None:
                    added += 1
        finally:
            self.tracker.set_expected(added)

        self._keyword_queue.prune()
        logger.info("キュー投入完了: %d / %d 件", added, len(keywords))
        return added

    def _enqueue(self, text: str, keyword_type: KeywordType, priority: int) -> CollectionJob | None:
        policy = self._policies[keyword_type]
        delay = self._uniform(0, policy.initial_jitter) if policy.initial_jitter else 0
        return self._keyword_queue.enqueue(
            JobSpec(job_type=keyword_type, keyword=text, priority=priority), delay=delay
        )

    def enqueue_keyword(self, text: str, keyword_type: KeywordType, priority: int = 0) -> CollectionJob | None:
        """手動投入. cron を待たずに投入するが重複チェックは行う."""
        if keyword_type is KeywordType.AD_SLOT:
            raise ValueError("広告スロットは enqueue_ad_slot で投入してください")
        job = self._enqueue(text, keyword_type, priority)
        if job is not None:
            logger.info("手動投入: keyword=%s (%s), priority=%d", text, keyword_type.value, priority)
        return job

    def enqueue_ad_slot(self, ad_slot_id: int, priority: int = 0) -> CollectionJob | None:
        target = self._store.get_ad_slot(ad_slot_id)
        if target is None:
            raise AdSlotNotFound(f"広告スロットが見つかりません: {ad_slot_id}")
        return self._ad_slot_queue.enqueue(
            JobSpec(job_type=KeywordType.AD_SLOT, keyword=target.work_keyword,
                    priority=priority, ad_slot_id=target.ad_slot_id)
        )

    def enqueue_ad_slots(self) -> int:
        """有効な広告スロットをすべて投入する. 未チェックのものから順に処理される."""
        targets = self._store.get_active_ad_slots()
        added = 0
        for target in targets:
            job = self._ad_slot_queue.enqueue(
                JobSpec(job_type=KeywordType.AD_SLOT, keyword=target.work_keyword, ad_slot_id=target.ad_slot_id)
            )
            if job is not None:
                added += 1
        self._ad_slot_queue.prune()
        logger.info("広告スロット投入: %d / %d 件", added, len(targets))
        return added

    # --- 集計 ---

    def poll(self) -> dict | None:
        """サイクル完了を確認し、完了していれば hourly 同期を実行する.

        停止した active ジョブはここで waiting / failed に戻す。
        """
        for queue in (self._keyword_queue, self._ad_slot_queue):
            queue.recover_stalled()
        if not self.tracker.running:
            return None
        if not self.tracker.should_close(self._keyword_queue.pending_count()):
            return None

        snapshot = self.tracker.snapshot()
        try:
            summary = self._engine.run_cycle_sync(self.tracker.keywords, since=snapshot["started_at"])
        finally:
            self.tracker.finish()
        logger.info("=== 収集サイクル完了: success=%d, failed=%d, hourly=%s ===",
                    snapshot["completed"], snapshot["failed"], summary)
        return summary

    def run_daily_sync(self, day: date | None = None) -> dict:
        return self._engine.run_daily_sync(day)

    # --- cron ループ ---

    def _next_run(self, expression: str, after: datetime) -> datetime:
        return croniter(expression, after.astimezone(self._tz)).get_next(datetime)

    def run_pending(self) -> list[str]:
        """実行時刻を過ぎたスケジュールを実行する."""
        now = self._clock()
        ran = []
        for name, (expression, action) in self._schedules.items():
            next_run = self._next_runs.get(name)
            if next_run is None:
                self._next_runs[name] = self._next_run(expression, now)
                continue
            if now < next_run:
                continue
            self._next_runs[name] = self._next_run(expression, now)
            ran.append(name)
            try:
                action()
            except Exception:
                logger.exception("スケジュール実行に失敗: %s", name)
        return ran

    def start(self) -> None:
        self._stop_event.clear()
        self.run_pending()
        self._thread = threading.Thread(target=self._loop, name="orchestrator", daemon=True)
        self._thread.start()
        logger.info("スケジューラ起動: %s",
                    {name: expr for name, (expr, _) in self._schedules.items()})

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info("スケジューラ停止")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            try:
                self.poll()
            except Exception:
                logger.exception("サイクル完了処理に失敗")
            self._stop_event.wait(self._poll_interval)

    def status(self) -> dict:
        return {
            "cycle": self.tracker.snapshot(),
            "queues": {
                self._keyword_queue.partition: self._keyword_queue.counts(),
                self._ad_slot_queue.partition: self._ad_slot_queue.counts(),
            },
            "next_runs": {
                name: (self._next_runs.get(name) or self._next_run(expr, self._clock())).isoformat()
                for name, (expr, _) in self._schedules.items()
            },
        }
