"""ジョブキューを消費するワーカープール.

ジョブ種別ごとの振る舞い（パーティション・API 呼び出し後の待機・遮断時の再試行）は
JOB_POLICIES で決める。1パーティションにつき1つの WorkerPool を起動する。
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from rank_collector.config import (
    AD_SLOT_PARTITION,
    BLOCKED_RETRY_BASE_SECONDS,
    BLOCKED_RETRY_JITTER_SECONDS,
    BLOCKED_RETRY_MAX,
    KEYWORD_PARTITION,
    MARKETPLACE_INITIAL_JITTER,
    MARKETPLACE_PACING_MAX,
    MARKETPLACE_PACING_MIN,
    WORKER_POLL_INTERVAL,
)
from rank_collector.errors import CollectorError, ProviderBlocked
from rank_collector.job_queue import JobQueue
from rank_collector.models import CollectionJob, KeywordType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobPolicy:
    """ジョブ種別ごとの処理方針."""

    partition: str
    pacing: tuple[float, float] | None = None  # API 呼び出し後の待機秒数 (min, max)
    blocked_retry: bool = False  # 遮断時に遅延ジョブで再試行する
    initial_jitter: float = 0.0  # 投入時の遅延上限 (秒)


JOB_POLICIES: dict[KeywordType, JobPolicy] = {
    KeywordType.GENERAL: JobPolicy(partition=KEYWORD_PARTITION),
    KeywordType.MARKETPLACE: JobPolicy(
        partition=KEYWORD_PARTITION,
        pacing=(MARKETPLACE_PACING_MIN, MARKETPLACE_PACING_MAX),
        blocked_retry=True,
        initial_jitter=MARKETPLACE_INITIAL_JITTER,
    ),
    KeywordType.AD_SLOT: JobPolicy(partition=AD_SLOT_PARTITION),
}


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    SOFT_FAILED = "soft_failed"  # 遮断のため完了扱いにして再投入した
    RETRYING = "retrying"  # キューのバックオフで再実行される
    FAILED = "failed"


@dataclass
class JobOutcome:
    job: CollectionJob
    status: OutcomeStatus
    result: dict | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        """このジョブとしての処理が終わったか（再実行待ちでない）."""
        return self.status is not OutcomeStatus.RETRYING


class JobHandler(Protocol):
    def collect(
        self, job: CollectionJob, progress: Callable[[int], None], pause: Callable[[], None] | None = None
    ) -> dict:
        ...


class WorkerPool:
    """固定数のスレッドで1パーティションのジョブを処理する."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[KeywordType, JobHandler],
        concurrency: int,
        policies: dict[KeywordType, JobPolicy] = JOB_POLICIES,
        poll_interval: float = WORKER_POLL_INTERVAL,
        blocked_retry_max: int = BLOCKED_RETRY_MAX,
        blocked_retry_base: float = BLOCKED_RETRY_BASE_SECONDS,
        blocked_retry_jitter: float = BLOCKED_RETRY_JITTER_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.queue = queue
        self._handlers = handlers
        self.concurrency = concurrency
        self._policies = policies
        self._poll_interval = poll_interval
        self._blocked_retry_max = blocked_retry_max
        self._blocked_retry_base = blocked_retry_base
        self._blocked_retry_jitter = blocked_retry_jitter
        self._sleep = sleep
        self._uniform = uniform

        self._listeners: list[Callable[[JobOutcome], None]] = []
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def add_listener(self, listener: Callable[[JobOutcome], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        self._stop_event.clear()
        for i in range(self.concurrency):
            t = threading.Thread(
                target=self._loop, name=f"{self.queue.partition}-worker-{i + 1}", daemon=True
            )
            t.start()
            self._threads.append(t)
        logger.info("ワーカー起動: partition=%s, concurrency=%d", self.queue.partition, self.concurrency)

    def stop(self, timeout: float | None = None) -> None:
        """新しいジョブの取り出しを止め、実行中のジョブが終わるのを待つ."""
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("ワーカー停止: partition=%s", self.queue.partition)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                outcome = self.run_once()
            except Exception:
                logger.exception("ジョブ取り出しに失敗: partition=%s", self.queue.partition)
                outcome = None
            if outcome is None:
                self._stop_event.wait(self._poll_interval)

    def run_once(self) -> JobOutcome | None:
        """ジョブを1件取り出して処理する. 実行可能なジョブがなければ None."""
        job = self.queue.claim()
        if job is None:
            return None
        return self.process(job)

    def process(self, job: CollectionJob) -> JobOutcome:
        policy = self._policies[job.job_type]
        handler = self._handlers[job.job_type]
        started = time.monotonic()
        logger.info("ジョブ開始: id=%s, type=%s, keyword=%s, attempt=%d/%d",
                    job.id, job.job_type.value, job.keyword, job.attempts_made, job.max_attempts)

        try:
            result = handler.collect(job, lambda progress: self._progress(job, progress), pause=self._pacer(policy))
        except ProviderBlocked as e:
            if policy.blocked_retry:
                outcome = self._handle_blocked(job, e)
            else:
                outcome = self._fail(job, e)
        except CollectorError as e:
            outcome = self._fail(job, e)
        except Exception as e:
            logger.exception("ジョブで予期しないエラー: id=%s, keyword=%s", job.id, job.keyword)
            outcome = self._fail(job, e)
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            result["durationMs"] = duration_ms
            try:
                self.queue.complete(job, result)
            except Exception as e:
                logger.exception("ジョブ完了の記録に失敗: id=%s, keyword=%s", job.id, job.keyword)
                outcome = self._fail(job, e)
            else:
                outcome = JobOutcome(job=job, status=OutcomeStatus.COMPLETED, result=result)
                logger.info("ジョブ完了: id=%s, keyword=%s, %.1f 秒", job.id, job.keyword, duration_ms / 1000)

        self._notify(outcome)
        return outcome

    def _progress(self, job: CollectionJob, progress: int) -> None:
        try:
            self.queue.update_progress(job, progress)
        except Exception:
            logger.warning("進捗の記録に失敗: id=%s, progress=%d", job.id, progress, exc_info=True)

    def _pacer(self, policy: JobPolicy) -> Callable[[], None] | None:
        if policy.pacing is None:
            return None
        low, high = policy.pacing

        def pause() -> None:
            self._sleep(self._uniform(low, high))

        return pause

    def _fail(self, job: CollectionJob, error: Exception | str, terminal: bool = False) -> JobOutcome:
        """失敗を記録する.

        記録自体に失敗したジョブは active のまま残り、JobQueue.recover_stalled で
        再実行（試行回数を使い切っていれば failed）になる。
        """
        try:
            will_retry = self.queue.fail(job, str(error), terminal=terminal)
        except Exception:
            logger.exception("ジョブ失敗の記録に失敗: id=%s, keyword=%s", job.id, job.keyword)
            will_retry = not terminal and job.attempts_made < job.max_attempts
        status = OutcomeStatus.RETRYING if will_retry else OutcomeStatus.FAILED
        return JobOutcome(job=job, status=status, error=str(error))

    def _handle_blocked(self, job: CollectionJob, error: ProviderBlocked) -> JobOutcome:
        """遮断時は元のジョブを完了扱いにし、遅延ジョブとして再投入する.

        重複チェックで弾かれないよう、元のジョブを完了にしてから再投入する。
        再投入に失敗した場合は元のジョブを失敗に書き換える。
        """
        retry = job.retry_count + 1
        if retry > self._blocked_retry_max:
            message = f"遮断が解除されないため中止 (再試行 {job.retry_count}/{self._blocked_retry_max}): {error}"
            return self._fail(job, message, terminal=True)

        result = {"success": False, "blocked": True, "blockedRetry": retry, "error": str(error)}
        try:
            self.queue.complete(job, result)
        except Exception as e:
            logger.exception("遮断ジョブの完了記録に失敗: id=%s, keyword=%s", job.id, job.keyword)
            return self._fail(job, e)

        delay = retry * self._blocked_retry_base + self._uniform(0, self._blocked_retry_jitter)
        spec = job.to_spec()
        spec.retry_count = retry
        try:
            requeued = self.queue.enqueue(spec, delay=delay, attempts=1, backoff=0)
        except Exception as e:
            logger.exception("遮断再試行ジョブの投入に失敗: keyword=%s", job.keyword)
            return self._fail(job, f"遮断再試行の投入に失敗: {e}", terminal=True)
        if requeued is None:
            logger.warning("遮断再試行ジョブは投入済み: keyword=%s", job.keyword)
        else:
            logger.info("遮断のため %.0f 分後に再試行 (%d/%d): keyword=%s",
                        delay / 60, retry, self._blocked_retry_max, job.keyword)
        return JobOutcome(job=job, status=OutcomeStatus.SOFT_FAILED, result=result, error=str(error))

    def _notify(self, outcome: JobOutcome) -> None:
        for listener in self._listeners:
            try:
                listener(outcome)
            except Exception:
                logger.exception("ジョブ完了通知の処理に失敗: id=%s", outcome.job.id)
