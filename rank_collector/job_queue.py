"""収集ジョブの永続キュー (collection_jobs テーブル).

パーティション（keywords / ad_slots）ごとに JobQueue を1つ作り、それぞれ専用の
ワーカープールが消費する。複数プロセスから同時に取り出しても同じジョブを二重に
処理しないよう、取り出しは status='waiting' を条件にした更新で行う。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from postgrest.exceptions import APIError

from rank_collector.config import (
    JOB_BACKOFF_SECONDS,
    JOB_LOCK_SECONDS,
    JOB_MAX_ATTEMPTS,
    KEEP_COMPLETED_JOBS,
    KEEP_FAILED_JOBS,
)
from rank_collector.db import SupabaseStore, utc_now
from rank_collector.models import CollectionJob, JobSpec, JobStatus

logger = logging.getLogger(__name__)

_TABLE = "collection_jobs"
_UNIQUE_VIOLATION = "23505"
_CLAIM_CANDIDATES = 10

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"


class JobQueue:
    """1パーティション分のジョブキュー."""

    def __init__(
        self,
        store: SupabaseStore,
        partition: str,
        max_attempts: int = JOB_MAX_ATTEMPTS,
        backoff_seconds: float = JOB_BACKOFF_SECONDS,
        backoff_type: str = BACKOFF_EXPONENTIAL,
        keep_completed: int = KEEP_COMPLETED_JOBS,
        keep_failed: int = KEEP_FAILED_JOBS,
        lock_seconds: float = JOB_LOCK_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.partition = partition
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_type = backoff_type
        self._keep = {JobStatus.COMPLETED: keep_completed, JobStatus.FAILED: keep_failed}
        self.lock_seconds = lock_seconds
        self._clock = clock

    def _table(self):
        return self._store.table(_TABLE)

    def enqueue(
        self,
        spec: JobSpec,
        delay: float = 0,
        attempts: int | None = None,
        backoff: float | None = None,
    ) -> CollectionJob | None:
        """ジョブを投入する.

        同じ dedup_key のジョブが waiting / active の場合は投入しない。

        Returns:
            投入したジョブ。重複で破棄した場合は None。
        """
        dedup_key = spec.dedup_key
        existing = (
            self._table()
            .select("id")
            .eq("dedup_key", dedup_key)
            .in_("status", [JobStatus.WAITING.value, JobStatus.ACTIVE.value])
            .limit(1)
            .execute()
        )
        if existing.data:
            logger.warning("重複ジョブを破棄: %s (job_id=%s)", dedup_key, existing.data[0]["id"])
            return None

        now = self._clock()
        row = {
            "partition": self.partition,
            "job_type": spec.job_type.value,
            "dedup_key": dedup_key,
            "keyword": spec.keyword,
            "ad_slot_id": spec.ad_slot_id,
            "priority": spec.priority,
            "retry_count": spec.retry_count,
            "attempts_made": 0,
            "max_attempts": attempts if attempts is not None else self.max_attempts,
            "backoff_seconds": backoff if backoff is not None else self.backoff_seconds,
            "status": JobStatus.WAITING.value,
            "run_at": (now + timedelta(seconds=delay)).isoformat(),
            "progress": 0,
            "created_at": now.isoformat(),
        }
        try:
            resp = self._table().insert(row).execute()
        except APIError as e:
            # 別プロセスが同時に投入した場合は一意インデックスで弾かれる
            if e.code == _UNIQUE_VIOLATION:
                logger.warning("重複ジョブを破棄: %s (一意制約)", dedup_key)
                return None
            raise

        job = CollectionJob.from_row(resp.data[0])
        logger.debug("ジョブ投入: id=%s, %s, priority=%d, delay=%.1fs", job.id, dedup_key, spec.priority, delay)
        return job

    def claim(self) -> CollectionJob | None:
        """実行可能なジョブを優先度順（同順位は投入順）に1件取り出す."""
        now = self._clock().isoformat()
        candidates = (
            self._table()
            .select("*")
            .eq("partition", self.partition)
            .eq("status", JobStatus.WAITING.value)
            .lte("run_at", now)
            .order("priority")
            .order("id")
            .limit(_CLAIM_CANDIDATES)
            .execute()
        )
        for row in candidates.data:
            resp = (
                self._table()
                .update({
                    "status": JobStatus.ACTIVE.value,
                    "attempts_made": (row.get("attempts_made") or 0) + 1,
                    "started_at": now,
                    "heartbeat_at": now,
                })
                .eq("id", row["id"])
                .eq("status", JobStatus.WAITING.value)
                .execute()
            )
            # 他のワーカーが先に取った場合は data が空
            if resp.data:
                return CollectionJob.from_row(resp.data[0])
        return None

    def update_progress(self, job: CollectionJob, progress: int) -> None:
        """進捗を書き込む. 停止検出用の heartbeat_at も更新する."""
        (
            self._table()
            .update({"progress": progress, "heartbeat_at": self._clock().isoformat()})
            .eq("id", job.id)
            .execute()
        )

    def complete(self, job: CollectionJob, result: dict) -> None:
        (
            self._table()
            .update({
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "result": result,
                "finished_at": self._clock().isoformat(),
            })
            .eq("id", job.id)
            .execute()
        )
        job.status = JobStatus.COMPLETED

    def fail(self, job: CollectionJob, error: str, terminal: bool = False) -> bool:
        """ジョブを失敗として記録する.

        試行回数が残っていればバックオフ後に再実行されるよう waiting に戻す。

        Returns:
            再実行される場合 True。
        """
        will_retry = not terminal and job.attempts_made < job.max_attempts
        now = self._clock()
        if will_retry:
            delay = self.backoff_delay(job)
            values = {
                "status": JobStatus.WAITING.value,
                "run_at": (now + timedelta(seconds=delay)).isoformat(),
                "error": error,
            }
            job.status = JobStatus.WAITING
            logger.warning("ジョブ失敗、%.1f 秒後に再実行 (%d/%d): id=%s, %s",
                           delay, job.attempts_made, job.max_attempts, job.id, error)
        else:
            values = {
                "status": JobStatus.FAILED.value,
                "error": error,
                "finished_at": now.isoformat(),
            }
            job.status = JobStatus.FAILED
            logger.error("ジョブ失敗 (再実行なし): id=%s, keyword=%s, %s", job.id, job.keyword, error)

        self._table().update(values).eq("id", job.id).execute()
        return will_retry

    def recover_stalled(self) -> int:
        """heartbeat_at が lock_seconds 以上更新されていない active ジョブを戻す.

        ワーカーが落ちた場合や完了の記録に失敗した場合に active のまま残ったジョブが
        対象。試行回数が残っていれば waiting に、使い切っていれば failed にする。

        Returns:
            戻したジョブ数。
        """
        now = self._clock()
        cutoff = (now - timedelta(seconds=self.lock_seconds)).isoformat()
        stalled = (
            self._table()
            .select("*")
            .eq("partition", self.partition)
            .eq("status", JobStatus.ACTIVE.value)
            .lt("heartbeat_at", cutoff)
            .execute()
        )
        recovered = 0
        for row in stalled.data:
            job = CollectionJob.from_row(row)
            if job.attempts_made < job.max_attempts:
                values = {"status": JobStatus.WAITING.value, "run_at": now.isoformat(),
                          "error": "stalled"}
            else:
                values = {"status": JobStatus.FAILED.value, "error": "stalled",
                          "finished_at": now.isoformat()}
            resp = (
                self._table()
                .update(values)
                .eq("id", job.id)
                .eq("status", JobStatus.ACTIVE.value)
                .eq("heartbeat_at", row["heartbeat_at"])
                .execute()
            )
            if resp.data:
                recovered += 1
                logger.warning("停止したジョブを %s に戻す: id=%s, keyword=%s (%d/%d)",
                               values["status"], job.id, job.keyword, job.attempts_made, job.max_attempts)
        return recovered

    def backoff_delay(self, job: CollectionJob) -> float:
        if self.backoff_type == BACKOFF_FIXED:
            return job.backoff_seconds
        return job.backoff_seconds * (2 ** max(job.attempts_made - 1, 0))

    def _count(self, status: JobStatus, ready: bool | None = None) -> int:
        query = (
            self._table()
            .select("id", count="exact")
            .eq("partition", self.partition)
            .eq("status", status.value)
        )
        if ready is not None:
            now = self._clock().isoformat()
            query = query.lte("run_at", now) if ready else query.gt("run_at", now)
        resp = query.execute()
        return resp.count or 0

    def counts(self) -> dict[str, int]:
        """状態別のジョブ件数. 遅延中の waiting は delayed として別に数える."""
        return {
            "waiting": self._count(JobStatus.WAITING, ready=True),
            "delayed": self._count(JobStatus.WAITING, ready=False),
            "active": self._count(JobStatus.ACTIVE),
            "completed": self._count(JobStatus.COMPLETED),
            "failed": self._count(JobStatus.FAILED),
        }

    def pending_count(self) -> int:
        """未完了のジョブ数. 遅延中の waiting（遮断後の再試行など）も含む."""
        return self._count(JobStatus.WAITING) + self._count(JobStatus.ACTIVE)

    def prune(self) -> int:
        """完了・失敗ジョブを新しい順に保持件数だけ残して削除する."""
        removed = 0
        for status, keep in self._keep.items():
            resp = (
                self._table()
                .select("id")
                .eq("partition", self.partition)
                .eq("status", status.value)
                .order("id", desc=True)
                .execute()
            )
            stale = [row["id"] for row in resp.data[keep:]]
            if stale:
                self._table().delete().in_("id", stale).execute()
                removed += len(stale)
        if removed:
            logger.info("古いジョブを削除: partition=%s, %d 件", self.partition, removed)
        return removed

    def clear(self) -> None:
        """パーティションの全ジョブを削除する."""
        self._table().delete().eq("partition", self.partition).execute()
        logger.info("キューをクリア: partition=%s", self.partition)
