"""順位データの集計・同期.

生データ (shopping_rankings / cp_rankings) から3つの集計テーブルを作る。

  1. current: キーワードごとの最新順位（収集直後に全件置き換え）
  2. hourly:  時間ごとの平均・最小・最大順位（収集サイクル完了時に加算）
  3. daily:   当日 22:00〜24:00 (ローカル) の hourly を商品ごとにまとめたもの

プラットフォームの違いはテーブル名とスナップショット列だけなので PlatformTables で表す。
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from postgrest.exceptions import APIError

from rank_collector.config import (
    COUPANG_PROVIDER,
    CURRENT_TIER_TOP_N,
    DAILY_RETENTION_DAYS,
    DAILY_WINDOW_START_HOUR,
    HOURLY_RETENTION_HOURS,
    NAVER_PROVIDER,
    RAW_RETENTION_DAYS,
    TIMEZONE,
)
from rank_collector.db import SupabaseStore, utc_now
from rank_collector.errors import SyncConflict
from rank_collector.models import AdSlotResolution, Keyword, KeywordType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformTables:
    """1プラットフォーム分のテーブル名とスナップショット列."""

    platform: str
    raw: str
    current: str
    hourly: str
    daily: str
    snapshot_fields: tuple[str, ...]


PLATFORMS: dict[KeywordType, PlatformTables] = {
    KeywordType.GENERAL: PlatformTables(
        platform=NAVER_PROVIDER,
        raw="shopping_rankings",
        current="shopping_rankings_current",
        hourly="shopping_rankings_hourly",
        daily="shopping_rankings_daily",
        snapshot_fields=(
            "title", "link", "image", "lprice", "mall_name", "brand", "maker",
            "category1", "category2", "category3", "category4",
        ),
    ),
    KeywordType.MARKETPLACE: PlatformTables(
        platform=COUPANG_PROVIDER,
        raw="cp_rankings",
        current="cp_rankings_current",
        hourly="cp_rankings_hourly",
        daily="cp_rankings_daily",
        snapshot_fields=("title", "link", "image", "lprice", "mall_name"),
    ),
}


def hour_bucket(now: datetime, tz: ZoneInfo) -> datetime:
    """ローカル時刻で時単位に切り捨て、UTC で返す."""
    local = now.astimezone(tz).replace(minute=0, second=0, microsecond=0)
    return local.astimezone(timezone.utc)


def daily_window(day: date, tz: ZoneInfo, start_hour: int = DAILY_WINDOW_START_HOUR) -> tuple[datetime, datetime]:
    """日次集計に使う hourly の範囲 [day start_hour:00, day+1 00:00) を UTC で返す."""
    start = datetime.combine(day, time(start_hour), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def fold_rank(existing: dict | None, rank: int) -> dict:
    """既存の集計に1件の順位を加える（移動平均）.

    Returns:
        avg_rank, min_rank, max_rank, sample_count を持つ dict
    """
    if not existing or not existing.get("sample_count"):
        return {"avg_rank": float(rank), "min_rank": rank, "max_rank": rank, "sample_count": 1}

    count = int(existing["sample_count"])
    avg = float(existing["avg_rank"])
    return {
        "avg_rank": (avg * count + rank) / (count + 1),
        "min_rank": min(int(existing["min_rank"]), rank),
        "max_rank": max(int(existing["max_rank"]), rank),
        "sample_count": count + 1,
    }


def build_current_rows(
    raw_rows: list[dict], prior_ranks: dict[str, int], snapshot_fields: tuple[str, ...], now: str
) -> list[dict]:
    """最新の生データから current テーブルの行を作る. previous_rank は置き換え前の順位."""
    rows = []
    for raw in raw_rows:
        row = {
            "keyword_id": raw["keyword_id"],
            "product_id": raw["product_id"],
            "rank": raw["rank"],
            "previous_rank": prior_ranks.get(raw["product_id"]),
            "collected_at": raw["collected_at"],
            "updated_at": now,
        }
        for f in snapshot_fields:
            row[f] = raw.get(f)
        rows.append(row)
    return rows


def merge_daily(hourly_rows: list[dict], snapshot_fields: tuple[str, ...]) -> dict:
    """1商品分の hourly 行を日次の1行にまとめる.

    平均はサンプル数で重み付けし、スナップショットは最も新しい時間のものを使う。
    """
    total = sum(int(r["sample_count"]) for r in hourly_rows)
    weighted = sum(float(r["avg_rank"]) * int(r["sample_count"]) for r in hourly_rows)
    latest = max(hourly_rows, key=lambda r: r["hour"])
    merged = {
        "avg_rank": weighted / total if total else float(latest["avg_rank"]),
        "min_rank": min(int(r["min_rank"]) for r in hourly_rows),
        "max_rank": max(int(r["max_rank"]) for r in hourly_rows),
        "sample_count": total,
    }
    for f in snapshot_fields:
        merged[f] = latest.get(f)
    return merged


class AggregationEngine:
    """current / hourly / daily テーブルの同期."""

    def __init__(
        self,
        store: SupabaseStore,
        platforms: dict[KeywordType, PlatformTables] = PLATFORMS,
        tz: str = TIMEZONE,
        top_n: int = CURRENT_TIER_TOP_N,
        hourly_retention_hours: int = HOURLY_RETENTION_HOURS,
        daily_retention_days: int = DAILY_RETENTION_DAYS,
        raw_retention_days: int = RAW_RETENTION_DAYS,
        daily_start_hour: int = DAILY_WINDOW_START_HOUR,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._platforms = platforms
        self._tz = ZoneInfo(tz)
        self._top_n = top_n
        self._hourly_retention = timedelta(hours=hourly_retention_hours)
        self._daily_retention = timedelta(days=daily_retention_days)
        self._raw_retention = timedelta(days=raw_retention_days)
        self._daily_start_hour = daily_start_hour
        self._clock = clock

        self._locks_guard = threading.Lock()
        self._keyword_locks: dict[str, threading.Lock] = {}

    def _keyword_lock(self, keyword_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._keyword_locks.setdefault(keyword_id, threading.Lock())

    def tables_for(self, keyword_type: KeywordType) -> PlatformTables:
        return self._platforms[keyword_type]

    # --- current ---

    def sync_current(self, keyword: Keyword) -> int:
        """キーワードの current を最新の収集結果で置き換える.

        Raises:
            SyncConflict: DB 書き込みに失敗
        """
        tables = self.tables_for(keyword.type)
        try:
            with self._keyword_lock(keyword.id):
                raw_rows = self._store.get_latest_raw_rankings(tables.raw, keyword.id, self._top_n)
                if not raw_rows:
                    logger.info("current 同期対象なし: keyword=%s", keyword.keyword)
                    return 0
                prior = self._store.get_current_ranks(tables.current, keyword.id)
                rows = build_current_rows(raw_rows, prior, tables.snapshot_fields, self._clock().isoformat())
                self._store.replace_current_rankings(tables.current, keyword.id, rows)
        except APIError as e:
            raise SyncConflict(keyword.id, e) from e

        logger.info("current 同期: keyword=%s, %d 件", keyword.keyword, len(rows))
        return len(rows)

    # --- hourly ---

    def sync_hourly(self, keywords: list[Keyword], since: str | None = None) -> dict[str, int]:
        """各キーワードの最新収集分を現在の時間バケットに加算する.

        Args:
            since: 指定時はこの時刻以降に収集された生データだけを使う（サイクル開始時刻）
        """
        bucket = hour_bucket(self._clock(), self._tz).isoformat()
        summary = {"synced": 0, "failed": 0, "skipped": 0}

        for keyword in keywords:
            try:
                folded = self._fold_hourly(keyword, bucket, since)
            except APIError as e:
                conflict = SyncConflict(keyword.id, e)
                logger.error("hourly 同期失敗: keyword=%s, %s", keyword.keyword, conflict)
                summary["failed"] += 1
                continue
            summary["synced" if folded else "skipped"] += 1

        logger.info("hourly 同期完了: hour=%s, synced=%d, failed=%d, skipped=%d",
                    bucket, summary["synced"], summary["failed"], summary["skipped"])
        return summary

    def _fold_hourly(self, keyword: Keyword, bucket: str, since: str | None) -> bool:
        tables = self.tables_for(keyword.type)
        raw_rows = self._store.get_latest_raw_rankings(tables.raw, keyword.id, self._top_n, since=since)
        if not raw_rows:
            return False

        existing = {
            row["product_id"]: row
            for row in self._store.get_tier_rows(tables.hourly, keyword.id, "hour", bucket)
        }
        now = self._clock().isoformat()
        rows = []
        for raw in raw_rows:
            row = {
                "keyword_id": keyword.id,
                "product_id": raw["product_id"],
                "hour": bucket,
                **fold_rank(existing.get(raw["product_id"]), raw["rank"]),
                "updated_at": now,
            }
            for f in tables.snapshot_fields:
                row[f] = raw.get(f)
            rows.append(row)

        self._store.upsert_tier_rows(tables.hourly, rows, on_conflict="keyword_id,product_id,hour")
        return True

    def cleanup_hourly(self) -> None:
        cutoff = (self._clock() - self._hourly_retention).isoformat()
        for tables in self._platforms.values():
            self._store.delete_tier_before(tables.hourly, "hour", cutoff)
        logger.info("hourly 削除: %s 以前", cutoff)

    def run_cycle_sync(self, keywords: list[Keyword], since: str | None = None) -> dict[str, int]:
        """収集サイクル完了時の同期（hourly 加算と古い hourly の削除）."""
        summary = self.sync_hourly(keywords, since=since)
        try:
            self.cleanup_hourly()
        except APIError:
            logger.exception("hourly の削除に失敗")
        return summary

    # --- daily ---

    def sync_daily(self, day: date | None = None, keywords: list[Keyword] | None = None) -> dict[str, int]:
        """day（ローカル日付, 省略時は前日）の daily を hourly から作る."""
        if day is None:
            day = (self._clock().astimezone(self._tz) - timedelta(days=1)).date()
        if keywords is None:
            keywords = []
            for keyword_type in self._platforms:
                keywords.extend(self._store.get_active_keywords(keyword_type))

        start, end = daily_window(day, self._tz, self._daily_start_hour)
        summary = {"synced": 0, "failed": 0, "skipped": 0}
        logger.info("daily 同期開始: date=%s, window=[%s, %s), keywords=%d",
                    day, start.isoformat(), end.isoformat(), len(keywords))

        for keyword in keywords:
            try:
                merged = self._merge_daily(keyword, day, start.isoformat(), end.isoformat())
            except APIError as e:
                conflict = SyncConflict(keyword.id, e)
                logger.error("daily 同期失敗: keyword=%s, %s", keyword.keyword, conflict)
                summary["failed"] += 1
                continue
            summary["synced" if merged else "skipped"] += 1

        logger.info("daily 同期完了: date=%s, synced=%d, failed=%d, skipped=%d",
                    day, summary["synced"], summary["failed"], summary["skipped"])
        return summary

    def _merge_daily(self, keyword: Keyword, day: date, start: str, end: str) -> bool:
        tables = self.tables_for(keyword.type)
        hourly_rows = self._store.get_hourly_window(tables.hourly, keyword.id, start, end)
        if not hourly_rows:
            return False

        by_product: dict[str, list[dict]] = defaultdict(list)
        for row in hourly_rows:
            by_product[row["product_id"]].append(row)

        now = self._clock().isoformat()
        rows = [
            {
                "keyword_id": keyword.id,
                "product_id": product_id,
                "date": day.isoformat(),
                **merge_daily(product_rows, tables.snapshot_fields),
                "last_updated": now,
            }
            for product_id, product_rows in by_product.items()
        ]
        self._store.upsert_tier_rows(tables.daily, rows, on_conflict="keyword_id,product_id,date")
        return True

    def cleanup_daily(self) -> None:
        """保持期間を過ぎた daily と生データを削除する."""
        now = self._clock()
        daily_cutoff = (now.astimezone(self._tz) - self._daily_retention).date().isoformat()
        raw_cutoff = (now - self._raw_retention).isoformat()
        for tables in self._platforms.values():
            self._store.delete_tier_before(tables.daily, "date", daily_cutoff)
            self._store.delete_raw_before(tables.raw, raw_cutoff)
        logger.info("daily 削除: %s 以前, 生データ削除: %s 以前", daily_cutoff, raw_cutoff)

    def run_daily_sync(self, day: date | None = None) -> dict[str, int]:
        summary = self.sync_daily(day)
        try:
            self.cleanup_daily()
        except APIError:
            logger.exception("daily / 生データの削除に失敗")
        return summary

    # --- 広告スロット ---

    def fold_ad_slot_hourly(self, resolution: AdSlotResolution) -> None:
        """広告スロットの価格比較順位・ストア順位を時間バケットに加算する."""
        bucket = hour_bucket(self._clock(), self._tz).isoformat()
        existing = self._store.get_ad_slot_hourly(resolution.ad_slot_id, bucket)

        row = {"ad_slot_id": resolution.ad_slot_id, "hour": bucket, "updated_at": self._clock().isoformat()}
        for kind, rank in (("price", resolution.price_rank), ("store", resolution.store_rank)):
            previous = _ad_slot_stats(existing, kind)
            if rank is None:
                stats = previous
            else:
                stats = fold_rank(previous, rank)
            if stats is None:
                continue
            row[f"avg_{kind}_rank"] = stats["avg_rank"]
            row[f"min_{kind}_rank"] = stats["min_rank"]
            row[f"max_{kind}_rank"] = stats["max_rank"]
            row[f"{kind}_sample_count"] = stats["sample_count"]

        self._store.upsert_tier_rows("ad_slot_rankings_hourly", [row], on_conflict="ad_slot_id,hour")


def _ad_slot_stats(row: dict | None, kind: str) -> dict | None:
    if not row or not row.get(f"{kind}_sample_count"):
        return None
    return {
        "avg_rank": row[f"avg_{kind}_rank"],
        "min_rank": row[f"min_{kind}_rank"],
        "max_rank": row[f"max_{kind}_rank"],
        "sample_count": row[f"{kind}_sample_count"],
    }
