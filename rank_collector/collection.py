"""ジョブ1件分の収集処理.

- KeywordCollector: キーワードの検索結果を上位から順位付けして保存する
- AdSlotCollector: 広告スロットの価格比較順位・ストア順位を求めて保存する
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable
from zoneinfo import ZoneInfo

from postgrest.exceptions import APIError

from rank_collector.aggregation import AggregationEngine
from rank_collector.config import AD_SLOT_MAX_PAGES, SEARCH_MAX_PAGES, TIMEZONE
from rank_collector.db import SupabaseStore, utc_now
from rank_collector.errors import AdSlotNotFound, KeywordNotFound, ProviderError, SyncConflict
from rank_collector.models import (
    AdSlotResolution,
    CollectionJob,
    KeywordType,
    RawRanking,
)
from rank_collector.providers import AfterCall, SearchProvider
from rank_collector.ranking import rank_diff, rank_items, resolve_ad_slot

logger = logging.getLogger(__name__)

# ジョブの進捗を書き込むコールバック (0〜100)
Progress = Callable[[int], None]
# API 呼び出しの後に挟む待機
Pause = Callable[[], None]


def _usage_logger(store: SupabaseStore, provider: SearchProvider, keyword_id: str | None,
                  pause: Pause | None) -> AfterCall:
    """API 呼び出しごとに api_usage へ記録し、必要なら待機するフックを作る."""

    def after_call(page: int, elapsed_ms: int, error: Exception | None) -> None:
        try:
            store.log_api_usage(
                provider=provider.name,
                keyword_id=keyword_id,
                response_time_ms=elapsed_ms,
                success=error is None,
                error_message=str(error) if error else None,
            )
        except APIError as e:
            logger.warning("api_usage の記録に失敗: %s", e)
        if pause is not None:
            pause()

    return after_call


class KeywordCollector:
    """一般・マーケットプレイスのキーワード収集."""

    def __init__(
        self,
        store: SupabaseStore,
        providers: dict[KeywordType, SearchProvider],
        engine: AggregationEngine,
        max_pages: int = SEARCH_MAX_PAGES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._providers = providers
        self._engine = engine
        self._max_pages = max_pages
        self._clock = clock

    def collect(self, job: CollectionJob, progress: Progress, pause: Pause | None = None) -> dict:
        """検索 → 順位付け → 生データ保存 → current 同期.

        Raises:
            KeywordNotFound: キーワードが search_keywords にない
            CredentialExhausted / ProviderBlocked / ProviderError: 検索 API のエラー
        """
        keyword = self._store.get_keyword(job.keyword, job.job_type)
        if keyword is None:
            raise KeywordNotFound(f"キーワードが見つかりません: {job.keyword} ({job.job_type.value})")
        progress(10)

        provider = self._providers.get(job.job_type)
        if provider is None:
            raise ProviderError("検索プロバイダが設定されていません", provider=job.job_type.value)
        pages = provider.fetch_pages(
            keyword.keyword,
            self._max_pages,
            after_call=_usage_logger(self._store, provider, keyword.id, pause),
        )
        progress(20)

        ranked = rank_items(pages, provider.items_per_page, self._max_pages)
        collected_at = self._clock().isoformat()
        records = [RawRanking.from_ranked(keyword, r, collected_at) for r in ranked]

        tables = self._engine.tables_for(keyword.type)
        self._store.insert_raw_rankings(tables.raw, records)
        self._store.update_keyword_last_collected(keyword.id, collected_at)

        current = 0
        try:
            current = self._engine.sync_current(keyword)
        except SyncConflict as e:
            logger.error("current 同期失敗: keyword=%s, %s", keyword.keyword, e)

        logger.info("収集完了: keyword=%s (%s), %d ページ, %d 件",
                    keyword.keyword, keyword.type.value, len(pages), len(records))
        return {
            "success": True,
            "keyword": keyword.keyword,
            "keywordId": keyword.id,
            "pages": len(pages),
            "items": len(records),
            "currentSynced": current,
        }


class AdSlotCollector:
    """広告スロットの順位更新."""

    def __init__(
        self,
        store: SupabaseStore,
        provider: SearchProvider,
        engine: AggregationEngine,
        max_pages: int = AD_SLOT_MAX_PAGES,
        tz: str = TIMEZONE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._provider = provider
        self._engine = engine
        self._max_pages = max_pages
        self._tz = ZoneInfo(tz)
        self._clock = clock

    def collect(self, job: CollectionJob, progress: Progress, pause: Pause | None = None) -> dict:
        if job.ad_slot_id is None:
            raise AdSlotNotFound("ad_slot_id が指定されていません")
        target = self._store.get_ad_slot(job.ad_slot_id)
        if target is None:
            raise AdSlotNotFound(f"広告スロットが見つかりません: {job.ad_slot_id}")
        progress(10)

        pages = self._provider.fetch_pages(
            target.work_keyword,
            self._max_pages,
            after_call=_usage_logger(self._store, self._provider, None, pause),
        )
        progress(20)

        resolution = resolve_ad_slot(target, pages, self._provider.items_per_page)
        self._apply_baselines(resolution)

        now = self._clock()
        self._store.insert_ad_slot_ranking(target, resolution, now.isoformat(), len(pages))
        self._store.update_ad_slot_result(resolution, now.astimezone(self._tz).date().isoformat())

        if resolution.is_found:
            try:
                self._engine.fold_ad_slot_hourly(resolution)
            except APIError as e:
                logger.error("広告スロット hourly 更新失敗: ad_slot_id=%s, %s", target.ad_slot_id, e)

        logger.info("広告スロット更新: ad_slot_id=%s, keyword=%s, price_rank=%s, store_rank=%s",
                    target.ad_slot_id, target.work_keyword, resolution.price_rank, resolution.store_rank)
        return {
            "success": True,
            "adSlotId": resolution.ad_slot_id,
            "isFound": resolution.is_found,
            "priceRank": resolution.price_rank,
            "storeRank": resolution.store_rank,
            "priceRankDiff": resolution.price_rank_diff,
            "storeRankDiff": resolution.store_rank_diff,
            "foundAtPage": resolution.found_at_page,
        }

    def _apply_baselines(self, resolution: AdSlotResolution) -> None:
        """新しい基準順位を書き込む. 他のワーカーが先に設定していたらそちらに合わせる."""
        lost = False
        if resolution.new_price_baseline:
            if not self._store.set_ad_slot_baseline(resolution.ad_slot_id, "price_start_rank", resolution.price_rank):
                lost = True
        if resolution.new_store_baseline:
            if not self._store.set_ad_slot_baseline(resolution.ad_slot_id, "store_start_rank", resolution.store_rank):
                lost = True
        if not lost:
            return

        fresh = self._store.get_ad_slot(resolution.ad_slot_id)
        if fresh is None:
            return
        resolution.price_start_rank = fresh.price_start_rank
        resolution.store_start_rank = fresh.store_start_rank
        resolution.new_price_baseline = False
        resolution.new_store_baseline = False
        resolution.price_rank_diff = rank_diff(resolution.price_start_rank, resolution.price_rank)
        resolution.store_rank_diff = rank_diff(resolution.store_start_rank, resolution.store_rank)
