"""collection モジュールのテスト."""

from unittest.mock import MagicMock

import pytest

from rank_collector.aggregation import AggregationEngine
from rank_collector.collection import AdSlotCollector, KeywordCollector
from rank_collector.errors import AdSlotNotFound, KeywordNotFound, ProviderError
from rank_collector.models import CollectionJob, JobStatus, KeywordType, SearchItem, SearchPage


def _job(keyword="무선 이어폰", job_type=KeywordType.GENERAL, ad_slot_id=None):
    return CollectionJob(
        id=1, partition="keywords", job_type=job_type, keyword=keyword, priority=0, retry_count=0,
        attempts_made=1, max_attempts=3, backoff_seconds=2.0, status=JobStatus.ACTIVE, ad_slot_id=ad_slot_id,
    )


def _items(*specs):
    return [
        SearchItem(product_id=pid, title=f"商品 {pid}", price=1000 * n, mall_name=mall,
                   categories=("디지털/가전", "음향가전"), link=f"https://example.com/{pid}")
        for n, (pid, mall) in enumerate(specs, start=1)
    ]


def _provider(pages, name="naver_shopping", error=None):
    """fetch_pages で after_call を1ページごとに呼ぶモックプロバイダ."""
    provider = MagicMock()
    provider.name = name
    provider.items_per_page = 100

    def fetch_pages(keyword, max_pages, after_call=None):
        for page in pages:
            if after_call:
                after_call(page.page, 120, None)
        if error is not None:
            if after_call:
                after_call(len(pages) + 1, 30, error)
            raise error
        return pages

    provider.fetch_pages.side_effect = fetch_pages
    return provider


@pytest.fixture
def engine(store, clock):
    return AggregationEngine(store, tz="Asia/Seoul", clock=clock)


@pytest.fixture
def keyword_row(fake_db):
    fake_db.seed("search_keywords", [
        {"id": "kw-1", "keyword": "무선 이어폰", "type": "shopping", "is_active": True, "priority": 0},
    ])


class TestKeywordCollector:
    """キーワード収集のテスト."""

    def test_collect(self, store, fake_db, engine, clock, keyword_row):
        page = SearchPage(page=1, items=_items(("A", "m1"), ("B", "m2"), ("C", "m3")), total_count=3)
        collector = KeywordCollector(store, {KeywordType.GENERAL: _provider([page])}, engine, clock=clock)
        progress = MagicMock()
        pause = MagicMock()

        result = collector.collect(_job(), progress, pause)

        assert result == {
            "success": True,
            "keyword": "무선 이어폰",
            "keywordId": "kw-1",
            "pages": 1,
            "items": 3,
            "currentSynced": 3,
        }
        assert [c.args[0] for c in progress.call_args_list] == [10, 20]
        pause.assert_called_once_with()

        raw = fake_db.rows("shopping_rankings")
        assert [(r["product_id"], r["rank"]) for r in raw] == [("A", 1), ("B", 2), ("C", 3)]
        assert raw[0]["keyword_name"] == "무선 이어폰"
        assert raw[0]["category1"] == "디지털/가전"
        assert raw[0]["category3"] == ""
        assert raw[0]["collected_at"] == clock.now.isoformat()

        assert len(fake_db.rows("shopping_rankings_current")) == 3
        assert fake_db.rows("search_keywords")[0]["last_collected_at"] == clock.now.isoformat()
        (usage,) = fake_db.rows("api_usage")
        assert usage["provider"] == "naver_shopping"
        assert usage["keyword_id"] == "kw-1"
        assert usage["success"] is True

    def test_keyword_not_found(self, store, engine, clock):
        provider = _provider([])
        collector = KeywordCollector(store, {KeywordType.GENERAL: provider}, engine, clock=clock)

        with pytest.raises(KeywordNotFound):
            collector.collect(_job("없는 키워드"), MagicMock())

        provider.fetch_pages.assert_not_called()

    def test_provider_error_is_logged_and_raised(self, store, fake_db, engine, clock, keyword_row):
        error = ProviderError("HTTP 500", status_code=500, provider="naver_shopping")
        collector = KeywordCollector(store, {KeywordType.GENERAL: _provider([], error=error)}, engine,
                                     clock=clock)

        with pytest.raises(ProviderError):
            collector.collect(_job(), MagicMock())

        (usage,) = fake_db.rows("api_usage")
        assert usage["success"] is False
        assert "HTTP 500" in usage["error_message"]
        assert fake_db.rows("shopping_rankings") == []

    def test_missing_provider(self, store, engine, clock, fake_db):
        fake_db.seed("search_keywords", [
            {"id": "kw-9", "keyword": "무선 이어폰", "type": "cp", "is_active": True, "priority": 0},
        ])
        collector = KeywordCollector(store, {}, engine, clock=clock)

        with pytest.raises(ProviderError):
            collector.collect(_job(job_type=KeywordType.MARKETPLACE), MagicMock())

    def test_current_sync_failure_still_succeeds(self, store, fake_db, engine, clock, keyword_row):
        page = SearchPage(page=1, items=_items(("A", "m1")), total_count=1)
        collector = KeywordCollector(store, {KeywordType.GENERAL: _provider([page])}, engine, clock=clock)
        fake_db.fail_next("shopping_rankings_current", "rpc")

        result = collector.collect(_job(), MagicMock())

        assert result["success"] is True
        assert result["currentSynced"] == 0
        assert len(fake_db.rows("shopping_rankings")) == 1

    def test_api_usage_failure_does_not_stop_collection(self, store, fake_db, engine, clock, keyword_row):
        page = SearchPage(page=1, items=_items(("A", "m1")), total_count=1)
        collector = KeywordCollector(store, {KeywordType.GENERAL: _provider([page])}, engine, clock=clock)
        fake_db.fail_next("api_usage", "insert")

        assert collector.collect(_job(), MagicMock())["items"] == 1


@pytest.fixture
def ad_slot(fake_db):
    fake_db.seed("ad_slots", [{
        "ad_slot_id": 7,
        "work_keyword": "무선 이어폰",
        "price_compare_mid": "P",
        "product_mid": "S",
        "seller_mid": "우리몰",
        "price_start_rank": None,
        "store_start_rank": None,
        "status": "ACTIVE",
        "is_active": True,
    }])
    return fake_db.rows("ad_slots")[0]


def _ad_job():
    return _job(job_type=KeywordType.AD_SLOT, ad_slot_id=7)


class TestAdSlotCollector:
    """広告スロット更新のテスト."""

    def test_first_run_sets_baseline(self, store, fake_db, engine, clock, ad_slot):
        page = SearchPage(page=1, items=_items(("X", "m"), ("P", "m"), ("S", "우리몰")), total_count=3)
        collector = AdSlotCollector(store, _provider([page]), engine, tz="Asia/Seoul", clock=clock)

        result = collector.collect(_ad_job(), MagicMock())

        assert result == {
            "success": True,
            "adSlotId": 7,
            "isFound": True,
            "priceRank": 2,
            "storeRank": 3,
            "priceRankDiff": 0,
            "storeRankDiff": 0,
            "foundAtPage": 1,
        }
        assert ad_slot["price_start_rank"] == 2
        assert ad_slot["store_start_rank"] == 3
        assert ad_slot["rank_check_date"] == "2026-10-19"
        (history,) = fake_db.rows("ad_slot_rankings")
        assert history["is_found"] is True
        assert history["raw_data"] == {"search_pages": 1, "total_items": 3}
        assert len(fake_db.rows("ad_slot_rankings_hourly")) == 1

    def test_baseline_is_not_overwritten(self, store, fake_db, engine, clock, ad_slot):
        first = SearchPage(page=1, items=_items(("X", "m"), ("P", "m")), total_count=2)
        AdSlotCollector(store, _provider([first]), engine, clock=clock).collect(_ad_job(), MagicMock())

        second = SearchPage(page=1, items=_items(("P", "m")), total_count=1)
        result = AdSlotCollector(store, _provider([second]), engine, clock=clock).collect(_ad_job(), MagicMock())

        assert ad_slot["price_start_rank"] == 2
        assert ad_slot["price_rank"] == 1
        assert result["priceRankDiff"] == 1

    def test_lost_baseline_race(self, store, fake_db, engine, clock, ad_slot):
        """他のワーカーが先に基準順位を書いた場合はそちらで差分を計算する."""
        page = SearchPage(page=1, items=_items(("X", "m"), ("P", "m")), total_count=2)
        original = store.set_ad_slot_baseline

        def set_baseline(ad_slot_id, column, rank):
            ad_slot[column] = 50
            return original(ad_slot_id, column, rank)

        store.set_ad_slot_baseline = set_baseline
        collector = AdSlotCollector(store, _provider([page]), engine, clock=clock)

        result = collector.collect(_ad_job(), MagicMock())

        assert ad_slot["price_start_rank"] == 50
        assert result["priceRankDiff"] == 48

    def test_not_found(self, store, fake_db, engine, clock, ad_slot):
        page = SearchPage(page=1, items=_items(("X", "m")), total_count=1)
        collector = AdSlotCollector(store, _provider([page]), engine, clock=clock)

        result = collector.collect(_ad_job(), MagicMock())

        assert result["isFound"] is False
        assert result["priceRank"] is None
        assert ad_slot["price_start_rank"] is None
        assert ad_slot["rank_check_date"] == "2026-10-19"
        assert fake_db.rows("ad_slot_rankings_hourly") == []

    def test_ad_slot_not_found(self, store, engine, clock):
        collector = AdSlotCollector(store, _provider([]), engine, clock=clock)

        with pytest.raises(AdSlotNotFound):
            collector.collect(_ad_job(), MagicMock())
