"""aggregation モジュールのテスト."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from rank_collector.aggregation import (
    AggregationEngine,
    daily_window,
    fold_rank,
    hour_bucket,
    merge_daily,
)
from rank_collector.errors import SyncConflict
from rank_collector.models import AdSlotResolution, Keyword, KeywordType

SEOUL = ZoneInfo("Asia/Seoul")
# clock フィクスチャ (12:30 KST) の時間バケット
BUCKET = "2026-10-19T03:00:00+00:00"


def _keyword(kid="kw-1", keyword_type=KeywordType.GENERAL):
    return Keyword(id=kid, keyword=f"키워드 {kid}", type=keyword_type)


def _raw(kid, product_id, rank, collected_at, **extra):
    row = {
        "keyword_id": kid,
        "product_id": product_id,
        "rank": rank,
        "collected_at": collected_at,
        "title": f"商品 {product_id}",
        "lprice": 1000,
        "mall_name": "mall",
    }
    row.update(extra)
    return row


@pytest.fixture
def engine(store, clock):
    return AggregationEngine(store, tz="Asia/Seoul", clock=clock)


class TestPureFunctions:
    """集計の計算関数のテスト."""

    def test_fold_rank(self):
        stats = None
        for rank in (10, 20, 30):
            stats = fold_rank(stats, rank)

        assert stats == {"avg_rank": 20.0, "min_rank": 10, "max_rank": 30, "sample_count": 3}

    def test_hour_bucket(self):
        now = datetime(2026, 10, 19, 3, 59, 59, tzinfo=timezone.utc)

        assert hour_bucket(now, SEOUL) == datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)

    def test_hour_bucket_half_hour_offset(self):
        """30分ずれたタイムゾーンでもローカルの正時で切る."""
        now = datetime(2026, 10, 19, 3, 10, tzinfo=timezone.utc)  # 08:40 IST

        bucket = hour_bucket(now, ZoneInfo("Asia/Kolkata"))

        assert bucket == datetime(2026, 10, 19, 2, 30, tzinfo=timezone.utc)

    def test_daily_window(self):
        start, end = daily_window(date(2026, 10, 18), SEOUL, 22)

        assert start == datetime(2026, 10, 18, 13, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 18, 15, 0, tzinfo=timezone.utc)

    def test_merge_daily_weighted(self):
        rows = [
            {"hour": "2026-10-18T13:00:00+00:00", "avg_rank": 10.0, "min_rank": 10, "max_rank": 10,
             "sample_count": 1, "title": "old"},
            {"hour": "2026-10-18T14:00:00+00:00", "avg_rank": 20.0, "min_rank": 15, "max_rank": 25,
             "sample_count": 3, "title": "new"},
        ]

        merged = merge_daily(rows, ("title",))

        assert merged == {"avg_rank": 17.5, "min_rank": 10, "max_rank": 25, "sample_count": 4, "title": "new"}


class TestSyncCurrent:
    """current 同期のテスト."""

    def test_replace_with_previous_rank(self, engine, fake_db):
        fake_db.seed("shopping_rankings_current", [
            {"keyword_id": "kw-1", "product_id": "A", "rank": 1},
            {"keyword_id": "kw-1", "product_id": "B", "rank": 2},
            {"keyword_id": "kw-2", "product_id": "A", "rank": 9},
        ])
        fake_db.seed("shopping_rankings", [
            _raw("kw-1", "A", 1, "2026-10-19T00:30:00+00:00"),
            _raw("kw-1", "B", 1, "2026-10-19T03:30:00+00:00"),
            _raw("kw-1", "C", 2, "2026-10-19T03:30:00+00:00"),
        ])

        count = engine.sync_current(_keyword())

        assert count == 2
        current = {
            r["product_id"]: r for r in fake_db.rows("shopping_rankings_current") if r["keyword_id"] == "kw-1"
        }
        assert set(current) == {"B", "C"}
        assert current["B"]["rank"] == 1
        assert current["B"]["previous_rank"] == 2
        assert current["C"]["previous_rank"] is None
        assert current["B"]["title"] == "商品 B"
        # 他のキーワードは触らない
        assert any(r["keyword_id"] == "kw-2" for r in fake_db.rows("shopping_rankings_current"))

    def test_top_n(self, store, fake_db, clock):
        engine = AggregationEngine(store, tz="Asia/Seoul", top_n=2, clock=clock)
        fake_db.seed("shopping_rankings", [
            _raw("kw-1", p, r, "2026-10-19T03:30:00+00:00") for r, p in enumerate("ABC", start=1)
        ])

        assert engine.sync_current(_keyword()) == 2

    def test_marketplace_tables(self, engine, fake_db):
        fake_db.seed("cp_rankings", [_raw("kw-9", "7000000001", 1, "2026-10-19T03:30:00+00:00", brand="x")])

        engine.sync_current(_keyword("kw-9", KeywordType.MARKETPLACE))

        (row,) = fake_db.rows("cp_rankings_current")
        assert row["product_id"] == "7000000001"
        assert "brand" not in row
        assert fake_db.rpc_calls[0][1]["p_table"] == "cp_rankings_current"

    def test_no_raw_rows(self, engine, fake_db):
        assert engine.sync_current(_keyword()) == 0
        assert fake_db.rpc_calls == []

    def test_write_failure_is_sync_conflict(self, engine, fake_db):
        fake_db.seed("shopping_rankings", [_raw("kw-1", "A", 1, "2026-10-19T03:30:00+00:00")])
        fake_db.fail_next("shopping_rankings_current", "rpc")

        with pytest.raises(SyncConflict) as exc_info:
            engine.sync_current(_keyword())

        assert exc_info.value.keyword_id == "kw-1"


class TestSyncHourly:
    """hourly 同期のテスト."""

    def test_fold_twice_in_same_hour(self, engine, fake_db, clock):
        fake_db.seed("shopping_rankings", [_raw("kw-1", "A", 10, "2026-10-19T03:05:00+00:00")])
        engine.sync_hourly([_keyword()])

        fake_db.seed("shopping_rankings", [
            _raw("kw-1", "A", 30, "2026-10-19T03:30:00+00:00", title="新しいタイトル"),
        ])
        summary = engine.sync_hourly([_keyword()])

        assert summary == {"synced": 1, "failed": 0, "skipped": 0}
        (row,) = fake_db.rows("shopping_rankings_hourly")
        assert row["hour"] == BUCKET
        assert row["avg_rank"] == 20.0
        assert row["min_rank"] == 10
        assert row["max_rank"] == 30
        assert row["sample_count"] == 2
        assert row["title"] == "新しいタイトル"

    def test_since_skips_old_collection(self, engine, fake_db):
        fake_db.seed("shopping_rankings", [_raw("kw-1", "A", 10, "2026-10-19T00:00:00+00:00")])

        summary = engine.sync_hourly([_keyword()], since="2026-10-19T03:00:00+00:00")

        assert summary == {"synced": 0, "failed": 0, "skipped": 1}
        assert fake_db.rows("shopping_rankings_hourly") == []

    def test_failure_does_not_stop_other_keywords(self, engine, fake_db):
        fake_db.seed("shopping_rankings", [
            _raw("kw-1", "A", 1, "2026-10-19T03:30:00+00:00"),
            _raw("kw-2", "B", 1, "2026-10-19T03:30:00+00:00"),
        ])
        fake_db.fail_next("shopping_rankings_hourly", "upsert")

        summary = engine.sync_hourly([_keyword("kw-1"), _keyword("kw-2")])

        assert summary == {"synced": 1, "failed": 1, "skipped": 0}
        assert [r["keyword_id"] for r in fake_db.rows("shopping_rankings_hourly")] == ["kw-2"]

    def test_run_cycle_sync_removes_old_hours(self, engine, fake_db):
        fake_db.seed("shopping_rankings_hourly", [
            {"keyword_id": "kw-1", "product_id": "old", "hour": "2026-10-17T03:00:00+00:00",
             "avg_rank": 1.0, "min_rank": 1, "max_rank": 1, "sample_count": 1},
        ])
        fake_db.seed("shopping_rankings", [_raw("kw-1", "A", 1, "2026-10-19T03:30:00+00:00")])

        engine.run_cycle_sync([_keyword()])

        assert [r["product_id"] for r in fake_db.rows("shopping_rankings_hourly")] == ["A"]


class TestSyncDaily:
    """daily 同期のテスト."""

    def _hourly(self, hour, avg, lo, hi, count, title="t"):
        return {"keyword_id": "kw-1", "product_id": "A", "hour": hour, "avg_rank": avg, "min_rank": lo,
                "max_rank": hi, "sample_count": count, "title": title}

    def test_merge_window_of_previous_day(self, engine, fake_db):
        fake_db.seed("shopping_rankings_hourly", [
            self._hourly("2026-10-18T12:00:00+00:00", 100.0, 100, 100, 5),  # 21:00 KST (範囲外)
            self._hourly("2026-10-18T13:00:00+00:00", 10.0, 10, 10, 1, title="22時"),
            self._hourly("2026-10-18T14:00:00+00:00", 20.0, 15, 25, 3, title="23時"),
        ])

        summary = engine.sync_daily(keywords=[_keyword()])

        assert summary == {"synced": 1, "failed": 0, "skipped": 0}
        (row,) = fake_db.rows("shopping_rankings_daily")
        assert row["date"] == "2026-10-18"
        assert row["avg_rank"] == 17.5
        assert row["min_rank"] == 10
        assert row["max_rank"] == 25
        assert row["sample_count"] == 4
        assert row["title"] == "23時"

    def test_rerun_overwrites(self, engine, fake_db):
        fake_db.seed("shopping_rankings_hourly", [self._hourly("2026-10-18T13:00:00+00:00", 10.0, 10, 10, 1)])
        engine.sync_daily(day=date(2026, 10, 18), keywords=[_keyword()])
        engine.sync_daily(day=date(2026, 10, 18), keywords=[_keyword()])

        assert len(fake_db.rows("shopping_rankings_daily")) == 1

    def test_loads_active_keywords(self, engine, fake_db):
        fake_db.seed("search_keywords", [
            {"id": "kw-1", "keyword": "무선 이어폰", "type": "shopping", "is_active": True, "priority": 0},
            {"id": "kw-2", "keyword": "이어폰", "type": "cp", "is_active": True, "priority": 0},
            {"id": "kw-3", "keyword": "중지", "type": "shopping", "is_active": False, "priority": 0},
        ])

        summary = engine.sync_daily(day=date(2026, 10, 18))

        assert summary == {"synced": 0, "failed": 0, "skipped": 2}

    def test_cleanup_daily(self, engine, fake_db):
        fake_db.seed("shopping_rankings_daily", [
            {"keyword_id": "kw-1", "product_id": "A", "date": "2026-09-01"},
            {"keyword_id": "kw-1", "product_id": "A", "date": "2026-10-18"},
        ])
        fake_db.seed("shopping_rankings", [
            _raw("kw-1", "A", 1, "2026-10-01T00:00:00+00:00"),
            _raw("kw-1", "A", 1, "2026-10-19T00:00:00+00:00"),
        ])

        engine.cleanup_daily()

        assert [r["date"] for r in fake_db.rows("shopping_rankings_daily")] == ["2026-10-18"]
        assert [r["collected_at"] for r in fake_db.rows("shopping_rankings")] == ["2026-10-19T00:00:00+00:00"]


class TestAdSlotHourly:
    """広告スロットの hourly 加算のテスト."""

    def test_fold_price_and_store(self, engine, fake_db, clock):
        engine.fold_ad_slot_hourly(AdSlotResolution(ad_slot_id=7, work_keyword="kw", is_found=True, price_rank=5))
        clock.advance(600)
        engine.fold_ad_slot_hourly(
            AdSlotResolution(ad_slot_id=7, work_keyword="kw", is_found=True, price_rank=15, store_rank=3)
        )

        (row,) = fake_db.rows("ad_slot_rankings_hourly")
        assert row["hour"] == BUCKET
        assert row["avg_price_rank"] == 10.0
        assert row["min_price_rank"] == 5
        assert row["max_price_rank"] == 15
        assert row["price_sample_count"] == 2
        assert row["avg_store_rank"] == 3.0
        assert row["store_sample_count"] == 1

    def test_next_hour_is_new_bucket(self, engine, fake_db, clock):
        engine.fold_ad_slot_hourly(AdSlotResolution(ad_slot_id=7, work_keyword="kw", is_found=True, price_rank=5))
        clock.advance(timedelta(hours=1).total_seconds())
        engine.fold_ad_slot_hourly(AdSlotResolution(ad_slot_id=7, work_keyword="kw", is_found=True, price_rank=9))

        assert [r["price_sample_count"] for r in fake_db.rows("ad_slot_rankings_hourly")] == [1, 1]
