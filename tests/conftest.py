"""共通フィクスチャ."""

from datetime import datetime, timedelta, timezone

import pytest

from fake_supabase import FakeSupabase
from rank_collector.db import SupabaseStore


class FakeClock:
    """呼び出すと現在時刻を返す. advance() で進める."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    # 2026-10-19 12:30 KST
    return FakeClock(datetime(2026, 10, 19, 3, 30, tzinfo=timezone.utc))


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    db.add_unique(
        "collection_jobs", ("dedup_key",),
        where=lambda row: row.get("status") in ("waiting", "active"),
    )
    return db


@pytest.fixture
def store(fake_db):
    return SupabaseStore(fake_db)
