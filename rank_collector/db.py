"""Supabase データベース操作モジュール.

全テーブルは rank_tracker スキーマ（DB_SCHEMA）に配置。
Supabase client のスキーマ指定は .schema() で行う。
キュー用の collection_jobs は job_queue モジュールが table() 経由で直接扱う。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from supabase import Client, create_client

from rank_collector.config import DB_SCHEMA, SUPABASE_SECRET_KEY, SUPABASE_URL
from rank_collector.models import (
    AdSlotResolution,
    AdSlotTarget,
    Credential,
    Keyword,
    KeywordType,
    RawRanking,
)

logger = logging.getLogger(__name__)

_INSERT_BATCH_SIZE = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_supabase_client(url: str = SUPABASE_URL, key: str = SUPABASE_SECRET_KEY) -> Client:
    """Supabase クライアントを生成する."""
    if not url or not key:
        raise RuntimeError("SUPABASE_URL / SUPABASE_SECRET_KEY が設定されていません")
    return create_client(url, key)


class SupabaseStore:
    """キーワード・認証情報・順位データの永続化."""

    def __init__(self, client: Client, schema: str = DB_SCHEMA):
        self._client = client
        self._schema = schema

    def table(self, name: str):
        """rank_tracker スキーマのテーブルを参照する."""
        return self._client.schema(self._schema).table(name)

    def rpc(self, fn: str, params: dict):
        return self._client.schema(self._schema).rpc(fn, params)

    # --- キーワード ---

    def get_active_keywords(self, keyword_type: KeywordType) -> list[Keyword]:
        """指定種別の有効なキーワードを優先度順に取得する."""
        resp = (
            self.table("search_keywords")
            .select("*")
            .eq("is_active", True)
            .eq("type", keyword_type.value)
            .order("priority")
            .execute()
        )
        return [Keyword.from_row(row) for row in resp.data]

    def get_keyword(self, text: str, keyword_type: KeywordType) -> Keyword | None:
        resp = (
            self.table("search_keywords")
            .select("*")
            .eq("keyword", text)
            .eq("type", keyword_type.value)
            .limit(1)
            .execute()
        )
        if not resp.data:
            return None
        return Keyword.from_row(resp.data[0])

    def update_keyword_last_collected(self, keyword_id: str, collected_at: str) -> None:
        (
            self.table("search_keywords")
            .update({"last_collected_at": collected_at})
            .eq("id", keyword_id)
            .execute()
        )

    # --- 認証情報 ---

    def get_active_credentials(self, provider: str) -> list[Credential]:
        """プロバイダの有効な認証情報を使用回数の少ない順に取得する."""
        resp = (
            self.table("api_keys")
            .select("*")
            .eq("provider", provider)
            .eq("is_active", True)
            .order("usage_count")
            .execute()
        )
        return [Credential.from_row(row) for row in resp.data]

    def record_credential_usage(self, credential: Credential) -> None:
        (
            self.table("api_keys")
            .update({
                "usage_count": credential.usage_count,
                "last_used_at": credential.last_used_at.isoformat() if credential.last_used_at else None,
            })
            .eq("id", credential.id)
            .execute()
        )

    def record_credential_rate_limit(self, credential: Credential, rate_limit_count: int) -> None:
        (
            self.table("api_keys")
            .update({
                "rate_limit_count": rate_limit_count,
                "last_rate_limit_at": credential.rate_limited_at.isoformat() if credential.rate_limited_at else None,
            })
            .eq("id", credential.id)
            .execute()
        )

    def log_api_usage(
        self,
        provider: str,
        keyword_id: str | None,
        response_time_ms: int,
        success: bool,
        error_message: str | None = None,
        endpoint: str = "search",
    ) -> None:
        self.table("api_usage").insert({
            "provider": provider,
            "endpoint": endpoint,
            "keyword_id": keyword_id,
            "request_count": 1,
            "response_time_ms": response_time_ms,
            "success": success,
            "error_message": error_message,
            "created_at": utc_now().isoformat(),
        }).execute()

    # --- 生の順位データ ---

    def insert_raw_rankings(self, table: str, records: list[RawRanking]) -> None:
        """順位レコードを一括挿入する.

        Args:
            table: shopping_rankings / cp_rankings
            records: 1回の収集で得た順位レコード
        """
        if not records:
            return
        rows = [vars(r) for r in records]
        for i in range(0, len(rows), _INSERT_BATCH_SIZE):
            self.table(table).insert(rows[i:i + _INSERT_BATCH_SIZE]).execute()
        logger.info("%s に %d 件挿入", table, len(rows))

    def get_latest_raw_rankings(
        self, table: str, keyword_id: str, limit: int, since: str | None = None
    ) -> list[dict]:
        """キーワードの最新収集分を順位順に取得する.

        Args:
            since: 指定時はこの時刻以降に収集されたものだけを対象にする

        Returns:
            最新の collected_at を持つ行（上位 limit 件）。該当なしは空リスト。
        """
        query = self.table(table).select("collected_at").eq("keyword_id", keyword_id)
        if since:
            query = query.gte("collected_at", since)
        latest = query.order("collected_at", desc=True).limit(1).execute()
        if not latest.data:
            return []

        resp = (
            self.table(table)
            .select("*")
            .eq("keyword_id", keyword_id)
            .eq("collected_at", latest.data[0]["collected_at"])
            .order("rank")
            .limit(limit)
            .execute()
        )
        return resp.data

    def delete_raw_before(self, table: str, cutoff: str) -> None:
        self.table(table).delete().lt("collected_at", cutoff).execute()

    # --- 集計テーブル ---

    def get_current_ranks(self, table: str, keyword_id: str) -> dict[str, int]:
        """現在テーブルの product_id -> rank を返す."""
        resp = self.table(table).select("product_id, rank").eq("keyword_id", keyword_id).execute()
        return {row["product_id"]: row["rank"] for row in resp.data}

    def replace_current_rankings(self, table: str, keyword_id: str, rows: list[dict]) -> None:
        """キーワードの現在順位を削除→挿入で全件置き換える（1トランザクション）."""
        self.rpc(
            "replace_current_rankings",
            {"p_table": table, "p_keyword_id": keyword_id, "p_rows": rows},
        ).execute()

    def get_tier_rows(self, table: str, keyword_id: str, bucket_column: str, bucket: str) -> list[dict]:
        resp = (
            self.table(table)
            .select("*")
            .eq("keyword_id", keyword_id)
            .eq(bucket_column, bucket)
            .execute()
        )
        return resp.data

    def get_hourly_window(self, table: str, keyword_id: str, start: str, end: str) -> list[dict]:
        """[start, end) の時間別行を新しい順に取得する."""
        resp = (
            self.table(table)
            .select("*")
            .eq("keyword_id", keyword_id)
            .gte("hour", start)
            .lt("hour", end)
            .order("hour", desc=True)
            .execute()
        )
        return resp.data

    def upsert_tier_rows(self, table: str, rows: list[dict], on_conflict: str) -> None:
        if not rows:
            return
        self.table(table).upsert(rows, on_conflict=on_conflict).execute()

    def delete_tier_before(self, table: str, bucket_column: str, cutoff: str) -> None:
        self.table(table).delete().lt(bucket_column, cutoff).execute()

    # --- 広告スロット ---

    def get_active_ad_slots(self) -> list[AdSlotTarget]:
        """有効な広告スロットを取得する. 未チェックのスロットを先頭にする."""
        resp = (
            self.table("ad_slots")
            .select("*")
            .eq("status", "ACTIVE")
            .eq("is_active", True)
            .neq("work_keyword", "")
            .order("rank_check_date", nullsfirst=True)
            .order("ad_slot_id")
            .execute()
        )
        return [AdSlotTarget.from_row(row) for row in resp.data if row.get("work_keyword")]

    def get_ad_slot(self, ad_slot_id: int) -> AdSlotTarget | None:
        resp = self.table("ad_slots").select("*").eq("ad_slot_id", ad_slot_id).limit(1).execute()
        if not resp.data:
            return None
        return AdSlotTarget.from_row(resp.data[0])

    def insert_ad_slot_ranking(self, target: AdSlotTarget, resolution: AdSlotResolution, collected_at: str,
                               search_pages: int) -> None:
        self.table("ad_slot_rankings").insert({
            "ad_slot_id": target.ad_slot_id,
            "work_keyword": target.work_keyword,
            "price_compare_mid": target.price_compare_mid,
            "product_mid": target.product_mid,
            "seller_mid": target.seller_mid,
            "collected_at": collected_at,
            "price_rank": resolution.price_rank,
            "store_rank": resolution.store_rank,
            "is_found": resolution.is_found,
            "found_at_page": resolution.found_at_page,
            "total_results": resolution.total_results,
            "raw_data": {"search_pages": search_pages, "total_items": resolution.total_results},
        }).execute()

    def set_ad_slot_baseline(self, ad_slot_id: int, column: str, rank: int) -> bool:
        """基準順位が未設定の場合だけ設定する.

        Returns:
            今回設定した場合 True。既に設定済みなら False。
        """
        resp = (
            self.table("ad_slots")
            .update({column: rank})
            .eq("ad_slot_id", ad_slot_id)
            .is_(column, "null")
            .execute()
        )
        return bool(resp.data)

    def update_ad_slot_result(self, resolution: AdSlotResolution, checked_on: str) -> None:
        values: dict[str, Any] = {
            "price_rank": resolution.price_rank,
            "store_rank": resolution.store_rank,
            "price_rank_diff": resolution.price_rank_diff,
            "store_rank_diff": resolution.store_rank_diff,
            "rank_check_date": checked_on,
            "updated_at": utc_now().isoformat(),
        }
        self.table("ad_slots").update(values).eq("ad_slot_id", resolution.ad_slot_id).execute()

    def get_ad_slot_hourly(self, ad_slot_id: int, hour: str) -> dict | None:
        resp = (
            self.table("ad_slot_rankings_hourly")
            .select("*")
            .eq("ad_slot_id", ad_slot_id)
            .eq("hour", hour)
            .limit(1)
            .execute()
        )
        return resp.data[0] if resp.data else None
