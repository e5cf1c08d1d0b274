"""データモデル定義."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class KeywordType(str, Enum):
    """キーワード（＝ジョブ）の種別."""

    GENERAL = "shopping"  # 一般ショッピング検索
    MARKETPLACE = "cp"  # マーケットプレイス検索
    AD_SLOT = "ad_slot"  # 広告スロットの順位更新


class JobStatus(str, Enum):
    WAITING = "waiting"  # 遅延ジョブも run_at が未来の waiting として扱う
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Keyword:
    """追跡対象の検索キーワード."""

    id: str  # uuid
    keyword: str
    type: KeywordType
    is_active: bool = True
    priority: int = 0
    last_collected_at: str | None = None  # ISO 8601

    @classmethod
    def from_row(cls, row: dict) -> Keyword:
        return cls(
            id=row["id"],
            keyword=row["keyword"],
            type=KeywordType(row.get("type") or KeywordType.GENERAL.value),
            is_active=bool(row.get("is_active", True)),
            priority=row.get("priority") or 0,
            last_collected_at=row.get("last_collected_at"),
        )


@dataclass
class Credential:
    """検索 API の認証情報 1組."""

    id: str
    client_id: str
    client_secret: str
    usage_count: int = 0
    last_used_at: datetime | None = None
    rate_limit_count: int = 0
    rate_limited_at: datetime | None = None  # プール内の制限マーク

    @property
    def masked_id(self) -> str:
        return f"{self.client_id[:8]}..."

    @classmethod
    def from_row(cls, row: dict) -> Credential:
        last_used = row.get("last_used_at")
        return cls(
            id=str(row["id"]),
            client_id=row["client_id"],
            client_secret=row.get("client_secret") or "",
            usage_count=row.get("usage_count") or 0,
            rate_limit_count=row.get("rate_limit_count") or 0,
            last_used_at=datetime.fromisoformat(last_used) if last_used else None,
        )


@dataclass
class SearchItem:
    """プロバイダ非依存に正規化した検索結果の1商品."""

    product_id: str
    title: str
    price: int
    mall_name: str  # 販売者 / モール名
    categories: tuple[str, ...] = ()
    link: str = ""
    image: str = ""
    brand: str = ""
    maker: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)  # プロバイダ固有の生データ


@dataclass
class SearchPage:
    """検索 API 1回分の結果."""

    page: int  # 1始まり
    items: list[SearchItem]
    total_count: int


@dataclass
class RankedItem:
    """順位付けされた検索結果."""

    rank: int  # 1始まり
    page: int
    item: SearchItem


@dataclass
class RawRanking:
    """DB に書き込む生の順位レコード（1回の観測）."""

    keyword_id: str
    keyword_name: str
    product_id: str
    rank: int
    title: str
    link: str
    image: str
    lprice: int
    mall_name: str
    brand: str
    maker: str
    category1: str
    category2: str
    category3: str
    category4: str
    collected_at: str  # ISO 8601
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_ranked(cls, keyword: Keyword, ranked: RankedItem, collected_at: str) -> RawRanking:
        item = ranked.item
        categories = list(item.categories) + [""] * 4
        return cls(
            keyword_id=keyword.id,
            keyword_name=keyword.keyword,
            product_id=item.product_id,
            rank=ranked.rank,
            title=item.title,
            link=item.link,
            image=item.image,
            lprice=item.price,
            mall_name=item.mall_name,
            brand=item.brand,
            maker=item.maker,
            category1=categories[0],
            category2=categories[1],
            category3=categories[2],
            category4=categories[3],
            collected_at=collected_at,
            metadata=item.metadata,
        )


@dataclass
class JobSpec:
    """キューに投入するジョブの内容."""

    job_type: KeywordType
    keyword: str  # 広告スロットの場合は work_keyword
    priority: int = 0  # 小さいほど優先
    retry_count: int = 0  # ブロック時の再試行回数
    ad_slot_id: int | None = None

    @property
    def dedup_key(self) -> str:
        if self.job_type is KeywordType.AD_SLOT:
            return f"{self.job_type.value}:{self.ad_slot_id}"
        return f"{self.job_type.value}:{self.keyword}"


@dataclass
class CollectionJob:
    """collection_jobs の1行."""

    id: int
    partition: str
    job_type: KeywordType
    keyword: str
    priority: int
    retry_count: int
    attempts_made: int
    max_attempts: int
    backoff_seconds: float
    status: JobStatus
    ad_slot_id: int | None = None
    created_at: str | None = None

    def to_spec(self) -> JobSpec:
        return JobSpec(
            job_type=self.job_type,
            keyword=self.keyword,
            priority=self.priority,
            retry_count=self.retry_count,
            ad_slot_id=self.ad_slot_id,
        )

    @classmethod
    def from_row(cls, row: dict) -> CollectionJob:
        return cls(
            id=row["id"],
            partition=row["partition"],
            job_type=KeywordType(row["job_type"]),
            keyword=row.get("keyword") or "",
            priority=row.get("priority") or 0,
            retry_count=row.get("retry_count") or 0,
            attempts_made=row.get("attempts_made") or 0,
            max_attempts=row.get("max_attempts") or 1,
            backoff_seconds=float(row.get("backoff_seconds") or 0),
            status=JobStatus(row["status"]),
            ad_slot_id=row.get("ad_slot_id"),
            created_at=row.get("created_at"),
        )


@dataclass
class AdSlotTarget:
    """検索結果の中から探す広告スロット."""

    ad_slot_id: int
    work_keyword: str
    price_compare_mid: str | None = None  # 価格比較 ID
    product_mid: str | None = None
    seller_mid: str | None = None  # 販売者名 (mall_name と照合)
    price_start_rank: int | None = None  # 基準順位。初回のみ設定
    store_start_rank: int | None = None
    rank_check_date: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> AdSlotTarget:
        return cls(
            ad_slot_id=row["ad_slot_id"],
            work_keyword=row.get("work_keyword") or "",
            price_compare_mid=row.get("price_compare_mid") or None,
            product_mid=row.get("product_mid") or None,
            seller_mid=row.get("seller_mid") or None,
            price_start_rank=row.get("price_start_rank"),
            store_start_rank=row.get("store_start_rank"),
            rank_check_date=row.get("rank_check_date"),
        )


@dataclass
class AdSlotResolution:
    """広告スロットの順位解決結果. 見つからない場合も正常な結果として扱う."""

    ad_slot_id: int
    work_keyword: str
    is_found: bool = False
    price_rank: int | None = None
    store_rank: int | None = None
    found_at_page: int | None = None
    price_start_rank: int | None = None
    store_start_rank: int | None = None
    price_rank_diff: int | None = None  # 基準 - 現在 (正 = 上昇)
    store_rank_diff: int | None = None
    total_results: int = 0
    new_price_baseline: bool = False
    new_store_baseline: bool = False
