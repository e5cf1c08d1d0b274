"""検索結果から順位を求める.

- rank_items: 上位 N 件モード（キーワード収集）
- resolve_ad_slot: ID 照合モード（広告スロット）
"""

from __future__ import annotations

from typing import Callable

from rank_collector.models import AdSlotResolution, AdSlotTarget, RankedItem, SearchItem, SearchPage


def rank_items(
    pages: list[SearchPage], items_per_page: int, max_pages: int | None = None, unique: bool = True
) -> list[RankedItem]:
    """ページ順に連結して順位を付ける.

    順位 = (page - 1) * items_per_page + ページ内位置（1始まり）。
    unique=True なら同じ商品が複数回出た場合は最初の出現だけを残す。ID のない商品は除外する。
    """
    limit = max_pages * items_per_page if max_pages else None
    ranked: list[RankedItem] = []
    seen: set[str] = set()

    for search_page in sorted(pages, key=lambda p: p.page):
        for position, item in enumerate(search_page.items, start=1):
            rank = (search_page.page - 1) * items_per_page + position
            if limit is not None and rank > limit:
                break
            if not item.product_id or (unique and item.product_id in seen):
                continue
            seen.add(item.product_id)
            ranked.append(RankedItem(rank=rank, page=search_page.page, item=item))

    return ranked


def find_rank(ranked: list[RankedItem], predicate: Callable[[SearchItem], bool]) -> RankedItem | None:
    """条件に一致する最初の商品を返す. 見つからなければ None（圏外）."""
    for r in ranked:
        if predicate(r.item):
            return r
    return None


def rank_diff(baseline: int | None, current: int | None) -> int | None:
    if baseline is None or current is None:
        return None
    return baseline - current


def resolve_ad_slot(target: AdSlotTarget, pages: list[SearchPage], items_per_page: int) -> AdSlotResolution:
    """広告スロットの価格比較順位・ストア順位を求める.

    価格比較順位: product_id == price_compare_mid
    ストア順位: product_id == product_mid かつ mall_name == seller_mid

    基準順位が未設定なら今回の順位を基準にする（new_*_baseline=True）。
    見つからない場合も is_found=False の正常な結果を返す。
    """
    # 同じ商品 ID が別の販売者で複数回出ることがあるので重複は残す
    ranked = rank_items(pages, items_per_page, unique=False)
    resolution = AdSlotResolution(
        ad_slot_id=target.ad_slot_id,
        work_keyword=target.work_keyword,
        price_start_rank=target.price_start_rank,
        store_start_rank=target.store_start_rank,
        total_results=sum(len(p.items) for p in pages),
    )

    price_hit = None
    if target.price_compare_mid:
        price_hit = find_rank(ranked, lambda item: item.product_id == target.price_compare_mid)

    store_hit = None
    if target.product_mid and target.seller_mid:
        store_hit = find_rank(
            ranked,
            lambda item: item.product_id == target.product_mid and item.mall_name == target.seller_mid,
        )

    if price_hit is not None:
        resolution.price_rank = price_hit.rank
    if store_hit is not None:
        resolution.store_rank = store_hit.rank

    first_hit = price_hit or store_hit
    if first_hit is not None:
        resolution.is_found = True
        resolution.found_at_page = first_hit.page

    if resolution.price_start_rank is None and resolution.price_rank is not None:
        resolution.price_start_rank = resolution.price_rank
        resolution.new_price_baseline = True
    if resolution.store_start_rank is None and resolution.store_rank is not None:
        resolution.store_start_rank = resolution.store_rank
        resolution.new_store_baseline = True

    resolution.price_rank_diff = rank_diff(resolution.price_start_rank, resolution.price_rank)
    resolution.store_rank_diff = rank_diff(resolution.store_start_rank, resolution.store_rank)
    return resolution
