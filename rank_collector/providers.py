"""検索 API プロバイダ.

- NaverShoppingProvider: 一般ショッピング検索（認証情報ローテーションあり）
- CoupangProvider: マーケットプレイス検索プロキシ（固定 API キー）

どちらも SearchItem に正規化した SearchPage を返す。HTTP エラーはこの層で
ProviderError 系の例外に変換する。
"""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import requests
from bs4 import BeautifulSoup

from rank_collector.config import (
    COUPANG_API_KEY,
    COUPANG_API_URL,
    COUPANG_ITEMS_PER_PAGE,
    COUPANG_PROVIDER,
    COUPANG_REQUEST_TIMEOUT,
    NAVER_ITEMS_PER_PAGE,
    NAVER_PROVIDER,
    NAVER_SHOP_API_URL,
    RATE_LIMIT_MAX_ATTEMPTS,
    RATE_LIMIT_RETRY_DELAY,
    REQUEST_TIMEOUT,
)
from rank_collector.credentials import CredentialPool
from rank_collector.errors import (
    CollectorError,
    CredentialExhausted,
    ProviderBlocked,
    ProviderError,
    RateLimited,
)
from rank_collector.models import Credential, SearchItem, SearchPage

logger = logging.getLogger(__name__)

# ページ取得ごとに呼ばれるフック: (page, elapsed_ms, error)
AfterCall = Callable[[int, int, "Exception | None"], None]

# Naver の「リクエスト過多」エラーコード
_NAVER_RATE_LIMIT_CODES = {"012", "SE01"}

COUPANG_MALL_NAME = "쿠팡"


def clean_title(text: str) -> str:
    """タイトルから <b> などのタグと HTML エンティティを除去する."""
    if not text:
        return ""
    return BeautifulSoup(text, "html.parser").get_text().strip()


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class SearchProvider(ABC):
    """検索 API の共通処理（入力検証・認証情報ローテーション・ページ送り）."""

    name: str = ""
    items_per_page: int = 0

    def __init__(
        self,
        pool: CredentialPool | None = None,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        retry_delay: float = RATE_LIMIT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._pool = pool
        self._session = session or requests.Session()
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep

    def search(self, keyword: str, page: int = 1) -> SearchPage:
        """1ページ分の検索結果を取得する.

        レート制限を受けた場合は認証情報を切り替えて
        min(max_attempts, 認証情報数) 回まで再試行する。

        Raises:
            CredentialExhausted: 再試行しても全認証情報がレート制限
            ProviderBlocked: ネットワーク単位の遮断
            ProviderError: タイムアウト・5xx・不正なレスポンス
        """
        self._validate(keyword, page)
        logger.debug("[%s] 検索: keyword=%s, page=%d", self.name, keyword, page)

        if self._pool is None:
            return self._request(None, keyword, page)

        attempts = max(1, min(self._max_attempts, self._pool.size()))
        for attempt in range(1, attempts + 1):
            credential = self._pool.next()
            try:
                result = self._request(credential, keyword, page)
            except RateLimited:
                self._pool.mark_limited(credential)
                logger.warning("[%s] レート制限 (%d/%d): keyword=%s, key=%s",
                               self.name, attempt, attempts, keyword, credential.masked_id)
                if attempt < attempts:
                    self._sleep(self._retry_delay)
                continue
            self._pool.record_usage(credential)
            return result

        raise CredentialExhausted(f"[{self.name}] {attempts} 回再試行しましたがレート制限が解除されません")

    def fetch_pages(
        self, keyword: str, max_pages: int, after_call: AfterCall | None = None
    ) -> list[SearchPage]:
        """1ページ目から順に取得する.

        総件数から求めた最終ページ・max_pages・件数不足のページのいずれかで打ち切る。
        after_call は成功・失敗にかかわらず API 呼び出しのたびに呼ばれる。
        """
        pages: list[SearchPage] = []
        for page in range(1, max_pages + 1):
            started = time.monotonic()
            try:
                result = self.search(keyword, page)
            except CollectorError as e:
                if after_call:
                    after_call(page, int((time.monotonic() - started) * 1000), e)
                raise
            if after_call:
                after_call(page, int((time.monotonic() - started) * 1000), None)

            pages.append(result)
            if len(result.items) < self.items_per_page:
                break
            if result.total_count and page >= math.ceil(result.total_count / self.items_per_page):
                break

        logger.info("[%s] 取得完了: keyword=%s, %d ページ, %d 件",
                    self.name, keyword, len(pages), sum(len(p.items) for p in pages))
        return pages

    def _validate(self, keyword: str, page: int) -> None:
        if not keyword or not keyword.strip():
            raise ProviderError("キーワードが空です", status_code=400, provider=self.name)
        if not isinstance(page, int) or page < 1:
            raise ProviderError("ページは 1 以上の整数で指定してください", status_code=400, provider=self.name)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.Timeout as e:
            raise ProviderError(f"タイムアウト: {e}", provider=self.name) from e
        except requests.RequestException as e:
            raise ProviderError(f"通信エラー: {e}", provider=self.name) from e

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    @abstractmethod
    def _request(self, credential: Credential | None, keyword: str, page: int) -> SearchPage:
        """1回分の HTTP リクエストを送り、正規化した結果を返す."""


class NaverShoppingProvider(SearchProvider):
    """Naver ショッピング検索 Open API."""

    name = NAVER_PROVIDER
    items_per_page = NAVER_ITEMS_PER_PAGE

    def __init__(self, pool: CredentialPool, api_url: str = NAVER_SHOP_API_URL, **kwargs):
        super().__init__(pool=pool, **kwargs)
        self._api_url = api_url

    def _request(self, credential: Credential | None, keyword: str, page: int) -> SearchPage:
        headers = {}
        if credential is not None:
            headers = {
                "X-Naver-Client-Id": credential.client_id,
                "X-Naver-Client-Secret": credential.client_secret,
            }
        params = {
            "query": keyword,
            "display": self.items_per_page,
            "start": (page - 1) * self.items_per_page + 1,
            "sort": "sim",
        }
        resp = self._send("GET", self._api_url, headers=headers, params=params)
        body = self._json(resp)

        error_code = body.get("errorCode") if isinstance(body, dict) else None
        if resp.status_code == 429 or error_code in _NAVER_RATE_LIMIT_CODES:
            raise RateLimited("リクエスト過多", status_code=resp.status_code, provider=self.name)
        if resp.status_code >= 400:
            message = body.get("errorMessage") if isinstance(body, dict) else None
            raise ProviderError(message or f"HTTP {resp.status_code}", status_code=resp.status_code,
                                provider=self.name)
        if not isinstance(body, dict) or not isinstance(body.get("items"), list):
            raise ProviderError("レスポンスの形式が不正です", status_code=resp.status_code, provider=self.name)

        items = [self._to_item(raw) for raw in body["items"]]
        return SearchPage(page=page, items=items, total_count=_to_int(body.get("total")))

    @staticmethod
    def _to_item(raw: dict) -> SearchItem:
        return SearchItem(
            product_id=str(raw.get("productId") or ""),
            title=clean_title(raw.get("title", "")),
            price=_to_int(raw.get("lprice")),
            mall_name=raw.get("mallName") or "",
            categories=tuple(raw.get(f"category{i}") or "" for i in range(1, 5)),
            link=raw.get("link") or "",
            image=raw.get("image") or "",
            brand=raw.get("brand") or "",
            maker=raw.get("maker") or "",
            metadata={"productType": raw.get("productType"), "hprice": _to_int(raw.get("hprice"))},
        )


class CoupangProvider(SearchProvider):
    """マーケットプレイス検索プロキシ API."""

    name = COUPANG_PROVIDER
    items_per_page = COUPANG_ITEMS_PER_PAGE

    def __init__(
        self,
        api_url: str = COUPANG_API_URL,
        api_key: str = COUPANG_API_KEY,
        timeout: float = COUPANG_REQUEST_TIMEOUT,
        **kwargs,
    ):
        if not api_url:
            raise ValueError("COUPANG_API_URL が設定されていません")
        super().__init__(pool=None, timeout=timeout, **kwargs)
        self._api_url = api_url
        self._api_key = api_key

    def _request(self, credential: Credential | None, keyword: str, page: int) -> SearchPage:
        payload = {"keyword": keyword, "page": page, "limit": self.items_per_page}
        headers = {"Content-Type": "application/json", "X-API-Key": self._api_key}
        resp = self._send("POST", self._api_url, json=payload, headers=headers)

        if resp.status_code == 429:
            raise RateLimited("リクエスト過多", status_code=429, provider=self.name)
        if resp.status_code >= 400:
            raise ProviderError(f"HTTP {resp.status_code}", status_code=resp.status_code, provider=self.name)

        body = self._json(resp)
        if not isinstance(body, dict):
            raise ProviderError("レスポンスの形式が不正です", status_code=resp.status_code, provider=self.name)
        if not body.get("success"):
            raise ProviderError("API が失敗を返しました", status_code=resp.status_code, provider=self.name)

        data = body.get("data") or {}
        if data.get("blocked") is True:
            raise ProviderBlocked(data.get("message") or "ネットワークが遮断されました",
                                  status_code=resp.status_code, provider=self.name)

        products = data.get("products")
        if not isinstance(products, list):
            raise ProviderError("レスポンスの形式が不正です", status_code=resp.status_code, provider=self.name)

        items = [self._to_item(raw, page) for raw in products]
        # totalPages がない場合は総件数不明 (0) として件数不足のページまで取得する
        total = _to_int(data.get("totalPages")) * self.items_per_page
        return SearchPage(page=page, items=items, total_count=total)

    @staticmethod
    def _to_item(raw: dict, page: int) -> SearchItem:
        return SearchItem(
            product_id=str(raw.get("id") or ""),
            title=clean_title(raw.get("name", "")),
            price=0,  # プロキシ API は価格を返さない
            mall_name=COUPANG_MALL_NAME,
            link=raw.get("href") or "",
            image=raw.get("thumbnail") or "",
            metadata={"rank": raw.get("realRank"), "page": raw.get("page", page)},
        )
