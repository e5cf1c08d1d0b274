"""例外定義."""

from __future__ import annotations


class CollectorError(Exception):
    """収集処理の基底例外."""


class NoCredentialsAvailable(CollectorError):
    """認証情報プールが空."""


class CredentialExhausted(CollectorError):
    """ローテーション対象の認証情報がすべてレート制限中."""


# 別名
AllCredentialsExhausted = CredentialExhausted


class ProviderError(CollectorError):
    """検索 API のエラー（タイムアウト・5xx・不正なレスポンス）."""

    def __init__(self, message: str, status_code: int | None = None, provider: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"[{self.provider}] {base} (status={self.status_code})"
        return f"[{self.provider}] {base}"


class ProviderBlocked(ProviderError):
    """ネットワーク単位でアクセスが遮断された状態（レート制限とは別扱い）."""


class RateLimited(ProviderError):
    """単一の認証情報がレート制限に達した. SearchProvider 内部でのみ使う."""


class KeywordNotFound(CollectorError):
    """ジョブのキーワードが search_keywords に存在しない."""


class AdSlotNotFound(CollectorError):
    """ジョブの広告スロットが ad_slots に存在しない."""


class SyncConflict(CollectorError):
    """1キーワード分の集計テーブル書き込みに失敗."""

    def __init__(self, keyword_id: str, cause: Exception):
        super().__init__(f"keyword_id={keyword_id}: {cause}")
        self.keyword_id = keyword_id
        self.cause = cause
