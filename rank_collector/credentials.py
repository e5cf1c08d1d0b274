"""検索 API 認証情報のローテーション.

api_keys テーブルから読み込んだ認証情報をラウンドロビンで払い出す。
レート制限に達した認証情報はクールダウン期間中スキップする（無効化はしない）。
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from rank_collector.config import (
    CREDENTIAL_REFRESH_TTL,
    CREDENTIAL_RESET_HOUR,
    RATE_LIMIT_COOLDOWN,
    TIMEZONE,
)
from rank_collector.db import SupabaseStore, utc_now
from rank_collector.errors import CredentialExhausted, NoCredentialsAvailable
from rank_collector.models import Credential

logger = logging.getLogger(__name__)


class CredentialPool:
    """1プロバイダ分の認証情報プール. 複数ワーカースレッドから共有される."""

    def __init__(
        self,
        store: SupabaseStore,
        provider: str,
        cooldown: float = RATE_LIMIT_COOLDOWN,
        refresh_ttl: float = CREDENTIAL_REFRESH_TTL,
        reset_hour: int = CREDENTIAL_RESET_HOUR,
        tz: str = TIMEZONE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.provider = provider
        self._cooldown = timedelta(seconds=cooldown)
        self._refresh_ttl = timedelta(seconds=refresh_ttl)
        self._reset_hour = reset_hour
        self._tz = ZoneInfo(tz)
        self._clock = clock

        self._lock = threading.Lock()
        self._credentials: list[Credential] = []
        self._index = 0
        self._loaded_at: datetime | None = None
        self._usage_day: date | None = None

    def size(self) -> int:
        with self._lock:
            self._ensure_loaded(self._clock())
            return len(self._credentials)

    def next(self) -> Credential:
        """次に使う認証情報を返す.

        Raises:
            NoCredentialsAvailable: 有効な認証情報が1件もない
            CredentialExhausted: 全件がクールダウン中
        """
        with self._lock:
            now = self._clock()
            self._ensure_loaded(now)
            self._maybe_reset(now)

            if not self._credentials:
                raise NoCredentialsAvailable(f"{self.provider} の認証情報がありません")

            n = len(self._credentials)
            for offset in range(n):
                idx = (self._index + offset) % n
                cred = self._credentials[idx]
                if self._is_limited(cred, now):
                    continue
                self._index = (idx + 1) % n
                logger.debug("認証情報 %d/%d を使用: %s (%s)", idx + 1, n, cred.masked_id, self.provider)
                return cred

        raise CredentialExhausted(f"{self.provider} の認証情報がすべてレート制限中です")

    def mark_limited(self, credential: Credential) -> None:
        """認証情報をレート制限中としてマークする. 無効化はしない."""
        with self._lock:
            now = self._clock()
            credential.rate_limited_at = now
            credential.rate_limit_count += 1
            count = credential.rate_limit_count
            # next() で既に進めている場合は二重に進めない
            if self._credentials and self._credentials[self._index % len(self._credentials)] is credential:
                self._index = (self._index + 1) % len(self._credentials)

        logger.warning("レート制限: %s (%s)", credential.masked_id, self.provider)
        try:
            self._store.record_credential_rate_limit(credential, count)
        except Exception:
            logger.exception("レート制限の記録に失敗: %s", credential.masked_id)

    def record_usage(self, credential: Credential) -> None:
        """API 呼び出し成功時に使用回数を加算する."""
        with self._lock:
            now = self._clock()
            self._maybe_reset(now)
            credential.usage_count += 1
            credential.last_used_at = now

        try:
            self._store.record_credential_usage(credential)
        except Exception:
            logger.exception("使用回数の記録に失敗: %s", credential.masked_id)

    def stats(self) -> list[dict]:
        """認証情報ごとの使用状況. ロックは取らない（表示用）."""
        return [
            {
                "id": cred.masked_id,
                "usage_count": cred.usage_count,
                "last_used": cred.last_used_at.isoformat() if cred.last_used_at else None,
                "limited": cred.rate_limited_at is not None,
            }
            for cred in list(self._credentials)
        ]

    def refresh(self) -> None:
        """api_keys から再読み込みする. 失敗時は前回の一覧を使い続ける."""
        with self._lock:
            self._refresh(self._clock())

    # --- 内部処理（ロック取得済みで呼ぶ） ---

    def _ensure_loaded(self, now: datetime) -> None:
        if self._loaded_at is None or now - self._loaded_at >= self._refresh_ttl:
            self._refresh(now)

    def _refresh(self, now: datetime) -> None:
        try:
            loaded = self._store.get_active_credentials(self.provider)
        except Exception:
            logger.exception("認証情報の読み込みに失敗: provider=%s (既存 %d 件を継続使用)",
                             self.provider, len(self._credentials))
            self._loaded_at = now
            return

        # 再読み込みしてもプロセス内の使用回数と制限マークは引き継ぐ
        previous = {c.id: c for c in self._credentials}
        for cred in loaded:
            old = previous.get(cred.id)
            if old is not None:
                cred.rate_limited_at = old.rate_limited_at
                cred.usage_count = old.usage_count

        current_id = None
        if self._credentials:
            current_id = self._credentials[self._index % len(self._credentials)].id
        self._credentials = loaded
        self._index = 0
        for i, cred in enumerate(loaded):
            if cred.id == current_id:
                self._index = i
                break

        self._loaded_at = now
        logger.info("認証情報を読み込み: provider=%s, %d 件", self.provider, len(loaded))

    def _maybe_reset(self, now: datetime) -> None:
        """日次リセット時刻をまたいだら使用回数と制限マークをクリアする."""
        usage_day = (now.astimezone(self._tz) - timedelta(hours=self._reset_hour)).date()
        if self._usage_day is not None and usage_day != self._usage_day:
            for cred in self._credentials:
                cred.usage_count = 0
                cred.rate_limited_at = None
            logger.info("認証情報の使用回数をリセット: provider=%s", self.provider)
        self._usage_day = usage_day

    def _is_limited(self, credential: Credential, now: datetime) -> bool:
        if credential.rate_limited_at is None:
            return False
        if now - credential.rate_limited_at >= self._cooldown:
            credential.rate_limited_at = None
            return False
        return True
