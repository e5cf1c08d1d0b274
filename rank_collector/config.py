"""設定モジュール — 環境変数・定数定義.

値はプロセス起動時に一度だけ読み込む。各サービスはここの値をコンストラクタの
デフォルトとして受け取るので、テストでは任意の値を渡せる。
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# --- Supabase ---
# 未設定の場合はクライアント生成時にエラーにする（import 時には落とさない）
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")
DB_SCHEMA: str = os.getenv("DB_SCHEMA", "rank_tracker")

# --- 検索 API ---
NAVER_SHOP_API_URL = "https://openapi.naver.com/v1/search/shop.json"
COUPANG_API_URL: str = os.getenv("COUPANG_API_URL", "")
COUPANG_API_KEY: str = os.getenv("COUPANG_API_KEY", "")

NAVER_PROVIDER = "naver_shopping"
COUPANG_PROVIDER = "coupang"

NAVER_ITEMS_PER_PAGE = 100  # API 上限
COUPANG_ITEMS_PER_PAGE = 72  # プロキシ API 上限

SEARCH_MAX_PAGES = _env_int("SEARCH_MAX_PAGES", 10)
AD_SLOT_MAX_PAGES = _env_int("AD_SLOTS_MAX_PAGES", 3)  # 3ページ(300位)まで

REQUEST_TIMEOUT = 30  # 秒
COUPANG_REQUEST_TIMEOUT = 60  # 秒

# --- 認証情報ローテーション ---
RATE_LIMIT_MAX_ATTEMPTS = 3
RATE_LIMIT_RETRY_DELAY = 1.0  # 秒
RATE_LIMIT_COOLDOWN = _env_float("RATE_LIMIT_COOLDOWN", 60.0)  # 秒
CREDENTIAL_REFRESH_TTL = _env_float("CREDENTIAL_REFRESH_TTL", 300.0)  # 秒
CREDENTIAL_RESET_HOUR = _env_int("CREDENTIAL_RESET_HOUR", 0)  # TIMEZONE 基準

# --- スケジューラ ---
TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Seoul")
COLLECTION_CRON: str = os.getenv("CRON_EXPRESSION", "0 */3 * * *")
AD_SLOT_CRON: str = os.getenv("AD_SLOTS_SCHEDULE", "0 */6 * * *")
DAILY_SYNC_CRON: str = os.getenv("DAILY_SYNC_CRON", "10 0 * * *")
QUEUE_BACKLOG_THRESHOLD = _env_int("QUEUE_BACKLOG_THRESHOLD", 50)
SCHEDULER_POLL_INTERVAL = _env_float("SCHEDULER_POLL_INTERVAL", 5.0)  # 秒
CYCLE_STALE_SECONDS = _env_float("CYCLE_STALE_SECONDS", 3 * 60 * 60)

# --- キュー ---
KEYWORD_PARTITION = "keywords"
AD_SLOT_PARTITION = "ad_slots"

KEYWORD_QUEUE_CONCURRENCY = _env_int("QUEUE_CONCURRENCY", 3)
AD_SLOT_QUEUE_CONCURRENCY = _env_int("AD_SLOTS_QUEUE_CONCURRENCY", 5)

JOB_MAX_ATTEMPTS = _env_int("JOB_MAX_ATTEMPTS", 3)
JOB_BACKOFF_SECONDS = _env_float("JOB_BACKOFF_SECONDS", 2.0)  # 指数バックオフの初期値
JOB_LOCK_SECONDS = _env_float("JOB_LOCK_SECONDS", 1800.0)  # 進捗の更新がこれより長く途絶えた active ジョブは停止とみなす
AD_SLOT_MAX_ATTEMPTS = _env_int("AD_SLOTS_MAX_RETRIES", 3)
AD_SLOT_RETRY_DELAY = _env_float("AD_SLOTS_RETRY_DELAY", 60.0)  # 固定バックオフ

KEEP_COMPLETED_JOBS = 100
KEEP_FAILED_JOBS = 50
WORKER_POLL_INTERVAL = _env_float("WORKER_POLL_INTERVAL", 2.0)  # 秒

# --- ブロック時の再試行 / ペーシング (マーケットプレイスのみ) ---
BLOCKED_RETRY_MAX = 3
BLOCKED_RETRY_BASE_SECONDS = 300  # 1回目 5〜10分, 2回目 10〜15分, 3回目 15〜20分
BLOCKED_RETRY_JITTER_SECONDS = 300
MARKETPLACE_PACING_MIN = _env_float("COUPANG_DELAY_MIN", 2.0)
MARKETPLACE_PACING_MAX = _env_float("COUPANG_DELAY_MAX", 15.0)
MARKETPLACE_INITIAL_JITTER = 5.0  # 投入時の初期遅延上限 (秒)

# --- 集計 ---
CURRENT_TIER_TOP_N = _env_int("CURRENT_TIER_TOP_N", 100)
HOURLY_RETENTION_HOURS = 24
DAILY_RETENTION_DAYS = 30
RAW_RETENTION_DAYS = _env_int("RAW_RETENTION_DAYS", 7)
DAILY_WINDOW_START_HOUR = 22  # 当日 22:00〜24:00 (ローカル) の時間別データを日次に採用

# --- ログ ---
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = _PROJECT_ROOT / "logs"
LOG_DIR.mkdir(exist_ok=True)
