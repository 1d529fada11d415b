"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Supabase ---
# 秘密情報は利用時に検証する（未設定なら ConfigurationError）
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.getenv("SUPABASE_SECRET_KEY", "")
SUPABASE_SCHEMA = "rank_tracker"

# --- Cron トリガー ---
CRON_SECRET: str = os.getenv("CRON_SECRET", "")

# --- DataForSEO ---
DATAFORSEO_API_URL = "https://api.dataforseo.com/v3"
DATAFORSEO_USERNAME: str = os.getenv("DATAFORSEO_USERNAME", "")
DATAFORSEO_PASSWORD: str = os.getenv("DATAFORSEO_PASSWORD", "")

SERP_ENDPOINT = "/serp/google/organic/live/advanced"
SEARCH_VOLUME_ENDPOINT = "/keywords_data/google_ads/search_volume/live"

SERP_DEPTH = int(os.getenv("SERP_DEPTH", "100"))
SEARCH_VOLUME_BATCH_SIZE = 100

LOCATION_CODES = {
    "Switzerland": 2756,
    "Germany": 2276,
    "United States": 2840,
}
LANGUAGE_CODES = {
    "German": "de",
    "English": "en",
    "French": "fr",
    "Italian": "it",
}
DEFAULT_LANGUAGE = "German"

# 全トラッカーの検索地域をこの国に固定する。空文字にすると各トラッカーの location を使う
FORCED_LOCATION: str = os.getenv("RANK_FORCED_LOCATION", "Switzerland")

# --- リクエスト設定 ---
REQUEST_TIMEOUT = 60  # 秒
PROVIDER_MAX_ATTEMPTS = int(os.getenv("PROVIDER_MAX_ATTEMPTS", "3"))
PROVIDER_RETRY_MIN_WAIT = 2.0  # 秒
PROVIDER_RETRY_MAX_WAIT = 15.0  # 秒

# --- キーワード ---
DEFAULT_TARGET_DOMAIN = os.getenv("DEFAULT_TARGET_DOMAIN", "ubs.com")
CATEGORIES = (
    "Mortgages",
    "Accounts&Cards",
    "Investing",
    "Pension",
    "Digital Banking",
)
DEFAULT_TRACKER_NAME = "Standard Tracker"
DEFAULT_TRACKER_LOCATION = "Switzerland"
RECENT_RANKINGS = 7  # 一覧に付ける直近の順位数

# --- ジョブ ---
JOB_TIME_BUDGET_SECONDS = float(os.getenv("JOB_TIME_BUDGET_SECONDS", "280"))

# --- レート制限 ---
RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")  # "memory" or "supabase"
RATE_LIMIT_TIERS = {
    "api": (20, 60),
}

# --- ログ ---
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_DIR.mkdir(exist_ok=True)
