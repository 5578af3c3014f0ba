"""設定モジュール: 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

from collector.errors import ConfigError

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} は整数で指定してください: {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} は数値で指定してください: {raw!r}") from e


# --- Supabase ---
# 未設定でも import は通す。実際に DB を使う時点で db モジュールが検査する。
SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.environ.get("SUPABASE_SECRET_KEY", "")
DB_SCHEMA: str = os.environ.get("PROBE_DB_SCHEMA", "availability_probe")

# --- 同時実行・ペース制御 ---
GLOBAL_CONCURRENCY = _env_int("PROBE_GLOBAL_CONCURRENCY", 10)
PER_HOST_CONCURRENCY = _env_int("PROBE_PER_HOST_CONCURRENCY", 4)
MIN_REQUEST_INTERVAL = _env_float("PROBE_MIN_REQUEST_INTERVAL", 0.25)  # 秒
STOREFRONT_COOLDOWN = _env_float("PROBE_STOREFRONT_COOLDOWN", 5.0)  # 秒
WORKERS = _env_int("PROBE_WORKERS", GLOBAL_CONCURRENCY)

# --- リトライ ---
MAX_ATTEMPTS = _env_int("PROBE_MAX_ATTEMPTS", 3)
BACKOFF_BASE = _env_float("PROBE_BACKOFF_BASE", 1.0)  # 秒。待機 = base * 2^attempt

# --- リクエスト設定 ---
REQUEST_TIMEOUT = _env_float("PROBE_REQUEST_TIMEOUT", 30.0)  # 秒
PROXY_URL: str | None = os.environ.get("PROBE_PROXY_URL") or None
BATCH_SIZE = _env_int("PROBE_BATCH_SIZE", 1)
FULFILLMENT_MODE = os.environ.get("PROBE_FULFILLMENT_MODE", "auto")

# --- 診断情報 ---
RAW_EXCERPT_LIMIT = _env_int("PROBE_RAW_EXCERPT_LIMIT", 4096)  # バイト

# --- User-Agent ---
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/139.0.0.0 Safari/537.36"
)

# --- ストアフロント既定値 ---
DEFAULT_COUNTRY_CODE = "AR"
DEFAULT_CURRENCY_CODE = "ARS"
DEFAULT_CURRENCY_SYMBOL = "$"
DEFAULT_LOCALE = "es-AR"
DEFAULT_SALES_CHANNEL = 1

# ISO-2 → ISO-3（セグメントトークン用）
COUNTRY_ISO3 = {
    "AR": "ARG",
    "BR": "BRA",
    "CL": "CHL",
    "CO": "COL",
    "MX": "MEX",
    "PE": "PER",
    "UY": "URY",
}

# --- ウォームアップ ---
WARMUP_PATHS = (
    "/",
    "/_v/segment",
    "/api/checkout/pub/orderForm",
)

# --- ブロック判定 ---
# 本文にこれらが含まれていればステータスに関係なく anti-automation によるブロックとみなす
BLOCKED_MARKERS = ("CHK003",)
# チャレンジページの文言。2xx の JSON 本文（reCAPTCHA の設定値や商品名など）には適用しない
BLOCKED_PAGE_MARKERS = (
    "captcha",
    "Access Denied",
)

# --- ログ ---
LOG_DIR = Path(os.environ.get("PROBE_LOG_DIR", Path(__file__).resolve().parent.parent / "logs"))
