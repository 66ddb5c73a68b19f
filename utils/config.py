import os
import re

DEFAULT_COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
DEFAULT_COINGECKO_API_KEY_HEADER = "x-cg-demo-api-key"
DEFAULT_FMV_CURRENCY = "cad"
DEFAULT_MIN_API_INTERVAL_SECONDS = 11.0  # 무료 플랜 기준 분당 10회 이하
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_HISTORY_DAYS = 365
DEFAULT_MAX_WORKERS = 4
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15.0
DEFAULT_BACKLOG_CHAIN = "ton"
DEFAULT_TON_EXPLORER_URL = "https://anton.tools/api/v0"

CURRENCY_PATTERN = re.compile(r"^[a-z]{3,5}$")


def _parse_bool_env(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default

    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int_env(
    raw: str | None, default: int, *, minimum: int | None = None
) -> int:
    """
    정수 환경변수를 파싱한다. 형식 오류는 default로 되돌린다.

    Rules:
    - 빈 값/공백 -> default
    - minimum 미만 -> minimum으로 clamp
    """
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            value = default

    if minimum is not None and value < minimum:
        return minimum
    return value


def _parse_float_env(
    raw: str | None, default: float, *, minimum: float | None = None
) -> float:
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw.strip())
        except ValueError:
            value = default

    if minimum is not None and value < minimum:
        return minimum
    return value


def _normalize_currency(raw: str | None, *, env_name: str) -> str:
    """
    통화 코드를 CoinGecko vs_currency 관례(소문자)로 정규화/검증한다.
    """
    if raw is None or not raw.strip():
        return DEFAULT_FMV_CURRENCY

    currency = raw.strip().lower()
    if not CURRENCY_PATTERN.fullmatch(currency):
        raise ValueError(
            f"{env_name} contains invalid currency code: {raw!r}. "
            "Expected format like cad or usd."
        )
    return currency


def _resolve_api_key(raw: str | None) -> str:
    key = (raw or "").strip()
    # 대시보드에서 "API Key: xxx" 형태로 복사해 붙여넣는 경우가 있다.
    if key.lower().startswith("api key:"):
        key = key.split(":", 1)[1].strip()
    return key


COINGECKO_API_URL = (
    os.getenv("COINGECKO_API_URL") or DEFAULT_COINGECKO_API_URL
).rstrip("/")
COINGECKO_API_KEY = _resolve_api_key(os.getenv("COINGECKO_API_KEY"))
COINGECKO_API_KEY_HEADER = (
    os.getenv("COINGECKO_API_KEY_HEADER") or DEFAULT_COINGECKO_API_KEY_HEADER
).strip()
FMV_CURRENCY = _normalize_currency(
    os.getenv("FMV_CURRENCY"), env_name="FMV_CURRENCY"
)
MIN_API_INTERVAL_SECONDS = _parse_float_env(
    os.getenv("FMV_MIN_API_INTERVAL_SECONDS"),
    DEFAULT_MIN_API_INTERVAL_SECONDS,
    minimum=0.0,
)
MAX_RETRIES = _parse_int_env(
    os.getenv("FMV_MAX_RETRIES"), DEFAULT_MAX_RETRIES, minimum=0
)
MAX_HISTORY_DAYS = _parse_int_env(
    os.getenv("FMV_MAX_HISTORY_DAYS"), DEFAULT_MAX_HISTORY_DAYS, minimum=1
)
MAX_WORKERS = _parse_int_env(
    os.getenv("FMV_MAX_WORKERS"), DEFAULT_MAX_WORKERS, minimum=1
)
REQUEST_TIMEOUT_SECONDS = _parse_float_env(
    os.getenv("FMV_REQUEST_TIMEOUT_SECONDS"),
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    minimum=1.0,
)
BACKLOG_CHAIN = (os.getenv("FMV_BACKLOG_CHAIN") or DEFAULT_BACKLOG_CHAIN).strip()
TON_EXPLORER_URL = (
    os.getenv("TON_EXPLORER_URL") or DEFAULT_TON_EXPLORER_URL
).rstrip("/")
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
VERBOSE_LOGGING = _parse_bool_env(os.getenv("FMV_VERBOSE"), default=False)
