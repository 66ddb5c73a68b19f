"""
Historical price fetch domain logic (CoinGecko `/coins/{id}/history`).

Why this module exists:
- 응답 분류(HTTP status + application error code)와 재시도/백오프 정책을
  한곳에 고정해, requester run과 backlog run이 같은 규칙으로 API를 호출하게 한다.
- "가격 없음"류 결과는 예외가 아니라 `PriceResult`로 돌려주고,
  프로세스를 멈춰야 하는 인증 실패만 예외로 올린다.

Retry policy 요약:
- 표준 재시도 슬롯(MAX_RETRIES)을 쓰는 것: transport 오류, 알 수 없는 응답
- 슬롯을 쓰지 않는 것: 429(지수 백오프), 5xx(30s), edge block(60s), 인증 실패 1회차
- terminal: 200+가격, 200 가격없음, 400, quota 소진, 인증 실패 2회 연속(fatal)
"""

from __future__ import annotations

import re
import threading
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable

import requests

from utils.config import (
    COINGECKO_API_KEY,
    COINGECKO_API_KEY_HEADER,
    COINGECKO_API_URL,
    MAX_RETRIES,
    REQUEST_TIMEOUT_SECONDS,
)
from utils.fmv_contracts import (
    AuthenticationFatalError,
    FetchHaltedError,
    PriceOutcome,
    PriceResult,
    ResponseClass,
)
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter

logger = get_logger(__name__)

RATE_LIMIT_BACKOFF_BASE_SECONDS = 10
RATE_LIMIT_BACKOFF_MAX_SECONDS = 300
SERVER_ERROR_BACKOFF_SECONDS = 30
EDGE_BLOCK_BACKOFF_SECONDS = 60
STANDARD_RETRY_STEP_SECONDS = 10
STANDARD_RETRY_MAX_WAIT_SECONDS = 60
AUTH_FAILURE_LIMIT = 2

AUTH_ERROR_CODES = {10002, 10010, 10011}
QUOTA_ERROR_CODES = {10005}
EDGE_BLOCK_ERROR_CODES = {1020}
SERVER_ERROR_STATUSES = {500, 502, 503, 504}

_EDGE_CODE_PATTERN = re.compile(r"error code:?\s*(\d+)", re.IGNORECASE)


def rate_limit_backoff_seconds(occurrence: int) -> int:
    """
    n번째 연속 429에 대한 대기 시간. 10, 20, 40, ... 최대 300, 최소 10.
    """
    raw = RATE_LIMIT_BACKOFF_BASE_SECONDS * (2 ** max(occurrence - 1, 0))
    return min(
        max(raw, RATE_LIMIT_BACKOFF_BASE_SECONDS),
        RATE_LIMIT_BACKOFF_MAX_SECONDS,
    )


def standard_retry_wait_seconds(attempt: int) -> int:
    return min(STANDARD_RETRY_STEP_SECONDS * attempt, STANDARD_RETRY_MAX_WAIT_SECONDS)


def _read_payload(response) -> dict | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _application_error_code(payload: dict | None, text: str) -> int | None:
    """
    CoinGecko 본문 error_code(`status.error_code` 또는 top-level)와
    CDN 차단 페이지의 "error code: 1020"을 추출한다.
    """
    candidates = []
    if payload is not None:
        status = payload.get("status")
        if isinstance(status, dict):
            candidates.append(status.get("error_code"))
        candidates.append(payload.get("error_code"))

    for raw in candidates:
        if raw is None or isinstance(raw, bool):
            continue
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue

    match = _EDGE_CODE_PATTERN.search(text or "")
    if match:
        return int(match.group(1))
    return None


def classify_response(
    status_code: int, payload: dict | None, text: str = ""
) -> ResponseClass:
    """
    HTTP status와 application error code를 함께 보고 응답을 분류한다.

    Note:
    - 403 + "error code: 1020"은 인증 실패가 아니라 edge 차단이다.
      그래서 application code를 HTTP status보다 먼저 본다.
    """
    app_code = _application_error_code(payload, text)
    if app_code in QUOTA_ERROR_CODES:
        return ResponseClass.QUOTA_EXHAUSTED
    if app_code in EDGE_BLOCK_ERROR_CODES:
        return ResponseClass.EDGE_BLOCKED
    if app_code in AUTH_ERROR_CODES:
        return ResponseClass.AUTH_FAILURE

    if status_code == 200:
        return ResponseClass.SUCCESS if payload is not None else ResponseClass.UNRECOGNIZED
    if status_code == 400:
        return ResponseClass.BAD_REQUEST
    if status_code in {401, 403}:
        return ResponseClass.AUTH_FAILURE
    if status_code == 429:
        return ResponseClass.RATE_LIMITED
    if status_code in SERVER_ERROR_STATUSES:
        return ResponseClass.SERVER_ERROR
    return ResponseClass.UNRECOGNIZED


def extract_price(payload: dict, currency: str) -> Decimal | None:
    market_data = payload.get("market_data")
    if not isinstance(market_data, dict):
        return None
    current_price = market_data.get("current_price")
    if not isinstance(current_price, dict):
        return None

    raw = current_price.get(currency.lower())
    if raw is None or isinstance(raw, bool):
        return None
    try:
        price = Decimal(str(raw))
    except InvalidOperation:
        return None
    return price if price.is_finite() else None


class PriceFetcher:
    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        session=None,
        api_url: str = COINGECKO_API_URL,
        api_key: str = COINGECKO_API_KEY,
        api_key_header: str = COINGECKO_API_KEY_HEADER,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
        halt_event: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
    ):
        """
        Called from:
        - `scripts.fmv_worker.build_fetch_stack` (requester/backlog 공용)

        Note:
        - sleep 기본값은 halt_event.wait이다. 다른 worker가 fatal로 halt를 켜면
          백오프 대기 중인 worker도 즉시 깨어나 FetchHaltedError로 빠진다.
        """
        self._rate_limiter = rate_limiter
        self._session = session if session is not None else requests.Session()
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._api_key_header = api_key_header
        self._timeout = timeout
        self._max_retries = max_retries
        self._halt_event = halt_event or threading.Event()
        self._sleep = sleep or self._halt_event.wait
        self._calls_lock = threading.Lock()
        self._outbound_calls = 0

    @property
    def halt_event(self) -> threading.Event:
        return self._halt_event

    @property
    def outbound_calls(self) -> int:
        with self._calls_lock:
            return self._outbound_calls

    def _raise_if_halted(self) -> None:
        if self._halt_event.is_set():
            raise FetchHaltedError("Fetch pipeline halted by a fatal error.")

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)
        self._raise_if_halted()

    def _request(self, coin_id: str, day: date):
        headers = {"accept": "application/json"}
        if self._api_key:
            headers[self._api_key_header] = self._api_key
        with self._calls_lock:
            self._outbound_calls += 1
        return self._session.get(
            f"{self._api_url}/coins/{coin_id}/history",
            params={"date": day.strftime("%d-%m-%Y"), "localization": "false"},
            headers=headers,
            timeout=self._timeout,
        )

    def fetch(self, coin_id: str, day: date, currency: str) -> PriceResult:
        """
        (coin, date, currency) 가격 1건을 조회한다.

        Returns:
          - PriceResult(FOUND, price) 또는 가격 없음 계열 outcome
        Raises:
          - AuthenticationFatalError: 인증 실패 연속 2회 (halt 이벤트도 켠다)
          - FetchHaltedError: 다른 worker가 halt를 켠 뒤
        """
        label = f"{coin_id} for {day.isoformat()}"
        retries = 0
        rate_limit_hits = 0
        auth_failures = 0

        while retries <= self._max_retries:
            self._raise_if_halted()
            self._rate_limiter.acquire()
            self._raise_if_halted()
            logger.info(
                f"Attempt {retries + 1}/{self._max_retries + 1}: Fetching {label}"
            )

            try:
                response = self._request(coin_id, day)
            except requests.Timeout:
                logger.warning(f"Timeout fetching {label}")
            except requests.RequestException as e:
                logger.warning(f"HTTP error fetching {label}: {e}")
            else:
                payload = _read_payload(response)
                response_class = classify_response(
                    response.status_code, payload, getattr(response, "text", "")
                )
                if response_class != ResponseClass.AUTH_FAILURE:
                    auth_failures = 0

                if response_class == ResponseClass.SUCCESS:
                    price = extract_price(payload, currency)
                    if price is None:
                        logger.warning(
                            f"No price data for {label} (200 OK but no {currency.upper()} price)"
                        )
                        return PriceResult.absent(PriceOutcome.NO_DATA)
                    logger.info(f"Fetched {currency.upper()} rate for {label}: {price}")
                    return PriceResult.found(price)

                if response_class == ResponseClass.BAD_REQUEST:
                    logger.error(f"Bad Request (400) - invalid parameters for {label}")
                    return PriceResult.absent(PriceOutcome.BAD_REQUEST)

                if response_class == ResponseClass.QUOTA_EXHAUSTED:
                    logger.error(
                        f"API plan limit reached (code 10005) while fetching {label}"
                    )
                    return PriceResult.absent(PriceOutcome.QUOTA_EXHAUSTED)

                if response_class == ResponseClass.AUTH_FAILURE:
                    auth_failures += 1
                    if auth_failures >= AUTH_FAILURE_LIMIT:
                        logger.error(
                            f"Critical: authentication failed {auth_failures}x "
                            f"(HTTP {response.status_code}) - check API key"
                        )
                        self._halt_event.set()
                        raise AuthenticationFatalError(
                            f"Authentication failed {auth_failures} times in a row "
                            f"(HTTP {response.status_code})."
                        )
                    logger.warning(
                        f"Authentication failure (HTTP {response.status_code}) "
                        f"- retrying in {auth_failures}s"
                    )
                    self._pause(auth_failures)
                    continue

                if response_class == ResponseClass.RATE_LIMITED:
                    rate_limit_hits += 1
                    backoff = rate_limit_backoff_seconds(rate_limit_hits)
                    logger.warning(
                        f"Rate limited (429) - waiting {backoff}s (occurrence {rate_limit_hits})"
                    )
                    self._pause(backoff)
                    continue

                if response_class == ResponseClass.SERVER_ERROR:
                    logger.warning(
                        f"Server error {response.status_code} - retrying in "
                        f"{SERVER_ERROR_BACKOFF_SECONDS}s"
                    )
                    self._pause(SERVER_ERROR_BACKOFF_SECONDS)
                    continue

                if response_class == ResponseClass.EDGE_BLOCKED:
                    logger.error(
                        "CDN access denied (1020) - possible IP blocking - retrying in "
                        f"{EDGE_BLOCK_BACKOFF_SECONDS}s"
                    )
                    self._pause(EDGE_BLOCK_BACKOFF_SECONDS)
                    continue

                logger.warning(
                    f"Unexpected response {response.status_code} for {label} - retrying"
                )

            retries += 1
            if retries <= self._max_retries:
                wait_seconds = standard_retry_wait_seconds(retries)
                logger.info(
                    f"Retrying in {wait_seconds}s ({retries}/{self._max_retries})"
                )
                self._pause(wait_seconds)

        logger.error(f"Failed to fetch {label} after {self._max_retries} retries")
        return PriceResult.absent(PriceOutcome.RETRIES_EXHAUSTED)
