"""
FMV pipeline contracts (DTO + Enum + errors).

Why this module exists:
- fetch/parse 결과를 예외 대신 명시적인 결과 타입으로 고정해
  "값 없음"과 "실패"를 분기 누락 없이 다루게 한다.
- 파일 처리 상태 전이, 캐시 키 포맷(YYYY-MM-DD), 히스토리 윈도우를
  한곳에 모아 모든 잡(requester/backlog/reconciler)이 같은 규칙을 쓰게 한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path

CALENDAR_DATE_FORMAT = "%Y-%m-%d"
MISSING_MARKER = "missing"
EXHAUSTED_MARKER = "exhausted"
KNOWN_MISSING_MARKERS = {MISSING_MARKER, EXHAUSTED_MARKER}


class FmvError(Exception):
    """FMV 파이프라인 공통 예외."""


class FetchHaltedError(FmvError):
    """
    프로세스 전역 halt 이벤트가 켜진 뒤의 fetch 시도.

    per-file 경계에서 삼키지 않고 run 전체를 중단시켜야 한다.
    """


class AuthenticationFatalError(FetchHaltedError):
    """API 키 인증 실패가 연속으로 발생해 더 진행할 수 없는 상태."""


def to_calendar_date(value: date | datetime) -> date:
    """
    cache key granularity(날짜)로 정규화한다. 시간 성분은 버린다.
    """
    if isinstance(value, datetime):
        return value.date()
    return value


def format_calendar_date(value: date | datetime) -> str:
    return to_calendar_date(value).strftime(CALENDAR_DATE_FORMAT)


def parse_calendar_date(text: str | None) -> date | None:
    if not isinstance(text, str) or not text.strip():
        return None
    try:
        return datetime.strptime(text.strip()[:10], CALENDAR_DATE_FORMAT).date()
    except ValueError:
        return None


@dataclass(frozen=True)
class ChainProfile:
    """
    체인별 가격 피드/캐시 파일 식별 정보. 파일 1개 처리 동안 고정된다.
    """

    name: str
    feed_id: str
    currency: str

    @property
    def file_prefix(self) -> str:
        return f"historical_fmv_{self.name}_{self.currency}"


@dataclass(frozen=True)
class HistoryWindow:
    """
    provider가 가격을 제공하는 과거 범위. "오늘"을 명시적으로 주입받는다.
    """

    today: date
    max_history_days: int

    @property
    def oldest_allowed(self) -> date:
        return self.today - timedelta(days=self.max_history_days)

    def is_within(self, value: date) -> bool:
        return value >= self.oldest_allowed


class DateParseStatus(str, Enum):
    FOUND = "found"
    EMPTY = "empty"
    INVALID = "invalid"


@dataclass(frozen=True)
class DateParseResult:
    status: DateParseStatus
    value: date | None = None
    raw: str | None = None

    @property
    def found(self) -> bool:
        return self.status == DateParseStatus.FOUND


class PriceOutcome(str, Enum):
    """
    PriceFetcher 단일 요청의 terminal 결과 코드.
    """

    FOUND = "found"
    NO_DATA = "no_data"
    BAD_REQUEST = "bad_request"
    QUOTA_EXHAUSTED = "quota_exhausted"
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass(frozen=True)
class PriceResult:
    outcome: PriceOutcome
    price: Decimal | None = None

    @classmethod
    def found(cls, price: Decimal) -> "PriceResult":
        return cls(outcome=PriceOutcome.FOUND, price=price)

    @classmethod
    def absent(cls, outcome: PriceOutcome) -> "PriceResult":
        if outcome == PriceOutcome.FOUND:
            raise ValueError("absent result requires a non-found outcome.")
        return cls(outcome=outcome)

    @property
    def is_found(self) -> bool:
        return self.outcome == PriceOutcome.FOUND and self.price is not None

    @property
    def missing_marker(self) -> str | None:
        """
        missing 파일에 기록할 marker.

        - provider가 데이터 없음을 확인했거나 요청 자체가 거부됨 -> "missing"
        - 재시도/플랜 한도 소진 -> "exhausted" (backlog run에서 다시 시도 가능)
        """
        if self.is_found:
            return None
        if self.outcome in {
            PriceOutcome.RETRIES_EXHAUSTED,
            PriceOutcome.QUOTA_EXHAUSTED,
        }:
            return EXHAUSTED_MARKER
        return MISSING_MARKER


class ResponseClass(str, Enum):
    """
    HTTP/application 응답 분류.
    """

    SUCCESS = "success"
    BAD_REQUEST = "bad_request"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    EDGE_BLOCKED = "edge_blocked"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class DateGap:
    """
    요청 날짜 집합을 캐시 기준으로 나눈 결과.
    """

    cached: list[date]
    known_missing: list[date]
    to_fetch: list[date]
    too_old: int = 0


class FileProcessingState(str, Enum):
    """
    입력 파일 1개의 처리 상태.

    discovered -> classified -> gap_computed -> fetching -> persisted
    -> marked_processed, 대체 terminal: skipped / failed
    """

    DISCOVERED = "discovered"
    CLASSIFIED = "classified"
    GAP_COMPUTED = "gap_computed"
    FETCHING = "fetching"
    PERSISTED = "persisted"
    MARKED_PROCESSED = "marked_processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    ALREADY_PROCESSED = "already_processed"
    UNDETECTED_CHAIN = "undetected_chain"


@dataclass
class FileOutcome:
    path: Path
    state: FileProcessingState = FileProcessingState.DISCOVERED
    chain: ChainProfile | None = None
    rates_found: int = 0
    missing_marked: int = 0
    exhausted_marked: int = 0
    cached: int = 0
    known_missing: int = 0
    skip_reason: SkipReason | None = None
    failed_at: FileProcessingState | None = None
    error: str | None = None


@dataclass
class ChainCounters:
    rates: int = 0
    missing: int = 0
    exhausted: int = 0


@dataclass
class FmvRunSummary:
    """
    requester run 1회의 집계. 파일 단위 outcome을 main thread에서 합산한다.
    """

    chains: dict[str, ChainCounters] = field(default_factory=dict)
    files_completed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    outbound_calls: int = 0
    dedup_hits: int = 0

    def record(self, outcome: FileOutcome) -> None:
        if outcome.state == FileProcessingState.MARKED_PROCESSED:
            self.files_completed += 1
        elif outcome.state == FileProcessingState.SKIPPED:
            self.files_skipped += 1
        elif outcome.state == FileProcessingState.FAILED:
            self.files_failed += 1

        if outcome.chain is None:
            return
        counters = self.chains.setdefault(outcome.chain.name, ChainCounters())
        counters.rates += outcome.rates_found
        counters.missing += outcome.missing_marked
        counters.exhausted += outcome.exhausted_marked

    def to_payload(self) -> dict:
        return {
            "files_completed": self.files_completed,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "outbound_calls": self.outbound_calls,
            "dedup_hits": self.dedup_hits,
            "chains": {
                name: {
                    "rates": counters.rates,
                    "missing": counters.missing,
                    "exhausted": counters.exhausted,
                }
                for name, counters in sorted(self.chains.items())
            },
        }
