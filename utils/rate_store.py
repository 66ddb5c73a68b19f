"""
Per-chain historical FMV rate store (YAML 파일 쌍).

Why this module exists:
- 체인마다 `rates`(날짜 -> 가격)와 `missing`(날짜 -> marker) 두 매핑을
  별도 파일로 유지해, 재실행 시 이미 확정된 날짜를 다시 조회하지 않게 한다.
- 로드 실패는 fail-open 대신 빈 상태로 시작해 run이 멈추지 않도록 한다.
- 같은 체인 파일을 여러 worker가 동시에 whole-file overwrite하면 갱신이
  유실되므로 load-merge-persist를 체인 단위 lock 안에서 수행한다.

File shape (sorted by date key):
    historical_fmv_ton_cad.yaml          2024-01-02: 3.0125
    historical_fmv_ton_cad_missing.yaml  2024-01-03: missing
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, Iterator, Mapping

import filelock
import yaml

from utils.file_io import atomic_write_yaml, remove_if_exists
from utils.fmv_contracts import (
    KNOWN_MISSING_MARKERS,
    MISSING_MARKER,
    ChainProfile,
    DateGap,
    HistoryWindow,
    parse_calendar_date,
    to_calendar_date,
)
from utils.logger import get_logger

logger = get_logger(__name__)

LOCK_TIMEOUT_SECONDS = 120


class _RateLoader(yaml.SafeLoader):
    """float scalar를 Decimal로 읽어 가격 정밀도를 보존한다."""


def _construct_decimal(loader: yaml.SafeLoader, node: yaml.ScalarNode):
    text = loader.construct_scalar(node)
    try:
        value = Decimal(str(text).replace("_", ""))
    except InvalidOperation:
        return loader.construct_yaml_float(node)
    if not value.is_finite():
        return loader.construct_yaml_float(node)
    return value


_RateLoader.add_constructor("tag:yaml.org,2002:float", _construct_decimal)


class _RateDumper(yaml.SafeDumper):
    pass


def _represent_decimal(dumper: yaml.SafeDumper, value: Decimal):
    text = format(value, "f")
    if "." not in text:
        text = f"{text}.0"
    return dumper.represent_scalar("tag:yaml.org,2002:float", text)


_RateDumper.add_representer(Decimal, _represent_decimal)


def _coerce_date_key(raw) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        return parse_calendar_date(raw)
    return None


def _coerce_price(raw) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, (int, float, str)):
        try:
            value = Decimal(str(raw).strip())
        except InvalidOperation:
            return None
        return value if value.is_finite() else None
    return None


@dataclass
class RateStore:
    rates: dict[date, Decimal] = field(default_factory=dict)
    missing: dict[date, str] = field(default_factory=dict)
    # clear_missing로 비워진 경우 persist 시 missing 파일을 지워야 한다.
    missing_cleared: bool = False


class RateStoreRepository:
    def __init__(self, cache_dir: str | Path):
        """
        Called from:
        - `workers.fmv_ingest.FmvIngestCoordinator` (requester run)
        - `workers.fmv_backlog` (backlog/reconcile/fill run)
        """
        self._cache_dir = Path(cache_dir)
        self._registry_lock = threading.Lock()
        self._chain_locks: dict[str, threading.Lock] = {}

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def rates_path(self, profile: ChainProfile) -> Path:
        return self._cache_dir / f"{profile.file_prefix}.yaml"

    def missing_path(self, profile: ChainProfile) -> Path:
        return self._cache_dir / f"{profile.file_prefix}_missing.yaml"

    def lock_path(self, profile: ChainProfile) -> Path:
        return self._cache_dir / f"{profile.file_prefix}.lock"

    @contextmanager
    def locked(self, profile: ChainProfile) -> Iterator[None]:
        """
        체인 파일 쌍에 대한 상호 배제 구간.

        - in-process: 체인별 threading.Lock (같은 run의 worker thread 간)
        - inter-process: filelock (requester/backlog 잡이 동시에 돌 때)
        """
        with self._registry_lock:
            chain_lock = self._chain_locks.setdefault(
                profile.file_prefix, threading.Lock()
            )
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        with chain_lock:
            with filelock.FileLock(
                str(self.lock_path(profile)), timeout=LOCK_TIMEOUT_SECONDS
            ):
                yield

    def _load_mapping(self, path: Path) -> dict:
        if not path.exists():
            return {}

        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = yaml.load(f, Loader=_RateLoader)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            logger.error(f"Failed to load rate cache file {path.name}: {e}")
            return {}

        if payload is None:
            return {}
        if not isinstance(payload, dict):
            logger.error(f"Invalid rate cache format in {path.name}: not a mapping.")
            return {}
        return payload

    def load(self, profile: ChainProfile) -> RateStore:
        """
        두 매핑을 읽어 RateStore로 반환한다. 파일 없음/손상은 빈 매핑.
        """
        store = RateStore()
        for raw_key, raw_value in self._load_mapping(self.rates_path(profile)).items():
            key = _coerce_date_key(raw_key)
            price = _coerce_price(raw_value)
            if key is None or price is None:
                logger.warning(
                    f"[{profile.name}] dropping invalid rate entry {raw_key!r}: {raw_value!r}"
                )
                continue
            store.rates[key] = price

        for raw_key, raw_value in self._load_mapping(self.missing_path(profile)).items():
            key = _coerce_date_key(raw_key)
            if key is None:
                logger.warning(f"[{profile.name}] dropping invalid missing entry {raw_key!r}")
                continue
            if key in store.rates:
                # 두 매핑에 동시에 있으면 가격이 우선이다.
                continue
            marker = str(raw_value) if raw_value is not None else MISSING_MARKER
            store.missing[key] = (
                marker if marker in KNOWN_MISSING_MARKERS else MISSING_MARKER
            )
        return store

    @staticmethod
    def partition(
        store: RateStore, dates: Iterable[date], window: HistoryWindow
    ) -> DateGap:
        """
        요청 날짜를 cached / known_missing / to_fetch로 나눈다.

        Note:
        - history window 밖 날짜는 세 분류 어디에도 넣지 않는다(provider 미제공).
        """
        cached: set[date] = set()
        known_missing: set[date] = set()
        to_fetch: set[date] = set()
        too_old: set[date] = set()

        for raw in dates:
            value = to_calendar_date(raw)
            if not window.is_within(value):
                too_old.add(value)
            elif value in store.rates:
                cached.add(value)
            elif value in store.missing:
                known_missing.add(value)
            else:
                to_fetch.add(value)

        return DateGap(
            cached=sorted(cached),
            known_missing=sorted(known_missing),
            to_fetch=sorted(to_fetch),
            too_old=len(too_old),
        )

    @staticmethod
    def merge(
        store: RateStore,
        new_rates: Mapping[date, Decimal],
        new_missing: Mapping[date, str],
    ) -> tuple[int, int]:
        """
        새 결과를 추가한다. 기존 entry는 절대 덮어쓰거나 지우지 않는다(first-write-wins).

        Returns:
          - (추가된 rate 수, 추가된 missing 수)
        """
        added_rates = 0
        added_missing = 0
        for raw_key, price in new_rates.items():
            key = to_calendar_date(raw_key)
            if key in store.rates or key in store.missing:
                continue
            store.rates[key] = price
            added_rates += 1

        for raw_key, marker in new_missing.items():
            key = to_calendar_date(raw_key)
            if key in store.rates or key in store.missing:
                continue
            store.missing[key] = marker
            added_missing += 1
        return added_rates, added_missing

    @staticmethod
    def clear_missing(
        store: RateStore,
        dates: Iterable[date],
        *,
        markers: set[str] | None = None,
    ) -> list[date]:
        """
        명시적 reconciliation: missing entry를 제거해 다음 gap 계산에서 다시 조회되게 한다.

        Called from:
        - backlog-driven run (가격을 찾은 날짜)
        - requester `--retry-exhausted`
        """
        cleared: list[date] = []
        for raw in dates:
            key = to_calendar_date(raw)
            marker = store.missing.get(key)
            if marker is None:
                continue
            if markers is not None and marker not in markers:
                continue
            del store.missing[key]
            cleared.append(key)
        if cleared:
            store.missing_cleared = True
        return sorted(cleared)

    def persist(self, store: RateStore, profile: ChainProfile) -> bool:
        """
        비어 있지 않은 매핑을 전체 덮어쓰기로 저장한다.

        Returns:
          - 파일을 하나라도 쓰거나 지웠으면 True
        """
        wrote = False
        if store.rates:
            atomic_write_yaml(
                self.rates_path(profile),
                {key: store.rates[key] for key in sorted(store.rates)},
                dumper=_RateDumper,
            )
            wrote = True

        if store.missing:
            atomic_write_yaml(
                self.missing_path(profile),
                {key: store.missing[key] for key in sorted(store.missing)},
                dumper=_RateDumper,
            )
            wrote = True
        elif store.missing_cleared:
            wrote = remove_if_exists(self.missing_path(profile)) or wrote

        store.missing_cleared = False
        return wrote
