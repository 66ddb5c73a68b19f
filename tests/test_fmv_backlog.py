from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

from utils.fmv_contracts import AuthenticationFatalError, ChainProfile, HistoryWindow
from utils.missing_backlog import MissingBacklog
from utils.rate_limiter import RateLimiter
from utils.rate_store import RateStore, RateStoreRepository
from workers.fmv_backlog import (
    fill_report_values,
    find_latest_report_files,
    format_report_value,
    reconcile_backlog,
    run_backlog_fetch,
)
from workers.price_fetch import PriceFetcher

TON = ChainProfile(name="ton", feed_id="the-open-network", currency="cad")
WINDOW = HistoryWindow(today=date(2023, 12, 31), max_history_days=365)


class FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = ""

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, prices: dict[str, float], *, status_code: int = 200):
        self._prices = prices
        self._status_code = status_code
        self.calls: list[str] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(params["date"])
        if self._status_code != 200:
            return FakeResponse(self._status_code, {})
        price = self._prices.get(params["date"])
        if price is None:
            return FakeResponse(200, {})
        return FakeResponse(200, {"market_data": {"current_price": {"cad": price}}})


def _fetcher(session):
    return PriceFetcher(
        rate_limiter=RateLimiter(0), session=session, sleep=lambda seconds: None
    )


def _write_report(path, rows):
    frame = pd.DataFrame(rows, columns=["Date (UTC)", "Type", "CAD Value"])
    path.write_text(frame.to_csv(index=False))
    return path


def test_find_latest_report_files_picks_newest_per_wallet(tmp_path):
    for name in [
        "cra_fmv_walletA_20240101_120000.csv",
        "cra_fmv_walletA_20240301_080000.csv",
        "cra_fmv_wallet_B_20240201_000000.csv",
        "cra_fmv_walletA_latest.csv",
    ]:
        (tmp_path / name).write_text("Date (UTC),CAD Value\n")

    latest = find_latest_report_files(tmp_path)

    assert [path.name for path in latest] == [
        "cra_fmv_walletA_20240301_080000.csv",
        "cra_fmv_wallet_B_20240201_000000.csv",
    ]
    assert find_latest_report_files(tmp_path / "missing") == []


def test_reconcile_adds_na_dates_not_in_rates(tmp_path):
    report = _write_report(
        tmp_path / "cra_fmv_walletA_20240101_000000.csv",
        [
            ["2023-06-15 10:00:00", "IN", "N/A"],
            ["2023-06-16 10:00:00", "IN", " n/a "],
            ["2023-06-17 10:00:00", "OUT", "12.5"],
            ["2023-06-18 10:00:00", "OUT", "N/A"],
            ["bad date", "OUT", "N/A"],
        ],
    )
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-06-15"])

    result = reconcile_backlog(
        [report], {date(2023, 6, 18): Decimal("2.0")}, backlog, currency="cad"
    )

    assert result.added == ["2023-06-16"]
    assert backlog.load() == ["2023-06-15", "2023-06-16"]


def test_reconcile_removes_resolved_dates_and_deletes_empty_backlog(tmp_path):
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-06-15"])

    result = reconcile_backlog(
        [], {date(2023, 6, 15): Decimal("1.85")}, backlog, currency="cad"
    )

    assert result.removed == ["2023-06-15"]
    assert result.backlog == []
    assert not backlog.path.exists()


def test_reconcile_skips_report_without_required_columns(tmp_path):
    report = tmp_path / "cra_fmv_walletA_20240101_000000.csv"
    report.write_text("Date (UTC),USD Value\n2023-06-15,N/A\n")
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")

    result = reconcile_backlog([report], {}, backlog, currency="cad")

    assert result.added == []
    assert not backlog.path.exists()


def test_backlog_fetch_resolves_dates_and_deletes_backlog(tmp_path):
    repo = RateStoreRepository(tmp_path / "cache")
    repo.persist(RateStore(missing={date(2023, 6, 15): "exhausted"}), TON)
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-06-15"])
    session = FakeSession({"15-06-2023": 1.85})

    result = run_backlog_fetch(
        fetcher=_fetcher(session),
        store_repo=repo,
        backlog=backlog,
        profile=TON,
        window=WINDOW,
    )

    assert result.fetched == ["2023-06-15"]
    assert repo.load(TON).rates == {date(2023, 6, 15): Decimal("1.85")}
    assert not repo.missing_path(TON).exists()
    assert not backlog.path.exists()


def test_backlog_fetch_recovers_from_undecodable_cache_file(tmp_path):
    repo = RateStoreRepository(tmp_path / "cache")
    repo.cache_dir.mkdir(parents=True, exist_ok=True)
    repo.rates_path(TON).write_bytes(b"2023-01-01: 1.0\n\xff\xfe bad\n")
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-06-15"])
    session = FakeSession({"15-06-2023": 1.85})

    result = run_backlog_fetch(
        fetcher=_fetcher(session),
        store_repo=repo,
        backlog=backlog,
        profile=TON,
        window=WINDOW,
    )

    assert result.fetched == ["2023-06-15"]
    assert repo.load(TON).rates == {date(2023, 6, 15): Decimal("1.85")}


def test_backlog_fetch_keeps_old_and_failed_dates(tmp_path):
    repo = RateStoreRepository(tmp_path / "cache")
    repo.persist(RateStore(rates={date(2023, 3, 1): Decimal("2")}), TON)
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2021-05-01", "2023-03-01", "2023-07-01", "2023-08-01"])
    session = FakeSession({"01-08-2023": 2.4})

    result = run_backlog_fetch(
        fetcher=_fetcher(session),
        store_repo=repo,
        backlog=backlog,
        profile=TON,
        window=WINDOW,
    )

    assert session.calls == ["01-07-2023", "01-08-2023"]
    assert result.already_cached == ["2023-03-01"]
    assert result.skipped_too_old == ["2021-05-01"]
    assert result.failed == ["2023-07-01"]
    assert backlog.load() == ["2021-05-01", "2023-07-01"]
    assert repo.load(TON).rates[date(2023, 8, 1)] == Decimal("2.4")


def test_backlog_fetch_saves_progress_before_propagating_halt(tmp_path):
    repo = RateStoreRepository(tmp_path / "cache")
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-07-01"])
    session = FakeSession({}, status_code=401)

    with pytest.raises(AuthenticationFatalError):
        run_backlog_fetch(
            fetcher=_fetcher(session),
            store_repo=repo,
            backlog=backlog,
            profile=TON,
            window=WINDOW,
        )

    assert backlog.load() == ["2023-07-01"]
    assert len(session.calls) == 2


def test_fill_report_values_replaces_na_with_rounded_rate(tmp_path):
    report = _write_report(
        tmp_path / "cra_fmv_walletA_20240101_000000.csv",
        [
            ["2023-06-15 10:00:00", "IN", "N/A"],
            ["2023-06-16 10:00:00", "IN", "N/A"],
            ["2023-06-17 10:00:00", "OUT", "4.5"],
        ],
    )

    result = fill_report_values(
        [report], {date(2023, 6, 15): Decimal("1.234567")}, currency="cad"
    )

    frame = pd.read_csv(report, dtype=str, keep_default_na=False)
    assert list(frame["CAD Value"]) == ["1.2346", "N/A", "4.5"]
    assert list(frame.columns) == ["Date (UTC)", "Type", "CAD Value"]
    assert result.na_found == 2
    assert result.values_updated == 1
    assert result.files_updated == 1


def test_fill_report_values_leaves_file_untouched_without_matches(tmp_path):
    report = _write_report(
        tmp_path / "cra_fmv_walletA_20240101_000000.csv",
        [["2023-06-16 10:00:00", "IN", "N/A"]],
    )
    before = report.read_text()

    result = fill_report_values([report], {}, currency="cad")

    assert report.read_text() == before
    assert result.files_updated == 0


def test_format_report_value():
    assert format_report_value(Decimal("3")) == "3.0"
    assert format_report_value(Decimal("2.12345")) == "2.1235"
    assert format_report_value(Decimal("0.00004")) == "0.0"
