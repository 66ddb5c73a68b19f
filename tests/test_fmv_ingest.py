import threading
from datetime import date
from decimal import Decimal

import pytest

from utils.fmv_contracts import (
    AuthenticationFatalError,
    ChainProfile,
    FileProcessingState,
    HistoryWindow,
    SkipReason,
)
from utils.processed_markers import ProcessedFileMarkers
from utils.rate_limiter import RateLimiter
from utils.rate_store import RateStore, RateStoreRepository
from workers.fmv_ingest import FmvIngestCoordinator, discover_input_files
from workers.price_fetch import PriceFetcher

TON = ChainProfile(name="ton", feed_id="the-open-network", currency="cad")
TODAY = date(2023, 6, 30)


class FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = ""

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class PriceSession:
    """
    `DD-MM-YYYY` -> 가격. None이면 200 + 가격 없음, 키가 없으면 status_code 응답.
    """

    def __init__(self, prices: dict[str, float | None], *, status_code: int = 200):
        self._prices = prices
        self._status_code = status_code
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    def get(self, url, params=None, headers=None, timeout=None):
        coin_id = url.rstrip("/").split("/")[-2]
        with self._lock:
            self.calls.append((coin_id, params["date"]))
        if self._status_code != 200:
            return FakeResponse(self._status_code, {})
        price = self._prices.get(params["date"])
        if price is None:
            return FakeResponse(200, {"id": coin_id})
        return FakeResponse(200, {"market_data": {"current_price": {"cad": price}}})


def _write_export(directory, name: str, dates: list[str]):
    path = directory / name
    rows = "".join(f"{value},IN,1.5\n" for value in dates)
    path.write_text(f"Date (UTC),Type,Amount (TON)\n{rows}")
    return path


def _build(tmp_path, session, *, max_workers=2, retry_exhausted=False):
    cache_dir = tmp_path / "cache"
    fetcher = PriceFetcher(
        rate_limiter=RateLimiter(0),
        session=session,
        max_retries=1,
        sleep=lambda seconds: None,
    )
    repo = RateStoreRepository(cache_dir)
    coordinator = FmvIngestCoordinator(
        fetcher=fetcher,
        store_repo=repo,
        markers=ProcessedFileMarkers(cache_dir),
        window=HistoryWindow(today=TODAY, max_history_days=365),
        max_workers=max_workers,
        currency="cad",
        retry_exhausted=retry_exhausted,
    )
    return coordinator, repo


def test_duplicate_dates_produce_one_fetch_per_distinct_date(tmp_path):
    source = _write_export(
        tmp_path,
        "ton_transactions_wallet_20230601_000000.csv",
        ["2023-01-01 10:00:00", "2023-01-02 11:00:00", "2023-01-01 18:00:00"],
    )
    session = PriceSession({"01-01-2023": 2.1, "02-01-2023": 2.2})
    coordinator, repo = _build(tmp_path, session)

    summary = coordinator.run([source])

    assert sorted(session.calls) == [
        ("the-open-network", "01-01-2023"),
        ("the-open-network", "02-01-2023"),
    ]
    assert repo.load(TON).rates == {
        date(2023, 1, 1): Decimal("2.1"),
        date(2023, 1, 2): Decimal("2.2"),
    }
    assert summary.files_completed == 1
    assert summary.chains["ton"].rates == 2
    assert summary.outbound_calls == 2


def test_second_run_on_unchanged_file_makes_no_calls(tmp_path):
    source = _write_export(tmp_path, "ton_wallet.csv", ["2023-03-01 00:00:00"])
    session = PriceSession({"01-03-2023": 1.9})
    coordinator, _ = _build(tmp_path, session)
    coordinator.run([source])

    second_session = PriceSession({"01-03-2023": 1.9})
    second, _ = _build(tmp_path, second_session)
    summary = second.run([source])

    assert second_session.calls == []
    assert summary.files_skipped == 1
    assert summary.files_completed == 0


def test_changed_content_forces_reprocessing(tmp_path):
    source = _write_export(tmp_path, "ton_wallet.csv", ["2023-03-01 00:00:00"])
    coordinator, repo = _build(tmp_path, PriceSession({"01-03-2023": 1.9}))
    coordinator.run([source])

    source.write_text(source.read_text() + "2023-03-02 00:00:00,OUT,0.5\n")
    session = PriceSession({"02-03-2023": 2.0})
    rerun, _ = _build(tmp_path, session)
    outcome = rerun.process_file(source)

    assert outcome.state == FileProcessingState.MARKED_PROCESSED
    assert outcome.cached == 1
    assert session.calls == [("the-open-network", "02-03-2023")]
    assert sorted(repo.load(TON).rates) == [date(2023, 3, 1), date(2023, 3, 2)]


def test_success_without_price_is_recorded_missing_without_retry(tmp_path):
    source = _write_export(tmp_path, "ton_wallet.csv", ["2023-06-15 12:00:00"])
    session = PriceSession({"15-06-2023": None})
    coordinator, repo = _build(tmp_path, session)

    outcome = coordinator.process_file(source)

    assert session.calls == [("the-open-network", "15-06-2023")]
    assert repo.load(TON).missing == {date(2023, 6, 15): "missing"}
    assert outcome.missing_marked == 1
    assert outcome.state == FileProcessingState.MARKED_PROCESSED


def test_known_missing_and_out_of_window_dates_are_not_fetched(tmp_path):
    _, repo = _build(tmp_path, PriceSession({}))
    repo.persist(RateStore(missing={date(2023, 5, 1): "missing"}), TON)
    source = _write_export(
        tmp_path, "ton_wallet.csv", ["2023-05-01 00:00:00", "2021-01-01 00:00:00"]
    )
    session = PriceSession({})
    coordinator, _ = _build(tmp_path, session)

    outcome = coordinator.process_file(source)

    assert session.calls == []
    assert outcome.known_missing == 1
    assert outcome.state == FileProcessingState.MARKED_PROCESSED


def test_retry_exhausted_clears_exhausted_markers_before_partition(tmp_path):
    _, repo = _build(tmp_path, PriceSession({}))
    repo.persist(RateStore(missing={date(2023, 5, 2): "exhausted"}), TON)
    source = _write_export(tmp_path, "ton_wallet.csv", ["2023-05-02 00:00:00"])
    session = PriceSession({"02-05-2023": 1.75})
    coordinator, _ = _build(tmp_path, session, retry_exhausted=True)

    coordinator.process_file(source)

    assert session.calls == [("the-open-network", "02-05-2023")]
    assert repo.load(TON).rates == {date(2023, 5, 2): Decimal("1.75")}
    assert not repo.missing_path(TON).exists()


def test_undetected_chain_is_skipped_and_not_marked(tmp_path):
    source = _write_export(tmp_path, "wallet_export.csv", ["2023-03-01 00:00:00"])
    session = PriceSession({})
    coordinator, _ = _build(tmp_path, session)

    outcome = coordinator.process_file(source)

    assert outcome.state == FileProcessingState.SKIPPED
    assert outcome.skip_reason == SkipReason.UNDETECTED_CHAIN
    assert not list((tmp_path / "cache").glob("processed_*"))
    assert session.calls == []


def test_file_failure_is_isolated_and_left_unmarked(tmp_path):
    broken = tmp_path / "ton_broken.csv"
    broken.mkdir()
    good = _write_export(tmp_path, "ton_good.csv", ["2023-04-01 00:00:00"])
    coordinator, repo = _build(tmp_path, PriceSession({"01-04-2023": 1.5}))

    summary = coordinator.run([broken, good])

    assert summary.files_failed == 1
    assert summary.files_completed == 1
    assert len(list((tmp_path / "cache").glob("processed_*"))) == 1
    assert repo.load(TON).rates == {date(2023, 4, 1): Decimal("1.5")}


def test_empty_export_is_marked_processed_without_calls(tmp_path):
    source = tmp_path / "ton_wallet.csv"
    source.write_text("")
    session = PriceSession({})
    coordinator, _ = _build(tmp_path, session)

    outcome = coordinator.process_file(source)

    assert outcome.state == FileProcessingState.MARKED_PROCESSED
    assert len(list((tmp_path / "cache").glob("processed_*"))) == 1
    assert session.calls == []


def test_concurrent_files_of_same_chain_do_not_lose_updates(tmp_path):
    prices = {}
    files = []
    for index in range(1, 7):
        prices[f"{index:02d}-02-2023"] = float(index)
        files.append(
            _write_export(tmp_path, f"ton_wallet_{index}.csv", [f"2023-02-{index:02d}"])
        )
    coordinator, repo = _build(tmp_path, PriceSession(prices), max_workers=4)

    summary = coordinator.run(files)

    assert summary.files_completed == 6
    assert sorted(repo.load(TON).rates) == [date(2023, 2, day) for day in range(1, 7)]


def test_same_date_across_files_is_fetched_once(tmp_path):
    first = _write_export(tmp_path, "ton_a.csv", ["2023-02-10 00:00:00"])
    second = _write_export(tmp_path, "ton_b.csv", ["2023-02-10 09:00:00"])
    session = PriceSession({"10-02-2023": 2.0})
    coordinator, _ = _build(tmp_path, session)

    summary = coordinator.run([first, second])

    assert len(session.calls) == 1
    assert summary.files_completed == 2


def test_auth_failure_halts_run_and_leaves_file_unmarked(tmp_path):
    source = _write_export(tmp_path, "ton_wallet.csv", ["2023-03-01 00:00:00"])
    session = PriceSession({}, status_code=401)
    coordinator, _ = _build(tmp_path, session, max_workers=1)

    with pytest.raises(AuthenticationFatalError):
        coordinator.run([source])

    assert len(session.calls) == 2
    assert not list((tmp_path / "cache").glob("processed_*"))


def test_discover_input_files_sorts_csv_files(tmp_path):
    (tmp_path / "b_ton.csv").write_text("x\n")
    (tmp_path / "a_eth.csv").write_text("x\n")
    (tmp_path / "notes.txt").write_text("x\n")

    assert [path.name for path in discover_input_files(tmp_path)] == [
        "a_eth.csv",
        "b_ton.csv",
    ]
    assert discover_input_files(tmp_path / "missing") == []
