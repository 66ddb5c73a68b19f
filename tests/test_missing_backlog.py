from datetime import date

from utils.missing_backlog import MissingBacklog, normalize_backlog_entries


def test_normalize_backlog_entries_sorts_deduplicates_and_drops_invalid():
    entries = ["2023-06-15", date(2023, 6, 1), "2023-06-15", "bogus", None]

    assert normalize_backlog_entries(entries) == ["2023-06-01", "2023-06-15"]


def test_load_missing_or_corrupt_file_is_empty(tmp_path):
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    assert backlog.load() == []

    backlog.path.write_text("key: [broken\n")
    assert backlog.load() == []

    backlog.path.write_text("not: a list\n")
    assert backlog.load() == []


def test_load_file_with_invalid_utf8_is_empty(tmp_path):
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.path.write_bytes(b"- 2023-06-15\n- \xff\xfe\n")

    assert backlog.load() == []


def test_save_writes_sorted_list_and_reads_unquoted_dates(tmp_path):
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")

    assert backlog.save(["2023-06-15", "2023-01-01"]) == ["2023-01-01", "2023-06-15"]
    assert backlog.load() == ["2023-01-01", "2023-06-15"]

    # 다른 도구가 쓴 unquoted date 목록도 읽는다.
    backlog.path.write_text("- 2023-02-01\n- 2023-01-01\n")
    assert backlog.load() == ["2023-01-01", "2023-02-01"]


def test_save_empty_backlog_deletes_file(tmp_path):
    backlog = MissingBacklog(tmp_path / "missing_historical_fmv_dates.yaml")
    backlog.save(["2023-06-15"])
    assert backlog.exists()

    assert backlog.save([]) == []
    assert not backlog.exists()
