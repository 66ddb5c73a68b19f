import pytest
import requests

import scripts.fill_report_fmv as fill_report_fmv
import scripts.find_missing_fmv as find_missing_fmv
import scripts.tax_report as tax_report
import scripts.ton_explorer as ton_explorer


def _processing_log_text(log_dir) -> str:
    logs = sorted(log_dir.glob("processing_*.log"))
    assert len(logs) == 1
    return logs[0].read_text(encoding="utf-8")


@pytest.fixture
def data_dirs(tmp_path):
    return {
        "CSV_DIR": tmp_path / "CSV_Files",
        "REPORT_DIR": tmp_path / "CRA_Reports",
        "CACHE_DIR": tmp_path / "cache",
        "LOG_DIR": tmp_path / "logs",
    }


def _patch_paths(monkeypatch, module, data_dirs):
    for name, path in data_dirs.items():
        if hasattr(module, name):
            monkeypatch.setattr(module, name, path)


def test_tax_report_appends_to_daily_processing_log(monkeypatch, data_dirs):
    _patch_paths(monkeypatch, tax_report, data_dirs)

    assert tax_report.main() == 0

    assert "No ton_transactions_*.csv exports found" in _processing_log_text(
        data_dirs["LOG_DIR"]
    )


def test_find_missing_fmv_logs_missing_report_folder(monkeypatch, data_dirs):
    _patch_paths(monkeypatch, find_missing_fmv, data_dirs)

    assert find_missing_fmv.main([]) == 1

    assert not data_dirs["REPORT_DIR"].exists()
    assert "not found" in _processing_log_text(data_dirs["LOG_DIR"])


def test_fill_report_fmv_logs_missing_rate_cache(monkeypatch, data_dirs):
    _patch_paths(monkeypatch, fill_report_fmv, data_dirs)

    assert fill_report_fmv.main([]) == 1

    assert "historical_fmv_ton_cad.yaml not found" in _processing_log_text(
        data_dirs["LOG_DIR"]
    )


def test_ton_explorer_logs_request_failure(monkeypatch, data_dirs):
    _patch_paths(monkeypatch, ton_explorer, data_dirs)

    def fail(address, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(ton_explorer, "fetch_transactions", fail)

    assert ton_explorer.main(["EQ-wallet"]) == 1

    assert "API request failed: connection refused" in _processing_log_text(
        data_dirs["LOG_DIR"]
    )
