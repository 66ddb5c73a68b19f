"""
Tax report generator entrypoint.
"""

from scripts.worker_config import CSV_DIR, LOG_DIR, REPORT_DIR, ensure_directories
from utils.logger import configure_file_logging, get_logger
from workers.tax_report import generate_tax_reports

logger = get_logger(__name__)


def main() -> int:
    ensure_directories(REPORT_DIR, LOG_DIR)
    configure_file_logging(LOG_DIR)
    summaries = generate_tax_reports(CSV_DIR, REPORT_DIR, LOG_DIR)
    if not summaries:
        logger.warning(f"No ton_transactions_*.csv exports found in {CSV_DIR}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
