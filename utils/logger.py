"""
Shared logger factory.

Why this module exists:
- 모든 배치 잡(requester/backlog/report)이 동일한 포맷과 출력 위치를 쓰도록
  핸들러 구성을 한곳에 모은다.
- 콘솔 출력은 import 시점에 1회만 붙이고, 파일 출력(per-day append)은
  엔트리포인트가 로그 디렉터리를 확정한 뒤 명시적으로 붙인다.
"""

import logging
import sys
import threading
from datetime import date
from pathlib import Path

ROOT_LOGGER_NAME = "fmv"
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(threadName)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

_configure_lock = threading.Lock()
_file_handler: logging.FileHandler | None = None


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    with _configure_lock:
        if not any(
            getattr(handler, "_fmv_console", False) for handler in root.handlers
        ):
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            handler._fmv_console = True
            root.addHandler(handler)
            root.setLevel(logging.INFO)
            # root logger까지 전파하면 pytest/caplog 외 환경에서 중복 출력된다.
            root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """
    `fmv.<module>` 계층의 logger를 반환한다.

    Called from:
    - 거의 모든 모듈의 module-level `logger = get_logger(__name__)`
    """
    _root_logger()
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_file_logging(log_dir: str | Path, day: date | None = None) -> Path:
    """
    `processing_{YYYY-MM-DD}.log` append 핸들러를 붙인다.

    Called from:
    - `scripts.*` 엔트리포인트 시작 시 1회

    Note:
    - 같은 프로세스에서 다시 호출되면 기존 파일 핸들러를 교체한다.
    """
    global _file_handler

    resolved_day = day or date.today()
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / f"processing_{resolved_day.isoformat()}.log"

    root = _root_logger()
    with _configure_lock:
        if _file_handler is not None:
            root.removeHandler(_file_handler)
            _file_handler.close()
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        _file_handler = handler
    return log_path


def set_verbose(enabled: bool) -> None:
    _root_logger().setLevel(logging.DEBUG if enabled else logging.INFO)
