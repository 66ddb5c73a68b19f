"""
Missing FMV date backlog (YAML list 파일 1개).

Note:
- 빈 backlog는 "빈 파일"이 아니라 "파일 없음"으로 표현한다.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Iterable

import yaml

from utils.file_io import atomic_write_yaml, remove_if_exists
from utils.fmv_contracts import format_calendar_date, parse_calendar_date
from utils.logger import get_logger

logger = get_logger(__name__)


def normalize_backlog_entries(entries: Iterable) -> list[str]:
    """
    date/문자열 혼합 입력을 `YYYY-MM-DD` 문자열로 정규화, 중복 제거 후 정렬한다.
    """
    normalized: set[str] = set()
    for raw in entries:
        if isinstance(raw, date):
            normalized.add(format_calendar_date(raw))
            continue
        parsed = parse_calendar_date(str(raw)) if raw is not None else None
        if parsed is None:
            logger.warning(f"Dropping invalid backlog entry: {raw!r}")
            continue
        normalized.add(format_calendar_date(parsed))
    return sorted(normalized)


class MissingBacklog:
    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> list[str]:
        if not self._path.exists():
            return []

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                payload = yaml.safe_load(f)
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            logger.error(f"Failed to load missing backlog file: {e}")
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            logger.error("Invalid missing backlog format: not a list.")
            return []
        return normalize_backlog_entries(payload)

    def save(self, entries: Iterable) -> list[str]:
        """
        정렬/중복 제거 후 저장한다. 비면 파일을 삭제한다.
        """
        normalized = normalize_backlog_entries(entries)
        if not normalized:
            if remove_if_exists(self._path):
                logger.info(f"All missing FMV dates resolved. Removed {self._path.name}.")
            return []

        atomic_write_yaml(self._path, normalized)
        return normalized
