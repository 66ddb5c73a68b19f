"""
Content-hash processed-file markers.

Why this exists:
- 파일명이 아니라 파일 내용(sha256) 기준으로 처리 완료를 기록해야
  같은 파일 재실행은 no-op, 내용이 바뀐 파일은 전체 재처리가 된다.
"""

import hashlib
from pathlib import Path

MARKER_PREFIX = "processed_"
_CHUNK_SIZE = 1024 * 1024


def file_content_digest(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ProcessedFileMarkers:
    def __init__(self, cache_dir: str | Path):
        self._cache_dir = Path(cache_dir)

    def marker_path(self, digest: str) -> Path:
        return self._cache_dir / f"{MARKER_PREFIX}{digest}"

    def is_processed(self, digest: str) -> bool:
        return self.marker_path(digest).exists()

    def mark_processed(self, digest: str) -> Path:
        """
        zero-byte marker를 만든다. 이미 있으면 그대로 둔다.
        """
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.marker_path(digest)
        path.touch(exist_ok=True)
        return path
