import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TextIO

import yaml


def _atomic_write(path: str | Path, write: Callable[[TextIO], None]) -> None:
    """
    임시 파일에 먼저 쓰고 os.replace로 교체한다.
    쓰는 도중 죽어도 기존 파일은 깨지지 않는다(whole-file overwrite 전용).
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=str(file_path.parent), prefix=f".{file_path.name}.", text=True
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as temp_file:
            write(temp_file)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, file_path)
        os.chmod(file_path, 0o644)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def atomic_write_json(
    path: str | Path, payload: Any, indent: int | None = None
) -> None:
    """
    JSON을 저장하다가 죽어도 파일이 깨지지 않게 만듦(안전 장치)
    json.dump() 대신 사용
    """
    _atomic_write(path, lambda f: json.dump(payload, f, indent=indent))


def atomic_write_text(path: str | Path, text: str) -> None:
    _atomic_write(path, lambda f: f.write(text))


def atomic_write_yaml(
    path: str | Path, payload: Any, *, dumper: type = yaml.SafeDumper
) -> None:
    """
    YAML 캐시(rate store/backlog) 저장용. key 정렬은 항상 켠다.
    """
    _atomic_write(
        path,
        lambda f: yaml.dump(
            payload,
            f,
            Dumper=dumper,
            sort_keys=True,
            default_flow_style=False,
            allow_unicode=True,
        ),
    )


def remove_if_exists(path: str | Path) -> bool:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True
