"""
In-flight request deduplication.

Why this module exists:
- 여러 파일이 같은 (feed, date, currency)를 동시에 필요로 할 때
  outbound 호출을 1회로 합친다. 완료된 결과는 run 동안 재사용한다.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Hashable, TypeVar

T = TypeVar("T")


class InFlightDeduplicator:
    def __init__(self):
        self._lock = threading.Lock()
        self._futures: dict[Hashable, Future] = {}
        self._computed = 0
        self._hits = 0

    @property
    def computed(self) -> int:
        with self._lock:
            return self._computed

    @property
    def hits(self) -> int:
        with self._lock:
            return self._hits

    def resolve(self, key: Hashable, compute: Callable[[], T]) -> T:
        """
        key의 결과를 반환한다. 첫 claimant만 compute를 실행한다.

        Called from:
        - `workers.fmv_ingest.FmvIngestCoordinator._fetch_one`

        Note:
        - compute가 예외를 내면 같은 key의 대기자 모두에게 그대로 전파된다.
          실패한 future는 캐시에서 제거해 다음 claimant가 다시 시도할 수 있다.
        """
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = Future()
                future.set_running_or_notify_cancel()
                self._futures[key] = future
                self._computed += 1
            else:
                self._hits += 1

        if not owner:
            return future.result()

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                self._futures.pop(key, None)
            future.set_exception(e)
            raise
        future.set_result(value)
        return value
