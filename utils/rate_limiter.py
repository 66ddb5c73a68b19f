"""
Process-wide outbound call gate.

Why this module exists:
- 여러 worker thread가 같은 API 키를 공유하므로 호출 간 최소 간격을
  프로세스 전체에서 하나의 인스턴스로 강제해야 한다.
- 전역 변수 대신 인스턴스를 worker들에 주입해 테스트에서 clock/sleep을 바꿀 수 있게 한다.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from utils.logger import get_logger

logger = get_logger(__name__)


class RateLimiter:
    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = time.sleep,
    ):
        if interval < 0:
            raise ValueError("interval must not be negative.")
        self._interval = float(interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    def acquire(self) -> float:
        """
        마지막 호출 시작 후 interval이 지날 때까지 대기하고, 새 시작 시각을 기록한다.

        Called from:
        - `workers.price_fetch.PriceFetcher.fetch` (재시도 포함 매 시도 직전)

        Note:
        - lock을 잡은 채로 sleep한다. 대기 중인 다른 caller는 lock에서 막히므로
          도착 순서와 무관하게 두 호출 시작이 interval 안에 겹치지 않는다.
        """
        with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                if elapsed < self._interval:
                    wait_seconds = self._interval - elapsed
                    logger.debug(f"Rate limiting - sleeping {wait_seconds:.2f}s")
                    self._sleep(wait_seconds)
            started_at = self._clock()
            self._last_call = started_at
            return started_at
