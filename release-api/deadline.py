import time
from typing import Callable, Optional

from errors import DeadlineExceeded


class Deadline:
    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str) -> None:
        if self.expired():
            raise DeadlineExceeded(operation)

    def bounded(self, timeout: Optional[float]) -> Optional[float]:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
