from __future__ import annotations

import time
from typing import Callable


class RateLimiter:
    """Fixed pause after each mutating CalDAV call.

    The delay is a static estimate of the server's write limit; there is no
    adaptive backoff. Reads are never throttled.
    """

    def __init__(self, delay_seconds: float, sleep: Callable[[float], None] = time.sleep) -> None:
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._sleep = sleep
        self.calls = 0

    def throttle(self) -> None:
        self.calls += 1
        if self.delay_seconds > 0:
            self._sleep(self.delay_seconds)
