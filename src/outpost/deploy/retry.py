"""Fixed-interval retry policy used by the polling steps."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling schedule.

    Attributes:
        max_attempts: Number of attempts before giving up
        delay: Seconds slept between attempts
        backoff: Multiplier applied to the delay after each attempt
            (1.0 keeps fixed-interval polling)
        sleep: Sleep function, replaceable in tests
    """

    max_attempts: int
    delay: float = 0.0
    backoff: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")

    @classmethod
    def immediate(cls, max_attempts: int) -> RetryPolicy:
        """Policy that retries without sleeping."""
        return cls(max_attempts=max_attempts, delay=0.0, sleep=lambda _: None)

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers starting at 1, sleeping between them."""
        delay = self.delay
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1 and delay > 0:
                self.sleep(delay)
                delay *= self.backoff
            yield attempt
