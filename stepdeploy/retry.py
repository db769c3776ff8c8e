"""
Bounded exponential retry used for state transitions and transient conflicts.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .errors import Cancelled


@dataclass
class RetryPolicy:
    """Exponential backoff between ``min_delay`` and ``max_delay`` seconds."""
    min_delay: float = 1.0
    max_delay: float = 10.0
    max_attempts: int = 30

    def delay(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (0-based)."""
        return min(self.max_delay, self.min_delay * (2 ** retry))

    def attempts(self, cancel: Optional[threading.Event] = None,
                 sleep: Callable[[float], None] = time.sleep) -> Iterator[int]:
        """
        Yield attempt numbers, sleeping between them.

        The first attempt runs immediately. Callers ``return`` or ``break`` on
        success; running off the end means the policy is exhausted.

        Raises:
            Cancelled: if ``cancel`` is set before or while waiting
        """
        for attempt in range(self.max_attempts):
            if attempt > 0:
                delay = self.delay(attempt - 1)
                if cancel is not None:
                    if cancel.wait(delay):
                        raise Cancelled("cancelled while waiting to retry")
                elif delay > 0:
                    sleep(delay)
            elif cancel is not None and cancel.is_set():
                raise Cancelled("cancelled before first attempt")
            yield attempt


DEFAULT_POLICY = RetryPolicy()
