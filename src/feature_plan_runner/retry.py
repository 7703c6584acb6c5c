"""Explicit retry budget for task execution.

The phase executor never retries on its own; installing a `TaskRetryPolicy`
opts a runner into re-sending failed tasks with the failure as feedback.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .models import Task


@dataclass
class TaskRetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.0
    backoff_factor: float = 2.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0 or self.backoff_factor < 1:
            raise ValueError("backoff_seconds must be >= 0 and backoff_factor >= 1")

    def should_retry(self, task: Task) -> bool:
        return task.attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * (self.backoff_factor ** max(0, attempts - 1))

    def feedback(self, task: Task, error: str) -> str:
        return f"Previous attempt {task.attempts} failed: {error}. Address this before anything else."

    def wait(self, attempts: int, cancel_event: Optional[threading.Event] = None) -> None:
        """Sleep for the backoff delay; returns early when `cancel_event` is set."""
        delay = self.delay_for(attempts)
        if delay <= 0:
            return
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            self.sleep(delay)
