"""
FleetSync - Retry Policy
Bounded polling with growing delays for resources that may come up late,
such as NAS mounts that lag behind host boot or wake.
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List


class RetryStrategy(Enum):
    """Retry strategies"""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 10
    initial_delay: float = 6.0
    max_delay: float = 600.0
    backoff_factor: float = 2.0
    strategy: RetryStrategy = RetryStrategy.LINEAR

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass
class PollAttempt:
    """Information about one failed probe"""
    attempt_number: int
    delay: float
    timestamp: float


class RetryManager:
    """Polls a probe until it succeeds or the attempt budget is spent"""

    def __init__(self, config: RetryConfig = None, sleep: Callable[[float], None] = time.sleep):
        self.config = config or RetryConfig()
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._attempt_history: List[PollAttempt] = []

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the wait after failed attempt number ``attempt`` (1-indexed)"""
        config = self.config

        if config.strategy == RetryStrategy.FIXED:
            delay = config.initial_delay
        elif config.strategy == RetryStrategy.LINEAR:
            delay = config.initial_delay * attempt
        elif config.strategy == RetryStrategy.EXPONENTIAL:
            delay = config.initial_delay * (config.backoff_factor ** (attempt - 1))
        else:
            delay = config.initial_delay

        return min(delay, config.max_delay)

    def poll_until(self, probe: Callable[[], bool], description: str = "resource") -> bool:
        """
        Call ``probe`` until it returns True.

        Sleeps between failed attempts but not after the last one. Returns
        False once ``max_attempts`` probes have failed.
        """
        self._attempt_history.clear()

        for attempt in range(1, self.config.max_attempts + 1):
            if probe():
                if attempt > 1:
                    self.logger.info(f"{description} became available on attempt {attempt}")
                return True

            if attempt >= self.config.max_attempts:
                break

            delay = self.calculate_delay(attempt)
            self._attempt_history.append(PollAttempt(
                attempt_number=attempt,
                delay=delay,
                timestamp=time.time()
            ))

            self.logger.warning(
                f"{description} not available (attempt {attempt}/{self.config.max_attempts}). "
                f"Retrying in {delay:.0f} seconds..."
            )
            self._sleep(delay)

        self.logger.error(f"{description} still unavailable after {self.config.max_attempts} attempts")
        return False

    @property
    def total_delay(self) -> float:
        """Seconds slept during the last poll"""
        return sum(attempt.delay for attempt in self._attempt_history)


def volume_wait_policy(max_attempts: int = 10) -> RetryConfig:
    """Attempt n waits 6 * n seconds before the next probe"""
    return RetryConfig(
        max_attempts=max_attempts,
        initial_delay=6.0,
        strategy=RetryStrategy.LINEAR
    )
