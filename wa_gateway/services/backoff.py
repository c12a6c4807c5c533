from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before a retry, as a pure function of how many attempts have failed.

    Attempts 1..max_attempts wait base_delay * 2**(attempt - 1), capped at
    max_delay. Past max_attempts the controller stops fast retries and
    re-checks every slow_interval seconds.
    """

    base_delay: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 6
    slow_interval: float = 30.0

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        if self.exhausted(attempt):
            return self.slow_interval
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt > self.max_attempts

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            max_attempts=settings.retry_max_attempts,
            slow_interval=settings.retry_slow_interval,
        )
