from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """
    Simple in-memory circuit breaker for outbound HTTP calls.

    A run of ``max_failures`` failures opens the circuit and blocks calls
    until ``reset_timeout_seconds`` have passed. The next call is then let
    through as a trial: success closes the circuit, failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        max_failures: int = 3,
        reset_timeout_seconds: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.clock = clock
        self.failure_count = 0
        self.state = CLOSED
        self.last_failure_time: Optional[datetime] = None

    def allow_request(self) -> bool:
        """False while the circuit is open and the reset timeout has not passed."""
        if self.state == OPEN:
            if self.last_failure_time is None:
                return False
            elapsed = self.clock() - self.last_failure_time
            if elapsed >= self.reset_timeout:
                self.state = HALF_OPEN
                return True
            return False

        return True

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == HALF_OPEN or self.failure_count >= self.max_failures:
            self.state = OPEN
