"""
Circuit breaker around the batched bd detail fetch.

    CLOSED     calls go through; consecutive failures are counted
    OPEN       calls fail immediately with CircuitOpenError until the cool-down ends
    HALF_OPEN  one trial call; success closes, failure reopens
"""
import logging
import time
from enum import Enum

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 5
RESET_TIMEOUT = 60.0   # seconds


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:

    def __init__(self, threshold: int = FAILURE_THRESHOLD,
                 reset_timeout: float = RESET_TIMEOUT, clock=time.monotonic,
                 name: str = "bd"):
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = 0.0
        self._trial_in_flight = False

    def _transition(self, new_state: CircuitState) -> None:
        if new_state != self.state:
            logger.info(f"Circuit {self.name}: {self.state.value} → {new_state.value}")
            self.state = new_state

    def retry_in(self) -> float:
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.opened_at))

    def is_open(self) -> bool:
        """True while cooling down. Moves OPEN → HALF_OPEN once it has elapsed."""
        if self.state == CircuitState.OPEN:
            if self._clock() - self.opened_at >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = False
                return False
            return True
        return False

    def allow_request(self) -> bool:
        if self.is_open():
            return False
        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self._trial_in_flight = False
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self._trial_in_flight = False
        if self.state == CircuitState.HALF_OPEN:
            self._open()
        elif self.state == CircuitState.CLOSED and self.consecutive_failures >= self.threshold:
            self._open()

    def _open(self) -> None:
        self.opened_at = self._clock()
        self._transition(CircuitState.OPEN)
        logger.warning(
            f"Circuit {self.name} opened after {self.consecutive_failures} "
            f"consecutive failures; retrying in {self.reset_timeout:.0f}s"
        )

    async def call(self, fn, *args, **kwargs):
        """Run fn through the breaker. Raises CircuitOpenError without calling it when blocked."""
        if not self.allow_request():
            raise CircuitOpenError(self.retry_in())
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
