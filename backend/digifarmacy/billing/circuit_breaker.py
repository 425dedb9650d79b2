"""Circuit breaker guarding calls to the Google Play Developer API."""

import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states"""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Dependency failing, reject calls
    HALF_OPEN = "HALF_OPEN"  # Probing whether the dependency recovered


class CircuitOpenError(Exception):
    """Raised instead of calling the dependency while the breaker is open."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Circuit breaker '{name}' is open")


class CircuitBreaker:
    """Opens after repeated failures, half-opens after a cooldown, closes after
    consecutive successes.

    ``clock`` returns seconds and defaults to :func:`time.monotonic`; tests
    pass a fake to step through the cooldown.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        excluded_exceptions: tuple[type[BaseException], ...] = (),
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout = reset_timeout
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN cooldown moves to HALF_OPEN here."""
        if (
            self._state is CircuitState.OPEN
            and self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.reset_timeout
        ):
            logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)
            self._state = CircuitState.HALF_OPEN
            self.success_count = 0
        return self._state

    def can_execute(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        self.failure_count = 0
        if self._state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                logger.info("Circuit breaker %s closing", self.name)
                self._state = CircuitState.CLOSED
                self.success_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self._state is CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker %s re-opening after failed probe", self.name)
            self._state = CircuitState.OPEN
            self.success_count = 0
        elif self._state is CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker %s opening after %d failures",
                self.name,
                self.failure_count,
            )
            self._state = CircuitState.OPEN

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open; ``func`` is not called.
        """
        if not self.can_execute():
            raise CircuitOpenError(self.name)
        try:
            result = await func(*args, **kwargs)
        except self.excluded_exceptions:
            # The dependency answered; the request itself was bad
            self.record_success()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }
