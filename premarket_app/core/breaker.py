import logging
import time
from typing import Any, Awaitable, Callable

from .errors import ExternalServiceError, ProviderRequestError

logger = logging.getLogger(__name__)


class CircuitOpenError(ExternalServiceError):
    pass


class CircuitBreaker:
    """Guards calls to an external collaborator.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls fail fast until the recovery window passes. The window doubles with
    each further failure, capped at ``max_recovery_time``. Exceptions listed in
    ``ignored_exceptions`` mean the collaborator answered, so they are re-raised
    without counting as a failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        base_recovery_time: int = 10,
        max_recovery_time: int = 60,
        ignored_exceptions: tuple = (),
    ):
        self.name = name
        self.ignored_exceptions = ignored_exceptions
        self.failure_count = 0
        self.failure_threshold = failure_threshold
        self.base_recovery_time = base_recovery_time
        self.max_recovery_time = max_recovery_time
        self.last_failure_time = 0.0
        self.state = "CLOSED"

    @property
    def current_recovery_time(self):
        return min(
            self.base_recovery_time
            * (2 ** max(self.failure_count - self.failure_threshold, 0)),
            self.max_recovery_time,
        )

    def _open(self):
        self.state = "OPEN"
        self.last_failure_time = time.time()
        logger.warning(
            f"Circuit '{self.name}' opened after {self.failure_count} failures."
        )

    def _half_open(self):
        self.state = "HALF_OPEN"
        logger.info(f"Circuit '{self.name}' half-open: testing...")

    def _close(self):
        if self.state != "CLOSED":
            logger.info(f"Circuit '{self.name}' closed: stable again.")
        self.state = "CLOSED"
        self.failure_count = 0

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        now = time.time()

        if self.state == "OPEN":
            cooldown = self.current_recovery_time
            elapsed = now - self.last_failure_time
            if elapsed < cooldown:
                raise CircuitOpenError(
                    f"{self.name} is unavailable, retry after {cooldown - elapsed:.1f}s"
                )
            self._half_open()

        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            self._close()
            raise
        except Exception as e:
            self.failure_count += 1
            logger.error(
                f"CircuitBreaker '{self.name}' call failed ({self.failure_count}): {e}"
            )
            if self.state == "HALF_OPEN" or self.failure_count >= self.failure_threshold:
                self._open()
            raise

        self._close()
        return result


email_breaker = CircuitBreaker("email")
rabbitmq_breaker = CircuitBreaker("rabbitmq")
payment_breaker = CircuitBreaker(
    "stripe", failure_threshold=5, ignored_exceptions=(ProviderRequestError,)
)
