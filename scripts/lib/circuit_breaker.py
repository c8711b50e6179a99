"""
Circuit breaker for calls to the CRM proxy.

After ``failure_threshold`` consecutive boundary failures the breaker opens and
calls fail fast with CircuitOpenError until ``reset_timeout`` seconds pass.
The first call after that is a trial call: success closes the breaker, failure
opens it again.

Usage:
    breaker = CircuitBreaker.get("pipedrive-proxy")
    async with breaker.guard(APIError):
        response = await post_to_proxy()
"""
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Callable, Dict, Tuple, Type

from scripts.lib.errors import CircuitOpenError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Consecutive-failure breaker, one shared instance per upstream service."""

    CLOSED = CircuitState.CLOSED
    OPEN = CircuitState.OPEN
    HALF_OPEN = CircuitState.HALF_OPEN

    _registry: Dict[str, "CircuitBreaker"] = {}

    def __init__(self, service: str, failure_threshold: int = 5,
                 reset_timeout: float = 60, clock: Callable[[], float] = time.monotonic):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = 0.0

    @classmethod
    def get(cls, service: str, **kwargs) -> "CircuitBreaker":
        """Shared breaker for ``service``; kwargs only apply on first creation."""
        breaker = cls._registry.get(service)
        if breaker is None:
            breaker = cls._registry[service] = cls(service, **kwargs)
        return breaker

    @classmethod
    def reset_all(cls):
        cls._registry.clear()

    # ─── State transitions ──────────────────────────────────

    def _open(self, reason: str):
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        logger.warning(
            "Circuit for '%s' opened (%s); blocking calls for %ss",
            self.service, reason, self.reset_timeout,
        )

    def can_execute(self) -> bool:
        if self.state is CircuitState.OPEN:
            if self._clock() - self.opened_at < self.reset_timeout:
                return False
            self.state = CircuitState.HALF_OPEN
            logger.info("Circuit for '%s' half-open, sending trial call", self.service)
        return True

    def ensure_can_execute(self):
        if not self.can_execute():
            raise CircuitOpenError(
                self.service, self.consecutive_failures, self.time_until_reset,
            )

    def record_success(self):
        if self.state is CircuitState.HALF_OPEN:
            logger.info("Circuit for '%s' closed, trial call succeeded", self.service)
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0

    def record_failure(self):
        self.consecutive_failures += 1
        if self.state is CircuitState.HALF_OPEN:
            self._open("trial call failed")
        elif (self.state is CircuitState.CLOSED
              and self.consecutive_failures >= self.failure_threshold):
            self._open(f"{self.consecutive_failures} consecutive failures")

    @asynccontextmanager
    async def guard(self, *counted: Type[BaseException]):
        """
        Fail fast while open; count exceptions of the ``counted`` types as
        failures and a clean exit as success. Other exceptions pass through
        without touching the breaker.
        """
        failures: Tuple[Type[BaseException], ...] = counted or (Exception,)
        self.ensure_can_execute()
        try:
            yield self
        except failures:
            self.record_failure()
            raise
        self.record_success()

    # ─── Reporting ──────────────────────────────────────────

    @property
    def time_until_reset(self) -> float:
        if self.state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.opened_at))

    def status(self) -> dict:
        return {
            "service": self.service,
            "state": self.state.value,
            "failures": self.consecutive_failures,
            "threshold": self.failure_threshold,
            "time_until_reset": round(self.time_until_reset, 1),
        }
