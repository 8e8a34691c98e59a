"""Bounded retry policy shared by readiness and connectivity probes."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed attempt budget with exponential backoff between attempts.

    The total wait is bounded by ``total_wait``; there is no sleep after the
    last attempt.
    """

    max_attempts: int = 5
    delay: float = 1.0
    backoff: float = 1.0
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts."""
        result = []
        current = self.delay
        for _ in range(self.max_attempts - 1):
            result.append(min(current, self.max_delay))
            current *= self.backoff
        return result

    @property
    def total_wait(self) -> float:
        return sum(self.delays())

    async def run(
        self,
        probe: Callable[[], Awaitable[bool]],
        *,
        name: str = "probe",
        give_up: Callable[[], bool] | None = None,
    ) -> bool:
        """Call ``probe`` until it returns True or the budget is exhausted.

        Exceptions raised by the probe count as a failed attempt.
        ``give_up`` is checked after each failure and ends the loop early.

        Returns:
            True if any attempt succeeded
        """
        delays = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await probe():
                    logger.debug("probe_succeeded", probe=name, attempt=attempt)
                    return True
            except Exception as e:
                logger.debug("probe_error", probe=name, attempt=attempt, error=str(e))

            if give_up is not None and give_up():
                logger.debug("probe_abandoned", probe=name, attempt=attempt)
                return False

            if attempt < self.max_attempts:
                await asyncio.sleep(delays[attempt - 1])

        logger.info("probe_exhausted", probe=name, attempts=self.max_attempts)
        return False
