"""Restart policy for sessions whose transport fails.

Counts consecutive failures and decides between restarting after a backoff
and giving up.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_MAX_CONSECUTIVE_FAILURES = 4


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of recording one failure."""

    attempt: int
    restart: bool
    delay: float
    threshold: int

    @property
    def fatal(self) -> bool:
        """True when the failure exceeded the threshold."""
        return not self.restart

    @property
    def first_in_streak(self) -> bool:
        """True for the first failure since the last successful start."""
        return self.attempt == 1


class RestartPolicy:
    """Consecutive-failure counter with exponential backoff.

    Example:
        policy = RestartPolicy(max_consecutive_failures=4)
        decision = policy.record_failure()
        if decision.restart:
            await asyncio.sleep(decision.delay)
            ...
    """

    def __init__(
        self,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        backoff_factor: float = 2.0,
    ) -> None:
        """Initialize the policy.

        Args:
            max_consecutive_failures: Failures tolerated before giving up.
            backoff_initial: Delay before the first restart, in seconds.
            backoff_max: Upper bound for the restart delay.
            backoff_factor: Multiplier applied per consecutive failure.

        Raises:
            ValueError: If a setting is out of range.
        """
        if max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures must not be negative")
        if backoff_initial < 0 or backoff_max < 0:
            raise ValueError("backoff delays must not be negative")
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")

        self._threshold = max_consecutive_failures
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._backoff_factor = backoff_factor
        self._failures = 0

    @property
    def threshold(self) -> int:
        """Maximum number of consecutive failures that still restart."""
        return self._threshold

    @property
    def consecutive_failures(self) -> int:
        """Failures since the last successful start."""
        return self._failures

    @property
    def exhausted(self) -> bool:
        """True once the failure count exceeds the threshold."""
        return self._failures > self._threshold

    def backoff_for(self, attempt: int) -> float:
        """Get the restart delay after the given failure number."""
        if attempt < 1:
            return 0.0
        delay = self._backoff_initial * self._backoff_factor ** (attempt - 1)
        return min(delay, self._backoff_max)

    def record_failure(self) -> FailureDecision:
        """Count a failure and decide whether to restart."""
        self._failures += 1
        restart = self._failures <= self._threshold
        return FailureDecision(
            attempt=self._failures,
            restart=restart,
            delay=self.backoff_for(self._failures) if restart else 0.0,
            threshold=self._threshold,
        )

    def reset(self) -> None:
        """Clear the failure count after a successful start."""
        self._failures = 0
