"""
Circuit breaker guarding task execution time.

Every dispatched task runs inside a CircuitBreaker configured with the
task timeout. A runner that never returns would otherwise hold its slot in
the phase forever; tripping turns it into an ordinary task failure that the
failure policy (pause, retry) already knows how to handle.

Example:
    >>> breaker = CircuitBreaker(timeout_minutes=30)
    >>> try:
    ...     result = await breaker.execute(runner.run(request))
    ... except CircuitBreakerTrippedError as e:
    ...     print(f"Task timed out: {e}")
"""

import asyncio
from collections.abc import Coroutine
from typing import TypeVar

T = TypeVar("T")


class CircuitBreakerTrippedError(Exception):
    """
    Raised when a guarded coroutine exceeds its time limit.

    Attributes:
        timeout_minutes: The limit that was exceeded
        message: Human-readable error message
    """

    def __init__(self, timeout_minutes: float) -> None:
        self.timeout_minutes = timeout_minutes
        self.message = (
            f"Task timed out: no result after {timeout_minutes:g} minutes. "
            f"The runner appears to be hung or unresponsive."
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class CircuitBreaker:
    """
    Wall-clock limit for one coroutine.

    The breaker can be disabled (tests, debugging), in which case the
    coroutine simply runs to completion.

    Attributes:
        timeout_minutes: Minutes to wait before tripping
        enabled: Whether the limit is enforced
    """

    def __init__(
        self,
        timeout_minutes: int,
        enabled: bool = True,
        _timeout_seconds_override: float | None = None,
    ) -> None:
        """
        Initialize a circuit breaker.

        Args:
            timeout_minutes: Minutes before tripping (must be >= 1)
            enabled: Whether to enforce the timeout
            _timeout_seconds_override: Timeout in seconds instead (testing only)

        Raises:
            ValueError: If timeout_minutes < 1
        """
        if timeout_minutes < 1:
            raise ValueError(f"timeout_minutes must be >= 1, got {timeout_minutes}")

        self.timeout_minutes = timeout_minutes
        self.enabled = enabled
        self._timeout_seconds_override = _timeout_seconds_override

    @property
    def timeout_seconds(self) -> float:
        if self._timeout_seconds_override is not None:
            return self._timeout_seconds_override
        return self.timeout_minutes * 60

    async def execute(self, coro: Coroutine[None, None, T]) -> T:
        """
        Run a coroutine under the time limit.

        On timeout the coroutine is cancelled before the error is raised.

        Args:
            coro: The coroutine to execute

        Returns:
            The coroutine's result

        Raises:
            CircuitBreakerTrippedError: If the limit is exceeded and the breaker is enabled
            asyncio.CancelledError: If the caller is cancelled
            Exception: Anything the coroutine raises
        """
        if not self.enabled:
            return await coro

        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            tripped_after = (
                self.timeout_seconds / 60
                if self._timeout_seconds_override is not None
                else self.timeout_minutes
            )
            raise CircuitBreakerTrippedError(tripped_after) from None


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerTrippedError",
]
