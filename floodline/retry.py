"""
Bounded retry with a fixed delay.
"""

import asyncio
import logging
import typing

import attrs

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy"]

T = typing.TypeVar("T")


@attrs.define(slots=True, frozen=True)
class RetryPolicy:
    """Retry an awaitable operation a fixed number of times with a fixed delay."""

    max_attempts: int = attrs.field(default=3, validator=attrs.validators.ge(1))
    """Total number of attempts, including the first one"""
    delay: float = attrs.field(default=0.5, validator=attrs.validators.ge(0))
    """Seconds to wait between attempts"""

    async def run(
        self,
        operation: typing.Callable[[], typing.Awaitable[T]],
        retry_on: typing.Tuple[typing.Type[BaseException], ...] = (Exception,),
        description: str = "operation",
    ) -> T:
        """
        Run `operation` until it succeeds or the attempts are exhausted.

        :param operation: Zero-argument callable returning an awaitable.
        :param retry_on: Exception types that trigger another attempt.
        :param description: Human readable name used in log messages.
        :return: The operation's result.
        :raises: The last exception raised, once all attempts failed.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"{description} failed after {attempt} attempt(s): {exc}"
                    )
                    raise
                logger.debug(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): "
                    f"{exc}; retrying in {self.delay}s"
                )
                await asyncio.sleep(self.delay)
        raise AssertionError("unreachable")  # pragma: no cover

    async def wait_until(
        self,
        predicate: typing.Callable[[], bool],
        description: str = "condition",
    ) -> bool:
        """
        Poll `predicate` until it returns True or the attempts are exhausted.

        :return: Whether the predicate became true.
        """
        for attempt in range(1, self.max_attempts + 1):
            if predicate():
                return True
            if attempt < self.max_attempts:
                logger.debug(
                    f"Waiting for {description} (attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(self.delay)
        return False
