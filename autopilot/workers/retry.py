import logging
import random
import socket
from typing import Awaitable, Callable, Optional, TypeVar
from .backoff import calculate_backoff, DEFAULT_MAX_DELAY_MS
from .clock import Clock
from ..models.errors import RetryExhaustedError

T = TypeVar("T")


def is_retriable(error: BaseException) -> bool:
    """Errors flag themselves; raw connect failures are treated as fatal"""
    flag = getattr(error, "retriable", None)
    if flag is not None:
        return bool(flag)
    return not isinstance(error, (ConnectionRefusedError, socket.gaierror))


class RetryRunner:
    def __init__(
        self,
        clock: Clock = None,
        logger: logging.Logger = None,
        max_delay: float = DEFAULT_MAX_DELAY_MS,
        rng: random.Random = None,
    ):
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)
        self.max_delay = max_delay
        self.rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int,
        label: str,
        base_delay: float = 1000,
    ) -> T:
        """Call `operation` until it succeeds, at most `max_attempts` times.

        A non-retriable error on the final attempt is re-raised as is;
        otherwise exhaustion raises RetryExhaustedError with the last error.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        last_error: Optional[BaseException] = None
        for attempt in range(max_attempts):
            if attempt > 0:
                delay = calculate_backoff(attempt - 1, base_delay, self.max_delay, self.rng)
                self.logger.info(f"{label}: attempting retry {attempt + 1}/{max_attempts} after {delay:.0f}ms")
                await self.clock.sleep(delay)

            try:
                return await operation()
            except Exception as e:
                last_error = e
                self.logger.warning(
                    f"{label} attempt {attempt + 1}/{max_attempts} failed: {e}",
                    extra={"attempt": attempt + 1, "max_attempts": max_attempts},
                )
                if attempt == max_attempts - 1 and not is_retriable(e):
                    raise

        raise RetryExhaustedError(label, max_attempts, last_error) from last_error


async def connect_database_with_retry(storage, runner: RetryRunner = None, logger: logging.Logger = None):
    logger = logger or logging.getLogger(__name__)
    runner = runner or RetryRunner(logger=logger)

    async def _connect():
        await storage.init()
        logger.info("Database connection successful")

    return await runner.run(_connect, 5, "Database connection", 2000)


async def retry_external_call(
    fn: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int = 3,
    runner: RetryRunner = None,
) -> T:
    runner = runner or RetryRunner()
    return await runner.run(fn, max_retries, label, 1500)
