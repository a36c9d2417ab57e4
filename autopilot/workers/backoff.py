import random

DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
JITTER_RATIO = 0.1


def calculate_backoff(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY_MS,
    max_delay: float = DEFAULT_MAX_DELAY_MS,
    rng: random.Random = None,
) -> float:
    """Delay in milliseconds before retry number `attempt` (0-based).

    Exponential in `attempt` and capped at `max_delay`; up to 10% jitter is
    added on top of the capped value so concurrent retries spread out.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    rng = rng or random
    # exponent clamp keeps float math finite; any real cap is hit long before
    delay = min(base_delay * (2 ** min(attempt, 62)), max_delay)
    jitter = rng.random() * JITTER_RATIO * delay
    return delay + jitter
