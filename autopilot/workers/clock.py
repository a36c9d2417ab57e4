import asyncio
from datetime import datetime, timezone


class Clock:
    """Time source for the scheduler. Delays are in milliseconds."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000)
