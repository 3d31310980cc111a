"""Clock abstraction so time-dependent logic can run against fake time."""
import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current instant and of cooperative sleeps."""

    def now(self) -> datetime:
        """Return the current aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for *seconds*."""
        ...


class SystemClock:
    """Wall-clock time and real asyncio sleeps."""

    def now(self) -> datetime:
        """Return the current aware UTC datetime."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        """Suspend for *seconds*."""
        if seconds > 0:
            await asyncio.sleep(seconds)
