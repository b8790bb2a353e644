import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

TRAN_ID_PREFIX = "tran-"


def format_req_time(moment: Optional[datetime] = None) -> str:
    """Return ``YYYYMMDDHHMMSS`` in UTC, the timestamp format PayWay expects."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y%m%d%H%M%S")


def make_tran_id(req_time: str) -> str:
    return TRAN_ID_PREFIX + req_time


class Clock:
    """Monotonic time and sleeping, swappable in tests."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    async def wait_for(self, awaitable, timeout: float):
        """Await ``awaitable``, raising ``asyncio.TimeoutError`` after ``timeout`` seconds."""
        return await asyncio.wait_for(awaitable, timeout)
