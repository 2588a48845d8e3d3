# -*- coding: utf-8 -*-
"""
Time source used by polling loops and simulated delays.

Production code uses SystemClock; tests swap in a clock whose sleep()
advances time instantly.
"""

import asyncio
import time
from datetime import datetime


class SystemClock:
    """Wall-clock time backed by the event loop"""

    def time(self) -> float:
        """Unix timestamp in seconds (comparable to remote created_at values)"""
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        """Timezone-aware local time"""
        return datetime.now().astimezone()

    async def sleep(self, seconds: float):
        await asyncio.sleep(max(0.0, seconds))


system_clock = SystemClock()
