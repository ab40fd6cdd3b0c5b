"""Wall-clock implementation of the Clock protocol."""

import asyncio
import time


class SystemClock:
    """Real time, real sleeps."""

    def now(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
