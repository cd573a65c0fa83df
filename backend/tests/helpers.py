"""Small test helpers shared across modules."""

import asyncio
import hashlib
import hmac
from collections.abc import Callable

from genrelay.config import settings


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate holds, failing after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class Clock:
    """Manually advanced clock for heartbeat and expiry checks."""

    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def sign(body: bytes) -> str:
    """Hex HMAC-SHA256 of a producer webhook body."""
    return hmac.new(settings.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
